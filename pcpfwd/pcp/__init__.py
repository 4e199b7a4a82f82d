"""Port Control Protocol (RFC 6887) client.

Provides the wire codec, a shared UDP transport, request orchestration and a
mapping lifecycle manager that keeps MAP mappings renewed.
"""

from pcpfwd.pcp.client import (
    MappingRequest,
    MappingResponse,
    is_gateway_available,
    probe,
    register,
    release,
    request,
)
from pcpfwd.pcp.exceptions import (
    ManagerShutdownError,
    PCPError,
    PortRegisterError,
    PortUnregisterError,
    RegisterError,
    RequestError,
    UnsupportedProtocolError,
)
from pcpfwd.pcp.manager import Mapping, MappingState, PCPMappingManager
from pcpfwd.pcp.mapper import MappingKey, PCPPortManager
from pcpfwd.pcp.transport import PCPTransport

__all__ = [
    "ManagerShutdownError",
    "Mapping",
    "MappingKey",
    "MappingRequest",
    "MappingResponse",
    "MappingState",
    "PCPError",
    "PCPMappingManager",
    "PCPPortManager",
    "PCPTransport",
    "PortRegisterError",
    "PortUnregisterError",
    "RegisterError",
    "RequestError",
    "UnsupportedProtocolError",
    "is_gateway_available",
    "probe",
    "register",
    "release",
    "request",
]
