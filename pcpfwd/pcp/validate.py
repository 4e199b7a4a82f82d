"""Response validation.

A UDP socket shared by several exchanges can deliver a response meant for a
different (or an already answered) request. Validation makes sure a response
is the answer to a given request before anything is derived from it.
"""

from __future__ import annotations

from pcpfwd.pcp.exceptions import (
    LocalPortMismatchError,
    NonceMismatchError,
    OpcodeMismatchError,
    ProtocolMismatchError,
)
from pcpfwd.pcp.protocol import MapData, OpcodeData, Request, Response


def validate(request: Request, response: Response) -> None:
    """Check that ``response`` answers ``request``.

    Raises:
        ValidateError: On the first field that does not correlate

    """
    validate_opcode_data(request.data, response.data)


def validate_opcode_data(request: OpcodeData, response: OpcodeData) -> None:
    if request.opcode != response.opcode:
        raise OpcodeMismatchError(request.opcode, response.opcode)
    if isinstance(request, MapData) and isinstance(response, MapData):
        validate_map_data(request, response)


def validate_map_data(request: MapData, response: MapData) -> None:
    if request.nonce != response.nonce:
        raise NonceMismatchError(request.nonce, response.nonce)
    if request.protocol != response.protocol:
        raise ProtocolMismatchError(request.protocol, response.protocol)
    if request.local_port != response.local_port:
        raise LocalPortMismatchError(request.local_port, response.local_port)
