"""PCP client exceptions.

The hierarchy mirrors the layers of an exchange with the gateway: decoding a
datagram, sending, receiving, correlating the response with its request, and
finally interpreting a granted mapping. Wrapping errors keep the lower-level
failure both as ``__cause__`` and as the ``source`` attribute.
"""

from __future__ import annotations

from typing import Any

from pcpfwd.utils.exceptions import PortForwardError


class PCPError(PortForwardError):
    """Base exception for PCP errors."""


class WrappedPCPError(PCPError):
    """A PCP error caused by another, lower level error."""

    prefix = ""

    def __init__(self, source: BaseException, details: dict[str, Any] | None = None):
        """Initialize from the underlying error."""
        super().__init__(f"{self.prefix}: {source}", details)
        self.source = source
        self.__cause__ = source


# Decode


class PCPDecodeError(PCPError):
    """A datagram could not be decoded as a PCP message."""


class InvalidSizeError(PCPDecodeError):
    """Message shorter than the header or longer than the maximum size."""


class UnsupportedVersionError(PCPDecodeError):
    """Message version is not PCP version 2."""


class NotAResponseError(PCPDecodeError):
    """The R bit is not set on a datagram decoded as a response."""


class UnsupportedOpcodeError(PCPDecodeError):
    """Opcode is neither ANNOUNCE nor MAP."""


class InvalidOpcodeDataError(PCPDecodeError):
    """Opcode specific data length does not match the opcode."""


# Send


class SendError(PCPError):
    """Sending a request datagram failed."""


class SendIOError(SendError, WrappedPCPError):
    """The socket refused the datagram."""

    prefix = "send"


class SendSizeMismatchError(SendError):
    """Only part of the datagram was handed to the socket."""

    def __init__(self, expected: int, actual: int):
        """Initialize with the encoded and the written sizes."""
        super().__init__(
            f"unable to write whole packet: packet size {expected} "
            f"but only {actual} written"
        )
        self.expected = expected
        self.actual = actual


# Recv


class RecvError(PCPError):
    """Receiving a response datagram failed."""


class RecvIOError(RecvError, WrappedPCPError):
    """The socket reported an error while waiting for a response."""

    prefix = "recv"


class RecvTimeoutError(RecvError):
    """No datagram arrived within the receive timeout."""

    def __init__(self, timeout: float):
        """Initialize with the timeout that elapsed."""
        super().__init__(f"timeout: no response within {timeout:.3f}s")
        self.timeout = timeout


class RecvProtocolError(RecvError, WrappedPCPError):
    """A datagram arrived but was not a valid PCP response."""

    prefix = "pcp protocol"


# Validate


class ValidateError(PCPError):
    """A response does not answer the request it was matched against."""

    field = ""

    def __init__(self, expected: Any, got: Any):
        """Initialize with expected and actual values."""
        super().__init__(
            f"{self.field} mismatch: expected {expected!r} got {got!r}"
        )
        self.expected = expected
        self.got = got


class OpcodeMismatchError(ValidateError):
    """Response opcode differs from the request opcode."""

    field = "opcode"


class MapDataMismatchError(ValidateError):
    """MAP response data does not correlate with the MAP request data."""


class NonceMismatchError(MapDataMismatchError):
    """Response nonce differs from the request nonce."""

    field = "nonce"


class ProtocolMismatchError(MapDataMismatchError):
    """Response protocol number differs from the request."""

    field = "protocol"


class LocalPortMismatchError(MapDataMismatchError):
    """Response internal port differs from the request."""

    field = "local port"


# Request


class RequestError(WrappedPCPError):
    """A request/response exchange with the gateway failed."""


class RequestSendError(RequestError):
    """The exchange failed while sending."""

    prefix = "send"


class RequestRecvError(RequestError):
    """The exchange failed while receiving."""

    prefix = "recv"


class RequestValidateError(RequestError):
    """Only responses for other requests arrived."""

    prefix = "validation"


# Register


class RegisterError(PCPError):
    """Registering a mapping with the gateway failed."""


class RegisterRequestError(RegisterError, WrappedPCPError):
    """The MAP exchange itself failed."""

    prefix = "request"


class ExternalIpNotV4Error(RegisterError):
    """The gateway assigned an external address that is not IPv4-mapped."""

    def __init__(self, address: Any):
        """Initialize with the offending address."""
        super().__init__(f"the external IP is not v4: {address}")
        self.address = address


class ExternalPortZeroError(RegisterError):
    """The gateway assigned external port zero."""

    def __init__(self) -> None:
        """Initialize error."""
        super().__init__("the external port is zero")


class ResultCodeError(RegisterError):
    """The gateway answered with a non-success result code."""

    def __init__(self, result_code: Any):
        """Initialize with the result code the gateway returned."""
        name = getattr(result_code, "name", f"Unknown({result_code})")
        super().__init__(f"gateway returned result code {name}")
        self.result_code = result_code


# Lifecycle


class LifecycleError(PCPError):
    """The mapping manager could not service a command."""


class ManagerShutdownError(LifecycleError):
    """The manager was stopped before the command completed."""

    def __init__(self, message: str = "mapping manager is no longer serviceable"):
        """Initialize error."""
        super().__init__(message)


class CommandQueueFullError(LifecycleError):
    """An internal command did not fit in the manager's queue."""

    def __init__(self, command: str):
        """Initialize with the command name."""
        super().__init__(f"command queue full, could not queue {command}")
        self.command = command


class RenewalExhaustedError(LifecycleError):
    """A mapping expired because every renewal attempt failed."""

    def __init__(self, key: Any, attempts: int):
        """Initialize with the mapping key and attempt count."""
        super().__init__(
            f"renewal of mapping {key!r} failed {attempts} times, mapping expired"
        )
        self.key = key
        self.attempts = attempts


# Port manager facade


class PortManagerError(PCPError):
    """Port manager facade errors."""


class UnsupportedProtocolError(PortManagerError):
    """A port forward names a protocol that has no IANA number mapping."""

    def __init__(self, protocol: str):
        """Initialize with the protocol name."""
        super().__init__(f"unsupported protocol: {protocol}")
        self.protocol = protocol


class PortRegisterError(PortManagerError):
    """Registering a port forward map failed."""


class PortUnregisterError(PortManagerError):
    """Unregistering a port forward map failed."""
