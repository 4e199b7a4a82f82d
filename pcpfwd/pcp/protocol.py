"""PCP (Port Control Protocol) message encoding and decoding per RFC 6887.

Only the ANNOUNCE and MAP opcodes are implemented. PEER and PCP options are
not supported; a response carrying either is rejected at decode time.
"""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Union

from pcpfwd.pcp.exceptions import (
    InvalidOpcodeDataError,
    InvalidSizeError,
    NotAResponseError,
    PCPDecodeError,
    UnsupportedOpcodeError,
    UnsupportedVersionError,
)

# RFC 6887 constants
PCP_VERSION = 2
HEADER_SIZE = 24
MAX_RESPONSE_SIZE = 1100  # RFC 6887 section 7
NONCE_SIZE = 12
RESPONSE_INDICATOR = 0x80
OPCODE_MASK = 0x7F

UNSPECIFIED_V4_MAPPED = ipaddress.IPv6Address("::ffff:0.0.0.0")


class Opcode(IntEnum):
    """PCP opcodes from RFC 6887 section 19.2 (PEER is not supported)."""

    ANNOUNCE = 0
    MAP = 1


class ResultCode(IntEnum):
    """PCP result codes from RFC 6887 section 7.4."""

    SUCCESS = 0
    UNSUPP_VERSION = 1
    NOT_AUTHORIZED = 2
    MALFORMED_REQUEST = 3
    UNSUPP_OPCODE = 4
    UNSUPP_OPTION = 5
    MALFORMED_OPTION = 6
    NETWORK_FAILURE = 7
    NO_RESOURCES = 8
    UNSUPP_PROTOCOL = 9
    USER_EX_QUOTA = 10
    CANNOT_PROVIDE_EXTERNAL = 11
    ADDRESS_MISMATCH = 12
    EXCESSIVE_REMOTE_PEERS = 13


class IPProtocol(IntEnum):
    """IANA protocol numbers a MAP request can carry."""

    TCP = 6
    UDP = 17
    SCTP = 132


IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def to_ipv6_mapped(address: IPAddress) -> ipaddress.IPv6Address:
    """Return the IPv4-mapped IPv6 form used on the wire for IPv4 addresses."""
    if isinstance(address, ipaddress.IPv6Address):
        return address
    return ipaddress.IPv6Address(b"\x00" * 10 + b"\xff\xff" + address.packed)


@dataclass(frozen=True)
class AnnounceData:
    """ANNOUNCE opcode data, which is empty (RFC 6887 section 14.1)."""

    opcode: ClassVar[Opcode] = Opcode.ANNOUNCE
    ENCODED_SIZE: ClassVar[int] = 0

    def encode(self) -> bytes:
        return b""

    @classmethod
    def decode(cls, data: bytes) -> AnnounceData:
        if len(data) != cls.ENCODED_SIZE:
            msg = f"ANNOUNCE data must be empty, got {len(data)} bytes"
            raise InvalidOpcodeDataError(msg)
        return cls()


@dataclass(frozen=True)
class MapData:
    """MAP opcode data (RFC 6887 section 11.1).

    The same layout is used in both directions. In a request the external
    port and address are suggestions; in a response they are the values the
    gateway assigned.
    """

    nonce: bytes
    protocol: int
    local_port: int
    external_port: int = 0
    external_address: ipaddress.IPv6Address = UNSPECIFIED_V4_MAPPED

    opcode: ClassVar[Opcode] = Opcode.MAP
    # nonce(12), protocol(1), reserved(3), internal port(2),
    # external port(2), external address(16)
    _STRUCT: ClassVar[struct.Struct] = struct.Struct("!12sB3xHH16s")
    ENCODED_SIZE: ClassVar[int] = _STRUCT.size

    def __post_init__(self) -> None:
        if len(self.nonce) != NONCE_SIZE:
            msg = f"nonce must be {NONCE_SIZE} bytes, got {len(self.nonce)}"
            raise ValueError(msg)

    def encode(self) -> bytes:
        return self._STRUCT.pack(
            self.nonce,
            self.protocol,
            self.local_port,
            self.external_port,
            self.external_address.packed,
        )

    @classmethod
    def decode(cls, data: bytes) -> MapData:
        if len(data) != cls.ENCODED_SIZE:
            msg = f"MAP data must be {cls.ENCODED_SIZE} bytes, got {len(data)}"
            raise InvalidOpcodeDataError(msg)
        nonce, protocol, local_port, external_port, external = cls._STRUCT.unpack(
            data
        )
        return cls(
            nonce=nonce,
            protocol=protocol,
            local_port=local_port,
            external_port=external_port,
            external_address=ipaddress.IPv6Address(external),
        )


OpcodeData = Union[AnnounceData, MapData]

_OPCODE_DATA: dict[Opcode, type[AnnounceData] | type[MapData]] = {
    Opcode.ANNOUNCE: AnnounceData,
    Opcode.MAP: MapData,
}


def _decode_opcode(raw: int) -> Opcode:
    try:
        return Opcode(raw)
    except ValueError:
        msg = f"unsupported opcode {raw}"
        raise UnsupportedOpcodeError(msg) from None


def _check_version(version: int) -> None:
    if version != PCP_VERSION:
        msg = f"unsupported version {version}"
        raise UnsupportedVersionError(msg)


@dataclass(frozen=True)
class Request:
    """A PCP request (RFC 6887 section 7.1)."""

    client_address: ipaddress.IPv6Address
    lifetime_seconds: int
    data: OpcodeData

    # version(1), R + opcode(1), reserved(2), lifetime(4), client address(16)
    _HEADER: ClassVar[struct.Struct] = struct.Struct("!BBHI16s")

    @property
    def opcode(self) -> Opcode:
        return self.data.opcode

    @classmethod
    def announce(cls, client_address: IPAddress) -> Request:
        """Create an ANNOUNCE request, used to probe for a PCP server."""
        return cls(to_ipv6_mapped(client_address), 0, AnnounceData())

    @classmethod
    def mapping(
        cls,
        nonce: bytes,
        protocol: int,
        local_port: int,
        local_ip: ipaddress.IPv4Address,
        requested_port: int | None,
        requested_address: ipaddress.IPv4Address | None,
        lifetime_seconds: int,
    ) -> Request:
        """Create a MAP request.

        A lifetime of zero asks the gateway to delete the mapping.
        """
        external_address = (
            to_ipv6_mapped(requested_address)
            if requested_address is not None
            else UNSPECIFIED_V4_MAPPED
        )
        data = MapData(
            nonce=nonce,
            protocol=protocol,
            local_port=local_port,
            external_port=requested_port or 0,
            external_address=external_address,
        )
        return cls(to_ipv6_mapped(local_ip), lifetime_seconds, data)

    def encode(self) -> bytes:
        header = self._HEADER.pack(
            PCP_VERSION,
            int(self.opcode),
            0,  # reserved
            self.lifetime_seconds,
            self.client_address.packed,
        )
        return header + self.data.encode()

    @classmethod
    def decode(cls, buf: bytes) -> Request:
        """Decode a request, as a gateway would."""
        if len(buf) < HEADER_SIZE or len(buf) > MAX_RESPONSE_SIZE:
            msg = f"invalid request size {len(buf)}"
            raise InvalidSizeError(msg)
        version, raw_opcode, _reserved, lifetime, client = cls._HEADER.unpack(
            buf[:HEADER_SIZE]
        )
        _check_version(version)
        if raw_opcode & RESPONSE_INDICATOR:
            msg = "R bit set on a request"
            raise PCPDecodeError(msg)
        opcode = _decode_opcode(raw_opcode & OPCODE_MASK)
        data = _OPCODE_DATA[opcode].decode(buf[HEADER_SIZE:])
        return cls(ipaddress.IPv6Address(client), lifetime, data)


@dataclass(frozen=True)
class Response:
    """A PCP response (RFC 6887 section 7.2)."""

    result_code: ResultCode | int
    lifetime_seconds: int
    epoch_time: int
    data: OpcodeData

    MAX_SIZE: ClassVar[int] = MAX_RESPONSE_SIZE
    # version(1), R + opcode(1), reserved(1), result code(1), lifetime(4),
    # epoch time(4), reserved(12)
    _HEADER: ClassVar[struct.Struct] = struct.Struct("!BBxBII12x")

    @property
    def opcode(self) -> Opcode:
        return self.data.opcode

    @property
    def is_success(self) -> bool:
        return self.result_code == ResultCode.SUCCESS

    def encode(self) -> bytes:
        header = self._HEADER.pack(
            PCP_VERSION,
            RESPONSE_INDICATOR | int(self.opcode),
            int(self.result_code),
            self.lifetime_seconds,
            self.epoch_time,
        )
        return header + self.data.encode()

    @classmethod
    def decode(cls, buf: bytes) -> Response:
        """Decode a response datagram.

        Raises:
            PCPDecodeError: If the datagram is not a supported PCP response

        """
        if len(buf) < HEADER_SIZE or len(buf) > cls.MAX_SIZE:
            msg = f"invalid response size {len(buf)}"
            raise InvalidSizeError(msg)
        version, raw_opcode, raw_result, lifetime, epoch = cls._HEADER.unpack(
            buf[:HEADER_SIZE]
        )
        _check_version(version)
        if not raw_opcode & RESPONSE_INDICATOR:
            msg = "R bit not set on a response"
            raise NotAResponseError(msg)
        opcode = _decode_opcode(raw_opcode & OPCODE_MASK)
        try:
            result_code: ResultCode | int = ResultCode(raw_result)
        except ValueError:
            result_code = raw_result
        data = _OPCODE_DATA[opcode].decode(buf[HEADER_SIZE:])
        return cls(result_code, lifetime, epoch, data)
