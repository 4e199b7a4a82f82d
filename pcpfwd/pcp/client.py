"""Request/response exchanges with a PCP server (RFC 6887)."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from dataclasses import dataclass

from pcpfwd.pcp.exceptions import (
    ExternalIpNotV4Error,
    ExternalPortZeroError,
    NonceMismatchError,
    OpcodeMismatchError,
    PCPError,
    RecvIOError,
    RecvProtocolError,
    RecvTimeoutError,
    RegisterRequestError,
    RequestError,
    RequestRecvError,
    RequestSendError,
    RequestValidateError,
    ResultCodeError,
    SendError,
    ValidateError,
)
from pcpfwd.pcp.protocol import MapData, Opcode, Request, Response
from pcpfwd.pcp.transport import RECV_TIMEOUT, PCPTransport
from pcpfwd.pcp.validate import validate

logger = logging.getLogger(__name__)

# Recommended mapping lifetime of two hours, see RFC 6886 section 3.3.
RECOMMENDED_LIFETIME_SECONDS = 2 * 60 * 60


@dataclass(frozen=True)
class MappingRequest:
    """Parameters of a MAP request."""

    protocol: int
    local_ip: ipaddress.IPv4Address
    local_port: int
    nonce: bytes
    requested_port: int | None = None
    requested_address: ipaddress.IPv4Address | None = None
    requested_lifetime_seconds: int = RECOMMENDED_LIFETIME_SECONDS


@dataclass(frozen=True)
class MappingResponse:
    """A mapping granted by the gateway."""

    protocol: int
    local_ip: ipaddress.IPv4Address
    local_port: int
    external_address: ipaddress.IPv4Address
    external_port: int
    lifetime_seconds: int
    epoch_time: int
    nonce: bytes


async def request(
    transport: PCPTransport,
    req: Request,
    timeout: float = RECV_TIMEOUT,
) -> Response:
    """Send a request and wait for the response that answers it.

    Datagrams that fail to decode or belong to another request are skipped
    until the timeout elapses, since other exchanges share the socket. A
    timeout is reported as such even when datagrams were skipped; the last
    one is kept in the error details.

    Raises:
        RequestSendError: If the request could not be sent
        RequestRecvError: On timeout or socket error
        RequestValidateError: If a MAP response carries this request's nonce
            but a different protocol or local port

    """
    loop = asyncio.get_running_loop()
    with transport.listen() as inbox:
        try:
            await transport.send(req)
        except SendError as e:
            raise RequestSendError(e) from e

        deadline = loop.time() + timeout
        skipped: PCPError | None = None
        while True:
            try:
                response = await transport.recv(inbox, deadline - loop.time())
            except RecvTimeoutError as e:
                details = {"skipped": str(skipped)} if skipped is not None else None
                raise RequestRecvError(e, details) from e
            except RecvIOError as e:
                raise RequestRecvError(e) from e
            except RecvProtocolError as e:
                logger.debug("Skipping undecodable datagram: %s", e)
                skipped = e
                continue

            try:
                validate(req, response)
            except (OpcodeMismatchError, NonceMismatchError) as e:
                logger.debug("Skipping response for another request: %s", e)
                skipped = e
                continue
            except ValidateError as e:
                # Our nonce, so no other exchange can claim this response
                raise RequestValidateError(e) from e
            return response


async def register(
    transport: PCPTransport,
    req: MappingRequest,
    timeout: float = RECV_TIMEOUT,
) -> MappingResponse:
    """Attempt to register a mapping with the PCP server.

    Raises:
        RegisterRequestError: If the exchange failed
        ResultCodeError: If the gateway refused the mapping
        ExternalIpNotV4Error: If the assigned address is not IPv4
        ExternalPortZeroError: If the assigned port is zero

    """
    proto_req = Request.mapping(
        req.nonce,
        req.protocol,
        req.local_port,
        req.local_ip,
        req.requested_port,
        req.requested_address,
        req.requested_lifetime_seconds,
    )
    try:
        proto_res = await request(transport, proto_req, timeout)
    except RequestError as e:
        raise RegisterRequestError(e) from e

    if not proto_res.is_success:
        raise ResultCodeError(proto_res.result_code)

    data = proto_res.data
    if not isinstance(data, MapData):  # pragma: no cover - excluded by validation
        raise RegisterRequestError(PCPError("MAP request answered without MAP data"))

    external_address = data.external_address.ipv4_mapped
    if external_address is None:
        raise ExternalIpNotV4Error(data.external_address)
    if data.external_port == 0:
        raise ExternalPortZeroError

    return MappingResponse(
        protocol=data.protocol,
        local_ip=req.local_ip,
        local_port=data.local_port,
        external_address=external_address,
        external_port=data.external_port,
        lifetime_seconds=proto_res.lifetime_seconds,
        epoch_time=proto_res.epoch_time,
        nonce=data.nonce,
    )


async def release(
    transport: PCPTransport,
    protocol: int,
    local_ip: ipaddress.IPv4Address,
    local_port: int,
    nonce: bytes,
) -> None:
    """Release a mapping on the PCP server.

    Mapping deletion is a notification, so no response is awaited.

    Raises:
        SendError: If the notification could not be sent

    """
    req = Request.mapping(nonce, protocol, local_port, local_ip, None, None, 0)
    await transport.send(req)


async def probe(
    transport: PCPTransport,
    local_ip: ipaddress.IPv4Address,
    timeout: float = RECV_TIMEOUT,
) -> Response:
    """Send an ANNOUNCE request to the gateway and return its response."""
    return await request(transport, Request.announce(local_ip), timeout)


async def is_gateway_available(
    transport: PCPTransport,
    local_ip: ipaddress.IPv4Address,
    timeout: float = RECV_TIMEOUT,
) -> bool:
    """Probe the gateway for PCP support.

    Never raises: any failure means the gateway is not usable.
    """
    try:
        response = await probe(transport, local_ip, timeout)
    except (PCPError, OSError) as e:
        logger.debug("PCP probe failed: %s", e)
        return False

    logger.debug("PCP probe response: %s", response)
    if response.opcode != Opcode.ANNOUNCE:
        # validation already excludes this, a misbehaving server is not useful
        logger.debug("Server returned an unexpected response type for probe")
        return False
    if not response.is_success:
        logger.debug("Server refused probe with result code %s", response.result_code)
        return False
    return True
