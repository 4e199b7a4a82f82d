"""Unit tests for PCP request orchestration."""

from __future__ import annotations

import asyncio
import ipaddress
from unittest.mock import AsyncMock, patch

import pytest

from pcpfwd.pcp.client import (
    MappingRequest,
    is_gateway_available,
    probe,
    register,
    release,
    request,
)
from pcpfwd.pcp.exceptions import (
    ExternalIpNotV4Error,
    ExternalPortZeroError,
    LocalPortMismatchError,
    RecvIOError,
    RecvTimeoutError,
    RegisterRequestError,
    RequestRecvError,
    RequestSendError,
    RequestValidateError,
    ResultCodeError,
    SendIOError,
)
from pcpfwd.pcp.protocol import (
    AnnounceData,
    IPProtocol,
    MapData,
    Opcode,
    Request,
    Response,
    ResultCode,
)

LOCAL_IP = ipaddress.IPv4Address("10.0.0.5")
NONCE = b"\x11" * 12
OTHER_NONCE = b"\x22" * 12


def _map_request(**kwargs) -> MappingRequest:
    params = {
        "protocol": IPProtocol.TCP,
        "local_ip": LOCAL_IP,
        "local_port": 30080,
        "nonce": NONCE,
        "requested_port": 8080,
    }
    params.update(kwargs)
    return MappingRequest(**params)


@pytest.mark.asyncio
async def test_request_round_trip(gateway, transport):
    """Test a request through a simulated gateway yields a validating response."""
    req = Request.mapping(NONCE, 6, 30080, LOCAL_IP, 8080, None, 7200)

    response = await request(transport, req, 1.0)

    assert response.is_success
    assert response.data.nonce == NONCE
    assert gateway.requests == [req]


@pytest.mark.asyncio
async def test_request_timeout(gateway, transport):
    """Test silence from the gateway becomes a receive error."""
    gateway.handler = lambda gw, req: []

    with pytest.raises(RequestRecvError) as exc_info:
        await request(transport, Request.announce(LOCAL_IP), 0.1)

    assert isinstance(exc_info.value.source, RecvTimeoutError)


@pytest.mark.asyncio
async def test_request_skips_responses_for_other_requests(gateway, transport):
    """Test a stale response is skipped in favour of the matching one."""

    def handler(gw, req):
        stale = gw.map_response(req, nonce=OTHER_NONCE)
        return [stale.encode(), b"junk", gw.map_response(req).encode()]

    gateway.handler = handler
    req = Request.mapping(NONCE, 6, 30080, LOCAL_IP, None, None, 7200)

    response = await request(transport, req, 1.0)

    assert response.data.nonce == NONCE


@pytest.mark.asyncio
async def test_request_times_out_after_foreign_responses(gateway, transport):
    """Test responses for other requests still end in a timeout."""
    gateway.handler = lambda gw, req: [gw.map_response(req, nonce=OTHER_NONCE).encode()]
    req = Request.mapping(NONCE, 6, 30080, LOCAL_IP, None, None, 7200)

    with pytest.raises(RequestRecvError) as exc_info:
        await request(transport, req, 0.2)

    assert isinstance(exc_info.value.source, RecvTimeoutError)
    assert "nonce mismatch" in exc_info.value.details["skipped"]


@pytest.mark.asyncio
async def test_request_times_out_after_undecodable_datagrams(gateway, transport):
    """Test undecodable datagrams still end in a timeout."""
    gateway.handler = lambda gw, req: [b"\x02"]

    with pytest.raises(RequestRecvError) as exc_info:
        await request(transport, Request.announce(LOCAL_IP), 0.2)

    assert isinstance(exc_info.value.source, RecvTimeoutError)
    assert "skipped" in exc_info.value.details


@pytest.mark.asyncio
async def test_concurrent_request_with_lost_response_times_out(gateway, transport):
    """Test a lost response is a timeout while another exchange succeeds."""

    def handler(gw, req):
        if req.data.local_port == 1000:
            return [gw.map_response(req).encode()]
        return []

    gateway.handler = handler
    answered = Request.mapping(NONCE, 6, 1000, LOCAL_IP, None, None, 7200)
    lost = Request.mapping(OTHER_NONCE, 6, 2000, LOCAL_IP, None, None, 7200)

    results = await asyncio.gather(
        request(transport, lost, 0.3),
        request(transport, answered, 0.3),
        return_exceptions=True,
    )

    assert isinstance(results[0], RequestRecvError)
    assert isinstance(results[0].source, RecvTimeoutError)
    assert results[1].data.nonce == NONCE


@pytest.mark.asyncio
async def test_request_rejects_own_nonce_with_other_port(gateway, transport):
    """Test a response with our nonce but another local port is a validation error."""
    gateway.handler = lambda gw, req: [
        Response(
            ResultCode.SUCCESS,
            7200,
            gw.epoch(),
            MapData(NONCE, 6, 30081, 8080, gw.map_response(req).data.external_address),
        ).encode()
    ]
    req = Request.mapping(NONCE, 6, 30080, LOCAL_IP, None, None, 7200)

    with pytest.raises(RequestValidateError) as exc_info:
        await request(transport, req, 1.0)

    assert isinstance(exc_info.value.source, LocalPortMismatchError)


@pytest.mark.asyncio
async def test_request_send_failure(transport):
    """Test a send failure is reported as such."""
    loop = asyncio.get_running_loop()
    with patch.object(loop, "sock_sendto", AsyncMock(side_effect=OSError("down"))):
        with pytest.raises(RequestSendError) as exc_info:
            await request(transport, Request.announce(LOCAL_IP), 0.2)

    assert isinstance(exc_info.value.source, SendIOError)


@pytest.mark.asyncio
async def test_request_socket_error_fails_immediately(transport):
    """Test an I/O error while waiting is not retried."""
    with patch.object(
        transport, "recv", AsyncMock(side_effect=RecvIOError(OSError("reset")))
    ), patch.object(transport, "send", AsyncMock()):
        with pytest.raises(RequestRecvError) as exc_info:
            await request(transport, Request.announce(LOCAL_IP), 5.0)

    assert isinstance(exc_info.value.source, RecvIOError)


@pytest.mark.asyncio
async def test_register_success(gateway, transport):
    """Test a granted mapping is translated into a MappingResponse."""
    result = await register(transport, _map_request(), 1.0)

    assert result.external_address == ipaddress.IPv4Address("203.0.113.9")
    assert result.external_port == 8080
    assert result.local_port == 30080
    assert result.local_ip == LOCAL_IP
    assert result.lifetime_seconds == 7200
    assert result.nonce == NONCE
    assert result.protocol == IPProtocol.TCP


@pytest.mark.asyncio
async def test_register_sends_requested_lifetime(gateway, transport):
    """Test the requested lifetime and hint go on the wire."""
    await register(transport, _map_request(requested_lifetime_seconds=600), 1.0)

    sent = gateway.requests[0]
    assert sent.lifetime_seconds == 600
    assert sent.data.external_port == 8080
    assert sent.client_address.ipv4_mapped == LOCAL_IP


@pytest.mark.asyncio
async def test_register_result_code_error(gateway, transport):
    """Test a refusal carries the gateway's result code."""
    gateway.result_code = ResultCode.NO_RESOURCES

    with pytest.raises(ResultCodeError) as exc_info:
        await register(transport, _map_request(), 1.0)

    assert exc_info.value.result_code == ResultCode.NO_RESOURCES


@pytest.mark.asyncio
async def test_register_external_ip_not_v4(gateway, transport):
    """Test an IPv6 external address is rejected."""
    gateway.handler = lambda gw, req: [
        gw.map_response(req, external_address=ipaddress.IPv6Address("2001:db8::1")).encode()
    ]

    with pytest.raises(ExternalIpNotV4Error):
        await register(transport, _map_request(), 1.0)


@pytest.mark.asyncio
async def test_register_external_port_zero(gateway, transport):
    """Test a grant on port zero is rejected."""
    gateway.handler = lambda gw, req: [gw.map_response(req, external_port=0).encode()]

    with pytest.raises(ExternalPortZeroError):
        await register(transport, _map_request(requested_port=None), 1.0)


@pytest.mark.asyncio
async def test_register_request_error(gateway, transport):
    """Test exchange failures are wrapped as register errors."""
    gateway.handler = lambda gw, req: []

    with pytest.raises(RegisterRequestError) as exc_info:
        await register(transport, _map_request(), 0.1)

    assert isinstance(exc_info.value.source, RequestRecvError)


@pytest.mark.asyncio
async def test_release_sends_zero_lifetime(gateway, transport):
    """Test release sends a deletion with the mapping's nonce and does not wait."""
    gateway.handler = lambda gw, req: []

    await asyncio.wait_for(
        release(transport, IPProtocol.TCP, LOCAL_IP, 30080, NONCE), timeout=0.1
    )
    await gateway.wait_for_requests(1)

    sent = gateway.requests[0]
    assert sent.opcode == Opcode.MAP
    assert sent.lifetime_seconds == 0
    assert sent.data == MapData(NONCE, 6, 30080)


@pytest.mark.asyncio
async def test_probe_returns_announce_response(gateway, transport):
    """Test probe exchanges an ANNOUNCE."""
    response = await probe(transport, LOCAL_IP, 1.0)

    assert response.opcode == Opcode.ANNOUNCE
    assert gateway.requests[0].opcode == Opcode.ANNOUNCE


@pytest.mark.asyncio
async def test_gateway_available(gateway, transport):
    """Test a successful ANNOUNCE means PCP is available."""
    assert await is_gateway_available(transport, LOCAL_IP, 1.0)


@pytest.mark.asyncio
async def test_gateway_unavailable_on_timeout(gateway, transport):
    """Test silence means PCP is unavailable."""
    gateway.handler = lambda gw, req: []

    assert not await is_gateway_available(transport, LOCAL_IP, 0.1)


@pytest.mark.asyncio
async def test_gateway_unavailable_on_error_result(gateway, transport):
    """Test a refused ANNOUNCE means PCP is unavailable."""
    gateway.handler = lambda gw, req: [
        Response(ResultCode.UNSUPP_VERSION, 0, 0, AnnounceData()).encode()
    ]

    assert not await is_gateway_available(transport, LOCAL_IP, 1.0)


@pytest.mark.asyncio
async def test_gateway_unavailable_never_raises():
    """Test probing through a stopped transport returns False."""
    from pcpfwd.pcp.transport import PCPTransport

    assert not await is_gateway_available(PCPTransport("127.0.0.1", 9), LOCAL_IP, 0.1)
