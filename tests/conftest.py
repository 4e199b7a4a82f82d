"""Pytest configuration and shared fixtures for pcpfwd tests."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import time
from collections.abc import Callable

import pytest
import pytest_asyncio

from pcpfwd.config import reset_config
from pcpfwd.models import PCPConfig
from pcpfwd.pcp.protocol import (
    AnnounceData,
    MapData,
    Request,
    Response,
    ResultCode,
    to_ipv6_mapped,
)
from pcpfwd.pcp.transport import PCPTransport

LOCAL_IP = ipaddress.IPv4Address("10.0.0.5")
EXTERNAL_IP = ipaddress.IPv4Address("203.0.113.9")


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("slow", "marks tests as slow (deselect with '-m \"not slow\"')"),
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("cli", "marks tests as CLI tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
        if logger_name.startswith("pcpfwd"):
            # setup_logging() stops propagation, caplog needs it back
            logger.propagate = True
            logger.setLevel(logging.NOTSET)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def cleanup_global_config(monkeypatch):
    """Keep environment overrides and the global config out of tests."""
    for name in list(os.environ):
        if name.startswith("PCPFWD_"):
            monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


Handler = Callable[["FakeGateway", Request], list[bytes]]


class FakeGateway(asyncio.DatagramProtocol):
    """A PCP server on the loopback interface.

    By default it grants every MAP request on EXTERNAL_IP, using the
    suggested external port or ``default_port``, and answers ANNOUNCE with
    success. Set ``handler`` to script other behaviour; it returns the
    datagrams to send back, in order.
    """

    def __init__(self) -> None:
        self.transport: asyncio.DatagramTransport | None = None
        self.requests: list[Request] = []
        self.handler: Handler | None = None
        self.default_port = 8080
        self.granted_lifetime: int | None = None
        self.result_code: ResultCode = ResultCode.SUCCESS
        self.epoch_start = time.monotonic() - 1000
        self.epoch_offset = 0
        self.received = asyncio.Event()

    @property
    def address(self) -> tuple[str, int]:
        assert self.transport is not None
        return self.transport.get_extra_info("sockname")[:2]

    @property
    def map_requests(self) -> list[Request]:
        return [r for r in self.requests if isinstance(r.data, MapData)]

    def epoch(self) -> int:
        return int(time.monotonic() - self.epoch_start) + self.epoch_offset

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        request = Request.decode(data)
        self.requests.append(request)
        self.received.set()
        handler = self.handler or FakeGateway.grant
        for reply in handler(self, request):
            self.transport.sendto(reply, addr)

    def grant(self, request: Request) -> list[bytes]:
        """Answer like a well behaved gateway."""
        if isinstance(request.data, AnnounceData):
            return [Response(self.result_code, 0, self.epoch(), AnnounceData()).encode()]
        return [self.map_response(request).encode()]

    def map_response(
        self,
        request: Request,
        *,
        external_port: int | None = None,
        external_address: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None,
        nonce: bytes | None = None,
    ) -> Response:
        data = request.data
        assert isinstance(data, MapData)
        if external_port is None:
            external_port = data.external_port or self.default_port
        lifetime = request.lifetime_seconds
        if self.granted_lifetime is not None and lifetime:
            lifetime = min(lifetime, self.granted_lifetime)
        return Response(
            self.result_code,
            lifetime,
            self.epoch(),
            MapData(
                nonce=nonce if nonce is not None else data.nonce,
                protocol=data.protocol,
                local_port=data.local_port,
                external_port=external_port,
                external_address=to_ipv6_mapped(external_address or EXTERNAL_IP),
            ),
        )

    async def wait_for_requests(self, count: int, timeout: float = 2.0) -> None:
        async def _wait() -> None:
            while len(self.requests) < count:
                self.received.clear()
                await self.received.wait()

        await asyncio.wait_for(_wait(), timeout)

    def close(self) -> None:
        if self.transport is not None:
            self.transport.close()


@pytest_asyncio.fixture
async def gateway():
    """A fake PCP gateway bound to 127.0.0.1."""
    loop = asyncio.get_running_loop()
    _, protocol = await loop.create_datagram_endpoint(
        FakeGateway, local_addr=("127.0.0.1", 0)
    )
    yield protocol
    protocol.close()


@pytest_asyncio.fixture
async def transport(gateway):
    """A started transport talking to the fake gateway."""
    host, port = gateway.address
    pcp_transport = PCPTransport(host, port, bind_address="127.0.0.1")
    await pcp_transport.start()
    yield pcp_transport
    await pcp_transport.stop()


@pytest.fixture
def pcp_config():
    """PCP configuration with short timeouts for loopback tests."""
    return PCPConfig(
        gateway="127.0.0.1",
        local_ip=str(LOCAL_IP),
        recv_timeout=0.3,
        renewal_backoff_base=0.05,
        renewal_backoff_max=0.2,
    )
