"""UDP transport to a PCP server.

One socket is shared by every exchange with a gateway. A background reader
fans each datagram out to all listeners currently waiting for a response, and
each listener picks out its own answer by validation rather than by arrival
order.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
import socket
from collections.abc import Iterator
from typing import Union

from pcpfwd.pcp.exceptions import (
    PCPDecodeError,
    RecvIOError,
    RecvProtocolError,
    RecvTimeoutError,
    SendIOError,
    SendSizeMismatchError,
)
from pcpfwd.pcp.protocol import MAX_RESPONSE_SIZE, Request, Response

logger = logging.getLogger(__name__)

# PCP and NAT-PMP share the same port, reassigned by IANA from the older
# protocol to the new one (RFC 6887 section 19).
SERVER_PORT = 5351

# Tuned for a gateway on the local network, not for WAN round trips.
RECV_TIMEOUT = 0.5

INBOX_SIZE = 64
_ERROR_BACKOFF = 0.05
_ERROR_TRANSPORT_NOT_STARTED = "PCP transport is not started"

InboxItem = Union[bytes, OSError]
Inbox = asyncio.Queue


class PCPTransport:
    """Async UDP endpoint talking to one PCP server."""

    def __init__(
        self,
        gateway: ipaddress.IPv4Address | str,
        port: int = SERVER_PORT,
        bind_address: str = "0.0.0.0",  # nosec B104 - client socket, ephemeral port
    ) -> None:
        """Initialize transport.

        Args:
            gateway: PCP server address
            port: PCP server port
            bind_address: Local address to bind the client socket to

        """
        self.gateway_ip = ipaddress.IPv4Address(gateway)
        self.gateway: tuple[str, int] = (str(self.gateway_ip), port)
        self.bind_address = bind_address
        self.logger = logging.getLogger(__name__)
        self._socket: socket.socket | None = None
        self._reader_task: asyncio.Task | None = None
        self._inboxes: set[Inbox] = set()

    @property
    def running(self) -> bool:
        return self._socket is not None

    @property
    def local_address(self) -> tuple[str, int]:
        if self._socket is None:
            raise RuntimeError(_ERROR_TRANSPORT_NOT_STARTED)
        return self._socket.getsockname()

    async def start(self) -> None:
        """Bind the client socket and start reading responses."""
        if self._socket is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.bind_address, 0))
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._socket = sock
        self._reader_task = asyncio.create_task(self._listen())
        self.logger.debug(
            "PCP transport bound to %s:%d for gateway %s:%d",
            *sock.getsockname(),
            *self.gateway,
        )

    async def stop(self) -> None:
        """Stop reading and close the socket.

        Listeners still waiting for a response are woken with an I/O error.
        """
        sock, self._socket = self._socket, None
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        if sock is not None:
            sock.close()
            self._dispatch(ConnectionAbortedError(_ERROR_TRANSPORT_NOT_STARTED))
            self.logger.debug("PCP transport for gateway %s:%d stopped", *self.gateway)

    async def __aenter__(self) -> PCPTransport:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    @contextlib.contextmanager
    def listen(self) -> Iterator[Inbox]:
        """Register an inbox receiving every datagram from the gateway.

        Register before sending so a fast response cannot be missed.
        """
        inbox: Inbox = asyncio.Queue(maxsize=INBOX_SIZE)
        self._inboxes.add(inbox)
        try:
            yield inbox
        finally:
            self._inboxes.discard(inbox)

    async def send(self, request: Request) -> None:
        """Send one request datagram to the gateway.

        Raises:
            SendIOError: If the socket failed to send
            SendSizeMismatchError: If the datagram was only partly written

        """
        if self._socket is None:
            raise SendIOError(ConnectionError(_ERROR_TRANSPORT_NOT_STARTED))
        encoded = request.encode()
        loop = asyncio.get_running_loop()
        try:
            sent = await loop.sock_sendto(self._socket, encoded, self.gateway)
        except OSError as e:
            raise SendIOError(e) from e
        if sent != len(encoded):
            raise SendSizeMismatchError(len(encoded), sent)
        self.logger.debug(
            "Sent PCP %s request (%d bytes) to %s:%d",
            request.opcode.name,
            sent,
            *self.gateway,
        )

    async def recv(self, inbox: Inbox, timeout: float = RECV_TIMEOUT) -> Response:
        """Wait for the next datagram in ``inbox`` and decode it.

        Raises:
            RecvTimeoutError: If nothing arrived within ``timeout`` seconds
            RecvIOError: If the socket reported an error
            RecvProtocolError: If the datagram is not a valid PCP response

        """
        if not inbox.empty():
            item = inbox.get_nowait()
        else:
            try:
                item = await asyncio.wait_for(inbox.get(), timeout=max(timeout, 0))
            except asyncio.TimeoutError:
                raise RecvTimeoutError(timeout) from None
        if isinstance(item, OSError):
            raise RecvIOError(item)
        try:
            return Response.decode(item)
        except PCPDecodeError as e:
            raise RecvProtocolError(e) from e

    def _dispatch(self, item: InboxItem) -> None:
        for inbox in list(self._inboxes):
            try:
                inbox.put_nowait(item)
            except asyncio.QueueFull:
                self.logger.debug("PCP listener inbox full, dropping datagram")

    async def _listen(self) -> None:
        """Read datagrams until the transport stops."""
        loop = asyncio.get_running_loop()
        while self._socket is not None:
            try:
                # One byte more than the maximum so oversized datagrams are
                # visible to the decoder instead of being silently truncated.
                data, addr = await loop.sock_recvfrom(
                    self._socket, MAX_RESPONSE_SIZE + 1
                )
            except asyncio.CancelledError:
                raise
            except OSError as e:
                if self._socket is None:
                    break
                self.logger.debug("PCP socket error: %s", e)
                self._dispatch(e)
                await asyncio.sleep(_ERROR_BACKOFF)
                continue

            if (addr[0], addr[1]) != self.gateway:
                self.logger.debug("Ignoring datagram from unexpected source %s", addr)
                continue
            self.logger.debug("Received %d bytes from gateway", len(data))
            self._dispatch(data)
