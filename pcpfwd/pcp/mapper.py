"""Port manager backed by PCP mappings."""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
from collections.abc import AsyncIterator
from typing import NamedTuple

from pcpfwd.models import Config, PCPConfig
from pcpfwd.pcp.exceptions import (
    PCPError,
    PortRegisterError,
    PortUnregisterError,
    UnsupportedProtocolError,
)
from pcpfwd.pcp.gateway import discover_gateway, get_local_ip
from pcpfwd.pcp.manager import Mapping, PCPMappingManager
from pcpfwd.pcp.protocol import IPProtocol
from pcpfwd.pcp.transport import PCPTransport
from pcpfwd.port_manager import PortForwardItem, PortForwardMap, PortManager
from pcpfwd.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class MappingKey(NamedTuple):
    """Identity of one mapping made for a port forward item."""

    key: str
    protocol: int
    local_port: int


def protocol_number(name: str) -> int:
    """Map a protocol name to its IANA number.

    Raises:
        UnsupportedProtocolError: For names other than TCP, UDP and SCTP

    """
    try:
        return IPProtocol[name.strip().upper()].value
    except KeyError:
        raise UnsupportedProtocolError(name) from None


def format_mapping(mapping: Mapping) -> str:
    name = IPProtocol(mapping.protocol).name.lower()
    return "{}:{}:{}->{}:{}".format(name, *mapping.external, *mapping.local)


class PCPPortManager(PortManager):
    """Registers controller port forwards as PCP mappings."""

    def __init__(
        self,
        manager: PCPMappingManager,
        transport: PCPTransport | None = None,
    ) -> None:
        """Initialize port manager.

        Args:
            manager: Running mapping manager
            transport: Transport to close together with the manager, if owned

        """
        self.manager = manager
        self.transport = transport
        self.logger = logging.getLogger(__name__)
        self._registered: dict[str, set[MappingKey]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @classmethod
    async def create(cls, config: Config | PCPConfig | None = None) -> PCPPortManager:
        """Resolve the gateway and local address, and start a manager.

        Raises:
            ConfigurationError: If no gateway or local address can be found

        """
        if isinstance(config, Config):
            pcp_config = config.pcp
        else:
            pcp_config = config or PCPConfig()

        if pcp_config.gateway is not None:
            gateway = ipaddress.IPv4Address(pcp_config.gateway)
        else:
            gateway = await discover_gateway()
            if gateway is None:
                msg = "No PCP gateway configured and none could be discovered"
                raise ConfigurationError(msg)

        if pcp_config.local_ip is not None:
            local_ip = ipaddress.IPv4Address(pcp_config.local_ip)
        else:
            local_ip = get_local_ip(gateway)
            if local_ip is None:
                msg = f"Could not determine the local address facing gateway {gateway}"
                raise ConfigurationError(msg)

        transport = PCPTransport(gateway, pcp_config.gateway_port, pcp_config.bind_address)
        await transport.start()
        manager = PCPMappingManager(transport, local_ip, pcp_config)
        await manager.start()
        logger.info("PCP port manager using gateway %s from %s", gateway, local_ip)
        return cls(manager, transport)

    async def close(self) -> None:
        """Stop the manager and close an owned transport."""
        await self.manager.stop()
        if self.transport is not None:
            await self.transport.stop()
        self._registered.clear()

    async def __aenter__(self) -> PCPPortManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @contextlib.asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """Serialize operations on ``key``; the lock is dropped once unused."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def register(self, request: PortForwardMap) -> str:
        """Register every item of ``request`` and drop items no longer listed.

        Raises:
            UnsupportedProtocolError: If an item names an unknown protocol
            PortRegisterError: If any mapping failed, caused by the first
                failure

        """
        wanted: dict[MappingKey, PortForwardItem] = {}
        for item in request.items:
            mkey = MappingKey(request.key, protocol_number(item.protocol), item.to_port)
            wanted.setdefault(mkey, item)

        async with self._locked(request.key):
            previous = self._registered.get(request.key, set())
            stale = previous - wanted.keys()
            for mkey in stale:
                try:
                    await self.manager.unregister(mkey)
                except PCPError as e:
                    raise PortRegisterError(f"failed to release {mkey}: {e}") from e
                self.logger.debug("Released forward %s no longer requested", mkey)

            results = await asyncio.gather(
                *(
                    self.manager.register(
                        mkey,
                        local_port=mkey.local_port,
                        protocol=mkey.protocol,
                        external_port=item.from_port or None,
                    )
                    for mkey, item in wanted.items()
                ),
                return_exceptions=True,
            )

            registered = {
                mkey
                for mkey, result in zip(wanted, results)
                if isinstance(result, Mapping)
            }
            self._registered[request.key] = (previous - stale) | registered
            if not self._registered[request.key]:
                del self._registered[request.key]

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            first = errors[0]
            msg = f"failed to register port forwards for {request.key}: {first}"
            raise PortRegisterError(
                msg, {"failed": len(errors), "total": len(results)}
            ) from first

        token = ", ".join(format_mapping(m) for m in results)
        self.logger.info("Registered port forwards for %s: %s", request.key, token)
        return token

    async def unregister(self, key: str) -> None:
        """Unregister every mapping made for ``key``.

        Raises:
            PortUnregisterError: If the manager could not process the request

        """
        async with self._locked(key):
            mkeys = self._registered.pop(key, set())
            for mkey in mkeys:
                try:
                    await self.manager.unregister(mkey)
                except PCPError as e:
                    raise PortUnregisterError(f"failed to unregister {mkey}: {e}") from e
        if mkeys:
            self.logger.info("Unregistered port forwards for %s", key)
