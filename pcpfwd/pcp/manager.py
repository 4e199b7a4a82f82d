"""Mapping lifecycle management.

The manager owns every mapping registered through one gateway. Callers submit
commands to a single dispatcher task; each command carries a future that
receives its result. The dispatcher routes keyed commands into per-key lanes
so that operations on one key run in submission order while exchanges for
different keys proceed concurrently.

Mapping states per key::

    ABSENT -> REGISTERING -> ACTIVE -> RENEWING -> ACTIVE
                                    -> UNREGISTERING -> ABSENT
"""

from __future__ import annotations

import asyncio
import dataclasses
import ipaddress
import logging
import time
from collections.abc import Hashable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pcpfwd.models import PCPConfig
from pcpfwd.pcp.client import (
    MappingRequest,
    MappingResponse,
    is_gateway_available,
    register,
    release,
)
from pcpfwd.pcp.exceptions import (
    CommandQueueFullError,
    ManagerShutdownError,
    PCPError,
    RenewalExhaustedError,
    SendError,
)
from pcpfwd.pcp.nonce import NonceCounter
from pcpfwd.pcp.transport import PCPTransport
from pcpfwd.utils.backoff import ExponentialBackoff

logger = logging.getLogger(__name__)

# Retries closer together than this are not worth sending; the mapping is
# treated as expired instead.
_MIN_RETRY_DELAY = 0.05


class MappingState(str, Enum):
    """Lifecycle state of a mapping key."""

    ABSENT = "absent"
    REGISTERING = "registering"
    ACTIVE = "active"
    RENEWING = "renewing"
    UNREGISTERING = "unregistering"


@dataclass
class Mapping:
    """An active mapping granted by the gateway."""

    key: Hashable
    protocol: int
    local_ip: ipaddress.IPv4Address
    local_port: int
    external_ip: ipaddress.IPv4Address
    external_port: int
    lifetime_seconds: int
    nonce: bytes
    gateway: tuple[str, int]
    granted_at: float = field(default_factory=time.monotonic)

    @property
    def expires_at(self) -> float:
        """Monotonic time at which the gateway drops the mapping."""
        return self.granted_at + self.lifetime_seconds

    @property
    def external(self) -> tuple[str, int]:
        return (str(self.external_ip), self.external_port)

    @property
    def local(self) -> tuple[str, int]:
        return (str(self.local_ip), self.local_port)

    def matches(
        self, local_ip: ipaddress.IPv4Address, local_port: int, protocol: int
    ) -> bool:
        """Whether the mapping was made for the same internal endpoint."""
        return (
            self.local_ip == local_ip
            and self.local_port == local_port
            and self.protocol == protocol
        )

    def update(self, response: MappingResponse) -> None:
        """Apply a renewal grant in place."""
        self.external_ip = response.external_address
        self.external_port = response.external_port
        self.lifetime_seconds = response.lifetime_seconds
        self.nonce = response.nonce
        self.granted_at = time.monotonic()


def gateway_lost_state(
    prev_epoch: int,
    prev_time: float,
    epoch: int,
    now: float,
) -> bool:
    """Check a gateway epoch value against the previous one (RFC 6887 8.5).

    The server epoch must advance roughly in step with the local clock. If it
    went backwards by more than a second, or advanced clearly less than the
    local time that elapsed, the gateway has restarted and lost its mappings.
    """
    if epoch < prev_epoch - 1:
        return True
    elapsed = now - prev_time
    return epoch < prev_epoch + elapsed * 7 / 8 - 2


@dataclass
class Command:
    """A unit of work for the manager.

    The future is created on the running loop and resolved exactly once.
    """

    key: Hashable
    future: asyncio.Future = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.future = asyncio.get_running_loop().create_future()


@dataclass
class RegisterCommand(Command):
    local_ip: ipaddress.IPv4Address
    local_port: int
    protocol: int
    external_port: int | None = None


@dataclass
class UnregisterCommand(Command):
    pass


@dataclass
class RenewCommand(Command):
    """Renew the mapping for ``key``.

    ``nonce`` identifies the grant the renewal was scheduled for; a renewal
    of a grant that has since been replaced is dropped. ``None`` renews
    whatever is active.
    """

    nonce: bytes | None = None
    attempt: int = 0


@dataclass
class UnregisterAllCommand(Command):
    pass


@dataclass
class RefreshAllCommand(Command):
    pass


class PCPMappingManager:
    """Registers, renews and releases mappings with one PCP server."""

    def __init__(
        self,
        transport: PCPTransport,
        local_ip: ipaddress.IPv4Address | str,
        config: PCPConfig | None = None,
        nonces: NonceCounter | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            transport: Transport to the gateway, started by the caller
            local_ip: Default internal address mappings point to
            config: PCP configuration
            nonces: Nonce source for mapping requests

        """
        self.transport = transport
        self.local_ip = ipaddress.IPv4Address(local_ip)
        self.config = config or PCPConfig()
        self.nonces = nonces or NonceCounter()
        self.backoff = ExponentialBackoff(
            base_delay=self.config.renewal_backoff_base,
            max_delay=self.config.renewal_backoff_max,
        )
        self.logger = logging.getLogger(__name__)

        self._mappings: dict[Hashable, Mapping] = {}
        self._states: dict[Hashable, MappingState] = {}
        self._queue: asyncio.Queue[Command] = asyncio.Queue(
            maxsize=self.config.command_queue_size
        )
        self._lanes: dict[Hashable, asyncio.Queue[Command]] = {}
        self._lane_tasks: dict[Hashable, asyncio.Task] = {}
        self._renewal_tasks: dict[Hashable, asyncio.Task] = {}
        self._joins: set[asyncio.Task] = set()
        self._dispatcher: asyncio.Task | None = None
        self._running = False
        self._epoch: tuple[int, float] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start processing commands."""
        if self._running:
            return
        self._running = True
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        self.logger.debug("Mapping manager started for gateway %s:%d", *self.transport.gateway)

    async def stop(self, release: bool | None = None) -> None:
        """Stop the manager.

        Args:
            release: Release every active mapping before stopping. Defaults
                to ``config.release_on_shutdown``.

        Commands still queued or in flight fail with ManagerShutdownError.

        """
        if not self._running:
            return
        if release is None:
            release = self.config.release_on_shutdown
        if release and self._mappings:
            await self.unregister_all()

        self._running = False
        shutdown = ManagerShutdownError()

        # Lanes remove themselves when their task ends, keep hold of them
        lanes = [self._queue, *self._lanes.values()]
        tasks = [t for t in (self._dispatcher, *self._lane_tasks.values()) if t]
        tasks.extend(self._renewal_tasks.values())
        tasks.extend(self._joins)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for lane in lanes:
            while not lane.empty():
                self._fail(lane.get_nowait(), shutdown)

        self._dispatcher = None
        self._lanes.clear()
        self._lane_tasks.clear()
        self._renewal_tasks.clear()
        self._joins.clear()
        self._mappings.clear()
        self._states.clear()
        self.logger.debug("Mapping manager stopped")

    async def __aenter__(self) -> PCPMappingManager:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # Public commands

    async def register(
        self,
        key: Hashable,
        local_port: int,
        protocol: int,
        external_port: int | None = None,
        local_ip: ipaddress.IPv4Address | str | None = None,
    ) -> Mapping:
        """Register or renew the mapping for ``key``.

        Args:
            key: Caller chosen mapping identity
            local_port: Internal port
            protocol: IANA protocol number
            external_port: Suggested external port
            local_ip: Internal address, defaults to the manager's local IP

        Returns:
            Snapshot of the active mapping

        Raises:
            RegisterError: If the gateway did not grant the mapping
            ManagerShutdownError: If the manager is not running

        """
        ip = self.local_ip if local_ip is None else ipaddress.IPv4Address(local_ip)
        command = RegisterCommand(key, ip, local_port, protocol, external_port)
        return await self._submit(command)

    async def unregister(self, key: Hashable) -> None:
        """Release the mapping for ``key``; no-op when there is none."""
        await self._submit(UnregisterCommand(key))

    async def unregister_all(self) -> None:
        """Release every mapping."""
        await self._submit(UnregisterAllCommand(None))

    async def refresh_all(self) -> None:
        """Re-register every mapping with a fresh exchange."""
        await self._submit(RefreshAllCommand(None))

    async def probe(self) -> bool:
        """Check whether the gateway speaks PCP."""
        return await is_gateway_available(
            self.transport, self.local_ip, self.config.recv_timeout
        )

    def get_mapping(self, key: Hashable) -> Mapping | None:
        mapping = self._mappings.get(key)
        return dataclasses.replace(mapping) if mapping is not None else None

    def mappings(self) -> list[Mapping]:
        return [dataclasses.replace(m) for m in self._mappings.values()]

    def state(self, key: Hashable) -> MappingState:
        return self._states.get(key, MappingState.ABSENT)

    # Dispatching

    async def _submit(self, command: Command) -> Any:
        if not self._running:
            raise ManagerShutdownError
        await self._queue.put(command)
        return await command.future

    def _submit_internal(self, command: Command) -> None:
        """Queue a command nobody awaits.

        A renewal that does not fit is retried later like a failed one.
        """
        command.future.add_done_callback(_consume_result)
        try:
            self._queue.put_nowait(command)
        except asyncio.QueueFull:
            command.future.cancel()
            error = CommandQueueFullError(type(command).__name__)
            if isinstance(command, RenewCommand):
                mapping = self._mappings.get(command.key)
                if mapping is not None and command.nonce in (None, mapping.nonce):
                    self._retry_renewal(mapping, command.attempt, error)
                    return
            self.logger.warning("%s, dropped", error)

    async def _dispatch_loop(self) -> None:
        while True:
            command = await self._queue.get()
            if isinstance(command, UnregisterAllCommand):
                keys = set(self._mappings) | set(self._lanes)
                children = [UnregisterCommand(key) for key in keys]
                self._fan_out(command, children)
            elif isinstance(command, RefreshAllCommand):
                children = [RenewCommand(key) for key in list(self._mappings)]
                self._fan_out(command, children)
            else:
                self._route(command)

    def _route(self, command: Command) -> None:
        key = command.key
        lane = self._lanes.get(key)
        if lane is None:
            lane = asyncio.Queue()
            self._lanes[key] = lane
            self._lane_tasks[key] = asyncio.create_task(self._run_lane(key, lane))
        lane.put_nowait(command)

    def _fan_out(self, parent: Command, children: list[Command]) -> None:
        for child in children:
            self._route(child)
        task = asyncio.create_task(self._join(parent, children))
        self._joins.add(task)
        task.add_done_callback(self._joins.discard)

    async def _join(self, parent: Command, children: list[Command]) -> None:
        try:
            results = await asyncio.gather(
                *(child.future for child in children), return_exceptions=True
            )
        except asyncio.CancelledError:
            self._fail(parent, ManagerShutdownError())
            raise
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            self._fail(parent, errors[0])
        else:
            self._resolve(parent, None)

    async def _run_lane(self, key: Hashable, lane: asyncio.Queue[Command]) -> None:
        try:
            while True:
                try:
                    command = lane.get_nowait()
                except asyncio.QueueEmpty:
                    break
                await self._execute(command)
        finally:
            if self._lanes.get(key) is lane:
                del self._lanes[key]
                self._lane_tasks.pop(key, None)

    async def _execute(self, command: Command) -> None:
        try:
            if isinstance(command, RegisterCommand):
                result = await self._handle_register(command)
            elif isinstance(command, UnregisterCommand):
                result = await self._handle_unregister(command)
            elif isinstance(command, RenewCommand):
                result = await self._handle_renew(command)
            else:  # pragma: no cover - broadcast commands never reach a lane
                msg = f"unexpected command {command!r}"
                raise TypeError(msg)
        except asyncio.CancelledError:
            self._fail(command, ManagerShutdownError())
            raise
        except Exception as e:
            # Delivered to the submitter through the future
            self._fail(command, e)
        else:
            self._resolve(command, result)

    @staticmethod
    def _resolve(command: Command, result: object) -> None:
        if not command.future.done():
            command.future.set_result(result)

    @staticmethod
    def _fail(command: Command, error: BaseException) -> None:
        if not command.future.done():
            command.future.set_exception(error)

    # Handlers

    async def _handle_register(self, command: RegisterCommand) -> Mapping:
        key = command.key
        existing = self._mappings.get(key)
        if existing is not None and not existing.matches(
            command.local_ip, command.local_port, command.protocol
        ):
            self.logger.info("Mapping %r changed internal endpoint, releasing old mapping", key)
            await self._release(existing)
            existing = None

        if existing is None:
            self._states[key] = MappingState.REGISTERING
            try:
                response = await self._grant(
                    command.protocol,
                    command.local_ip,
                    command.local_port,
                    command.external_port,
                )
            except BaseException:
                self._states.pop(key, None)
                raise
            mapping = Mapping(
                key=key,
                protocol=response.protocol,
                local_ip=response.local_ip,
                local_port=response.local_port,
                external_ip=response.external_address,
                external_port=response.external_port,
                lifetime_seconds=response.lifetime_seconds,
                nonce=response.nonce,
                gateway=self.transport.gateway,
            )
            self._mappings[key] = mapping
            self.logger.info(
                "Registered mapping %r: %s:%d -> %s:%d (lifetime %ds)",
                key,
                *mapping.external,
                *mapping.local,
                mapping.lifetime_seconds,
            )
        else:
            mapping = existing
            response = await self._renew(mapping, command.external_port)

        self._granted(mapping, response.epoch_time)
        return dataclasses.replace(mapping)

    async def _handle_unregister(self, command: UnregisterCommand) -> None:
        mapping = self._mappings.get(command.key)
        if mapping is None:
            self.logger.debug("Unregister of unknown mapping %r ignored", command.key)
            return
        await self._release(mapping)

    async def _handle_renew(self, command: RenewCommand) -> None:
        key = command.key
        mapping = self._mappings.get(key)
        if mapping is None:
            return
        if command.nonce is not None and command.nonce != mapping.nonce:
            self.logger.debug("Renewal of replaced grant for %r skipped", key)
            return
        try:
            response = await self._renew(mapping)
        except PCPError as e:
            self._retry_renewal(mapping, command.attempt, e)
            return
        self._granted(mapping, response.epoch_time)

    async def _renew(
        self, mapping: Mapping, external_port: int | None = None
    ) -> MappingResponse:
        """Renew with a fresh nonce; the mapping stays active on failure.

        The granted external port is suggested again unless the caller asks
        for another one.
        """
        key = mapping.key
        if external_port is None:
            external_port = mapping.external_port
        self._states[key] = MappingState.RENEWING
        try:
            response = await self._grant(
                mapping.protocol,
                mapping.local_ip,
                mapping.local_port,
                external_port,
            )
        finally:
            if key in self._mappings:
                self._states[key] = MappingState.ACTIVE
        old_external = mapping.external
        mapping.update(response)
        if mapping.external != old_external:
            self.logger.warning(
                "Mapping %r moved from %s:%d to %s:%d",
                key,
                *old_external,
                *mapping.external,
            )
        self.logger.debug("Renewed mapping %r (lifetime %ds)", key, mapping.lifetime_seconds)
        return response

    async def _grant(
        self,
        protocol: int,
        local_ip: ipaddress.IPv4Address,
        local_port: int,
        external_port: int | None,
    ) -> MappingResponse:
        req = MappingRequest(
            protocol=protocol,
            local_ip=local_ip,
            local_port=local_port,
            nonce=self.nonces.next_nonce(),
            requested_port=external_port,
            requested_lifetime_seconds=self.config.mapping_lifetime,
        )
        return await register(self.transport, req, self.config.recv_timeout)

    async def _release(self, mapping: Mapping) -> None:
        """Send a deletion notification and forget the mapping."""
        key = mapping.key
        self._states[key] = MappingState.UNREGISTERING
        try:
            await release(
                self.transport,
                mapping.protocol,
                mapping.local_ip,
                mapping.local_port,
                mapping.nonce,
            )
        except SendError as e:
            self.logger.warning("Failed to send release for mapping %r: %s", key, e)
        finally:
            self._drop(key)
        self.logger.info("Unregistered mapping %r", key)

    def _drop(self, key: Hashable) -> None:
        self._mappings.pop(key, None)
        self._states.pop(key, None)
        timer = self._renewal_tasks.pop(key, None)
        if timer is not None:
            timer.cancel()

    # Renewal and epoch tracking

    def _granted(self, mapping: Mapping, epoch: int) -> None:
        """Book-keeping after every successful grant."""
        self._states[mapping.key] = MappingState.ACTIVE
        if mapping.lifetime_seconds > 0:
            delay = mapping.lifetime_seconds * self.config.renewal_fraction
            self._schedule_renewal(mapping, delay, 0)
        self._observe_epoch(epoch, time.monotonic())

    def _schedule_renewal(self, mapping: Mapping, delay: float, attempt: int) -> None:
        key = mapping.key
        previous = self._renewal_tasks.pop(key, None)
        if previous is not None:
            previous.cancel()
        task = asyncio.create_task(self._renew_later(key, mapping.nonce, delay, attempt))
        self._renewal_tasks[key] = task

    async def _renew_later(
        self, key: Hashable, nonce: bytes, delay: float, attempt: int
    ) -> None:
        await asyncio.sleep(delay)
        if self._renewal_tasks.get(key) is asyncio.current_task():
            del self._renewal_tasks[key]
        if self._running:
            self._submit_internal(RenewCommand(key, nonce=nonce, attempt=attempt))

    def _retry_renewal(self, mapping: Mapping, attempt: int, error: PCPError) -> None:
        key = mapping.key
        remaining = mapping.expires_at - time.monotonic()
        delay = self.backoff.next_delay(attempt, limit=remaining / 2)
        if remaining <= 0 or delay < _MIN_RETRY_DELAY:
            exhausted = RenewalExhaustedError(key, attempt + 1)
            self.logger.error("%s (last error: %s)", exhausted, error)
            self._drop(key)
            return
        self.logger.warning(
            "Renewal of mapping %r failed (attempt %d): %s, retrying in %.1fs",
            key,
            attempt + 1,
            error,
            delay,
        )
        self._schedule_renewal(mapping, delay, attempt + 1)

    def _observe_epoch(self, epoch: int, now: float) -> None:
        previous = self._epoch
        self._epoch = (epoch, now)
        if previous is None:
            return
        if gateway_lost_state(previous[0], previous[1], epoch, now):
            self.logger.warning(
                "Gateway epoch went from %d to %d, gateway lost its mappings; refreshing",
                previous[0],
                epoch,
            )
            self._submit_internal(RefreshAllCommand(None))


def _consume_result(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
