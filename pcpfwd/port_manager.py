"""Port manager interface consumed by controllers.

A controller describes the forwards it wants for one managed object as a
:class:`PortForwardMap` and hands it to a :class:`PortManager`. Both calls are
safe to repeat with identical arguments.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PortForwardItem:
    """Forward ``from_port`` on the gateway to ``to_port`` on this host."""

    from_port: int
    to_port: int
    protocol: str = "TCP"


@dataclass(frozen=True)
class PortForwardMap:
    """The desired forwards for one controller-managed object."""

    key: str
    items: tuple[PortForwardItem, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        # Accept any iterable, store an immutable tuple
        object.__setattr__(self, "items", tuple(self.items))


class PortManager(ABC):
    """Registers port forwards on behalf of a controller."""

    @abstractmethod
    async def register(self, request: PortForwardMap) -> str:
        """Make the forwards in ``request`` the active set for its key.

        Returns:
            Opaque token describing the registration

        """

    @abstractmethod
    async def unregister(self, key: str) -> None:
        """Remove every forward registered under ``key``."""
