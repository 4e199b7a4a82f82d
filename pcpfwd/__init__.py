"""pcpfwd - NAT port forwarding through the Port Control Protocol."""

from __future__ import annotations

__version__ = "0.1.0"
