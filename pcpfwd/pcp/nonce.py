"""Mapping nonce generation."""

from __future__ import annotations

import itertools
import secrets
import struct
import threading

from pcpfwd.pcp.protocol import NONCE_SIZE

_PREFIX_SIZE = NONCE_SIZE - 4


class NonceCounter:
    """Issues 12-byte MAP nonces for one gateway socket.

    The low 4 bytes hold a counter that increases with every nonce, so
    requests in flight at the same time never share a nonce. The high 8 bytes
    are random per counter instance, which keeps nonces from a previous
    process distinct from the ones issued now.
    """

    def __init__(self, initial: int = 0, prefix: bytes | None = None) -> None:
        if prefix is None:
            prefix = secrets.token_bytes(_PREFIX_SIZE)
        if len(prefix) != _PREFIX_SIZE:
            msg = f"nonce prefix must be {_PREFIX_SIZE} bytes"
            raise ValueError(msg)
        self.prefix = prefix
        self._counter = itertools.count(initial)
        self._lock = threading.Lock()

    def next_nonce(self) -> bytes:
        """Return a nonce not issued before by this counter."""
        with self._lock:
            value = next(self._counter)
        return self.prefix + struct.pack("!I", value & 0xFFFFFFFF)
