"""Gateway and local address discovery.

RFC 6887 section 8.1: the PCP server is normally the default router.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import platform
import socket
import subprocess

logger = logging.getLogger(__name__)

_ROUTE_COMMANDS = {
    "Linux": [["ip", "route", "show", "default"], ["route", "-n", "get", "default"]],
    "Darwin": [["route", "-n", "get", "default"]],
    "Windows": [["route", "print", "0.0.0.0"]],  # nosec B104 - routing table query, not bind
}

# Any routable address works, connect() on a UDP socket sends nothing.
_PROBE_ADDRESS = ("192.0.2.1", 9)


def parse_default_gateway(output: str, system: str) -> ipaddress.IPv4Address | None:
    """Extract the default gateway from routing table output.

    Linux ip: ``default via 192.168.1.1 dev eth0``
    macOS route: ``gateway: 192.168.1.1``
    Windows route: ``0.0.0.0  0.0.0.0  192.168.1.1  192.168.1.100  25``
    """
    for line in output.splitlines():
        parts = line.split()
        if system == "Windows":
            if len(parts) >= 3 and parts[0] == "0.0.0.0" and "On-Link" not in line:  # nosec B104
                candidates = [parts[2]]
            else:
                continue
        else:
            candidates = [
                parts[i + 1].split("/")[0]
                for i, part in enumerate(parts[:-1])
                if part in ("via", "gateway:")
            ]
        for candidate in candidates:
            try:
                return ipaddress.IPv4Address(candidate)
            except ValueError:
                continue
    return None


def _run(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603  # nosec B603 - fixed argument lists
        cmd,
        check=False,
        capture_output=True,
        text=True,
        timeout=5,
    )


async def get_gateway_ip() -> ipaddress.IPv4Address | None:
    """Get the default gateway using platform routing tools."""
    system = platform.system()
    for cmd in _ROUTE_COMMANDS.get(system, _ROUTE_COMMANDS["Linux"]):
        try:
            result = await asyncio.to_thread(_run, cmd)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.debug("Route command %s failed: %s", cmd[0], e)
            continue
        if result.returncode != 0:
            continue
        gateway = parse_default_gateway(result.stdout, system)
        if gateway is not None:
            return gateway
    return None


async def discover_gateway() -> ipaddress.IPv4Address | None:
    """Discover the PCP server address.

    Returns:
        IPv4Address of the gateway, or None if not found

    """
    try:
        return await get_gateway_ip()
    except OSError as e:
        logger.debug("Failed to discover gateway: %s", e)
        return None


def get_local_ip(
    towards: ipaddress.IPv4Address | str | None = None,
) -> ipaddress.IPv4Address | None:
    """Find the local address the system routes ``towards`` from.

    Returns:
        IPv4Address of the outgoing interface, or None if there is no route

    """
    target = (str(towards), 9) if towards is not None else _PROBE_ADDRESS
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(target)
            local_ip = ipaddress.IPv4Address(sock.getsockname()[0])
    except OSError as e:
        logger.debug("Failed to determine local IP: %s", e)
        return None
    if local_ip.is_unspecified:
        return None
    return local_ip
