"""Command line interface for pcpfwd."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re

import click
from rich.console import Console
from rich.table import Table

from pcpfwd import __version__
from pcpfwd.config import ConfigManager
from pcpfwd.models import LogLevel, PCPConfig
from pcpfwd.pcp.client import is_gateway_available
from pcpfwd.pcp.gateway import discover_gateway, get_local_ip
from pcpfwd.pcp.mapper import PCPPortManager
from pcpfwd.pcp.protocol import IPProtocol
from pcpfwd.pcp.transport import PCPTransport
from pcpfwd.port_manager import PortForwardItem, PortForwardMap
from pcpfwd.utils.exceptions import PortForwardError
from pcpfwd.utils.logging_config import LoggingContext

logger = logging.getLogger(__name__)

_FORWARD_PATTERN = re.compile(r"^(?:(\d+):)?(\d+)(?:/([A-Za-z]+))?$")


class ForwardParamType(click.ParamType):
    """``[FROM:]TO[/PROTO]``, e.g. ``8080:80/tcp``."""

    name = "forward"

    def convert(self, value, param, ctx) -> PortForwardItem:
        if isinstance(value, PortForwardItem):
            return value
        match = _FORWARD_PATTERN.match(value.strip())
        if match is None:
            self.fail(f"{value!r} is not of the form [FROM:]TO[/PROTO]", param, ctx)
        from_port = int(match.group(1) or 0)
        to_port = int(match.group(2))
        for port in (from_port, to_port):
            if port > 65535:
                self.fail(f"port {port} out of range in {value!r}", param, ctx)
        if to_port == 0:
            self.fail(f"local port must not be 0 in {value!r}", param, ctx)
        return PortForwardItem(from_port, to_port, (match.group(3) or "TCP").upper())


FORWARD = ForwardParamType()


def _load_config(ctx: click.Context) -> ConfigManager:
    obj = ctx.ensure_object(dict)
    if "config" not in obj:
        try:
            manager = ConfigManager(obj.get("config_file"))
        except PortForwardError as e:
            raise click.ClickException(str(e)) from e
        if obj.get("verbose"):
            manager.config.observability.log_level = LogLevel.DEBUG
        manager.setup_logging()
        obj["config"] = manager
    return obj["config"]


@click.group()
@click.version_option(__version__, prog_name="pcpfwd")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to a pcpfwd.toml config file",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config_file, verbose) -> None:
    """Forward ports through a PCP capable NAT gateway."""
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    ctx.obj["verbose"] = verbose


@cli.command("probe")
@click.option("--gateway", default=None, help="Gateway IPv4 address")
@click.pass_context
def probe(ctx, gateway) -> None:
    """Check whether the gateway speaks PCP."""
    console = Console()
    pcp_config = _load_config(ctx).config.pcp

    async def _probe() -> tuple[ipaddress.IPv4Address, bool]:
        gateway_ip = await _resolve_gateway(gateway, pcp_config)
        local_ip = _resolve_local_ip(pcp_config, gateway_ip)
        async with PCPTransport(
            gateway_ip, pcp_config.gateway_port, pcp_config.bind_address
        ) as transport:
            available = await is_gateway_available(
                transport, local_ip, pcp_config.recv_timeout
            )
        return gateway_ip, available

    try:
        with LoggingContext("probe"):
            gateway_ip, available = asyncio.run(_probe())
    except click.ClickException:
        raise
    except OSError as e:
        raise click.ClickException(f"Failed to probe gateway: {e}") from e

    if available:
        console.print(f"[green]Gateway {gateway_ip} supports PCP[/green]")
    else:
        console.print(f"[yellow]Gateway {gateway_ip} did not answer PCP[/yellow]")
        ctx.exit(1)


@cli.command("forward")
@click.argument("key")
@click.option(
    "--port",
    "-p",
    "ports",
    type=FORWARD,
    multiple=True,
    required=True,
    help="Forward as [FROM:]TO[/PROTO]; FROM is the suggested external port",
)
@click.option("--gateway", default=None, help="Gateway IPv4 address")
@click.option("--local-ip", default=None, help="Local IPv4 address to forward to")
@click.option(
    "--duration",
    type=float,
    default=None,
    help="Seconds to keep the forwards before releasing them (default: until interrupted)",
)
@click.pass_context
def forward(ctx, key, ports, gateway, local_ip, duration) -> None:
    """Register port forwards and keep them renewed."""
    console = Console()
    config = _load_config(ctx).config
    overrides = {}
    if gateway is not None:
        overrides["gateway"] = gateway
    if local_ip is not None:
        overrides["local_ip"] = local_ip
    try:
        pcp_config = PCPConfig.model_validate(
            {**config.pcp.model_dump(), **overrides}
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    request = PortForwardMap(key, tuple(ports))

    async def _forward() -> None:
        port_manager = await PCPPortManager.create(pcp_config)
        try:
            token = await port_manager.register(request)
            logger.debug("Registration token: %s", token)
            _print_mappings(console, port_manager)
            if duration is None:
                console.print("[dim]Press Ctrl+C to release the forwards[/dim]")
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)
        finally:
            await port_manager.close()

    try:
        with LoggingContext("forward", key=key):
            try:
                asyncio.run(_forward())
            except KeyboardInterrupt:
                console.print("[dim]Forwards released[/dim]")
    except PortForwardError as e:
        raise click.ClickException(str(e)) from e


@cli.group("config")
def config_group() -> None:
    """Inspect configuration."""


@config_group.command("show")
@click.pass_context
def config_show(ctx) -> None:
    """Print the effective configuration as TOML."""
    click.echo(_load_config(ctx).export())


async def _resolve_gateway(
    gateway: str | None, pcp_config: PCPConfig
) -> ipaddress.IPv4Address:
    address = gateway or pcp_config.gateway
    if address is not None:
        try:
            return ipaddress.IPv4Address(address)
        except ValueError as e:
            raise click.BadParameter(f"invalid gateway address {address}") from e
    discovered = await discover_gateway()
    if discovered is None:
        raise click.ClickException("No gateway configured and none could be discovered")
    return discovered


def _resolve_local_ip(
    pcp_config: PCPConfig, gateway: ipaddress.IPv4Address
) -> ipaddress.IPv4Address:
    if pcp_config.local_ip is not None:
        return ipaddress.IPv4Address(pcp_config.local_ip)
    local_ip = get_local_ip(gateway)
    if local_ip is None:
        raise click.ClickException(f"Could not determine the local address facing {gateway}")
    return local_ip


def _print_mappings(console: Console, port_manager: PCPPortManager) -> None:
    table = Table(title="Active PCP mappings")
    table.add_column("Key", style="cyan")
    table.add_column("Protocol", style="magenta")
    table.add_column("External", style="yellow")
    table.add_column("Local", style="green")
    table.add_column("Lifetime", style="blue")
    for mapping in port_manager.manager.mappings():
        table.add_row(
            str(getattr(mapping.key, "key", mapping.key)),
            IPProtocol(mapping.protocol).name,
            "{}:{}".format(*mapping.external),
            "{}:{}".format(*mapping.local),
            f"{mapping.lifetime_seconds}s",
        )
    console.print(table)


def main() -> None:
    """Entry point for the pcpfwd command."""
    cli(obj={})


if __name__ == "__main__":
    main()
