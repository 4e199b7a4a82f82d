"""Command line interface for pcpfwd."""

from pcpfwd.cli.main import cli, main

__all__ = ["cli", "main"]
