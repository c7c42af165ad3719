"""Logging setup for the command-line entry points."""

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route log records to stderr through rich.

    Build step output never goes through logging; it is written to the
    per-derivation build logs in the store.

    Args:
        level: Log level name.
        console: Console to log to (a stderr console if not provided).
    """
    if console is None:
        console = Console(stderr=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


__all__ = ["configure_logging"]
