"""Render shim tables as POSIX sh executables.

Each shimmed tool becomes a script that answers exactly the invocations in
the table and prints ``<tool> shim: unsupported command: <args>`` to stderr
with exit status 1 for anything else.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import assert_never

from hubris_imagegen.shims.table import SHIMMED_TOOLS, ShimInvocation, ShimSet

logger = logging.getLogger(__name__)

SCRIPT_HEADER = "#!/bin/sh\n# Generated by hubris-imagegen. Do not edit.\n"


def _clause(shims: ShimSet, invocation: ShimInvocation) -> str:
    match invocation:
        case ShimInvocation.RUSTUP_WHICH:
            cases = "".join(
                f"    {shlex.quote(tool)}) printf '%s\\n' "
                f"{shlex.quote(str(shims.tool_path(tool)))}; exit 0 ;;\n"
                for tool in shims.tools
            )
            return (
                'if [ "$#" -eq 2 ] && [ "$1" = which ]; then\n'
                '  case "$2" in\n'
                f"{cases}"
                "  esac\n"
                "fi\n"
            )
        case ShimInvocation.GIT_REV_PARSE_HEAD:
            return (
                'if [ "$#" -eq 2 ] && [ "$1" = rev-parse ] && [ "$2" = HEAD ]; then\n'
                f"  printf '%s\\n' {shlex.quote(shims.vcs_sentinel)}\n"
                "  exit 0\n"
                "fi\n"
            )
        case ShimInvocation.GIT_DIFF_INDEX:
            return 'if [ "$#" -ge 1 ] && [ "$1" = diff-index ]; then\n  exit 0\nfi\n'
        case _:
            assert_never(invocation)


def render_script(shims: ShimSet, tool: str) -> str:
    """Render the sh script for one shimmed tool.

    Args:
        shims: Shim table.
        tool: 'rustup' or 'git'.

    Returns:
        Script text.

    Raises:
        ValueError: If the tool is not shimmed.
    """
    if tool not in SHIMMED_TOOLS:
        raise ValueError(f"Not a shimmed tool: {tool}")

    clauses = [_clause(shims, inv) for inv in ShimInvocation if inv.tool == tool]
    fallback = (
        f'echo "{tool} shim: unsupported command: $*" >&2\n'
        "exit 1\n"
    )
    return SCRIPT_HEADER + "".join(clauses) + fallback


def write_shims(shims: ShimSet, bin_dir: Path) -> list[Path]:
    """Write executable shim scripts into a directory.

    Args:
        shims: Shim table.
        bin_dir: Destination directory; created if missing. Put it first on
            PATH so the shims shadow any real tools.

    Returns:
        Paths of the written scripts.
    """
    bin_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for tool in SHIMMED_TOOLS:
        path = bin_dir / tool
        path.write_text(render_script(shims, tool), encoding="utf-8")
        path.chmod(0o755)
        written.append(path)
    logger.debug("Wrote %d shims to %s", len(written), bin_dir)
    return written


__all__ = ["render_script", "write_shims"]
