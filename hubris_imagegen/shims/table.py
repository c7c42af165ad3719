"""Shim invocation table.

The build queries two environment facts: where a toolchain binary lives
(``rustup which``) and which revision the tree is at (``git rev-parse`` and
``git diff-index``). Each supported invocation is a member of a closed
enum; anything that does not classify is an error, never a default.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, assert_never

from hubris_imagegen.errors import UnsupportedShimInvocation

if TYPE_CHECKING:
    from hubris_imagegen.config import Settings

logger = logging.getLogger(__name__)

RUSTUP = "rustup"
GIT = "git"

SHIMMED_TOOLS = (RUSTUP, GIT)


class ShimInvocation(str, Enum):
    """Invocation patterns the shims answer."""

    RUSTUP_WHICH = "rustup which <tool>"
    GIT_REV_PARSE_HEAD = "git rev-parse HEAD"
    GIT_DIFF_INDEX = "git diff-index ..."

    @property
    def tool(self) -> str:
        return self.value.split(" ", 1)[0]


@dataclass(frozen=True)
class ShimResponse:
    """Canned response of a shimmed tool."""

    stdout: str = ""
    exit_code: int = 0


@dataclass(frozen=True)
class ShimSet:
    """Table of shimmed invocations bound to a pinned toolchain.

    Attributes:
        toolchain_dir: Root of the pinned toolchain.
        tools: Toolchain binaries ``rustup which`` can locate.
        vcs_sentinel: Revision reported by ``git rev-parse HEAD``.
    """

    toolchain_dir: Path
    tools: tuple[str, ...]
    vcs_sentinel: str

    def tool_path(self, tool: str) -> Path:
        """Path of a toolchain binary under the pinned toolchain."""
        return self.toolchain_dir / "bin" / tool

    def classify(self, tool: str, argv: Sequence[str]) -> ShimInvocation:
        """Map an invocation to its table entry.

        Args:
            tool: Shimmed command name.
            argv: Arguments after the command name.

        Returns:
            The matching invocation.

        Raises:
            UnsupportedShimInvocation: If nothing in the table matches.
        """
        args = list(argv)
        if tool == RUSTUP:
            if len(args) == 2 and args[0] == "which" and args[1] in self.tools:
                return ShimInvocation.RUSTUP_WHICH
        elif tool == GIT:
            if args == ["rev-parse", "HEAD"]:
                return ShimInvocation.GIT_REV_PARSE_HEAD
            if args[:1] == ["diff-index"]:
                return ShimInvocation.GIT_DIFF_INDEX
        raise UnsupportedShimInvocation(tool, args)

    def respond(self, tool: str, argv: Sequence[str]) -> ShimResponse:
        """Answer an invocation the way the generated shim script does.

        Raises:
            UnsupportedShimInvocation: If the invocation is not supported.
        """
        invocation = self.classify(tool, argv)
        match invocation:
            case ShimInvocation.RUSTUP_WHICH:
                return ShimResponse(stdout=f"{self.tool_path(argv[1])}\n")
            case ShimInvocation.GIT_REV_PARSE_HEAD:
                return ShimResponse(stdout=f"{self.vcs_sentinel}\n")
            case ShimInvocation.GIT_DIFF_INDEX:
                # A clean tree: no differences, exit 0
                return ShimResponse()
            case _:
                assert_never(invocation)

    def describe(self) -> dict[str, object]:
        """Canonical description used for hashing and display."""
        return {
            "toolchain_dir": str(self.toolchain_dir),
            "tools": sorted(self.tools),
            "vcs_sentinel": self.vcs_sentinel,
            "invocations": [i.value for i in ShimInvocation],
        }

    @property
    def digest(self) -> str:
        """SHA-256 over the table and the rendered scripts."""
        from hubris_imagegen.shims.render import render_script

        hasher = hashlib.sha256()
        hasher.update(
            json.dumps(self.describe(), sort_keys=True, separators=(",", ":")).encode()
        )
        for tool in SHIMMED_TOOLS:
            hasher.update(b"\0")
            hasher.update(render_script(self, tool).encode())
        return hasher.hexdigest()


def build_shims(
    toolchain_dir: Path,
    settings: Settings | None = None,
    tools: Iterable[str] | None = None,
) -> ShimSet:
    """Build the shim table for a pinned toolchain.

    Args:
        toolchain_dir: Root of the pinned toolchain (contains bin/).
        settings: Application settings (uses defaults if not provided).
        tools: Override of the locatable toolchain binaries.

    Returns:
        ShimSet bound to the toolchain.
    """
    if settings is None:
        from hubris_imagegen.config import get_settings

        settings = get_settings()

    shims = ShimSet(
        toolchain_dir=Path(toolchain_dir),
        tools=tuple(sorted(tools if tools is not None else settings.toolchain_tools)),
        vcs_sentinel=settings.vcs_sentinel,
    )
    logger.debug("Shims for %s: %s", toolchain_dir, ", ".join(shims.tools))
    return shims


__all__ = [
    "GIT",
    "RUSTUP",
    "SHIMMED_TOOLS",
    "ShimInvocation",
    "ShimResponse",
    "ShimSet",
    "build_shims",
]
