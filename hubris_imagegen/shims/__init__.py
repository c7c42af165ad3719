"""Hermetic tool shims.

This module handles:
- The closed table of supported ``rustup`` and ``git`` invocations
- Answering invocations in-process
- Rendering the table as executable scripts for the build environment
"""

from hubris_imagegen.shims.render import render_script, write_shims
from hubris_imagegen.shims.table import (
    SHIMMED_TOOLS,
    ShimInvocation,
    ShimResponse,
    ShimSet,
    build_shims,
)

__all__ = [
    "SHIMMED_TOOLS",
    "ShimInvocation",
    "ShimResponse",
    "ShimSet",
    "build_shims",
    "render_script",
    "write_shims",
]
