"""Source snapshot module.

This module handles filtering a project tree into an immutable,
content-addressed snapshot that feeds every later build stage.
"""

from hubris_imagegen.source.snapshot import (
    DEFAULT_EXCLUDED_NAMES,
    SnapshotEntry,
    SourceSnapshot,
    filter_source,
)

__all__ = ["DEFAULT_EXCLUDED_NAMES", "SnapshotEntry", "SourceSnapshot", "filter_source"]
