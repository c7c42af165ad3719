"""Cache key computation for derivations.

This module handles:
- Canonical JSON serialization of derivation descriptions
- Deterministic hash computation over normalized inputs
- Identity hashes for inputs that are not derivations (toolchains)

Identical descriptions produce identical keys on any machine. Child
derivations enter a description through their own key, so a key covers
the whole input graph below it.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"

KEY_PREFIX = "sha256:"


def canonical_json(data: Any) -> str:
    """Serialize to canonical JSON (sorted keys, no extra whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def compute_cache_key(inputs: dict[str, Any]) -> str:
    """Compute a cache key hash from a derivation description.

    Args:
        inputs: Canonical description of everything that affects the output.

    Returns:
        Cache key as hex string (sha256:...).
    """
    payload = {"schema_version": CACHE_KEY_SCHEMA_VERSION, **inputs}
    hash_bytes = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{hash_bytes}"


def compute_text_hash(text: str) -> str:
    """SHA-256 hex digest of UTF-8 text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_toolchain_identity(
    toolchain_dir: Path, toolchain: dict[str, Any] | None = None
) -> str:
    """Identity of a pinned toolchain.

    The toolchain is identified by its configured location together with
    the project's toolchain description; its binaries are not hashed.

    Args:
        toolchain_dir: Root of the pinned toolchain.
        toolchain: Description from the project's toolchain file.

    Returns:
        SHA-256 hex digest.
    """
    return hashlib.sha256(
        canonical_json({"dir": str(toolchain_dir), "spec": toolchain or {}}).encode()
    ).hexdigest()


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "canonical_json",
    "compute_cache_key",
    "compute_text_hash",
    "compute_toolchain_identity",
]
