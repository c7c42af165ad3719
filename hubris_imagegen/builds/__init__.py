"""Build orchestration module.

This module handles:
- Image identity and manifest loading
- Derivation descriptions and input hashing
- The layered (dependency, full) cache
- Executing derivations against the store
- Artifact discovery, publication and build records
"""

from hubris_imagegen.builds.models import Artifact, BuildRecord, CacheEntry

__all__ = ["Artifact", "BuildRecord", "CacheEntry"]

# Lazy imports for submodules to avoid circular imports
# Access via hubris_imagegen.builds.planner, etc.
