"""Base image cache module.

This module handles:
- Fingerprint computation from build configurations
- Manifest/artifact pairs on disk
- Lookup, registration and operator-driven pruning
"""

from ffu_builder.cache.fingerprint import CacheFingerprint, compute_fingerprint
from ffu_builder.cache.store import ArtifactCache, CacheManifest

__all__ = ["ArtifactCache", "CacheFingerprint", "CacheManifest", "compute_fingerprint"]
