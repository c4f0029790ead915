"""Cache fingerprint computation.

This module handles:
- Extracting the fingerprint fields from a BuildConfiguration
- Exact-field fingerprint comparison
- A deterministic hash of the fingerprint, for display and naming

A fingerprint decides whether a cached base image can be reused. A false
match silently produces an image with the wrong update or feature
content, so comparison is exact on every field. The only normalisation is
on the update list, which is an unordered collection of file names.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ffu_builder.buildconfig.schema import BuildConfiguration

# Schema version for fingerprint format; bump when fields change
FINGERPRINT_SCHEMA_VERSION = "1"


@dataclass(frozen=True)
class CacheFingerprint:
    """Fields of a BuildConfiguration that determine base image reuse.

    Attributes:
        edition: OS edition.
        sector_size: Logical sector size of the disk image.
        release_id: OS release number.
        version_label: Version label (e.g. '24H2').
        optional_features: Optional features, in configured order.
        applied_updates: Update file names, kept sorted.
    """

    edition: str
    sector_size: int
    release_id: int
    version_label: str
    optional_features: tuple[str, ...] = ()
    applied_updates: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        object.__setattr__(self, "optional_features", tuple(self.optional_features))
        object.__setattr__(self, "applied_updates", tuple(sorted(self.applied_updates)))

    def matches(self, other: CacheFingerprint) -> bool:
        """Check whether two fingerprints describe the same base image.

        Every scalar field must be equal. The update lists are compared
        as sorted sequences of equal length, so order does not matter but
        a subset or superset never matches.

        Args:
            other: Fingerprint to compare against.

        Returns:
            True if the fingerprints are equal on every field.
        """
        if (
            self.edition != other.edition
            or self.sector_size != other.sector_size
            or self.release_id != other.release_id
            or self.version_label != other.version_label
            or tuple(self.optional_features) != tuple(other.optional_features)
        ):
            return False

        mine = sorted(self.applied_updates)
        theirs = sorted(other.applied_updates)
        if len(mine) != len(theirs):
            return False
        return all(a == b for a, b in zip(mine, theirs, strict=True))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation suitable for JSON.
        """
        data = asdict(self)
        data["optional_features"] = list(self.optional_features)
        data["applied_updates"] = list(self.applied_updates)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheFingerprint:
        """Build a fingerprint from its dictionary form.

        Args:
            data: Mapping with the fingerprint fields.

        Returns:
            CacheFingerprint instance.
        """
        return cls(
            edition=data["edition"],
            sector_size=int(data["sector_size"]),
            release_id=int(data["release_id"]),
            version_label=data["version_label"],
            optional_features=tuple(data.get("optional_features") or ()),
            applied_updates=tuple(data.get("applied_updates") or ()),
        )

    def key(self) -> str:
        """Compute a deterministic hash of the fingerprint.

        Returns:
            Hash as hex string (sha256:...).
        """
        payload = {"schema_version": FINGERPRINT_SCHEMA_VERSION, **self.to_dict()}
        canonical_json = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
        return f"sha256:{digest}"


def compute_fingerprint(config: BuildConfiguration) -> CacheFingerprint:
    """Derive the cache fingerprint of a build configuration.

    Args:
        config: Resolved build configuration.

    Returns:
        CacheFingerprint for the configuration's base image.
    """
    return CacheFingerprint(
        edition=config.edition,
        sector_size=config.sector_size,
        release_id=config.release,
        version_label=config.version,
        optional_features=tuple(config.optional_features),
        applied_updates=tuple(u.file_name for u in config.updates),
    )


__all__ = [
    "FINGERPRINT_SCHEMA_VERSION",
    "CacheFingerprint",
    "compute_fingerprint",
]
