"""Content-addressable store for prepared base images.

Layout of the cache directory::

    img-<id>.bin     cached artifact (opaque bytes, whatever the source suffix)
    img-<id>.json    manifest (fingerprint fields, artifact name, created_at)

Manifests are write-once: a new fingerprint always produces a new pair
of files, never a rewrite. Because names are unique, two runs registering
the same fingerprint at once leave a redundant entry, never a corrupt one.

Lookup is read-only. Corrupt manifests are logged and skipped.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ffu_builder.cache.fingerprint import FINGERPRINT_SCHEMA_VERSION, CacheFingerprint
from ffu_builder.errors import CacheError

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "img-"
MANIFEST_SUFFIX = ".json"
ARTIFACT_SUFFIX = ".bin"

# Chunk size for copying artifacts (bytes)
COPY_CHUNK_SIZE = 4 * 1024 * 1024


class CacheManifest(BaseModel):
    """Sidecar record describing one cached artifact.

    Attributes:
        schema_version: Fingerprint schema version.
        edition: OS edition.
        sector_size: Logical sector size.
        release_id: OS release number.
        version_label: Version label.
        optional_features: Optional features, in configured order.
        applied_updates: Sorted update file names.
        artifact_file_name: Name of the artifact file beside the manifest.
        fingerprint_key: Hash of the fingerprint (informational).
        size_bytes: Artifact size at registration.
        created_at: Registration time (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    edition: str
    sector_size: int
    release_id: int
    version_label: str
    optional_features: list[str] = Field(default_factory=list)
    applied_updates: list[str] = Field(default_factory=list)
    artifact_file_name: str
    fingerprint_key: str
    size_bytes: int = 0
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def fingerprint(self) -> CacheFingerprint:
        """Fingerprint described by this manifest."""
        return CacheFingerprint(
            edition=self.edition,
            sector_size=self.sector_size,
            release_id=self.release_id,
            version_label=self.version_label,
            optional_features=tuple(self.optional_features),
            applied_updates=tuple(self.applied_updates),
        )

    @property
    def manifest_file_name(self) -> str:
        """File name of the manifest, derived from the artifact name."""
        return Path(self.artifact_file_name).stem + MANIFEST_SUFFIX


def copy_file(source: Path, destination: Path) -> Path:
    """Copy a file through a temporary name and rename it into place.

    Args:
        source: File to copy.
        destination: Final path.

    Returns:
        The destination path.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = destination.with_name(f".{destination.name}.partial")
    try:
        with source.open("rb") as src, tmp_path.open("wb") as dst:
            shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)
            dst.flush()
            os.fsync(dst.fileno())
        os.replace(tmp_path, destination)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return destination


class ArtifactCache:
    """Fingerprint-addressed cache of prepared base images."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir

    def _manifest_paths(self) -> list[Path]:
        if not self.cache_dir.exists():
            return []
        paths = [
            p
            for p in self.cache_dir.glob(f"{ARTIFACT_PREFIX}*{MANIFEST_SUFFIX}")
            if p.is_file()
        ]

        def _mtime(p: Path) -> float:
            try:
                return p.stat().st_mtime
            except OSError:
                return 0.0

        return sorted(paths, key=lambda p: (_mtime(p), p.name), reverse=True)

    def read_manifest(self, path: Path) -> CacheManifest:
        """Read and validate one manifest file.

        Args:
            path: Manifest file path.

        Returns:
            Parsed CacheManifest.

        Raises:
            CacheError: If the manifest is unreadable or invalid.
        """
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CacheManifest.model_validate(data)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CacheError(f"Unreadable cache manifest {path}: {e}", str(path)) from e
        except ValidationError as e:
            raise CacheError(f"Invalid cache manifest {path}: {e}", str(path)) from e

    def entries(self) -> list[CacheManifest]:
        """List readable manifests, most recently created first.

        Returns:
            Parsed manifests; corrupt ones are skipped.
        """
        manifests: list[CacheManifest] = []
        for path in self._manifest_paths():
            try:
                manifests.append(self.read_manifest(path))
            except CacheError as e:
                logger.warning("Skipping cache entry: %s", e.message)
        manifests.sort(key=lambda m: m.created_at, reverse=True)
        return manifests

    def artifact_path(self, manifest: CacheManifest) -> Path:
        """Path of the artifact a manifest describes."""
        return self.cache_dir / manifest.artifact_file_name

    def lookup(self, fingerprint: CacheFingerprint) -> CacheManifest | None:
        """Find a cached artifact for a fingerprint.

        Scans manifests newest first and returns the first whose fields
        exactly match. Manifests whose artifact file has gone missing are
        skipped. This method has no side effects.

        Args:
            fingerprint: Fingerprint to look up.

        Returns:
            Matching manifest, or None on a miss.
        """
        for manifest in self.entries():
            if not manifest.fingerprint.matches(fingerprint):
                continue
            if not self.artifact_path(manifest).is_file():
                logger.warning(
                    "Cache manifest %s references missing artifact, skipping",
                    manifest.manifest_file_name,
                )
                continue
            logger.info(
                "Cache hit: %s (%s)", manifest.artifact_file_name, fingerprint.key()[:23]
            )
            return manifest

        logger.info("Cache miss for %s", fingerprint.key()[:23])
        return None

    def register(
        self,
        fingerprint: CacheFingerprint,
        artifact_path: Path,
        move: bool = False,
    ) -> CacheManifest:
        """Store an artifact under a fingerprint.

        The artifact is copied (or moved) in first, then the manifest is
        written, so a manifest never points at a half-written artifact.

        Args:
            fingerprint: Fingerprint of the artifact's content.
            artifact_path: Artifact to store.
            move: Move the artifact instead of copying it.

        Returns:
            The new manifest.

        Raises:
            FileNotFoundError: If the artifact does not exist.
        """
        if not artifact_path.is_file():
            raise FileNotFoundError(f"Artifact not found: {artifact_path}")

        self.cache_dir.mkdir(parents=True, exist_ok=True)

        entry_id = uuid.uuid4().hex[:12]
        artifact_name = f"{ARTIFACT_PREFIX}{entry_id}{ARTIFACT_SUFFIX}"
        cached_path = self.cache_dir / artifact_name

        if move:
            shutil.move(str(artifact_path), str(cached_path))
        else:
            copy_file(artifact_path, cached_path)

        manifest = CacheManifest(
            edition=fingerprint.edition,
            sector_size=fingerprint.sector_size,
            release_id=fingerprint.release_id,
            version_label=fingerprint.version_label,
            optional_features=list(fingerprint.optional_features),
            applied_updates=list(fingerprint.applied_updates),
            artifact_file_name=artifact_name,
            fingerprint_key=fingerprint.key(),
            size_bytes=cached_path.stat().st_size,
            created_at=datetime.now(timezone.utc),
        )

        manifest_path = self.cache_dir / manifest.manifest_file_name
        tmp_path = manifest_path.with_name(f".{manifest_path.name}.tmp")
        with tmp_path.open("x", encoding="utf-8") as f:
            f.write(manifest.model_dump_json(indent=2))
        os.replace(tmp_path, manifest_path)

        logger.info("Registered %s in cache (%d bytes)", artifact_name, manifest.size_bytes)
        return manifest

    def materialize(self, manifest: CacheManifest, destination: Path) -> Path:
        """Copy a cached artifact out to a working location.

        Args:
            manifest: Cache entry to copy.
            destination: Target path.

        Returns:
            The destination path.
        """
        source = self.artifact_path(manifest)
        logger.info("Copying cached %s to %s", manifest.artifact_file_name, destination)
        return copy_file(source, destination)

    def remove(self, manifest: CacheManifest) -> None:
        """Remove a cache entry (manifest first, then artifact)."""
        (self.cache_dir / manifest.manifest_file_name).unlink(missing_ok=True)
        self.artifact_path(manifest).unlink(missing_ok=True)

    def prune(
        self,
        older_than: timedelta | None = None,
        keep_latest: int = 0,
        dry_run: bool = False,
    ) -> list[CacheManifest]:
        """Remove old cache entries.

        Nothing is evicted automatically; this is an explicit operator
        action. An entry is removed when it is older than ``older_than``
        and not among the ``keep_latest`` newest entries.

        Args:
            older_than: Minimum age for removal (None = any age).
            keep_latest: Number of newest entries always kept.
            dry_run: Report what would be removed without removing.

        Returns:
            Manifests of removed (or would-be removed) entries.
        """
        now = datetime.now(timezone.utc)
        candidates = self.entries()[max(keep_latest, 0) :]
        if older_than is not None:
            candidates = [m for m in candidates if now - m.created_at >= older_than]

        for manifest in candidates:
            if dry_run:
                logger.info("Would prune cache entry %s", manifest.artifact_file_name)
                continue
            logger.info("Pruning cache entry %s", manifest.artifact_file_name)
            self.remove(manifest)

        return candidates

    def size_bytes(self) -> int:
        """Total size of files in the cache directory."""
        total = 0
        if self.cache_dir.exists():
            for path in self.cache_dir.iterdir():
                if path.is_file():
                    total += path.stat().st_size
        return total


__all__ = [
    "ARTIFACT_PREFIX",
    "ARTIFACT_SUFFIX",
    "ArtifactCache",
    "CacheManifest",
    "copy_file",
]
