"""Shared type definitions for ffu_builder.

This module contains enums and small dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class WorkItemStatus(str, Enum):
    """Status of a work item in a task batch."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Terminal (or current) status of a pipeline run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageName(str, Enum):
    """Pipeline stages, in execution order."""

    VALIDATE_ENVIRONMENT = "validate-environment"
    ACQUIRE_DRIVERS = "acquire-drivers"
    VALIDATE_TOOLCHAIN = "validate-toolchain"
    PREPARE_SIDE_ARTIFACTS = "prepare-side-artifacts"
    RESOLVE_BASE_IMAGE = "resolve-base-image"
    APPLY_UPDATES = "apply-updates"
    FINALIZE_BASE_IMAGE = "finalize-base-image"
    PROVISION_AND_CAPTURE = "provision-and-capture"
    POST_PROCESS = "post-process"
    DISTRIBUTE = "distribute"
    CLEANUP = "cleanup"


class UpdateKind(str, Enum):
    """Kind of update package; determines servicing order."""

    SERVICING_STACK = "ssu"
    CUMULATIVE = "cu"
    FEATURE = "feature"
    OTHER = "other"


class CleanupScope(str, Enum):
    """How much content a cleanup pass may remove."""

    CURRENT_RUN = "current-run"
    ALL = "all"


class VerificationMode(str, Enum):
    """Mode for verifying an image written to a device."""

    FULL = "full-hash"
    PREFIX_16M = "prefix-16MiB"
    PREFIX_64M = "prefix-64MiB"
    SKIP = "skipped"


class VerificationResult(str, Enum):
    """Result of write verification."""

    MATCH = "match"
    MISMATCH = "mismatch"
    SKIPPED = "skipped"


@dataclass
class PartitionHandle:
    """Handle to a base image applied onto a working volume.

    Attributes:
        image_path: Working disk image backing the volume.
        volume: Mounted volume or device path the tools operate on.
    """

    image_path: Path
    volume: str


@dataclass
class VolumeSet:
    """Volumes prepared on a provisioned device."""

    device_id: str
    volumes: list[str]


__all__ = [
    "CleanupScope",
    "PartitionHandle",
    "RunStatus",
    "StageName",
    "UpdateKind",
    "VerificationMode",
    "VerificationResult",
    "VolumeSet",
    "WorkItemStatus",
]
