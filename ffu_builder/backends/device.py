"""Target device validation for USB provisioning.

Before a device is partitioned it must be:
- an existing block device
- a whole device, never a partition (e.g. /dev/sdb, not /dev/sdb1)
- not the device holding the root filesystem
- not mounted

Device paths are always explicit; nothing is auto-selected.
"""

import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path

from ffu_builder.errors import CollaboratorError

logger = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/mounts")
SYS_BLOCK = Path("/sys/block")

# Partition naming schemes: sdb1, vdb1, nvme0n1p1, mmcblk0p1, loop0p1
_PARTITION_PATTERNS = (
    re.compile(r"^(?P<disk>/dev/[shv]d[a-z]+)\d+$"),
    re.compile(r"^(?P<disk>/dev/nvme\d+n\d+)p\d+$"),
    re.compile(r"^(?P<disk>/dev/mmcblk\d+)p\d+$"),
    re.compile(r"^(?P<disk>/dev/loop\d+)p\d+$"),
)


class DeviceValidationError(CollaboratorError):
    """A target device failed a safety check."""

    def __init__(self, device_path: str, message: str, reason: str) -> None:
        super().__init__(message, stage="distribute")
        self.device_path = device_path
        self.reason = reason


@dataclass
class DeviceInfo:
    """A validated target device.

    Attributes:
        path: Absolute device path.
        size_bytes: Device size, if sysfs reports it.
        mount_points: Mount points found (empty for a validated device).
    """

    path: str
    size_bytes: int | None = None
    mount_points: list[str] = field(default_factory=list)


def whole_device_of(device_path: str) -> str | None:
    """Return the whole device a partition belongs to.

    Returns:
        Whole device path, or None if the path is not a partition.
    """
    for pattern in _PARTITION_PATTERNS:
        match = pattern.match(device_path)
        if match:
            return match.group("disk")
    return None


def is_partition_path(device_path: str) -> bool:
    """Check if a device path names a partition."""
    return whole_device_of(device_path) is not None


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block device."""
    try:
        return stat.S_ISBLK(os.stat(device_path).st_mode)
    except OSError:
        return False


def _read_mounts(mounts_path: Path = PROC_MOUNTS) -> list[tuple[str, str]]:
    """Read (device, mount point) pairs."""
    try:
        lines = mounts_path.read_text().splitlines()
    except OSError:
        logger.warning("Could not read %s, skipping mount checks", mounts_path)
        return []
    pairs = []
    for line in lines:
        parts = line.split()
        if len(parts) >= 2:
            pairs.append((parts[0], parts[1]))
    return pairs


def get_mount_points(device_path: str, mounts_path: Path = PROC_MOUNTS) -> list[str]:
    """Mount points of a device or any of its partitions."""
    points = []
    for mounted, point in _read_mounts(mounts_path):
        if mounted == device_path or whole_device_of(mounted) == device_path:
            points.append(point)
    return points


def get_root_device(mounts_path: Path = PROC_MOUNTS) -> str | None:
    """Whole device holding the root filesystem, if known."""
    for mounted, point in _read_mounts(mounts_path):
        if point == "/":
            return whole_device_of(mounted) or mounted
    return None


def get_device_size(device_path: str) -> int | None:
    """Device size in bytes from sysfs (512-byte sectors)."""
    size_path = SYS_BLOCK / Path(device_path).name / "size"
    try:
        return int(size_path.read_text().strip()) * 512
    except (OSError, ValueError):
        return None


def validate_device(device_path: str, mounts_path: Path = PROC_MOUNTS) -> DeviceInfo:
    """Validate a device path before it is wiped and written.

    Args:
        device_path: Device to validate.
        mounts_path: Mount table to consult.

    Returns:
        DeviceInfo for the device.

    Raises:
        DeviceValidationError: If any safety check fails.
    """
    path = os.path.abspath(device_path)
    logger.debug("Validating device: %s", path)

    if not os.path.exists(path):
        raise DeviceValidationError(path, f"Device not found: {path}", "not_found")
    if not is_block_device(path):
        raise DeviceValidationError(path, f"Not a block device: {path}", "not_block_device")
    if is_partition_path(path):
        raise DeviceValidationError(
            path,
            f"{path} is a partition; give the whole device instead",
            "partition",
        )
    if get_root_device(mounts_path) == path:
        raise DeviceValidationError(
            path, f"{path} holds the root filesystem, refusing to write", "system_device"
        )
    mount_points = get_mount_points(path, mounts_path)
    if mount_points:
        raise DeviceValidationError(
            path,
            f"{path} has mounted partitions: {', '.join(mount_points)}",
            "mounted",
        )

    info = DeviceInfo(path=path, size_bytes=get_device_size(path))
    logger.info("Device validated: %s (size=%s)", path, info.size_bytes)
    return info


__all__ = [
    "DeviceInfo",
    "DeviceValidationError",
    "get_device_size",
    "get_mount_points",
    "get_root_device",
    "is_block_device",
    "is_partition_path",
    "validate_device",
    "whole_device_of",
]
