"""Raw writes of a finished image to a device, with read-back verification."""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ffu_builder.errors import CollaboratorError
from ffu_builder.types import VerificationMode, VerificationResult

if TYPE_CHECKING:
    from ffu_builder.recovery.token import CancellationToken

logger = logging.getLogger(__name__)

# Default block size for I/O operations (1 MiB)
DEFAULT_BLOCK_SIZE = 1024 * 1024

# Bytes zeroed to clear partition table and filesystem signatures
SIGNATURE_WIPE_BYTES = 1024 * 1024

VERIFICATION_SIZE_BYTES = {
    VerificationMode.PREFIX_16M: 16 * 1024 * 1024,
    VerificationMode.PREFIX_64M: 64 * 1024 * 1024,
}


class DeviceWriteError(CollaboratorError):
    """Writing or verifying a device failed."""

    def __init__(self, device_path: str, message: str, reason: str) -> None:
        super().__init__(message, stage="distribute")
        self.device_path = device_path
        self.reason = reason


@dataclass
class WriteResult:
    """Result of writing an image to a device.

    Attributes:
        device_path: Target device.
        bytes_written: Bytes written.
        source_hash: SHA-256 of the verified source range.
        device_hash: SHA-256 read back from the device.
        verification_mode: Verification mode used.
        verification_result: Outcome of verification.
    """

    device_path: str
    bytes_written: int
    source_hash: str | None
    device_hash: str | None
    verification_mode: VerificationMode
    verification_result: VerificationResult


def hash_prefix(
    path: str | Path,
    num_bytes: int | None = None,
    block_size: int = DEFAULT_BLOCK_SIZE,
) -> str:
    """SHA-256 of the first ``num_bytes`` of a file or device.

    Args:
        path: File or device to read.
        num_bytes: Bytes to hash (None = whole file).
        block_size: Read size.

    Returns:
        Hex digest.
    """
    hasher = hashlib.sha256()
    remaining = num_bytes
    with open(path, "rb") as f:
        while remaining is None or remaining > 0:
            size = block_size if remaining is None else min(block_size, remaining)
            chunk = f.read(size)
            if not chunk:
                break
            hasher.update(chunk)
            if remaining is not None:
                remaining -= len(chunk)
    return hasher.hexdigest()


def wipe_signatures(device_path: str, wipe_bytes: int = SIGNATURE_WIPE_BYTES) -> int:
    """Zero the start of a device to clear old partition signatures.

    Returns:
        Bytes wiped.

    Raises:
        DeviceWriteError: If the device cannot be written.
    """
    logger.info("Wiping first %d bytes of %s", wipe_bytes, device_path)
    try:
        with open(device_path, "r+b") as f:
            f.write(b"\x00" * wipe_bytes)
            f.flush()
            os.fsync(f.fileno())
    except PermissionError as e:
        raise DeviceWriteError(
            device_path,
            f"Permission denied writing to {device_path}; elevated privileges required",
            "permission_denied",
        ) from e
    except OSError as e:
        raise DeviceWriteError(
            device_path, f"Error wiping {device_path}: {e}", "io_error"
        ) from e
    return wipe_bytes


def write_image(
    image_path: Path,
    device_path: str,
    verification_mode: VerificationMode = VerificationMode.FULL,
    block_size: int = DEFAULT_BLOCK_SIZE,
    token: CancellationToken | None = None,
) -> WriteResult:
    """Write an image to a device with fsync, then verify by read-back.

    Args:
        image_path: Image file.
        device_path: Target device.
        verification_mode: How much of the write to verify.
        block_size: I/O block size.
        token: Optional cancellation token, checked between blocks.

    Returns:
        WriteResult of a verified write.

    Raises:
        DeviceWriteError: If the image is missing, the write fails, or
            the read-back hash differs.
        BuildCancelledError: If the token fires mid-write.
    """
    if not image_path.is_file():
        raise DeviceWriteError(device_path, f"Image not found: {image_path}", "image_missing")

    image_size = image_path.stat().st_size
    logger.info("Writing %s (%d bytes) to %s", image_path.name, image_size, device_path)

    written = 0
    try:
        with image_path.open("rb") as src, open(device_path, "r+b") as dst:
            while chunk := src.read(block_size):
                if token is not None:
                    token.raise_if_cancelled()
                dst.write(chunk)
                written += len(chunk)
            dst.flush()
            os.fsync(dst.fileno())
    except PermissionError as e:
        raise DeviceWriteError(
            device_path,
            f"Permission denied writing to {device_path}; elevated privileges required",
            "permission_denied",
        ) from e
    except OSError as e:
        raise DeviceWriteError(
            device_path, f"Error writing to {device_path}: {e}", "io_error"
        ) from e

    if verification_mode == VerificationMode.SKIP:
        return WriteResult(
            device_path=device_path,
            bytes_written=written,
            source_hash=None,
            device_hash=None,
            verification_mode=verification_mode,
            verification_result=VerificationResult.SKIPPED,
        )

    verify_bytes = min(VERIFICATION_SIZE_BYTES.get(verification_mode, image_size), image_size)
    source_hash = hash_prefix(image_path, verify_bytes, block_size)
    device_hash = hash_prefix(device_path, verify_bytes, block_size)
    if device_hash != source_hash:
        logger.error(
            "Hash verification failed on %s: expected=%s, got=%s",
            device_path,
            source_hash[:16],
            device_hash[:16],
        )
        raise DeviceWriteError(
            device_path,
            f"Hash verification failed for {device_path} "
            f"(mode: {verification_mode.value})",
            "hash_mismatch",
        )

    logger.info("Verified %d bytes on %s", verify_bytes, device_path)
    return WriteResult(
        device_path=device_path,
        bytes_written=written,
        source_hash=source_hash,
        device_hash=device_hash,
        verification_mode=verification_mode,
        verification_result=VerificationResult.MATCH,
    )


__all__ = [
    "DEFAULT_BLOCK_SIZE",
    "DeviceWriteError",
    "WriteResult",
    "hash_prefix",
    "wipe_signatures",
    "write_image",
]
