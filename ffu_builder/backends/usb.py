"""Device provisioning backend: raw writes of the final image to USB devices.

Each target device is one work item in the distribute batch: the device
is validated and its old signatures wiped, then the image is written and
verified by read-back.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from ffu_builder.backends.device import PROC_MOUNTS, validate_device
from ffu_builder.backends.writer import DeviceWriteError, WriteResult, wipe_signatures, write_image
from ffu_builder.types import VerificationMode, VolumeSet

if TYPE_CHECKING:
    from ffu_builder.recovery.token import CancellationToken

logger = logging.getLogger(__name__)


class RawDeviceProvisioner:
    """Writes images directly onto whole block devices."""

    def __init__(
        self,
        verification_mode: VerificationMode = VerificationMode.FULL,
        mounts_path: Path = PROC_MOUNTS,
    ) -> None:
        self.verification_mode = verification_mode
        self.mounts_path = mounts_path
        self._sizes: dict[str, int | None] = {}

    def partition_and_format(self, device_id: str) -> VolumeSet:
        """Validate a device and clear its partition signatures.

        Args:
            device_id: Device path (e.g. /dev/sdb).

        Returns:
            VolumeSet whose single volume is the whole device.

        Raises:
            DeviceValidationError: If the device fails a safety check.
            DeviceWriteError: If the device cannot be wiped.
        """
        info = validate_device(device_id, mounts_path=self.mounts_path)
        self._sizes[info.path] = info.size_bytes
        wipe_signatures(info.path)
        return VolumeSet(device_id=info.path, volumes=[info.path])

    def copy_artifact(
        self,
        volume: str,
        artifact: Path,
        token: CancellationToken | None = None,
    ) -> WriteResult:
        """Write and verify the image on a prepared volume.

        Raises:
            DeviceWriteError: If the image does not fit, or writing or
                verification fails.
        """
        size = self._sizes.get(volume)
        if size is not None and artifact.is_file() and artifact.stat().st_size > size:
            raise DeviceWriteError(
                volume,
                f"{artifact.name} ({artifact.stat().st_size} bytes) does not fit on "
                f"{volume} ({size} bytes)",
                "too_small",
            )
        result = write_image(
            artifact, volume, verification_mode=self.verification_mode, token=token
        )
        logger.info("Provisioned %s with %s", volume, artifact.name)
        return result


__all__ = ["RawDeviceProvisioner"]
