"""Call contracts of the external collaborators the pipeline drives.

The pipeline only knows the shape of these calls. Concrete
implementations live in ffu_builder.tools and ffu_builder.backends;
tests substitute fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ffu_builder.buildconfig.schema import VMOptions
    from ffu_builder.recovery.token import CancellationToken
    from ffu_builder.tools.runner import ToolSession
    from ffu_builder.types import PartitionHandle, VolumeSet


class BaseImageProvider(Protocol):
    def apply(
        self, image_source: Path, target: Path, index: int, session: ToolSession
    ) -> PartitionHandle: ...


class UpdateApplier(Protocol):
    """Services an offline volume with update packages and drivers."""

    def apply_package(self, volume: str, package_path: Path, session: ToolSession) -> None: ...

    def add_drivers(self, volume: str, driver_dir: Path, session: ToolSession) -> None: ...


class CaptureProvider(Protocol):
    def capture(self, volume: str, destination: Path, session: ToolSession) -> Path: ...


class Optimizer(Protocol):
    def optimize(self, artifact: Path, session: ToolSession) -> None: ...


class VMProvider(Protocol):
    def create(
        self,
        name: str,
        disk: Path,
        options: VMOptions,
        session: ToolSession,
        side_media: Path | None = None,
    ) -> None: ...

    def start(self, name: str, session: ToolSession) -> None: ...

    def wait_for_power_off(self, name: str, session: ToolSession) -> None: ...

    def destroy(self, name: str, session: ToolSession | None = None) -> None: ...


class FetchBackend(Protocol):
    def fetch(
        self,
        identifier: str,
        destination_dir: Path,
        token: CancellationToken | None = None,
    ) -> Path: ...


class DeviceProvisioner(Protocol):
    def partition_and_format(self, device_id: str) -> VolumeSet: ...

    def copy_artifact(
        self, volume: str, artifact: Path, token: CancellationToken | None = None
    ) -> Any: ...


@dataclass
class Collaborators:
    """The set of collaborators a pipeline run uses.

    Attributes:
        base_image: Applies the installation image on a cache miss.
        updates: Applies update packages and adds drivers.
        capture: Captures the provisioned volume into the final image.
        optimizer: Optional post-capture optimizer.
        vm: VM lifecycle provider (required when use_vm is set).
        driver_fetcher: Backend for driver downloads.
        app_fetcher: Backend for application downloads.
        update_fetcher: Backend for update downloads.
        devices: Device provisioning backend (required when devices are given).
    """

    base_image: BaseImageProvider
    updates: UpdateApplier
    capture: CaptureProvider
    optimizer: Optimizer | None = None
    vm: VMProvider | None = None
    driver_fetcher: FetchBackend | None = None
    app_fetcher: FetchBackend | None = None
    update_fetcher: FetchBackend | None = None
    devices: DeviceProvisioner | None = None

    def missing_tools(self, use_vm: bool = True) -> list[str]:
        """Executables required by collaborators but absent from PATH.

        Args:
            use_vm: Include the VM provider's tools.
        """
        missing: list[str] = []
        seen: set[int] = set()
        candidates = [self.base_image, self.updates, self.capture, self.optimizer]
        if use_vm:
            candidates.append(self.vm)
        for collaborator in candidates:
            if collaborator is None or id(collaborator) in seen:
                continue
            seen.add(id(collaborator))
            check = getattr(collaborator, "missing_tools", None)
            if check is None:
                continue
            for tool in check():
                if tool not in missing:
                    missing.append(tool)
        return missing


__all__ = [
    "BaseImageProvider",
    "CaptureProvider",
    "Collaborators",
    "DeviceProvisioner",
    "FetchBackend",
    "Optimizer",
    "UpdateApplier",
    "VMProvider",
]
