"""Mutable state of one pipeline run.

RunState is passed explicitly to every stage alongside the immutable
BuildConfiguration. The progress channel is the only resource shared
with other components.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from ffu_builder.recovery.processes import ProcessTracker
from ffu_builder.recovery.token import CancellationToken
from ffu_builder.tools.runner import ToolSession

if TYPE_CHECKING:
    from ffu_builder.buildconfig.schema import BuildConfiguration
    from ffu_builder.cache.fingerprint import CacheFingerprint
    from ffu_builder.cache.store import CacheManifest
    from ffu_builder.progress import ProgressChannel, ProgressMonitor
    from ffu_builder.tasks.engine import WorkItem
    from ffu_builder.types import PartitionHandle


def new_run_id() -> str:
    """Generate a run identifier."""
    return uuid.uuid4().hex[:12]


@dataclass
class RunState:
    """Everything a run has computed or spawned so far.

    Attributes:
        run_id: Run identifier.
        config: The run's configuration.
        work_dir: Per-run scratch directory.
        marker_path: Run marker of this run.
        channel: Progress channel.
        token: Cancellation token.
        tracker: Spawned external processes.
        monitor: Progress monitor attached by the front end, if any.
        vm_name: Name of the build VM when use_vm is set.
        log_dir: Directory for external tool logs (kept after cleanup).
        fingerprint: Base-image fingerprint.
        used_cache: Whether the base image came from the cache.
        cache_manifest: Cache entry used or registered.
        base_image: Handle to the working base image.
        vm_created: Whether the VM currently exists.
        capture_path: Captured image before naming.
        artifact_path: Final image.
        driver_paths: Fetched driver packages.
        app_paths: Fetched application packages.
        update_paths: Fetched update packages keyed by file name.
        apps_dir: Staged application media directory.
        device_results: Per-device provisioning results.
        fetched: Files first fetched by this run, per stage.
        created_work_dir: Whether this run created work_dir.
        entered: Names of stages entered, in order.
        cleaned: Names of stages whose cleanup has run.
        failed_stage: Stage that aborted the run.
    """

    run_id: str
    config: BuildConfiguration
    work_dir: Path
    marker_path: Path
    channel: ProgressChannel
    token: CancellationToken = field(default_factory=CancellationToken)
    tracker: ProcessTracker = field(default_factory=ProcessTracker)
    monitor: ProgressMonitor | None = None
    vm_name: str | None = None
    log_dir: Path | None = None

    fingerprint: CacheFingerprint | None = None
    used_cache: bool = False
    cache_manifest: CacheManifest | None = None
    base_image: PartitionHandle | None = None
    vm_created: bool = False
    capture_path: Path | None = None
    artifact_path: Path | None = None

    driver_paths: list[Path] = field(default_factory=list)
    app_paths: list[Path] = field(default_factory=list)
    update_paths: dict[str, Path] = field(default_factory=dict)
    apps_dir: Path | None = None
    device_results: list[WorkItem] = field(default_factory=list)

    fetched: dict[str, list[Path]] = field(default_factory=dict)
    created_work_dir: bool = False
    entered: list[str] = field(default_factory=list)
    cleaned: set[str] = field(default_factory=set)
    failed_stage: str | None = None

    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    unwind_lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    @property
    def session(self) -> ToolSession:
        """Tool context bound to this run's token and tracker."""
        log_dir = self.log_dir if self.log_dir is not None else self.work_dir / "logs"
        return ToolSession(log_dir=log_dir, token=self.token, tracker=self.tracker)

    def enter(self, stage: str) -> None:
        """Record that a stage has begun."""
        with self._lock:
            self.entered.append(stage)

    def claim_cleanup(self, stage: str) -> bool:
        """Claim the right to run a stage's cleanup.

        Returns:
            True exactly once per stage.
        """
        with self._lock:
            if stage in self.cleaned:
                return False
            self.cleaned.add(stage)
            return True

    def record_fetched(self, stage: str, path: Path) -> None:
        """Remember a file this run downloaded."""
        with self._lock:
            self.fetched.setdefault(stage, []).append(path)

    def fetched_by(self, stage: str) -> list[Path]:
        """Files downloaded by a stage during this run."""
        with self._lock:
            return list(self.fetched.get(stage, []))

    @property
    def failed_devices(self) -> list[str]:
        """Devices whose provisioning failed."""
        return [item.identifier for item in self.device_results if item.failed]


__all__ = ["RunState", "new_run_id"]
