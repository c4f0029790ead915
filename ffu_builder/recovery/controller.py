"""Cancellation and crash recovery.

Two entry points:

- ``cancel(state)`` tears down a run in progress: it fires the run's
  token, stops and closes the progress monitor, kills the process tree
  of every tool the run spawned, then runs the pipeline's stage cleanup.
- ``sweep_stale_run(marker_path)`` runs before a new build. If the
  marker of an interrupted run is present and its process has exited,
  it clears that run's leftovers and removes the marker.

Every step is best-effort: failures are logged and never escalate.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from ffu_builder.config import DOWNLOAD_KINDS, Settings
from ffu_builder.recovery.marker import RunMarker, marker_exists, read_marker, remove_marker
from ffu_builder.recovery.processes import pid_alive, terminate_process_tree
from ffu_builder.types import CleanupScope

if TYPE_CHECKING:
    from ffu_builder.pipeline.collaborators import VMProvider
    from ffu_builder.pipeline.state import RunState
    from ffu_builder.progress import ProgressChannel

logger = logging.getLogger(__name__)

UnwindFn = Callable[["RunState", CleanupScope], None]

# Leftovers of interrupted writes
_PARTIAL_PATTERNS = ("*.part", ".*.partial", ".*.tmp")


def cleanup_scope(current_run_only: bool) -> CleanupScope:
    """Map the cleanup_current_run_only flag to a scope."""
    return CleanupScope.CURRENT_RUN if current_run_only else CleanupScope.ALL


class RecoveryController:
    """Unwinds cancelled runs and sweeps interrupted ones.

    Args:
        settings: Settings providing the sweep locations.
        channel: Progress channel for user-facing messages.
        unwind: The pipeline's stage-cleanup path.
        vm: VM provider used to destroy a leftover build VM.
    """

    def __init__(
        self,
        settings: Settings,
        channel: ProgressChannel | None = None,
        unwind: UnwindFn | None = None,
        vm: VMProvider | None = None,
    ) -> None:
        self.settings = settings
        self.channel = channel
        self.unwind = unwind
        self.vm = vm

    def _report(self, message: str) -> None:
        if self.channel is not None:
            self.channel.log(message)

    def _step(self, label: str, action: Callable[[], object]) -> bool:
        try:
            action()
        except Exception as e:
            logger.warning("Recovery step '%s' failed: %s", label, e)
            self._report(f"WARNING: {label} failed: {e}")
            return False
        logger.debug("Recovery step '%s' done", label)
        return True

    def _terminate_processes(self, state: RunState) -> None:
        roots = state.tracker.roots()
        for pid in roots:
            self._step(
                f"terminate process tree {pid}",
                lambda pid=pid: terminate_process_tree(pid, grace=self.settings.process_kill_grace),
            )

    def cancel(self, state: RunState) -> None:
        """Cancel a run in progress.

        Args:
            state: State of the run to cancel.
        """
        logger.warning("Cancelling run %s", state.run_id)
        state.token.cancel()

        monitor = state.monitor
        if monitor is not None:
            self._step("stop progress monitor", monitor.stop)
            self._step("close progress monitor", monitor.close)

        self._terminate_processes(state)

        if self.unwind is not None:
            scope = cleanup_scope(state.config.cleanup_current_run_only)
            self._step("stage cleanup", lambda: self.unwind(state, scope))

        self._step("remove run marker", lambda: remove_marker(state.marker_path))
        self._report(f"Run {state.run_id} cancelled")

    def active_run(self, marker_path: Path) -> RunMarker | None:
        """The marker of a run still alive in another process, if any.

        Args:
            marker_path: Run marker location.

        Returns:
            The live run's marker, or None if the marker is absent,
            unreadable, ours, or left by a process that has exited.
        """
        marker = read_marker(marker_path)
        if marker is None or marker.pid <= 0 or marker.pid == os.getpid():
            return None
        return marker if pid_alive(marker.pid) else None

    def _sweep_work_dirs(self, marker_work_dir: str | None) -> None:
        if marker_work_dir:
            path = Path(marker_work_dir)
            if path.exists():
                self._step(f"remove {path}", lambda: shutil.rmtree(path))
            return
        # Without a readable marker the interrupted run's directory is unknown
        work_root = self.settings.work_dir
        if work_root.is_dir():
            for entry in sorted(work_root.iterdir()):
                if entry.is_dir():
                    self._step(f"remove {entry}", lambda entry=entry: shutil.rmtree(entry))
                else:
                    self._step(f"remove {entry}", lambda entry=entry: entry.unlink())

    def _sweep_downloads(self) -> None:
        root = self.settings.downloads_dir
        for kind in DOWNLOAD_KINDS:
            path = root / kind
            if path.exists():
                self._step(f"remove {path}", lambda path=path: shutil.rmtree(path))
        self._sweep_partials(root, recursive=True)

    def _sweep_partials(self, root: Path, recursive: bool = False) -> None:
        if not root.is_dir():
            return
        for pattern in _PARTIAL_PATTERNS:
            matches = root.rglob(pattern) if recursive else root.glob(pattern)
            for path in sorted(matches):
                if path.is_file():
                    self._step(f"remove {path}", lambda path=path: path.unlink())

    def sweep_stale_run(self, marker_path: Path, force: bool = False) -> bool:
        """Clean up after an interrupted run, if there was one.

        The sweep is broader than a cancel's cleanup: the interrupted
        run's downloads cannot be told apart from earlier content, so all
        of them are cleared along with its work directory. Complete cache
        entries are never touched; only half-written cache files are.

        A marker whose process is still alive belongs to a run in
        progress, not an interrupted one, and is left alone unless
        ``force`` is set.

        Args:
            marker_path: Run marker location.
            force: Sweep even if the marker's process is alive.

        Returns:
            True if a stale marker was found and swept.
        """
        if not marker_exists(marker_path):
            return False

        live = self.active_run(marker_path)
        if live is not None and not force:
            logger.warning(
                "Run %s (pid %d) is still in progress, not sweeping", live.run_id, live.pid
            )
            self._report(f"WARNING: run {live.run_id} (pid {live.pid}) is still in progress")
            return False

        marker = read_marker(marker_path)
        run_label = marker.run_id if marker is not None else "unknown"
        logger.warning("Found marker of interrupted run %s, sweeping", run_label)
        self._report(f"Recovering from interrupted run {run_label}")

        if marker is not None and marker.vm_name and self.vm is not None:
            vm = self.vm
            vm_name = marker.vm_name
            self._step(f"destroy VM {vm_name}", lambda: vm.destroy(vm_name))

        self._sweep_work_dirs(marker.work_dir if marker is not None else None)
        self._sweep_downloads()
        self._sweep_partials(self.settings.cache_dir)

        self._step("remove run marker", lambda: remove_marker(marker_path))
        self._report(f"Recovery of run {run_label} complete")
        return True


__all__ = ["RecoveryController", "cleanup_scope"]
