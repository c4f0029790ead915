"""Process tracking and process-tree termination.

External tools spawn children that spawn grandchildren, which are not
known in advance. Termination therefore walks the live process table by
parent pid at cancellation time, starting from the roots registered by
the tool runner.

The process table is read from /proc.
"""

import logging
import os
import signal
import threading
import time
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)

PROC_ROOT = Path("/proc")

# Interval between liveness checks while waiting for processes to exit
_WAIT_STEP = 0.1


class ProcessTracker:
    """Registry of external process ids spawned by a run."""

    def __init__(self) -> None:
        self._pids: set[int] = set()
        self._lock = threading.Lock()

    def add(self, pid: int) -> None:
        """Register a spawned process."""
        with self._lock:
            self._pids.add(pid)

    def discard(self, pid: int) -> None:
        """Forget a process that has exited."""
        with self._lock:
            self._pids.discard(pid)

    def roots(self) -> list[int]:
        """Snapshot of registered pids."""
        with self._lock:
            return sorted(self._pids)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids)


def _read_ppid(stat_text: str) -> int | None:
    # Format: "pid (comm) state ppid ...", comm may contain spaces and parens
    end = stat_text.rfind(")")
    if end == -1:
        return None
    fields = stat_text[end + 2 :].split()
    if len(fields) < 2:
        return None
    try:
        return int(fields[1])
    except ValueError:
        return None


def read_parent_map(proc_root: Path = PROC_ROOT) -> dict[int, int]:
    """Read pid -> parent pid for every live process.

    Processes that exit while the table is being read are skipped.

    Args:
        proc_root: Mount point of procfs.

    Returns:
        Mapping of pid to parent pid.
    """
    parents: dict[int, int] = {}
    try:
        entries = list(proc_root.iterdir())
    except OSError as e:
        logger.warning("Could not read %s: %s", proc_root, e)
        return parents

    for entry in entries:
        if not entry.name.isdigit():
            continue
        try:
            text = (entry / "stat").read_text()
        except OSError:
            continue
        ppid = _read_ppid(text)
        if ppid is not None:
            parents[int(entry.name)] = ppid
    return parents


def list_descendants(
    pid: int,
    parent_map: dict[int, int] | None = None,
) -> list[int]:
    """List every descendant of a process, deepest first.

    Args:
        pid: Root process id.
        parent_map: Optional pid -> ppid table (read from /proc if omitted).

    Returns:
        Descendant pids ordered so that children come before their parents.
    """
    parents = read_parent_map() if parent_map is None else parent_map
    children: dict[int, list[int]] = {}
    for child, parent in parents.items():
        children.setdefault(parent, []).append(child)

    ordered: list[int] = []
    seen = {pid}

    def _walk(node: int) -> None:
        for child in sorted(children.get(node, [])):
            if child in seen:
                continue
            seen.add(child)
            _walk(child)
            ordered.append(child)

    _walk(pid)
    return ordered


def pid_alive(pid: int) -> bool:
    """Whether a process with this pid exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _signal(pid: int, sig: int) -> bool:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.warning("Not permitted to signal process %d: %s", pid, e)
        return False
    return True


def terminate_process_tree(
    pid: int,
    grace: float = 5.0,
    parent_map_reader: Callable[[], dict[int, int]] = read_parent_map,
) -> list[int]:
    """Terminate a process and all of its descendants.

    The tree is snapshotted first, then every member gets SIGTERM
    (deepest first). Members still alive after ``grace`` seconds get
    SIGKILL. Processes that have already exited are ignored.

    Args:
        pid: Root process id.
        grace: Seconds to wait between SIGTERM and SIGKILL.
        parent_map_reader: Source of the pid -> ppid table.

    Returns:
        Pids that were signalled.
    """
    tree = list_descendants(pid, parent_map_reader()) + [pid]
    signalled = [p for p in tree if _signal(p, signal.SIGTERM)]
    if not signalled:
        return []

    logger.info("Sent SIGTERM to %d process(es) in tree of %d", len(signalled), pid)

    deadline = time.monotonic() + grace
    remaining = list(signalled)
    while remaining and time.monotonic() < deadline:
        time.sleep(_WAIT_STEP)
        remaining = [p for p in remaining if pid_alive(p)]

    for p in remaining:
        if _signal(p, signal.SIGKILL):
            logger.warning("Process %d did not exit after SIGTERM, killed", p)

    return signalled


__all__ = [
    "ProcessTracker",
    "list_descendants",
    "pid_alive",
    "read_parent_map",
    "terminate_process_tree",
]
