"""Run marker: the sentinel of an in-progress run.

The marker is written when a run starts and removed when it ends,
cleanly or after unwind. If it is still present at the next launch, the
previous run was interrupted and must be swept before a new one starts.

Existence alone is what matters. The JSON body is informational and an
unreadable body still counts as a present marker.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class RunMarker:
    """Contents of the run marker file.

    Attributes:
        run_id: Identifier of the run that wrote the marker.
        created_at: ISO-8601 UTC timestamp.
        pid: Process id of the builder.
        work_dir: Per-run working directory, if known.
        vm_name: Name of the build VM, if one was planned.
    """

    run_id: str
    created_at: str
    pid: int
    work_dir: str | None = None
    vm_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunMarker:
        """Build a marker from its JSON form."""
        return cls(
            run_id=str(data.get("run_id", "")),
            created_at=str(data.get("created_at", "")),
            pid=int(data.get("pid", 0)),
            work_dir=data.get("work_dir"),
            vm_name=data.get("vm_name"),
        )


def create_marker(
    path: Path,
    run_id: str,
    work_dir: Path | None = None,
    vm_name: str | None = None,
) -> RunMarker:
    """Write the run marker.

    Args:
        path: Marker file path.
        run_id: Current run id.
        work_dir: Per-run working directory.
        vm_name: Planned build VM name.

    Returns:
        The written marker.
    """
    marker = RunMarker(
        run_id=run_id,
        created_at=datetime.now(timezone.utc).isoformat(),
        pid=os.getpid(),
        work_dir=str(work_dir) if work_dir is not None else None,
        vm_name=vm_name,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(json.dumps(marker.to_dict(), indent=2), encoding="utf-8")
    os.replace(tmp_path, path)
    logger.debug("Created run marker %s for run %s", path, run_id)
    return marker


def marker_exists(path: Path) -> bool:
    """Whether a run marker is present."""
    return path.exists()


def read_marker(path: Path) -> RunMarker | None:
    """Read the marker body.

    Args:
        path: Marker file path.

    Returns:
        The marker, or None if it is missing or unreadable.
    """
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("marker body is not an object")
        return RunMarker.from_dict(data)
    except (OSError, ValueError, TypeError) as e:
        logger.warning("Run marker %s is unreadable: %s", path, e)
        return None


def remove_marker(path: Path) -> bool:
    """Remove the marker.

    Returns:
        True if a marker was removed.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.debug("Removed run marker %s", path)
    return True


__all__ = [
    "RunMarker",
    "create_marker",
    "marker_exists",
    "read_marker",
    "remove_marker",
]
