"""Cancellation and recovery module.

This module handles:
- Cancellation tokens for long-running calls
- Tracking spawned processes and killing their trees
- The run marker that flags interrupted runs
- Cancel and stale-run sweep
"""

from ffu_builder.recovery.controller import RecoveryController, cleanup_scope
from ffu_builder.recovery.marker import RunMarker, create_marker, read_marker, remove_marker
from ffu_builder.recovery.processes import ProcessTracker, terminate_process_tree
from ffu_builder.recovery.token import CancellationToken

__all__ = [
    "CancellationToken",
    "ProcessTracker",
    "RecoveryController",
    "RunMarker",
    "cleanup_scope",
    "create_marker",
    "read_marker",
    "remove_marker",
    "terminate_process_tree",
]
