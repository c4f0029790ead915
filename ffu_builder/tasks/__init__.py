"""Task engine module.

This module handles:
- Work item descriptors and their status lifecycle
- Bounded-parallel batch execution with per-item failure isolation
- Batch-level success policies used by pipeline stages
"""

from ffu_builder.tasks.engine import (
    WorkItem,
    require_all_succeeded,
    require_any_succeeded,
    run_batch,
)

__all__ = ["WorkItem", "require_all_succeeded", "require_any_succeeded", "run_batch"]
