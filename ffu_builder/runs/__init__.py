"""Run history module.

This module handles:
- The RunRecord ORM model
- Recording run start and outcome
- Querying past runs
"""

from ffu_builder.runs.models import RunRecord
from ffu_builder.runs.service import (
    RunNotFoundError,
    create_run_record,
    finish_run_record,
    get_run_record,
    list_run_records,
)

__all__ = [
    "RunNotFoundError",
    "RunRecord",
    "create_run_record",
    "finish_run_record",
    "get_run_record",
    "list_run_records",
]
