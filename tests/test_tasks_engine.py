"""Tests for tasks/engine.py module.

Handlers are plain functions; concurrency is observed with a counter.
"""

import threading
import time
from pathlib import Path
from typing import Any

import pytest

from ffu_builder.errors import CollaboratorError, TaskItemError
from ffu_builder.progress import ItemStatusRecord, ProgressChannel, read_progress_log
from ffu_builder.recovery.token import CancellationToken
from ffu_builder.tasks.engine import (
    WorkItem,
    failed_items,
    pool_size,
    require_all_succeeded,
    require_any_succeeded,
    run_batch,
    succeeded_items,
)
from ffu_builder.types import WorkItemStatus


def _items(*identifiers: str, task_type: str = "echo") -> list[WorkItem]:
    return [
        WorkItem(identifier=i, task_type=task_type, task_arguments={"value": i})
        for i in identifiers
    ]


def _echo(args: dict[str, Any]) -> str:
    return args["value"].upper()


class TestPoolSize:
    """Tests for pool_size."""

    def test_zero_is_one_per_item(self) -> None:
        """0 means a worker per item."""
        assert pool_size(0, 7) == 7

    def test_bounded(self) -> None:
        """The bound caps the pool."""
        assert pool_size(2, 7) == 2
        assert pool_size(10, 3) == 3

    def test_negative(self) -> None:
        """Negative bounds are rejected."""
        with pytest.raises(ValueError):
            pool_size(-1, 3)


class TestRunBatch:
    """Tests for run_batch."""

    def test_all_succeed(self) -> None:
        """Results land on the items in input order."""
        items = run_batch(_items("a", "b", "c"), {"echo": _echo})
        assert [i.status for i in items] == [WorkItemStatus.SUCCEEDED] * 3
        assert [i.result_payload for i in items] == ["A", "B", "C"]
        assert all(i.started_at and i.finished_at for i in items)

    def test_failure_does_not_cancel_siblings(self) -> None:
        """Item 2 fails; items 1 and 3 still succeed."""

        def handler(args: dict[str, Any]) -> str:
            if args["value"] == "item2":
                raise RuntimeError("boom")
            return args["value"]

        items = run_batch(_items("item1", "item2", "item3"), {"echo": handler}, 2)

        assert [i.status for i in items] == [
            WorkItemStatus.SUCCEEDED,
            WorkItemStatus.FAILED,
            WorkItemStatus.SUCCEEDED,
        ]
        assert items[1].error_detail == "RuntimeError: boom"
        assert items[1].result_payload is None

    def test_missing_handler(self) -> None:
        """An unknown task type fails only that item."""
        items = _items("a") + _items("b", task_type="unknown")
        run_batch(items, {"echo": _echo})
        assert items[0].succeeded
        assert items[1].failed
        assert "unknown" in (items[1].error_detail or "")

    def test_callable_handler_table(self) -> None:
        """Handlers can be resolved by a function."""
        items = run_batch(_items("a"), lambda task_type: _echo)
        assert items[0].result_payload == "A"

    def test_concurrency_bound(self) -> None:
        """At most max_concurrency handlers run at once."""
        lock = threading.Lock()
        active = 0
        peak = 0

        def handler(args: dict[str, Any]) -> None:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with lock:
                active -= 1

        run_batch(_items(*[f"i{n}" for n in range(8)]), {"echo": handler}, 3)
        assert 1 <= peak <= 3

    def test_duplicate_identifiers(self) -> None:
        """Identifiers must be unique."""
        with pytest.raises(ValueError, match="Duplicate"):
            run_batch(_items("a", "a"), {"echo": _echo})

    def test_non_pending_item(self) -> None:
        """Only pending items can be run."""
        items = _items("a", "b")
        items[1].status = WorkItemStatus.SUCCEEDED
        with pytest.raises(ValueError, match="not pending"):
            run_batch(items, {"echo": _echo})
        assert items[0].status == WorkItemStatus.PENDING

    def test_empty_batch(self) -> None:
        """An empty batch is a no-op."""
        assert run_batch([], {"echo": _echo}) == []

    def test_cancelled_token(self) -> None:
        """Items not started after cancellation are failed as cancelled."""
        token = CancellationToken()
        token.cancel()
        items = run_batch(_items("a", "b"), {"echo": _echo}, token=token)
        assert all(i.failed and i.error_detail == "cancelled" for i in items)

    def test_status_transitions_reported(self, tmp_path: Path) -> None:
        """Every transition is written to the progress channel."""
        log = tmp_path / "progress.log"
        with ProgressChannel(log) as channel:
            run_batch(_items("a"), {"echo": _echo}, channel=channel)

        events = [e for e in read_progress_log(log) if isinstance(e, ItemStatusRecord)]
        assert [e.status for e in events] == ["pending", "running", "succeeded"]
        assert {e.identifier for e in events} == {"a"}


class TestBatchOutcome:
    """Tests for outcome helpers."""

    def _finished(self) -> list[WorkItem]:
        def handler(args: dict[str, Any]) -> str:
            if args["value"] == "bad":
                raise OSError("disk full")
            return args["value"]

        return run_batch(_items("good", "bad"), {"echo": handler})

    def test_partition(self) -> None:
        """failed_items and succeeded_items split the batch."""
        items = self._finished()
        assert [i.identifier for i in succeeded_items(items)] == ["good"]
        assert [i.identifier for i in failed_items(items)] == ["bad"]

    def test_require_all_succeeded(self) -> None:
        """Any failure raises, carrying the item error as cause."""
        with pytest.raises(CollaboratorError) as exc_info:
            require_all_succeeded(self._finished(), "downloads")
        assert "1 of 2 downloads failed" in exc_info.value.message
        assert isinstance(exc_info.value.cause, TaskItemError)
        assert exc_info.value.cause.identifier == "bad"

    def test_require_any_succeeded(self) -> None:
        """One success is enough."""
        require_any_succeeded(self._finished(), "devices")

    def test_require_any_all_failed(self) -> None:
        """All failures raise."""

        def handler(args: dict[str, Any]) -> None:
            raise OSError("gone")

        items = run_batch(_items("d1", "d2"), {"echo": handler})
        with pytest.raises(CollaboratorError, match="All 2 devices failed"):
            require_any_succeeded(items, "devices")
