"""Bounded-concurrency task engine.

Runs a batch of independent work items on a thread pool:

- Pool size is ``min(max_concurrency, len(items))``; 0 means one worker
  per item.
- Each worker pulls the next pending item, marks it running, calls the
  handler for its task type, and records success or failure.
- A failing item never cancels its siblings; the batch always runs to
  completion and the caller inspects per-item results.
- Every status transition is written to the progress channel.

Items carry no ordering guarantee relative to each other.
"""

from __future__ import annotations

import logging
import queue
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ffu_builder.errors import CollaboratorError, TaskItemError
from ffu_builder.types import WorkItemStatus

if TYPE_CHECKING:
    from ffu_builder.progress import ProgressChannel
    from ffu_builder.recovery.token import CancellationToken

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Any]
HandlerTable = Mapping[str, Handler] | Callable[[str], Handler | None]


@dataclass
class WorkItem:
    """One unit of parallel work.

    Attributes:
        identifier: Unique within its batch.
        task_type: Key used to pick the handler.
        task_arguments: Arguments passed to the handler.
        status: Current status.
        result_payload: Handler return value on success.
        error_detail: Failure description on failure.
        started_at: When a worker picked the item up.
        finished_at: When the item reached a final status.
    """

    identifier: str
    task_type: str
    task_arguments: dict[str, Any] = field(default_factory=dict)
    status: WorkItemStatus = WorkItemStatus.PENDING
    result_payload: Any = None
    error_detail: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the item finished successfully."""
        return self.status == WorkItemStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        """Whether the item finished with an error."""
        return self.status == WorkItemStatus.FAILED

    def to_error(self) -> TaskItemError:
        """Describe this item's failure as a TaskItemError."""
        return TaskItemError(self.identifier, self.error_detail or "unknown error")


def _resolve_handler(handlers: HandlerTable, task_type: str) -> Handler | None:
    if isinstance(handlers, Mapping):
        return handlers.get(task_type)
    return handlers(task_type)


def _describe_exception(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def pool_size(max_concurrency: int, item_count: int) -> int:
    """Compute the worker pool size for a batch.

    Args:
        max_concurrency: Requested bound (0 = unbounded).
        item_count: Number of items in the batch.

    Returns:
        Number of workers to start.

    Raises:
        ValueError: If max_concurrency is negative.
    """
    if max_concurrency < 0:
        raise ValueError(f"max_concurrency must be >= 0, got {max_concurrency}")
    if max_concurrency == 0:
        return item_count
    return min(max_concurrency, item_count)


class _BatchRunner:
    def __init__(
        self,
        handlers: HandlerTable,
        channel: ProgressChannel | None,
        token: CancellationToken | None,
    ) -> None:
        self.handlers = handlers
        self.channel = channel
        self.token = token
        self.pending: queue.Queue[WorkItem] = queue.Queue()

    def _transition(
        self,
        item: WorkItem,
        status: WorkItemStatus,
        payload: Any = None,
        error: str | None = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        if status == WorkItemStatus.RUNNING:
            item.started_at = now
        else:
            item.finished_at = now
            item.result_payload = payload
            item.error_detail = error
        item.status = status

        if self.channel is not None:
            self.channel.item_status(item.identifier, status.value)

    def _execute(self, item: WorkItem) -> None:
        if self.token is not None and self.token.cancelled:
            self._transition(item, WorkItemStatus.FAILED, error="cancelled")
            return

        self._transition(item, WorkItemStatus.RUNNING)

        handler = _resolve_handler(self.handlers, item.task_type)
        if handler is None:
            detail = f"No handler for task type '{item.task_type}'"
            logger.error("Work item %s: %s", item.identifier, detail)
            self._transition(item, WorkItemStatus.FAILED, error=detail)
            return

        try:
            payload = handler(item.task_arguments)
        except Exception as e:
            detail = _describe_exception(e)
            logger.warning("Work item %s failed: %s", item.identifier, detail)
            self._transition(item, WorkItemStatus.FAILED, error=detail)
            return

        logger.debug("Work item %s succeeded", item.identifier)
        self._transition(item, WorkItemStatus.SUCCEEDED, payload=payload)

    def worker(self) -> None:
        while True:
            try:
                item = self.pending.get_nowait()
            except queue.Empty:
                return
            try:
                self._execute(item)
            finally:
                self.pending.task_done()


def run_batch(
    items: Sequence[WorkItem],
    handlers: HandlerTable,
    max_concurrency: int = 0,
    channel: ProgressChannel | None = None,
    token: CancellationToken | None = None,
) -> list[WorkItem]:
    """Execute a batch of work items with bounded parallelism.

    Args:
        items: Work items; identifiers must be unique.
        handlers: Mapping of task type to handler, or a function that
            returns the handler for a task type.
        max_concurrency: Maximum parallel workers (0 = one per item).
        channel: Optional progress channel for status transitions.
        token: Optional cancellation token; items not yet started when it
            fires are marked failed with detail ``cancelled``.

    Returns:
        The same items, each in a final state.

    Raises:
        ValueError: If identifiers repeat or max_concurrency is negative.
    """
    batch = list(items)
    seen: set[str] = set()
    for item in batch:
        if item.identifier in seen:
            raise ValueError(f"Duplicate work item identifier: {item.identifier}")
        if item.status != WorkItemStatus.PENDING:
            raise ValueError(f"Work item {item.identifier} is not pending")
        seen.add(item.identifier)

    if not batch:
        return batch

    workers = pool_size(max_concurrency, len(batch))
    runner = _BatchRunner(handlers, channel, token)
    for item in batch:
        runner.pending.put(item)
        if channel is not None:
            channel.item_status(item.identifier, WorkItemStatus.PENDING.value)

    logger.info("Running batch of %d item(s) on %d worker(s)", len(batch), workers)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ffu-task") as pool:
        futures = [pool.submit(runner.worker) for _ in range(workers)]
        wait(futures)
        for future in futures:
            # Workers trap handler errors; anything here is a bug in the engine
            future.result()

    failed = sum(1 for item in batch if item.failed)
    logger.info(
        "Batch finished: %d succeeded, %d failed", len(batch) - failed, failed
    )
    return batch


def failed_items(items: Sequence[WorkItem]) -> list[WorkItem]:
    """Return the items that failed."""
    return [item for item in items if item.failed]


def succeeded_items(items: Sequence[WorkItem]) -> list[WorkItem]:
    """Return the items that succeeded."""
    return [item for item in items if item.succeeded]


def _summarize(failures: Sequence[WorkItem]) -> str:
    return "; ".join(f"{i.identifier} ({i.error_detail})" for i in failures)


def require_all_succeeded(items: Sequence[WorkItem], label: str) -> None:
    """Fail unless every item succeeded.

    Args:
        items: Finished batch.
        label: Batch description for the error message.

    Raises:
        CollaboratorError: If any item failed; ``cause`` is the first
            item's TaskItemError.
    """
    failures = failed_items(items)
    if failures:
        raise CollaboratorError(
            f"{len(failures)} of {len(items)} {label} failed: {_summarize(failures)}",
            cause=failures[0].to_error(),
        )


def require_any_succeeded(items: Sequence[WorkItem], label: str) -> None:
    """Fail only if no item succeeded.

    Args:
        items: Finished batch.
        label: Batch description for the error message.

    Raises:
        CollaboratorError: If the batch is non-empty and every item failed.
    """
    if items and not succeeded_items(items):
        failures = failed_items(items)
        raise CollaboratorError(
            f"All {len(items)} {label} failed: {_summarize(failures)}",
            cause=failures[0].to_error() if failures else None,
        )


__all__ = [
    "Handler",
    "HandlerTable",
    "WorkItem",
    "failed_items",
    "pool_size",
    "require_all_succeeded",
    "require_any_succeeded",
    "run_batch",
    "succeeded_items",
]
