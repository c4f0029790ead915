"""Runner for external imaging and hypervisor tools.

This module handles:
- Rendering argv templates from ToolCommands
- Starting tools with subprocess, output appended to per-tool log files
- Registering spawned pids so a cancel can kill their process trees
- Polling for completion while checking the cancellation token
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ffu_builder.errors import BuildCancelledError, BuildValidationError, CollaboratorError
from ffu_builder.recovery.processes import ProcessTracker, terminate_process_tree
from ffu_builder.recovery.token import CancellationToken

logger = logging.getLogger(__name__)

# Timeout for short query commands (seconds)
DEFAULT_QUERY_TIMEOUT = 60


@dataclass
class ToolSession:
    """Per-run context for external tool calls.

    Attributes:
        log_dir: Directory for per-tool log files.
        token: Cancellation token of the run.
        tracker: Registry of spawned processes.
    """

    log_dir: Path
    token: CancellationToken = field(default_factory=CancellationToken)
    tracker: ProcessTracker = field(default_factory=ProcessTracker)


@dataclass
class ToolResult:
    """Result of an external tool run.

    Attributes:
        exit_code: Process exit code.
        log_path: Log file holding the tool output.
        command: The command line that was executed.
        started_at: Start time.
        finished_at: Finish time.
    """

    exit_code: int
    log_path: Path
    command: str
    started_at: datetime
    finished_at: datetime


def render_command(template: Sequence[str], **values: Any) -> list[str]:
    """Render an argv template.

    Args:
        template: Arguments containing ``str.format`` placeholders.
        **values: Placeholder values.

    Returns:
        Rendered argv.

    Raises:
        BuildValidationError: If a template uses an unknown placeholder.
    """
    try:
        return [arg.format(**values) for arg in template]
    except (KeyError, IndexError) as e:
        raise BuildValidationError(
            f"Command template {list(template)} uses unknown placeholder {e}",
            field="tools",
        ) from e


class ToolRunner:
    """Runs external tools under cancellation control."""

    def __init__(
        self,
        poll_interval: float = 0.5,
        kill_grace: float = 5.0,
    ) -> None:
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def run(
        self,
        argv: Sequence[str],
        log_name: str,
        session: ToolSession,
        stage: str | None = None,
    ) -> ToolResult:
        """Run a tool to completion.

        Args:
            argv: Command and arguments.
            log_name: Base name of the log file inside session.log_dir.
            session: Per-run tool context.
            stage: Stage name recorded on errors.

        Returns:
            ToolResult of a successful run.

        Raises:
            BuildCancelledError: If the token fires while the tool runs.
            CollaboratorError: If the tool cannot start or exits non-zero.
        """
        session.token.raise_if_cancelled()

        session.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = session.log_dir / f"{log_name}.log"
        cmd_str = shlex.join(argv)
        logger.info("Executing: %s", cmd_str)

        started_at = datetime.now(timezone.utc)
        with log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            try:
                proc = subprocess.Popen(
                    list(argv),
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                )
            except OSError as e:
                message = f"Failed to execute {argv[0]}: {e}"
                logger.error(message)
                raise CollaboratorError(
                    message, stage=stage, cause=e, log_path=str(log_path)
                ) from e

            session.tracker.add(proc.pid)
            try:
                exit_code = self._wait(proc, session.token)
            finally:
                session.tracker.discard(proc.pid)

        finished_at = datetime.now(timezone.utc)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

        if exit_code is None:
            logger.warning("Cancelled: %s", cmd_str)
            raise BuildCancelledError(f"Cancelled while running {argv[0]}")

        if exit_code != 0:
            message = f"{argv[0]} failed with exit code {exit_code}"
            logger.error("%s. See log: %s", message, log_path)
            raise CollaboratorError(
                message, stage=stage, exit_code=exit_code, log_path=str(log_path)
            )

        return ToolResult(
            exit_code=exit_code,
            log_path=log_path,
            command=cmd_str,
            started_at=started_at,
            finished_at=finished_at,
        )

    def _wait(self, proc: subprocess.Popen[Any], token: CancellationToken) -> int | None:
        """Poll a process until it exits; kill its tree on cancel.

        Returns:
            Exit code, or None if the run was cancelled.
        """
        while True:
            exit_code = proc.poll()
            if exit_code is not None:
                return exit_code
            if token.wait(self.poll_interval):
                terminate_process_tree(proc.pid, grace=self.kill_grace)
                try:
                    proc.wait(timeout=self.kill_grace + 1)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                return None

    def query(
        self,
        argv: Sequence[str],
        session: ToolSession,
        timeout: float = DEFAULT_QUERY_TIMEOUT,
        stage: str | None = None,
    ) -> str:
        """Run a short command and return its standard output.

        Args:
            argv: Command and arguments.
            session: Per-run tool context.
            timeout: Seconds before the command is abandoned.
            stage: Stage name recorded on errors.

        Returns:
            Stripped standard output.

        Raises:
            BuildCancelledError: If the run is already cancelled.
            CollaboratorError: If the command fails, times out or exits non-zero.
        """
        session.token.raise_if_cancelled()
        try:
            result = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
                stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired as e:
            raise CollaboratorError(
                f"{argv[0]} timed out after {timeout}s", stage=stage, cause=e
            ) from e
        except OSError as e:
            raise CollaboratorError(
                f"Failed to execute {argv[0]}: {e}", stage=stage, cause=e
            ) from e

        if result.returncode != 0:
            raise CollaboratorError(
                f"{argv[0]} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
                stage=stage,
                exit_code=result.returncode,
            )
        return result.stdout.strip()


def wait_interval(token: CancellationToken, seconds: float) -> None:
    """Sleep for a polling interval, raising if the run is cancelled."""
    if token.wait(seconds):
        raise BuildCancelledError()


def monotonic() -> float:
    """Monotonic clock, patchable in tests."""
    return time.monotonic()


__all__ = [
    "ToolResult",
    "ToolRunner",
    "ToolSession",
    "monotonic",
    "render_command",
    "wait_interval",
]
