"""Pipeline orchestrator.

Runs the stages of a build in their fixed order on the calling thread.
Before the first stage it sweeps any interrupted previous run and writes
a fresh run marker. It refuses to start while a live process holds the
marker.

On a stage failure (or cancellation) the cleanup of every entered stage
runs once, in reverse order, and the marker is removed. The run then
ends with a single BuildError naming the failed stage. A cleanup failure
is logged and never replaces the original error.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from ffu_builder.buildconfig.schema import BuildConfiguration
from ffu_builder.cache.store import ArtifactCache
from ffu_builder.config import Settings, get_settings
from ffu_builder.errors import (
    BuildCancelledError,
    BuildError,
    BuildValidationError,
    CollaboratorError,
)
from ffu_builder.pipeline.collaborators import Collaborators
from ffu_builder.pipeline.stages import PipelineStage, StageContext, default_stages
from ffu_builder.pipeline.state import RunState, new_run_id
from ffu_builder.progress import ProgressChannel
from ffu_builder.recovery.controller import RecoveryController, cleanup_scope
from ffu_builder.recovery.marker import create_marker, remove_marker
from ffu_builder.types import CleanupScope, StageName

logger = logging.getLogger(__name__)


class Orchestrator:
    """Sequences pipeline stages and unwinds them on failure.

    Args:
        collaborators: External collaborators the stages call.
        settings: Environment settings (loaded from the environment if omitted).
        stages: Stage list (the FFU pipeline if omitted).
        cache: Artifact cache (built from the configured cache_dir if omitted).
        channel: Progress channel (the settings' progress log if omitted).
    """

    def __init__(
        self,
        collaborators: Collaborators,
        settings: Settings | None = None,
        stages: Sequence[PipelineStage] | None = None,
        cache: ArtifactCache | None = None,
        channel: ProgressChannel | None = None,
    ) -> None:
        self.collaborators = collaborators
        self.settings = settings or get_settings()
        self.stages = list(stages) if stages is not None else default_stages()
        self._stages_by_name = {stage.name: stage for stage in self.stages}
        self._cache = cache
        self.channel = channel or ProgressChannel(self.settings.progress_log_path)
        self.recovery = RecoveryController(
            self.settings,
            channel=self.channel,
            unwind=self.unwind,
            vm=collaborators.vm,
        )

    def cache_for(self, config: BuildConfiguration) -> ArtifactCache:
        """The artifact cache a configuration uses."""
        if self._cache is not None:
            return self._cache
        return ArtifactCache(config.cache_dir or self.settings.cache_dir)

    def create_state(self, config: BuildConfiguration) -> RunState:
        """Create the state object of a new run.

        Callers that need to cancel a run create its state first and pass
        it to ``run``.
        """
        run_id = new_run_id()
        work_root = config.work_dir or self.settings.work_dir
        return RunState(
            run_id=run_id,
            config=config,
            work_dir=work_root / run_id,
            marker_path=self.settings.marker_path,
            channel=self.channel,
            vm_name=f"{config.vm.name_prefix}_{run_id}" if config.use_vm else None,
            log_dir=self.settings.state_dir / "logs" / run_id,
        )

    def context(self, state: RunState) -> StageContext:
        """Stage context for a run."""
        return StageContext(
            config=state.config,
            state=state,
            collaborators=self.collaborators,
            cache=self.cache_for(state.config),
            settings=self.settings,
        )

    def cancel(self, state: RunState) -> None:
        """Cancel a run in progress (see RecoveryController.cancel)."""
        self.recovery.cancel(state)

    def run(self, config: BuildConfiguration, state: RunState | None = None) -> Path:
        """Run the pipeline.

        Args:
            config: Resolved build configuration.
            state: Pre-created run state (from ``create_state``).

        Returns:
            Path of the final image.

        Raises:
            BuildError: If a stage fails or the run is cancelled.
        """
        if state is None:
            state = self.create_state(config)

        self.recovery.sweep_stale_run(state.marker_path)
        live = self.recovery.active_run(state.marker_path)
        if live is not None:
            error = BuildError(
                StageName.VALIDATE_ENVIRONMENT.value,
                BuildValidationError(
                    f"Run {live.run_id} (pid {live.pid}) is still in progress "
                    f"with marker {state.marker_path}"
                ),
            )
            state.channel.log(f"ERROR: {error.message}")
            raise error
        create_marker(state.marker_path, state.run_id, state.work_dir, state.vm_name)
        logger.info("Starting run %s", state.run_id)

        ctx = self.context(state)
        stage_name = StageName.VALIDATE_ENVIRONMENT.value
        try:
            for stage in self.stages:
                stage_name = stage.name
                state.token.raise_if_cancelled()
                if not stage.is_enabled(ctx):
                    logger.info("Skipping stage %s", stage.name)
                    continue
                state.enter(stage.name)
                state.channel.progress(stage.anchor, stage.name)
                stage.body(ctx)
            if state.artifact_path is None:
                raise CollaboratorError("Pipeline finished without an image")
        except Exception as e:
            self._fail(state, stage_name, e)

        remove_marker(state.marker_path)
        state.channel.progress(100, f"Build complete: {state.artifact_path}")
        return state.artifact_path

    def _fail(self, state: RunState, stage_name: str, exc: Exception) -> None:
        cause: BaseException = exc.cause if isinstance(exc, BuildError) else exc
        if state.token.cancelled and not isinstance(cause, BuildCancelledError):
            # A tool killed by the cancel reports its own failure
            cause = BuildCancelledError()
        error = BuildError(stage_name, cause)
        state.failed_stage = stage_name

        if error.cancelled:
            logger.warning("Run %s cancelled during %s", state.run_id, stage_name)
            state.channel.log(f"Run cancelled during stage {stage_name}")
        else:
            logger.error("Run %s failed in %s: %s", state.run_id, stage_name, cause)
            state.channel.log(
                f"ERROR: stage {stage_name} failed ({type(cause).__name__}): {cause}"
            )

        self.unwind(state, cleanup_scope(state.config.cleanup_current_run_only))
        remove_marker(state.marker_path)
        raise error from exc

    def unwind(self, state: RunState, scope: CleanupScope) -> None:
        """Run the cleanup of every entered stage, newest first.

        Each cleanup runs at most once per run, whether unwinding is
        triggered by a failure, a cancel, or both.

        Args:
            state: Run to unwind.
            scope: How much content cleanups may remove.
        """
        ctx = self.context(state)
        with state.unwind_lock:
            for name in reversed(list(state.entered)):
                stage = self._stages_by_name.get(name)
                if stage is None or stage.cleanup is None:
                    continue
                if not state.claim_cleanup(name):
                    continue
                logger.info("Cleaning up stage %s (%s)", name, scope.value)
                try:
                    stage.cleanup(ctx, scope)
                except Exception as e:
                    logger.warning("Cleanup of stage %s failed: %s", name, e)
                    state.channel.log(f"WARNING: cleanup of stage {name} failed: {e}")


__all__ = ["Orchestrator"]
