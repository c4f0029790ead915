"""Pipeline stages of an FFU build.

Stage order is fixed:

    validate-environment -> acquire-drivers -> validate-toolchain ->
    prepare-side-artifacts -> resolve-base-image -> apply-updates ->
    finalize-base-image -> provision-and-capture -> post-process ->
    distribute -> cleanup

Each stage has a progress anchor, a body and an optional cleanup that
undoes the stage's side effects when the run fails or is cancelled.
resolve-base-image is the cache decision point: on a hit the expensive
apply and update work is skipped.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ffu_builder.cache.fingerprint import compute_fingerprint
from ffu_builder.errors import BuildValidationError, CollaboratorError
from ffu_builder.pipeline.updates import order_updates
from ffu_builder.tasks.engine import (
    WorkItem,
    require_all_succeeded,
    require_any_succeeded,
    run_batch,
)
from ffu_builder.types import CleanupScope, PartitionHandle, StageName

if TYPE_CHECKING:
    from ffu_builder.buildconfig.schema import BuildConfiguration, DownloadSource, UpdatePackage
    from ffu_builder.cache.store import ArtifactCache
    from ffu_builder.config import Settings
    from ffu_builder.pipeline.collaborators import Collaborators, FetchBackend
    from ffu_builder.pipeline.state import RunState

logger = logging.getLogger(__name__)

WORKING_IMAGE_NAME = "base.vhdx"
CAPTURE_NAME = "capture.ffu"


@dataclass
class StageContext:
    """What a stage body or cleanup can reach."""

    config: BuildConfiguration
    state: RunState
    collaborators: Collaborators
    cache: ArtifactCache
    settings: Settings

    @property
    def downloads_root(self) -> Path:
        return self.config.downloads_dir or self.settings.downloads_dir

    @property
    def output_dir(self) -> Path:
        return self.config.output_dir or self.settings.output_dir


StageBody = Callable[[StageContext], None]
StageCleanup = Callable[[StageContext, CleanupScope], None]
StagePredicate = Callable[[StageContext], bool]


@dataclass(frozen=True)
class PipelineStage:
    """One ordered step of the pipeline.

    Attributes:
        name: Stage name.
        anchor: Progress percentage reported when the stage starts.
        body: Stage work.
        cleanup: Undo for the stage's side effects, if any.
        enabled: Predicate deciding whether the stage runs (default: always).
    """

    name: str
    anchor: int
    body: StageBody
    cleanup: StageCleanup | None = None
    enabled: StagePredicate | None = None

    def is_enabled(self, ctx: StageContext) -> bool:
        """Whether the stage runs for this context."""
        return self.enabled is None or self.enabled(ctx)


def _remove_tree(path: Path | None) -> None:
    if path is not None and path.exists():
        shutil.rmtree(path)
        logger.info("Removed %s", path)


def _remove_file(path: Path | None) -> None:
    if path is not None and path.exists():
        path.unlink()
        logger.info("Removed %s", path)


# Downloads


def _fetch_batch(
    ctx: StageContext,
    stage: str,
    kind: str,
    sources: Sequence[DownloadSource | UpdatePackage],
    fetcher: FetchBackend | None,
) -> list[WorkItem]:
    """Fetch a list of sources in parallel; every item must succeed.

    Each source lands at its own storage_path under the kind's download
    directory, so concurrent items never write the same file.
    """
    if fetcher is None:
        raise BuildValidationError(f"No download backend configured for {kind}")

    state = ctx.state
    destination = ctx.downloads_root / kind
    destination.mkdir(parents=True, exist_ok=True)
    task_type = f"{kind}-download"

    def handler(args: dict[str, Any]) -> Path:
        target = destination / args["storage_path"]
        existed = target.exists()
        path = fetcher.fetch(args["identifier"], target.parent, token=state.token)
        if not existed:
            state.record_fetched(stage, path)
        return path

    items = [
        WorkItem(
            identifier=source.identifier,
            task_type=task_type,
            task_arguments={
                "identifier": source.identifier,
                "storage_path": str(source.storage_path),
            },
        )
        for source in sources
    ]
    run_batch(
        items,
        {task_type: handler},
        ctx.settings.max_concurrent_downloads,
        channel=state.channel,
        token=state.token,
    )
    state.token.raise_if_cancelled()
    require_all_succeeded(items, f"{kind} downloads")
    return items


def _download_cleanup(stage: str, kind: str) -> StageCleanup:
    def cleanup(ctx: StageContext, scope: CleanupScope) -> None:
        root = ctx.downloads_root / kind
        for path in ctx.state.fetched_by(stage):
            _remove_file(path)
            if path.parent != root and path.parent.is_dir() and not any(path.parent.iterdir()):
                path.parent.rmdir()
        if scope == CleanupScope.ALL:
            _remove_tree(ctx.downloads_root / kind)

    return cleanup


# validate-environment


def validate_environment(ctx: StageContext) -> None:
    config, state, collaborators = ctx.config, ctx.state, ctx.collaborators

    if config.image_source is not None and not config.image_source.exists():
        raise BuildValidationError(
            f"image_source does not exist: {config.image_source}", field="image_source"
        )
    if config.image_source is None and not config.use_cache:
        raise BuildValidationError(
            "image_source is required when use_cache is off", field="image_source"
        )
    if _apps_enabled(ctx) and not config.use_vm:
        raise BuildValidationError(
            "install_apps needs use_vm: applications are installed inside the VM",
            field="install_apps",
        )
    if config.use_vm and collaborators.vm is None:
        raise BuildValidationError("use_vm is set but no VM provider is available", field="use_vm")
    if config.devices and collaborators.devices is None:
        raise BuildValidationError(
            "devices are listed but no device provisioner is available", field="devices"
        )

    if not state.work_dir.exists():
        state.work_dir.mkdir(parents=True)
        state.created_work_dir = True
    for path in (ctx.downloads_root, ctx.output_dir, ctx.cache.cache_dir):
        path.mkdir(parents=True, exist_ok=True)

    state.channel.log(
        f"Building {config.edition} {config.release} {config.version} "
        f"({config.architecture}), run {state.run_id}"
    )


def cleanup_environment(ctx: StageContext, scope: CleanupScope) -> None:
    if ctx.config.keep_work_dir:
        logger.info("Keeping work directory %s", ctx.state.work_dir)
        return
    if ctx.state.created_work_dir:
        _remove_tree(ctx.state.work_dir)


# acquire-drivers


def acquire_drivers(ctx: StageContext) -> None:
    items = _fetch_batch(
        ctx,
        StageName.ACQUIRE_DRIVERS.value,
        "drivers",
        ctx.config.drivers,
        ctx.collaborators.driver_fetcher,
    )
    ctx.state.driver_paths = [item.result_payload for item in items]


def _drivers_enabled(ctx: StageContext) -> bool:
    return ctx.config.download_drivers and bool(ctx.config.drivers)


# validate-toolchain


def validate_toolchain(ctx: StageContext) -> None:
    missing = ctx.collaborators.missing_tools(use_vm=ctx.config.use_vm)
    if missing:
        raise BuildValidationError(
            f"Required tools not found on PATH: {', '.join(missing)}", field="tools"
        )


# prepare-side-artifacts


def prepare_side_artifacts(ctx: StageContext) -> None:
    """Fetch applications and stage them as side media for the VM."""
    state = ctx.state
    items = _fetch_batch(
        ctx,
        StageName.PREPARE_SIDE_ARTIFACTS.value,
        "apps",
        ctx.config.apps,
        ctx.collaborators.app_fetcher,
    )
    state.app_paths = [item.result_payload for item in items]

    state.apps_dir = state.work_dir / "apps"
    for item in items:
        staged = state.apps_dir / item.identifier
        staged.mkdir(parents=True, exist_ok=True)
        shutil.copy2(item.result_payload, staged / item.result_payload.name)
    state.channel.log(f"Staged {len(state.app_paths)} application(s) in {state.apps_dir}")


def cleanup_side_artifacts(ctx: StageContext, scope: CleanupScope) -> None:
    _download_cleanup(StageName.PREPARE_SIDE_ARTIFACTS.value, "apps")(ctx, scope)
    _remove_tree(ctx.state.apps_dir)


def _apps_enabled(ctx: StageContext) -> bool:
    return ctx.config.install_apps and bool(ctx.config.apps)


# resolve-base-image


def resolve_base_image(ctx: StageContext) -> None:
    """Reuse a cached base image or apply the installation image."""
    config, state = ctx.config, ctx.state
    fingerprint = compute_fingerprint(config)
    state.fingerprint = fingerprint
    working = state.work_dir / WORKING_IMAGE_NAME

    if config.use_cache:
        manifest = ctx.cache.lookup(fingerprint)
        if manifest is not None:
            ctx.cache.materialize(manifest, working)
            state.cache_manifest = manifest
            state.used_cache = True
            state.base_image = PartitionHandle(image_path=working, volume=str(working))
            state.channel.log(f"Using cached base image {manifest.artifact_file_name}")
            return

    if config.image_source is None:
        raise BuildValidationError(
            "No cached base image matches and image_source is not set",
            field="image_source",
        )

    state.channel.log(f"Applying {config.image_source} (index {config.image_index})")
    state.base_image = ctx.collaborators.base_image.apply(
        config.image_source, working, config.image_index, state.session
    )


def cleanup_base_image(ctx: StageContext, scope: CleanupScope) -> None:
    handle = ctx.state.base_image
    _remove_file(handle.image_path if handle else ctx.state.work_dir / WORKING_IMAGE_NAME)


# apply-updates


def apply_updates(ctx: StageContext) -> None:
    """Download update packages, then apply them in servicing order."""
    config, state = ctx.config, ctx.state
    if state.base_image is None:
        raise CollaboratorError("No base image to update", stage=StageName.APPLY_UPDATES.value)

    items = _fetch_batch(
        ctx,
        StageName.APPLY_UPDATES.value,
        "updates",
        config.updates,
        ctx.collaborators.update_fetcher,
    )
    state.update_paths = {item.identifier: item.result_payload for item in items}

    ordered = order_updates(config.updates)
    span = 44 - 30
    for i, update in enumerate(ordered):
        state.token.raise_if_cancelled()
        state.channel.progress(
            30 + (span * i) // len(ordered),
            f"Applying {update.file_name} ({update.effective_kind.value})",
        )
        ctx.collaborators.updates.apply_package(
            state.base_image.volume, state.update_paths[update.file_name], state.session
        )


def _updates_enabled(ctx: StageContext) -> bool:
    return bool(ctx.config.updates) and not ctx.state.used_cache


# finalize-base-image


def finalize_base_image(ctx: StageContext) -> None:
    """Register a freshly built base image in the cache."""
    config, state = ctx.config, ctx.state
    if not config.use_cache or state.used_cache:
        return
    if state.base_image is None or state.fingerprint is None:
        raise CollaboratorError(
            "No base image to register", stage=StageName.FINALIZE_BASE_IMAGE.value
        )
    state.cache_manifest = ctx.cache.register(state.fingerprint, state.base_image.image_path)
    state.channel.log(f"Cached base image as {state.cache_manifest.artifact_file_name}")


# provision-and-capture


def provision_and_capture(ctx: StageContext) -> None:
    """Boot the base image in a VM (optional) and capture the result."""
    config, state, collaborators = ctx.config, ctx.state, ctx.collaborators
    if state.base_image is None:
        raise CollaboratorError(
            "No base image to capture", stage=StageName.PROVISION_AND_CAPTURE.value
        )
    session = state.session
    volume = state.base_image.volume

    # Drivers go into the working copy only; the cached base image stays driver-free.
    for path in state.driver_paths:
        state.token.raise_if_cancelled()
        state.channel.log(f"Adding drivers from {path.parent.name}")
        collaborators.updates.add_drivers(volume, path.parent, session)

    if config.use_vm:
        vm = collaborators.vm
        if vm is None or state.vm_name is None:
            raise BuildValidationError("use_vm is set but no VM is available", field="use_vm")
        vm.create(
            state.vm_name,
            state.base_image.image_path,
            config.vm,
            session,
            side_media=state.apps_dir,
        )
        state.vm_created = True
        vm.start(state.vm_name, session)
        state.channel.log(f"VM {state.vm_name} started, waiting for power-off")
        vm.wait_for_power_off(state.vm_name, session)
        vm.destroy(state.vm_name, session)
        state.vm_created = False

    state.capture_path = state.work_dir / CAPTURE_NAME
    state.channel.progress(70, "Capturing image")
    state.capture_path = collaborators.capture.capture(
        state.base_image.volume, state.capture_path, session
    )


def cleanup_provision(ctx: StageContext, scope: CleanupScope) -> None:
    state = ctx.state
    if state.vm_created and state.vm_name and ctx.collaborators.vm is not None:
        ctx.collaborators.vm.destroy(state.vm_name, state.session)
        state.vm_created = False
    _remove_file(state.capture_path)


# post-process


def render_artifact_name(config: BuildConfiguration, run_id: str, now: datetime | None = None) -> str:
    """Render the final image name from the configured template."""
    now = now or datetime.now()
    return config.artifact_name_template.format(
        edition=config.edition,
        release=config.release,
        version=config.version,
        architecture=config.architecture,
        date=now.strftime("%Y-%m-%d"),
        run_id=run_id,
    )


def post_process(ctx: StageContext) -> None:
    """Optimize the capture and move it to its final name."""
    config, state = ctx.config, ctx.state
    if state.capture_path is None:
        raise CollaboratorError("No captured image", stage=StageName.POST_PROCESS.value)

    if config.optimize and ctx.collaborators.optimizer is not None:
        state.channel.log("Optimizing captured image")
        ctx.collaborators.optimizer.optimize(state.capture_path, state.session)

    destination = ctx.output_dir / render_artifact_name(config, state.run_id)
    if destination.exists():
        destination = destination.with_name(
            f"{destination.stem}_{state.run_id}{destination.suffix}"
        )
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(state.capture_path), str(destination))
    state.artifact_path = destination
    state.channel.log(f"Image written to {destination}")


def cleanup_post_process(ctx: StageContext, scope: CleanupScope) -> None:
    _remove_file(ctx.state.artifact_path)


# distribute


def distribute(ctx: StageContext) -> None:
    """Provision every target device; fails only if all of them fail."""
    state = ctx.state
    provisioner = ctx.collaborators.devices
    if provisioner is None:
        raise BuildValidationError("No device provisioner configured", field="devices")
    artifact = state.artifact_path
    if artifact is None:
        raise CollaboratorError("No image to distribute", stage=StageName.DISTRIBUTE.value)

    def handler(args: dict[str, Any]) -> Any:
        volumes = provisioner.partition_and_format(args["device"])
        return provisioner.copy_artifact(volumes.volumes[0], artifact, token=state.token)

    items = [
        WorkItem(identifier=device, task_type="device-provision", task_arguments={"device": device})
        for device in ctx.config.devices
    ]
    run_batch(
        items,
        {"device-provision": handler},
        ctx.settings.max_concurrent_devices,
        channel=state.channel,
        token=state.token,
    )
    state.device_results = items
    state.token.raise_if_cancelled()

    for item in items:
        if item.failed:
            state.channel.log(f"WARNING: device {item.identifier} failed: {item.error_detail}")
    require_any_succeeded(items, "device writes")


def _devices_enabled(ctx: StageContext) -> bool:
    return bool(ctx.config.devices)


# cleanup


def final_cleanup(ctx: StageContext) -> None:
    """Remove the run's scratch space after a successful build."""
    state = ctx.state
    if ctx.config.keep_work_dir:
        state.channel.log(f"Keeping work directory {state.work_dir}")
    else:
        _remove_tree(state.work_dir)
    summary = "cached base image" if state.used_cache else "fresh base image"
    state.channel.log(f"Run {state.run_id} finished using a {summary}")


def default_stages() -> list[PipelineStage]:
    """The FFU build pipeline, in execution order."""
    return [
        PipelineStage(
            StageName.VALIDATE_ENVIRONMENT.value, 1, validate_environment, cleanup_environment
        ),
        PipelineStage(
            StageName.ACQUIRE_DRIVERS.value,
            5,
            acquire_drivers,
            _download_cleanup(StageName.ACQUIRE_DRIVERS.value, "drivers"),
            _drivers_enabled,
        ),
        PipelineStage(StageName.VALIDATE_TOOLCHAIN.value, 10, validate_toolchain),
        PipelineStage(
            StageName.PREPARE_SIDE_ARTIFACTS.value,
            12,
            prepare_side_artifacts,
            cleanup_side_artifacts,
            _apps_enabled,
        ),
        PipelineStage(
            StageName.RESOLVE_BASE_IMAGE.value, 15, resolve_base_image, cleanup_base_image
        ),
        PipelineStage(
            StageName.APPLY_UPDATES.value,
            30,
            apply_updates,
            _download_cleanup(StageName.APPLY_UPDATES.value, "updates"),
            _updates_enabled,
        ),
        PipelineStage(StageName.FINALIZE_BASE_IMAGE.value, 45, finalize_base_image),
        PipelineStage(
            StageName.PROVISION_AND_CAPTURE.value, 50, provision_and_capture, cleanup_provision
        ),
        PipelineStage(StageName.POST_PROCESS.value, 85, post_process, cleanup_post_process),
        PipelineStage(StageName.DISTRIBUTE.value, 90, distribute, enabled=_devices_enabled),
        PipelineStage(StageName.CLEANUP.value, 99, final_cleanup),
    ]


__all__ = [
    "PipelineStage",
    "StageContext",
    "default_stages",
    "render_artifact_name",
]
