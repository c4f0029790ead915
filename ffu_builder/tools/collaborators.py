"""Command-line implementations of the imaging and VM collaborators.

Every call renders an argv template from ToolCommands and runs it through
ToolRunner, so the tools are swappable through configuration.
"""

import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from ffu_builder.buildconfig.schema import ToolCommands, VMOptions
from ffu_builder.errors import CollaboratorError
from ffu_builder.recovery.processes import ProcessTracker
from ffu_builder.tools.runner import (
    ToolRunner,
    ToolSession,
    monotonic,
    render_command,
    wait_interval,
)
from ffu_builder.types import PartitionHandle

logger = logging.getLogger(__name__)

# VM power states reported by the state command that count as "off"
POWERED_OFF_STATES = frozenset({"off", "stopped", "poweredoff"})


def _missing(templates: Iterable[tuple[str, ...]]) -> list[str]:
    missing: list[str] = []
    for template in templates:
        executable = template[0]
        if shutil.which(executable) is None and executable not in missing:
            missing.append(executable)
    return missing


class CommandImageTools:
    """Base-image provider, update applier, capture provider and optimizer."""

    def __init__(self, tools: ToolCommands, runner: ToolRunner) -> None:
        self.tools = tools
        self.runner = runner

    def missing_tools(self) -> list[str]:
        """Executables named by the templates that are not on PATH."""
        return _missing(
            [
                self.tools.apply_image,
                self.tools.apply_package,
                self.tools.capture,
                self.tools.optimize,
            ]
        )

    def apply(
        self,
        image_source: Path,
        target: Path,
        index: int,
        session: ToolSession,
    ) -> PartitionHandle:
        """Apply an installation image onto a working volume.

        Args:
            image_source: Installation image.
            target: Working image path.
            index: Edition index inside the image.
            session: Per-run tool context.

        Returns:
            Handle to the applied volume.
        """
        target.parent.mkdir(parents=True, exist_ok=True)
        argv = render_command(
            self.tools.apply_image,
            image_source=image_source,
            index=index,
            target=target,
            volume=target,
        )
        self.runner.run(argv, "apply-image", session, stage="resolve-base-image")
        return PartitionHandle(image_path=target, volume=str(target))

    def apply_package(self, volume: str, package_path: Path, session: ToolSession) -> None:
        """Apply one update package to a volume."""
        argv = render_command(self.tools.apply_package, volume=volume, package=package_path)
        self.runner.run(
            argv, f"apply-package-{package_path.stem}", session, stage="apply-updates"
        )

    def add_drivers(self, volume: str, driver_dir: Path, session: ToolSession) -> None:
        """Add every driver found under a directory to a volume.

        Runs against the working copy after the base image was cached, so
        its executable is checked when it runs rather than in missing_tools.
        """
        argv = render_command(self.tools.add_drivers, volume=volume, driver_dir=driver_dir)
        self.runner.run(
            argv, f"add-drivers-{driver_dir.name}", session, stage="provision-and-capture"
        )

    def capture(self, volume: str, destination: Path, session: ToolSession) -> Path:
        """Capture a volume into an image file.

        Raises:
            CollaboratorError: If the tool exits cleanly without output.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        argv = render_command(
            self.tools.capture,
            volume=volume,
            destination=destination,
            name=destination.stem,
        )
        self.runner.run(argv, "capture", session, stage="provision-and-capture")
        if not destination.is_file():
            raise CollaboratorError(
                f"Capture finished but {destination} was not created",
                stage="provision-and-capture",
            )
        return destination

    def optimize(self, artifact: Path, session: ToolSession) -> None:
        """Optimize a captured image in place."""
        argv = render_command(self.tools.optimize, artifact=artifact)
        self.runner.run(argv, "optimize", session, stage="post-process")


class CommandVMProvider:
    """VM lifecycle through hypervisor command templates.

    Only the "running" and "off" states are interpreted; anything the
    state command prints other than an off state counts as running.
    """

    def __init__(
        self,
        tools: ToolCommands,
        runner: ToolRunner,
        log_dir: Path,
        poll_interval: float = 5.0,
        power_off_timeout: float | None = None,
    ) -> None:
        self.tools = tools
        self.runner = runner
        self.log_dir = log_dir
        self.poll_interval = poll_interval
        self.power_off_timeout = power_off_timeout

    def missing_tools(self) -> list[str]:
        """Executables named by the templates that are not on PATH."""
        return _missing(
            [
                self.tools.vm_create,
                self.tools.vm_start,
                self.tools.vm_state,
                self.tools.vm_destroy,
            ]
        )

    def create(
        self,
        name: str,
        disk: Path,
        options: VMOptions,
        session: ToolSession,
        side_media: Path | None = None,
    ) -> None:
        """Create a VM booting from a disk image.

        Args:
            name: VM name.
            disk: Disk image to boot from.
            options: VM sizing.
            session: Per-run tool context.
            side_media: Staged application directory to attach, if any.
        """
        argv = render_command(
            self.tools.vm_create,
            name=name,
            disk=disk,
            memory_mb=options.memory_mb,
            processors=options.processors,
        )
        self.runner.run(argv, "vm-create", session, stage="provision-and-capture")
        if side_media is not None:
            argv = render_command(self.tools.vm_attach_media, name=name, media=side_media)
            self.runner.run(argv, "vm-attach-media", session, stage="provision-and-capture")

    def start(self, name: str, session: ToolSession) -> None:
        """Start a VM."""
        argv = render_command(self.tools.vm_start, name=name)
        self.runner.run(argv, "vm-start", session, stage="provision-and-capture")

    def state(self, name: str, session: ToolSession) -> str:
        """Query a VM's power state."""
        argv = render_command(self.tools.vm_state, name=name)
        return self.runner.query(argv, session, stage="provision-and-capture")

    def is_off(self, name: str, session: ToolSession) -> bool:
        """Whether the VM reports a powered-off state."""
        state = self.state(name, session).strip().lower().replace(" ", "")
        return state in POWERED_OFF_STATES

    def wait_for_power_off(self, name: str, session: ToolSession) -> None:
        """Poll until the VM powers off.

        Checks the cancellation token at every interval. Waits without
        bound unless power_off_timeout is set.

        Raises:
            BuildCancelledError: If the run is cancelled while waiting.
            CollaboratorError: If the timeout elapses.
        """
        started = monotonic()
        logger.info("Waiting for VM %s to power off", name)
        while not self.is_off(name, session):
            if (
                self.power_off_timeout is not None
                and monotonic() - started >= self.power_off_timeout
            ):
                raise CollaboratorError(
                    f"VM {name} did not power off within {self.power_off_timeout}s",
                    stage="provision-and-capture",
                )
            wait_interval(session.token, self.poll_interval)
        logger.info("VM %s is off", name)

    def destroy(self, name: str, session: ToolSession | None = None) -> None:
        """Turn off and remove a VM.

        Runs even after the run's token has fired, since it is called
        from cleanup.
        """
        cleanup_session = ToolSession(
            log_dir=session.log_dir if session is not None else self.log_dir,
            tracker=session.tracker if session is not None else ProcessTracker(),
        )
        argv = render_command(self.tools.vm_destroy, name=name)
        self.runner.run(argv, "vm-destroy", cleanup_session)


__all__ = ["POWERED_OFF_STATES", "CommandImageTools", "CommandVMProvider"]
