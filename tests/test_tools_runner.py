"""Tests for tools/runner.py and tools/collaborators.py.

External tools are stood in for by ``sh -c`` snippets.
"""

import shutil
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from ffu_builder.buildconfig.schema import ToolCommands, VMOptions
from ffu_builder.errors import BuildCancelledError, BuildValidationError, CollaboratorError
from ffu_builder.recovery.token import CancellationToken
from ffu_builder.tools.collaborators import CommandImageTools, CommandVMProvider
from ffu_builder.tools.runner import ToolRunner, ToolSession, render_command

pytestmark = pytest.mark.skipif(shutil.which("sh") is None, reason="requires sh")


@pytest.fixture
def session(tmp_path: Path) -> ToolSession:
    """A tool session logging under tmp_path."""
    return ToolSession(log_dir=tmp_path / "logs")


@pytest.fixture
def runner() -> ToolRunner:
    """A fast-polling runner."""
    return ToolRunner(poll_interval=0.05, kill_grace=1.0)


class TestRenderCommand:
    """Tests for render_command."""

    def test_render(self) -> None:
        """Placeholders are substituted per argument."""
        argv = render_command(("dism", "/Image:{volume}", "/Index:{index}"), volume="C:", index=2)
        assert argv == ["dism", "/Image:C:", "/Index:2"]

    def test_unknown_placeholder(self) -> None:
        """Unknown placeholders are a validation error on the tools field."""
        with pytest.raises(BuildValidationError) as exc_info:
            render_command(("tool", "{missing}"), volume="C:")
        assert exc_info.value.field == "tools"


class TestToolRunner:
    """Tests for ToolRunner.run and query."""

    def test_success_logs_output(self, runner: ToolRunner, session: ToolSession) -> None:
        """Output and a header/footer go to the log file."""
        result = runner.run(["sh", "-c", "echo applying"], "apply", session)

        assert result.exit_code == 0
        assert result.log_path == session.log_dir / "apply.log"
        content = result.log_path.read_text()
        assert "# Command: sh -c 'echo applying'" in content
        assert "applying" in content
        assert "# Exit code: 0" in content
        assert len(session.tracker) == 0

    def test_non_zero_exit(self, runner: ToolRunner, session: ToolSession) -> None:
        """A failing tool raises with exit code and log path."""
        with pytest.raises(CollaboratorError) as exc_info:
            runner.run(["sh", "-c", "echo broken >&2; exit 3"], "capture", session, "capture")

        error = exc_info.value
        assert error.exit_code == 3
        assert error.stage == "capture"
        assert error.log_path == str(session.log_dir / "capture.log")
        assert "broken" in Path(error.log_path).read_text()

    def test_missing_executable(self, runner: ToolRunner, session: ToolSession) -> None:
        """A tool that cannot start is a collaborator error."""
        with pytest.raises(CollaboratorError, match="Failed to execute"):
            runner.run(["definitely-not-a-real-tool-xyz"], "nope", session)

    def test_cancelled_before_start(self, runner: ToolRunner, session: ToolSession) -> None:
        """Nothing is started once the token has fired."""
        session.token.cancel()
        with pytest.raises(BuildCancelledError):
            runner.run(["sh", "-c", "exit 0"], "never", session)
        assert not (session.log_dir / "never.log").exists()

    def test_cancel_kills_running_tool(self, runner: ToolRunner, session: ToolSession) -> None:
        """Firing the token stops a running tool."""
        timer = threading.Timer(0.2, session.token.cancel)
        timer.start()
        try:
            with pytest.raises(BuildCancelledError):
                runner.run(["sh", "-c", "sleep 30"], "long", session)
        finally:
            timer.cancel()
        assert len(session.tracker) == 0

    def test_query(self, runner: ToolRunner, session: ToolSession) -> None:
        """query() returns stripped stdout."""
        assert runner.query(["sh", "-c", "echo '  Off  '"], session) == "Off"

    def test_query_failure(self, runner: ToolRunner, session: ToolSession) -> None:
        """A failing query raises with stderr in the message."""
        with pytest.raises(CollaboratorError, match="no such vm"):
            runner.query(["sh", "-c", "echo 'no such vm' >&2; exit 1"], session)


class TestCommandImageTools:
    """Tests for CommandImageTools."""

    def test_apply_renders_template(self, tmp_path: Path, session: ToolSession) -> None:
        """apply() renders the template and returns a handle."""
        tools = ToolCommands(apply_image=("sh", "-c", "echo {image_source} {index} > {target}"))
        runner = ToolRunner(poll_interval=0.05)
        target = tmp_path / "work" / "base.vhdx"

        handle = CommandImageTools(tools, runner).apply(
            tmp_path / "install.wim", target, 3, session
        )

        assert handle.image_path == target
        assert handle.volume == str(target)
        assert target.read_text().strip() == f"{tmp_path / 'install.wim'} 3"

    def test_capture_requires_output(self, tmp_path: Path, session: ToolSession) -> None:
        """A capture tool that writes nothing is an error."""
        tools = ToolCommands(capture=("sh", "-c", "exit 0"))
        image_tools = CommandImageTools(tools, ToolRunner(poll_interval=0.05))
        with pytest.raises(CollaboratorError, match="was not created"):
            image_tools.capture("vol", tmp_path / "capture.ffu", session)

    def test_capture(self, tmp_path: Path, session: ToolSession) -> None:
        """capture() returns the produced file."""
        tools = ToolCommands(capture=("sh", "-c", "echo ffu > {destination}"))
        image_tools = CommandImageTools(tools, ToolRunner(poll_interval=0.05))
        dest = tmp_path / "capture.ffu"
        assert image_tools.capture("vol", dest, session) == dest

    def test_add_drivers(self, tmp_path: Path, session: ToolSession) -> None:
        """add_drivers() passes the volume and driver directory to the tool."""
        tools = ToolCommands(add_drivers=("sh", "-c", "echo {volume} {driver_dir}"))
        driver_dir = tmp_path / "drivers" / "dell"
        CommandImageTools(tools, ToolRunner(poll_interval=0.05)).add_drivers(
            "vol", driver_dir, session
        )
        log = (session.log_dir / "add-drivers-dell.log").read_text()
        assert f"vol {driver_dir}" in log

    def test_missing_tools(self) -> None:
        """Executables absent from PATH are reported once each."""
        tools = ToolCommands(
            apply_image=("no-such-imaging-tool", "a"),
            apply_package=("no-such-imaging-tool", "b"),
            capture=("sh", "-c", "true"),
            optimize=("sh", "-c", "true"),
        )
        assert CommandImageTools(tools, ToolRunner()).missing_tools() == [
            "no-such-imaging-tool"
        ]


class TestCommandVMProvider:
    """Tests for CommandVMProvider."""

    def _provider(self, tmp_path: Path, state_output: str, **kwargs: object) -> CommandVMProvider:
        tools = ToolCommands(
            vm_create=("sh", "-c", "echo create {name} {disk} {memory_mb} {processors}"),
            vm_start=("sh", "-c", "echo start {name}"),
            vm_state=("sh", "-c", f"echo {state_output}"),
            vm_destroy=("sh", "-c", "echo destroy {name}"),
            vm_attach_media=("sh", "-c", "echo attach {name} {media}"),
        )
        return CommandVMProvider(
            tools, ToolRunner(poll_interval=0.05), tmp_path / "logs", poll_interval=0.05, **kwargs
        )

    def test_lifecycle(self, tmp_path: Path, session: ToolSession) -> None:
        """create, start, wait and destroy run their templates."""
        vm = self._provider(tmp_path, "Off")
        vm.create("_FFU_1", tmp_path / "base.vhdx", VMOptions(memory_mb=4096), session)
        vm.start("_FFU_1", session)
        vm.wait_for_power_off("_FFU_1", session)
        vm.destroy("_FFU_1", session)

        assert "create _FFU_1" in (session.log_dir / "vm-create.log").read_text()
        assert "4096" in (session.log_dir / "vm-create.log").read_text()
        assert "destroy _FFU_1" in (session.log_dir / "vm-destroy.log").read_text()
        assert not (session.log_dir / "vm-attach-media.log").exists()

    def test_side_media_attached(self, tmp_path: Path, session: ToolSession) -> None:
        """Staged applications are attached right after the VM is created."""
        vm = self._provider(tmp_path, "Off")
        apps = tmp_path / "work" / "apps"
        vm.create("_FFU_1", tmp_path / "base.vhdx", VMOptions(), session, side_media=apps)
        log = (session.log_dir / "vm-attach-media.log").read_text()
        assert f"attach _FFU_1 {apps}" in log

    def test_power_off_timeout(self, tmp_path: Path, session: ToolSession) -> None:
        """A VM that never powers off fails after the timeout."""
        vm = self._provider(tmp_path, "Running", power_off_timeout=0.2)
        with pytest.raises(CollaboratorError, match="did not power off"):
            vm.wait_for_power_off("_FFU_1", session)

    def test_power_off_wait_cancelled(self, tmp_path: Path, session: ToolSession) -> None:
        """Cancelling stops the power-off wait."""
        vm = self._provider(tmp_path, "Running")
        timer = threading.Timer(0.2, session.token.cancel)
        timer.start()
        try:
            with pytest.raises(BuildCancelledError):
                vm.wait_for_power_off("_FFU_1", session)
        finally:
            timer.cancel()

    def test_destroy_runs_after_cancel(self, tmp_path: Path, session: ToolSession) -> None:
        """destroy() is a cleanup call and ignores the fired token."""
        session.token.cancel()
        vm = self._provider(tmp_path, "Off")
        vm.destroy("_FFU_1", session)
        assert (session.log_dir / "vm-destroy.log").exists()

    def test_destroy_without_session(self, tmp_path: Path) -> None:
        """Without a session the provider's own log dir is used."""
        vm = self._provider(tmp_path, "Off")
        vm.destroy("_FFU_stale")
        assert (tmp_path / "logs" / "vm-destroy.log").exists()

    def test_state_normalized(self, tmp_path: Path, session: ToolSession) -> None:
        """Power states are compared case-insensitively."""
        vm = self._provider(tmp_path, "'Powered Off'")
        assert vm.is_off("_FFU_1", session)

    def test_timeout_uses_patchable_clock(self, tmp_path: Path, session: ToolSession) -> None:
        """The timeout is measured on the module clock."""
        vm = self._provider(tmp_path, "Running", power_off_timeout=100)
        clock = MagicMock(side_effect=[0.0, 50.0, 150.0])
        with (
            patch("ffu_builder.tools.collaborators.monotonic", clock),
            pytest.raises(CollaboratorError),
        ):
            vm.wait_for_power_off("_FFU_1", session)
