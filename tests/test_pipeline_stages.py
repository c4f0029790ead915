"""Tests for the FFU pipeline stages, run end to end with fake collaborators."""

import re
import threading
from datetime import datetime
from pathlib import Path

import pytest

from ffu_builder.backends.http import HttpFetchBackend
from ffu_builder.buildconfig.schema import BuildConfiguration, DownloadSource, UpdatePackage
from ffu_builder.config import Settings
from ffu_builder.errors import BuildError, CollaboratorError
from ffu_builder.pipeline.collaborators import Collaborators
from ffu_builder.pipeline.orchestrator import Orchestrator
from ffu_builder.pipeline.stages import render_artifact_name
from ffu_builder.pipeline.updates import order_updates
from ffu_builder.types import PartitionHandle, UpdateKind, VolumeSet

URL = "https://example.com/files/{}"


class FakeImageTools:
    """Stands in for the imaging tools."""

    def __init__(self, fail_capture: bool = False) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_capture = fail_capture
        self._lock = threading.Lock()

    def _record(self, name: str, arg: str) -> None:
        with self._lock:
            self.calls.append((name, arg))

    def names(self, name: str) -> list[str]:
        return [arg for call, arg in self.calls if call == name]

    def apply(self, image_source, target, index, session):
        self._record("apply", str(index))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(b"base image")
        return PartitionHandle(image_path=target, volume=str(target))

    def apply_package(self, volume, package_path, session):
        self._record("package", package_path.name)

    def add_drivers(self, volume, driver_dir, session):
        self._record("drivers", driver_dir.name)

    def capture(self, volume, destination, session):
        self._record("capture", volume)
        if self.fail_capture:
            raise CollaboratorError("capture tool exited with code 2", exit_code=2)
        destination.write_bytes(b"captured ffu")
        return destination

    def optimize(self, artifact, session):
        self._record("optimize", artifact.name)


class FakeFetcher:
    """Writes a file named after the identifier."""

    def __init__(self, failing: tuple[str, ...] = ()) -> None:
        self.failing = failing
        self.fetched: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, identifier, destination_dir, token=None):
        if identifier in self.failing:
            raise CollaboratorError(f"download of {identifier} failed")
        destination_dir.mkdir(parents=True, exist_ok=True)
        path = destination_dir / identifier
        path.write_bytes(identifier.encode())
        with self._lock:
            self.fetched.append(identifier)
        return path


class FakeVM:
    """Records VM lifecycle calls."""

    def __init__(self, fail_wait: bool = False) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_wait = fail_wait
        self.side_media: Path | None = None

    def create(self, name, disk, options, session, side_media=None):
        self.calls.append(("create", name))
        self.side_media = side_media

    def start(self, name, session):
        self.calls.append(("start", name))

    def wait_for_power_off(self, name, session):
        self.calls.append(("wait", name))
        if self.fail_wait:
            raise CollaboratorError(f"VM {name} did not power off")

    def destroy(self, name, session=None):
        self.calls.append(("destroy", name))


class FakeProvisioner:
    """Provisions devices, failing the listed ones."""

    def __init__(self, failing: tuple[str, ...] = ()) -> None:
        self.failing = failing
        self.written: list[str] = []
        self._lock = threading.Lock()

    def partition_and_format(self, device_id):
        if device_id in self.failing:
            raise CollaboratorError(f"{device_id} is not writable")
        return VolumeSet(device_id=device_id, volumes=[device_id])

    def copy_artifact(self, volume, artifact, token=None):
        with self._lock:
            self.written.append(volume)
        return "ok"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary directory."""
    return Settings(
        state_dir=tmp_path / "state",
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        downloads_dir=tmp_path / "downloads",
        output_dir=tmp_path / "out",
    )


@pytest.fixture
def image_source(tmp_path: Path) -> Path:
    """An installation image."""
    path = tmp_path / "install.wim"
    path.write_bytes(b"wim")
    return path


@pytest.fixture
def tools() -> FakeImageTools:
    """Fake imaging tools."""
    return FakeImageTools()


def _updates(*names: str) -> tuple[UpdatePackage, ...]:
    return tuple(UpdatePackage(file_name=n, url=URL.format(n)) for n in names)


def _collaborators(tools: FakeImageTools, **kwargs) -> Collaborators:
    kwargs.setdefault("update_fetcher", FakeFetcher())
    return Collaborators(
        base_image=tools, updates=tools, capture=tools, optimizer=tools, **kwargs
    )


class TestBuild:
    """Tests for complete builds."""

    def test_fresh_build(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """A build without cache applies, updates, captures and names the image."""
        config = BuildConfiguration(
            image_source=image_source,
            image_index=3,
            use_cache=False,
            use_vm=False,
            updates=_updates("windows11-cumulative-kb5.msu"),
        )
        orchestrator = Orchestrator(_collaborators(tools), settings=settings)
        state = orchestrator.create_state(config)

        artifact = orchestrator.run(config, state)

        assert artifact.parent == settings.output_dir
        assert artifact.read_bytes() == b"captured ffu"
        assert artifact.name == render_artifact_name(config, state.run_id)
        assert tools.names("apply") == ["3"]
        assert tools.names("package") == ["windows11-cumulative-kb5.msu"]
        assert tools.names("optimize") == ["capture.ffu"]
        assert not state.used_cache
        assert not state.work_dir.exists()
        assert list(settings.cache_dir.glob("*.json")) == []

    def test_cached_rebuild(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """The second identical build reuses the cached base image."""
        config = BuildConfiguration(
            image_source=image_source,
            use_vm=False,
            optional_features=("NetFx3",),
            updates=_updates("ssu-kb1.msu", "windows11-cumulative-kb2.msu"),
        )
        orchestrator = Orchestrator(_collaborators(tools), settings=settings)

        first = orchestrator.create_state(config)
        first_artifact = orchestrator.run(config, first)
        second = orchestrator.create_state(config)
        second_artifact = orchestrator.run(config, second)

        assert not first.used_cache
        assert second.used_cache
        assert second.cache_manifest == first.cache_manifest
        assert tools.names("apply") == ["1"]
        assert len(tools.names("package")) == 2
        assert len(tools.names("capture")) == 2
        assert first_artifact.exists()
        assert second_artifact.exists()
        assert second_artifact != first_artifact
        assert second_artifact.stem.endswith(second.run_id)

    def test_cache_off_never_hits(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """use_cache=False always applies the base image."""
        collaborators = _collaborators(tools)
        cached = BuildConfiguration(image_source=image_source, use_vm=False)
        Orchestrator(collaborators, settings=settings).run(cached)
        uncached = cached.model_copy(update={"use_cache": False})
        Orchestrator(collaborators, settings=settings).run(uncached)
        assert len(tools.names("apply")) == 2

    def test_updates_applied_in_servicing_order(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """Servicing stack first, then cumulative, then the rest."""
        config = BuildConfiguration(
            image_source=image_source,
            use_cache=False,
            use_vm=False,
            updates=_updates("kb-misc.msu", "windows11-cumulative-kb5.msu", "ssu-kb1.msu"),
        )
        Orchestrator(_collaborators(tools), settings=settings).run(config)
        assert tools.names("package") == [
            "ssu-kb1.msu",
            "windows11-cumulative-kb5.msu",
            "kb-misc.msu",
        ]

    def test_vm_lifecycle(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """The VM is created, started, awaited and destroyed before capture."""
        vm = FakeVM()
        orchestrator = Orchestrator(_collaborators(tools, vm=vm), settings=settings)
        config = BuildConfiguration(image_source=image_source, use_cache=False)
        state = orchestrator.create_state(config)
        orchestrator.run(config, state)

        assert [call for call, _ in vm.calls] == ["create", "start", "wait", "destroy"]
        assert {name for _, name in vm.calls} == {state.vm_name}
        assert not state.vm_created

    def test_drivers_and_apps(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """Drivers are added to the image; apps are attached to the VM."""
        drivers = FakeFetcher()
        apps = FakeFetcher()
        vm = FakeVM()
        config = BuildConfiguration(
            image_source=image_source,
            use_cache=False,
            download_drivers=True,
            install_apps=True,
            keep_work_dir=True,
            drivers=(
                DownloadSource(name="surface", url=URL.format("s.zip")),
                DownloadSource(name="dell", url=URL.format("d.zip")),
            ),
            apps=(DownloadSource(name="office", url=URL.format("o.exe")),),
        )
        orchestrator = Orchestrator(
            _collaborators(tools, driver_fetcher=drivers, app_fetcher=apps, vm=vm),
            settings=settings,
        )
        state = orchestrator.create_state(config)
        orchestrator.run(config, state)

        assert sorted(drivers.fetched) == ["dell", "surface"]
        assert apps.fetched == ["office"]
        assert tools.names("drivers") == ["surface", "dell"]
        assert tools.calls.index(("drivers", "dell")) < tools.calls.index(
            ("capture", str(state.work_dir / "base.vhdx"))
        )
        assert vm.side_media == state.work_dir / "apps"
        assert (vm.side_media / "office" / "office").read_bytes() == b"office"

    def test_same_file_names_kept_apart(
        self, settings: Settings, image_source: Path, tools: FakeImageTools, tmp_path: Path
    ) -> None:
        """Two drivers whose sources share a file name do not overwrite each other."""
        for vendor, content in (("dell", b"DELL"), ("hp", b"HP")):
            (tmp_path / vendor).mkdir()
            (tmp_path / vendor / "pack.cab").write_bytes(content)
        drivers = (
            DownloadSource(name="dell", path=tmp_path / "dell" / "pack.cab"),
            DownloadSource(name="hp", path=tmp_path / "hp" / "pack.cab"),
        )
        config = BuildConfiguration(
            image_source=image_source,
            use_cache=False,
            use_vm=False,
            download_drivers=True,
            drivers=drivers,
        )
        orchestrator = Orchestrator(
            _collaborators(tools, driver_fetcher=HttpFetchBackend(drivers)), settings=settings
        )
        state = orchestrator.create_state(config)
        orchestrator.run(config, state)

        assert [p.read_bytes() for p in state.driver_paths] == [b"DELL", b"HP"]
        assert len(set(state.driver_paths)) == 2
        assert tools.names("drivers") == ["dell", "hp"]

    def test_cache_manifest_for_reordered_updates(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """The cached base image is stored as img-<id>.bin and found for any update order."""
        config = BuildConfiguration(
            edition="Pro",
            sector_size=512,
            release=11,
            version="24H2",
            image_source=image_source,
            use_vm=False,
            updates=_updates("KB1", "KB2"),
        )
        orchestrator = Orchestrator(_collaborators(tools), settings=settings)
        first = orchestrator.create_state(config)
        orchestrator.run(config, first)

        manifest = first.cache_manifest
        assert manifest is not None
        assert re.fullmatch(r"img-[0-9a-f]{12}\.bin", manifest.artifact_file_name)
        assert manifest.applied_updates == ["KB1", "KB2"]

        reordered = config.model_copy(update={"updates": _updates("KB2", "KB1")})
        second = orchestrator.create_state(reordered)
        orchestrator.run(reordered, second)

        assert second.used_cache
        assert second.cache_manifest == manifest
        assert tools.names("apply") == ["1"]

    def test_apps_need_vm(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """Applications can only be installed through the VM."""
        config = BuildConfiguration(
            image_source=image_source,
            use_vm=False,
            install_apps=True,
            apps=(DownloadSource(name="office", url=URL.format("o.exe")),),
        )
        orchestrator = Orchestrator(
            _collaborators(tools, app_fetcher=FakeFetcher()), settings=settings
        )
        with pytest.raises(BuildError) as exc_info:
            orchestrator.run(config)
        assert exc_info.value.stage == "validate-environment"
        assert exc_info.value.code == "validation"

    def test_disabled_downloads_skipped(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """Listed drivers are not fetched unless download_drivers is set."""
        drivers = FakeFetcher()
        config = BuildConfiguration(
            image_source=image_source,
            use_cache=False,
            use_vm=False,
            drivers=(DownloadSource(name="surface", url=URL.format("s.zip")),),
        )
        Orchestrator(_collaborators(tools, driver_fetcher=drivers), settings=settings).run(config)
        assert drivers.fetched == []


class TestFailures:
    """Tests for failing builds."""

    def test_missing_image_source(self, settings: Settings, tools: FakeImageTools) -> None:
        """Without cache an image source is required."""
        config = BuildConfiguration(use_cache=False, use_vm=False)
        with pytest.raises(BuildError) as exc_info:
            Orchestrator(_collaborators(tools), settings=settings).run(config)
        assert exc_info.value.stage == "validate-environment"
        assert exc_info.value.code == "validation"

    def test_cache_miss_without_source(self, settings: Settings, tools: FakeImageTools) -> None:
        """A cache miss with no image source fails at resolve-base-image."""
        config = BuildConfiguration(use_vm=False)
        with pytest.raises(BuildError) as exc_info:
            Orchestrator(_collaborators(tools), settings=settings).run(config)
        assert exc_info.value.stage == "resolve-base-image"

    def test_capture_failure_unwinds(
        self, settings: Settings, image_source: Path
    ) -> None:
        """A capture failure removes the run's scratch space."""
        tools = FakeImageTools(fail_capture=True)
        orchestrator = Orchestrator(_collaborators(tools), settings=settings)
        config = BuildConfiguration(image_source=image_source, use_cache=False, use_vm=False)
        state = orchestrator.create_state(config)

        with pytest.raises(BuildError) as exc_info:
            orchestrator.run(config, state)

        assert exc_info.value.stage == "provision-and-capture"
        assert exc_info.value.code == "collaborator_failed"
        assert not state.work_dir.exists()
        assert not settings.marker_path.exists()
        assert list(settings.output_dir.iterdir()) == []

    def test_vm_destroyed_on_failure(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """A VM left running by a failure is destroyed during unwind."""
        vm = FakeVM(fail_wait=True)
        orchestrator = Orchestrator(_collaborators(tools, vm=vm), settings=settings)
        config = BuildConfiguration(image_source=image_source, use_cache=False)

        with pytest.raises(BuildError):
            orchestrator.run(config)

        assert [call for call, _ in vm.calls] == ["create", "start", "wait", "destroy"]

    def test_download_failure_removes_fetched_files(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """One failed driver fails the stage; files this run fetched are removed."""
        drivers = FakeFetcher(failing=("dell",))
        config = BuildConfiguration(
            image_source=image_source,
            use_cache=False,
            use_vm=False,
            download_drivers=True,
            drivers=(
                DownloadSource(name="surface", file_name="surface", url=URL.format("s.zip")),
                DownloadSource(name="dell", file_name="dell", url=URL.format("d.zip")),
            ),
        )
        with pytest.raises(BuildError) as exc_info:
            Orchestrator(_collaborators(tools, driver_fetcher=drivers), settings=settings).run(
                config
            )

        assert exc_info.value.stage == "acquire-drivers"
        assert "dell" in str(exc_info.value)
        assert not (settings.downloads_dir / "drivers" / "surface" / "surface").exists()
        assert not (settings.downloads_dir / "drivers" / "surface").exists()

    def test_cached_entry_survives_failure(
        self, settings: Settings, image_source: Path
    ) -> None:
        """A base image registered before the failure stays cached."""
        tools = FakeImageTools(fail_capture=True)
        config = BuildConfiguration(image_source=image_source, use_vm=False)
        with pytest.raises(BuildError):
            Orchestrator(_collaborators(tools), settings=settings).run(config)
        assert len(list(settings.cache_dir.glob("*.json"))) == 1


class TestDistribute:
    """Tests for the distribute stage."""

    def test_partial_failure_tolerated(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """The run succeeds when at least one device succeeds."""
        provisioner = FakeProvisioner(failing=("/dev/sdx",))
        orchestrator = Orchestrator(
            _collaborators(tools, devices=provisioner), settings=settings
        )
        config = BuildConfiguration(
            image_source=image_source,
            use_cache=False,
            use_vm=False,
            devices=("/dev/sdx", "/dev/sdy", "/dev/sdz"),
        )
        state = orchestrator.create_state(config)
        orchestrator.run(config, state)

        assert sorted(provisioner.written) == ["/dev/sdy", "/dev/sdz"]
        assert state.failed_devices == ["/dev/sdx"]

    def test_all_devices_failing(
        self, settings: Settings, image_source: Path, tools: FakeImageTools
    ) -> None:
        """The run fails when every device fails."""
        provisioner = FakeProvisioner(failing=("/dev/sdx", "/dev/sdy"))
        config = BuildConfiguration(
            image_source=image_source,
            use_cache=False,
            use_vm=False,
            devices=("/dev/sdx", "/dev/sdy"),
        )
        with pytest.raises(BuildError) as exc_info:
            Orchestrator(_collaborators(tools, devices=provisioner), settings=settings).run(
                config
            )
        assert exc_info.value.stage == "distribute"


class TestHelpers:
    """Tests for naming and ordering helpers."""

    def test_render_artifact_name(self) -> None:
        """Placeholders are filled from the configuration."""
        config = BuildConfiguration(
            edition="Enterprise",
            release=11,
            version="24H2",
            architecture="arm64",
            artifact_name_template="{edition}-{release}-{version}-{architecture}-{date}-{run_id}.ffu",
        )
        name = render_artifact_name(config, "abc", now=datetime(2025, 3, 1))
        assert name == "Enterprise-11-24H2-arm64-2025-03-01-abc.ffu"

    def test_order_updates_stable(self) -> None:
        """Within a kind the configured order is kept."""
        updates = (
            UpdatePackage(file_name="b.msu", url=URL.format("b"), kind=UpdateKind.CUMULATIVE),
            UpdatePackage(file_name="a.msu", url=URL.format("a")),
            UpdatePackage(file_name="c.msu", url=URL.format("c"), kind=UpdateKind.CUMULATIVE),
            UpdatePackage(file_name="s.msu", url=URL.format("s"), kind=UpdateKind.SERVICING_STACK),
        )
        assert [u.file_name for u in order_updates(updates)] == [
            "s.msu",
            "b.msu",
            "c.msu",
            "a.msu",
        ]
