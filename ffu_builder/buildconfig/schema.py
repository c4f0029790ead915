"""Pydantic models for the build configuration.

BuildConfiguration is an immutable snapshot of every resolved build
parameter. It is created once per run (see buildconfig.io) and never
mutated afterward; cache fingerprints and run paths derive from it.

Unknown keys in config files are ignored rather than merged.
"""

import re
import string
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ffu_builder.types import UpdateKind

# Placeholders available to artifact_name_template
ARTIFACT_NAME_FIELDS = ("edition", "release", "version", "architecture", "date", "run_id")

_UNSAFE_NAME_PATTERN = re.compile(r"[\\/:*?\"<>|]")


def infer_update_kind(file_name: str) -> UpdateKind:
    """Guess the kind of an update package from its file name.

    Args:
        file_name: Update package file name.

    Returns:
        Inferred UpdateKind (OTHER when nothing matches).
    """
    name = file_name.lower()
    if "ssu" in name or "servicingstack" in name or "servicing-stack" in name:
        return UpdateKind.SERVICING_STACK
    if "cumulative" in name or "lcu" in name:
        return UpdateKind.CUMULATIVE
    if "feature" in name or "enablement" in name:
        return UpdateKind.FEATURE
    return UpdateKind.OTHER


class _SourceSchema(BaseModel):
    """Where a downloadable item comes from."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str | None = Field(default=None, description="HTTP(S) download URL")
    path: Path | None = Field(default=None, description="Local file to copy instead")
    sha256: str | None = Field(default=None, description="Expected SHA-256 hex digest")

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str | None) -> str | None:
        """Validate the digest is 64 hex characters."""
        if v is None:
            return v
        if not re.fullmatch(r"[0-9a-fA-F]{64}", v):
            raise ValueError("sha256 must be 64 hexadecimal characters")
        return v.lower()

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate the URL scheme."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"url must be http(s), got '{v}'")
        return v


class DownloadSource(_SourceSchema):
    """A driver or application package to fetch.

    Attributes:
        name: Identifier, unique within its list (e.g. a driver model).
        file_name: Stored file name (derived from url/path if omitted).
    """

    name: Annotated[str, Field(min_length=1, max_length=255)]
    file_name: str | None = Field(default=None, description="Stored file name")

    @property
    def identifier(self) -> str:
        """Identifier used for work items and catalog lookups."""
        return self.name

    @property
    def target_name(self) -> str:
        """File name to store the download under."""
        if self.file_name:
            return self.file_name
        if self.url:
            tail = self.url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
            if tail:
                return tail
        if self.path:
            return self.path.name
        return self.name

    @property
    def storage_path(self) -> Path:
        """Location relative to the download directory of its kind.

        Each source gets its own directory named after it, so two
        sources whose URLs end in the same file name never collide.
        """
        return Path(self.name) / self.target_name

    @field_validator("name", "file_name")
    @classmethod
    def validate_safe_name(cls, v: str | None) -> str | None:
        """Validate names are usable as a single path component."""
        if v is None:
            return v
        if _UNSAFE_NAME_PATTERN.search(v) or v in (".", ".."):
            raise ValueError(f"'{v}' must be a bare file name")
        return v

    @model_validator(mode="after")
    def validate_origin(self) -> "DownloadSource":
        """Require a URL or a local path."""
        if self.url is None and self.path is None:
            raise ValueError(f"source '{self.name}' needs a url or a path")
        return self


class UpdatePackage(_SourceSchema):
    """An update package applied to the base image.

    Attributes:
        file_name: Package file name; part of the cache fingerprint.
        kind: Servicing kind; inferred from the file name when omitted.
    """

    file_name: Annotated[str, Field(min_length=1, max_length=255)]
    kind: UpdateKind | None = Field(default=None, description="Update kind")

    @property
    def identifier(self) -> str:
        """Identifier used for work items and catalog lookups."""
        return self.file_name

    @property
    def target_name(self) -> str:
        """File name to store the download under."""
        return self.file_name

    @property
    def storage_path(self) -> Path:
        """Location relative to the update download directory."""
        return Path(self.file_name)

    @property
    def effective_kind(self) -> UpdateKind:
        """Explicit kind, or the kind inferred from the file name."""
        return self.kind or infer_update_kind(self.file_name)

    @field_validator("file_name")
    @classmethod
    def validate_file_name(cls, v: str) -> str:
        """Validate file name has no path separators."""
        if _UNSAFE_NAME_PATTERN.search(v):
            raise ValueError(f"file_name must be a bare file name, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_origin(self) -> "UpdatePackage":
        """Require a URL or a local path."""
        if self.url is None and self.path is None:
            raise ValueError(f"update '{self.file_name}' needs a url or a path")
        return self


class VMOptions(BaseModel):
    """Options for the throwaway install VM."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name_prefix: str = Field(default="_FFU", min_length=1, max_length=40)
    memory_mb: int = Field(default=8192, ge=1024)
    processors: int = Field(default=4, ge=1, le=64)


class ToolCommands(BaseModel):
    """Argv templates for external tools.

    Each template is a list of arguments rendered with ``str.format``.
    Available placeholders are listed per field.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    # {image_source} {index} {target} {volume}
    apply_image: tuple[str, ...] = (
        "dism",
        "/Apply-Image",
        "/ImageFile:{image_source}",
        "/Index:{index}",
        "/ApplyDir:{volume}",
    )
    # {volume} {package}
    apply_package: tuple[str, ...] = (
        "dism",
        "/Image:{volume}",
        "/Add-Package",
        "/PackagePath:{package}",
    )
    # {volume} {driver_dir}
    add_drivers: tuple[str, ...] = (
        "dism",
        "/Image:{volume}",
        "/Add-Driver",
        "/Driver:{driver_dir}",
        "/Recurse",
    )
    # {volume} {destination} {name}
    capture: tuple[str, ...] = (
        "dism",
        "/Capture-FFU",
        "/ImageFile:{destination}",
        "/CaptureDrive:{volume}",
        "/Name:{name}",
    )
    # {artifact}
    optimize: tuple[str, ...] = (
        "dism",
        "/Optimize-FFU",
        "/ImageFile:{artifact}",
    )
    # {name} {disk} {memory_mb} {processors}
    vm_create: tuple[str, ...] = (
        "powershell",
        "-NoProfile",
        "-Command",
        "New-VM -Name '{name}' -Generation 2 -MemoryStartupBytes {memory_mb}MB "
        "-VHDPath '{disk}'; Set-VMProcessor -VMName '{name}' -Count {processors}",
    )
    # {name} {media}; media is the staged application directory
    vm_attach_media: tuple[str, ...] = (
        "powershell",
        "-NoProfile",
        "-Command",
        "oscdimg -n -m '{media}' '{media}.iso' | Out-Null; "
        "Add-VMDvdDrive -VMName '{name}' -Path '{media}.iso'",
    )
    # {name}
    vm_start: tuple[str, ...] = (
        "powershell",
        "-NoProfile",
        "-Command",
        "Start-VM -Name '{name}'",
    )
    # {name}; must print the power state (e.g. Running / Off)
    vm_state: tuple[str, ...] = (
        "powershell",
        "-NoProfile",
        "-Command",
        "(Get-VM -Name '{name}').State",
    )
    # {name}
    vm_destroy: tuple[str, ...] = (
        "powershell",
        "-NoProfile",
        "-Command",
        "Stop-VM -Name '{name}' -TurnOff -Force; Remove-VM -Name '{name}' -Force",
    )

    @field_validator("*")
    @classmethod
    def validate_template(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Validate templates are non-empty."""
        if not v or not v[0].strip():
            raise ValueError("command template must name an executable")
        return v


class BuildConfiguration(BaseModel):
    """Immutable snapshot of all resolved build parameters.

    Attributes:
        edition: OS edition to build (e.g. 'Pro').
        architecture: Target architecture.
        release: OS release number (e.g. 11).
        version: Version label (e.g. '24H2').
        optional_features: Optional features enabled in the image, in order.
        sector_size: Logical sector size of the target disk.
        image_source: Installation image to apply on a cache miss.
        image_index: Index of the edition inside image_source.
        updates: Update packages applied on a cache miss.
        drivers: Driver packages to download.
        apps: Application packages for the side media.
        download_drivers: Whether to run the acquire-drivers stage.
        install_apps: Whether to prepare application media.
        use_cache: Reuse and register cached base images.
        use_vm: Provision through a VM before capture.
        optimize: Run the optimizer over the captured image.
        devices: Devices to provision with the final image.
        artifact_name_template: Name of the final image.
        cleanup_current_run_only: Limit cancel cleanup to this run's files.
        keep_work_dir: Keep the run's scratch directory after success.
        vm: VM sizing options.
        tools: External tool command templates.
        work_dir: Root for per-run scratch directories.
        downloads_dir: Root for downloaded drivers, apps and updates.
        cache_dir: Base-image cache directory.
        output_dir: Directory for finished images.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Image identity
    edition: Annotated[str, Field(min_length=1, max_length=64)] = "Pro"
    architecture: Literal["x64", "arm64"] = "x64"
    release: int = Field(default=11, ge=10, le=99)
    version: Annotated[str, Field(min_length=1, max_length=32)] = "24H2"
    optional_features: tuple[str, ...] = ()
    sector_size: Literal[512, 4096] = 512

    # Inputs
    image_source: Path | None = None
    image_index: int = Field(default=1, ge=1)
    updates: tuple[UpdatePackage, ...] = ()
    drivers: tuple[DownloadSource, ...] = ()
    apps: tuple[DownloadSource, ...] = ()

    # Toggles
    download_drivers: bool = False
    install_apps: bool = False
    use_cache: bool = True
    use_vm: bool = True
    optimize: bool = True

    # Outputs
    devices: tuple[str, ...] = ()
    artifact_name_template: str = "{edition}_{release}_{version}_{architecture}_{date}.ffu"

    # Cleanup
    cleanup_current_run_only: bool = True
    keep_work_dir: bool = False

    vm: VMOptions = Field(default_factory=VMOptions)
    tools: ToolCommands = Field(default_factory=ToolCommands)

    # Resolved paths (filled from Settings when not configured)
    work_dir: Path | None = None
    downloads_dir: Path | None = None
    cache_dir: Path | None = None
    output_dir: Path | None = None

    @field_validator("optional_features", "devices")
    @classmethod
    def validate_string_tuple(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Validate entries are non-empty and free of whitespace."""
        for item in v:
            if not item or not item.strip():
                raise ValueError("list items must be non-empty strings")
            if any(ch.isspace() for ch in item):
                raise ValueError(f"list items must not contain whitespace, got '{item}'")
        return v

    @field_validator("artifact_name_template")
    @classmethod
    def validate_name_template(cls, v: str) -> str:
        """Validate the template only uses known placeholders."""
        fields = {name for _, name, _, _ in string.Formatter().parse(v) if name}
        unknown = fields - set(ARTIFACT_NAME_FIELDS)
        if unknown:
            raise ValueError(
                f"unknown placeholder(s) in artifact_name_template: {sorted(unknown)}"
            )
        if "/" in v or "\\" in v:
            raise ValueError("artifact_name_template must be a file name")
        return v

    @model_validator(mode="after")
    def validate_unique_identifiers(self) -> "BuildConfiguration":
        """Work item identifiers must be unique within each batch."""
        for label, entries in (
            ("updates", [u.identifier for u in self.updates]),
            ("drivers", [d.identifier for d in self.drivers]),
            ("apps", [a.identifier for a in self.apps]),
            ("devices", list(self.devices)),
        ):
            duplicates = sorted({e for e in entries if entries.count(e) > 1})
            if duplicates:
                raise ValueError(f"duplicate {label} entries: {duplicates}")
        return self


__all__ = [
    "ARTIFACT_NAME_FIELDS",
    "BuildConfiguration",
    "DownloadSource",
    "ToolCommands",
    "UpdatePackage",
    "VMOptions",
    "infer_update_kind",
]
