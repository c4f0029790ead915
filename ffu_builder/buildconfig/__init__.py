"""Build configuration module.

This module handles:
- The immutable BuildConfiguration schema
- Loading YAML/JSON config files
- Merging defaults, config file values and CLI overrides
"""

from ffu_builder.buildconfig.io import resolve_build_configuration
from ffu_builder.buildconfig.schema import (
    BuildConfiguration,
    DownloadSource,
    ToolCommands,
    UpdatePackage,
    VMOptions,
)

__all__ = [
    "BuildConfiguration",
    "DownloadSource",
    "ToolCommands",
    "UpdatePackage",
    "VMOptions",
    "resolve_build_configuration",
]
