"""Build configuration loading and resolution.

A BuildConfiguration is resolved once per run from three layers, later
layers winning:

1. Built-in defaults (the schema's field defaults)
2. A YAML or JSON config file
3. Dotted ``key=value`` overrides from the command line

Directory fields left unset are then filled from Settings. The result is
frozen; nothing downstream mutates it.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ffu_builder.buildconfig.schema import BuildConfiguration
from ffu_builder.config import Settings, get_settings
from ffu_builder.errors import BuildValidationError

logger = logging.getLogger(__name__)

YAML_SUFFIXES = {".yaml", ".yml"}
JSON_SUFFIXES = {".json"}


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_config_file(path: Path) -> dict[str, Any]:
    """Load a build config file, picking the parser from the suffix.

    Args:
        path: Path to a .yaml/.yml or .json file.

    Returns:
        Raw configuration mapping.

    Raises:
        BuildValidationError: If the file is missing, unsupported or malformed.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in YAML_SUFFIXES:
            return load_yaml(path)
        if suffix in JSON_SUFFIXES:
            return load_json(path)
    except FileNotFoundError as e:
        raise BuildValidationError(f"Config file not found: {path}") from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise BuildValidationError(f"Invalid config file {path}: {e}") from e

    raise BuildValidationError(
        f"Unsupported config file type '{path.suffix}' (use .yaml, .yml or .json)"
    )


def parse_override(override: str) -> dict[str, Any]:
    """Parse a ``dotted.key=value`` override into a nested mapping.

    Values are parsed as YAML scalars/flow collections, so ``true``,
    ``4096`` and ``[NetFx3, Hyper-V]`` get their natural types.

    Args:
        override: Override expression.

    Returns:
        Nested dictionary with a single leaf.

    Raises:
        BuildValidationError: If the expression is malformed.
    """
    key, sep, raw_value = override.partition("=")
    key = key.strip()
    if not sep or not key:
        raise BuildValidationError(
            f"Override must look like key=value, got '{override}'"
        )

    try:
        value = yaml.safe_load(raw_value) if raw_value.strip() else ""
    except yaml.YAMLError:
        value = raw_value

    parts = key.split(".")
    if any(not p for p in parts):
        raise BuildValidationError(f"Invalid override key '{key}'", field=key)

    result: dict[str, Any] = {}
    node = result
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value
    return result


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge two mappings; nested mappings merge, everything else replaces.

    Args:
        base: Lower-precedence mapping.
        overlay: Higher-precedence mapping.

    Returns:
        New merged mapping (inputs are not modified).
    """
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _format_validation_error(error: ValidationError) -> tuple[str, str | None]:
    first = error.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    message = first.get("msg", str(error))
    if loc:
        return f"Invalid build configuration: {loc}: {message}", loc
    return f"Invalid build configuration: {message}", None


def parse_build_configuration(data: dict[str, Any]) -> BuildConfiguration:
    """Validate raw configuration data.

    Args:
        data: Merged configuration mapping.

    Returns:
        Validated BuildConfiguration.

    Raises:
        BuildValidationError: If the data does not match the schema.
    """
    try:
        return BuildConfiguration.model_validate(data)
    except ValidationError as e:
        message, field = _format_validation_error(e)
        raise BuildValidationError(message, field=field) from e


def resolve_build_configuration(
    path: Path | None = None,
    overrides: list[str] | None = None,
    settings: Settings | None = None,
    data: dict[str, Any] | None = None,
) -> BuildConfiguration:
    """Resolve the immutable configuration for a run.

    Args:
        path: Optional YAML/JSON config file.
        overrides: Optional ``key=value`` overrides (highest precedence).
        settings: Settings used to fill unset directories.
        data: Optional in-memory mapping applied between file and overrides.

    Returns:
        Frozen BuildConfiguration with all directories resolved.

    Raises:
        BuildValidationError: If any layer is invalid.
    """
    if settings is None:
        settings = get_settings()

    merged: dict[str, Any] = {}
    if path is not None:
        merged = deep_merge(merged, load_config_file(path))
        logger.debug("Loaded build config from %s", path)
    if data:
        merged = deep_merge(merged, data)
    for override in overrides or []:
        merged = deep_merge(merged, parse_override(override))

    config = parse_build_configuration(merged)

    # Relative paths in a config file are relative to that file
    base_dir = path.parent if path is not None else Path.cwd()
    resolved: dict[str, Any] = {}
    for field, default in (
        ("work_dir", settings.work_dir),
        ("downloads_dir", settings.downloads_dir),
        ("cache_dir", settings.cache_dir),
        ("output_dir", settings.output_dir),
    ):
        value = getattr(config, field)
        resolved[field] = default if value is None else _absolute(value, base_dir)
    if config.image_source is not None:
        resolved["image_source"] = _absolute(config.image_source, base_dir)

    return config.model_copy(update=resolved)


def _absolute(path: Path, base_dir: Path) -> Path:
    path = path.expanduser()
    return path if path.is_absolute() else (base_dir / path).resolve()


__all__ = [
    "deep_merge",
    "load_config_file",
    "load_json",
    "load_yaml",
    "parse_build_configuration",
    "parse_override",
    "resolve_build_configuration",
]
