from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from evalgrid.errors import ConfigError
from evalgrid.models import EvalConfig, FilePart, TestCase

FILE_PREFIX = "file:///"


def load_config(path: Path) -> EvalConfig:
    """
    Load and validate an eval config YAML file.

    `file:///name` variable values are resolved relative to the config's
    directory: text files become strings, anything else a FilePart.

    Raises:
        ConfigError: if the file is missing, not YAML, or fails validation.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Config must be a mapping")

    try:
        config = EvalConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config: {exc}") from exc

    base_dir = path.parent
    tests = [_resolve_test(test, base_dir) for test in config.tests]
    default_test = _resolve_test(config.default_test, base_dir) if config.default_test else None
    return config.model_copy(update={"tests": tests, "default_test": default_test})


def _resolve_test(test: TestCase, base_dir: Path) -> TestCase:
    return test.model_copy(update={"vars": {k: _resolve_value(v, base_dir) for k, v in test.vars.items()}})


def _resolve_value(value: Any, base_dir: Path) -> Any:
    if not isinstance(value, str) or not value.startswith(FILE_PREFIX):
        return value
    file_path = base_dir / value[len(FILE_PREFIX):]
    if not file_path.is_file():
        raise ConfigError(f"File not found: {file_path}")
    mime_type, _ = mimetypes.guess_type(file_path.name)
    mime_type = mime_type or "application/octet-stream"
    if mime_type.startswith("text/"):
        return file_path.read_text(encoding="utf-8")
    return FilePart(name=file_path.name, mime_type=mime_type, data=file_path.read_bytes())
