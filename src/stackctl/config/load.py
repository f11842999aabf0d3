from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.constructor import DuplicateKeyError

from stackctl.core.errors import ConfigError

from .model import Stack

DEFAULT_STACK_FILE = Path("stack.yaml")

_yaml = YAML(typ="safe")
_yaml.allow_duplicate_keys = False


def resolve_stack_path(project_dir: Path, config_path: Path | None = None) -> Path:
    config_path = config_path or DEFAULT_STACK_FILE
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path


def load_stack(project_dir: Path, config_path: Path | None = None) -> Stack:
    config_path = resolve_stack_path(project_dir, config_path)
    if not config_path.exists():
        raise ConfigError(f"Missing stack file: {config_path}")
    data = _load_yaml(config_path)
    if not isinstance(data, dict):
        raise ConfigError("Stack file must be a YAML mapping at the top level.")
    return parse_stack(data)


def parse_stack(data: dict[str, Any]) -> Stack:
    try:
        return Stack.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def _load_yaml(path: Path) -> Any:
    try:
        return _yaml.load(path.read_text(encoding="utf-8"))
    except DuplicateKeyError as exc:
        raise ConfigError(f"Duplicate key in {path}: {exc.problem}") from exc
    except Exception as exc:  # noqa: BLE001
        raise ConfigError(f"Failed to parse YAML: {path}") from exc
