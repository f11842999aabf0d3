from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterator, Union

from stackctl.config.model import UnitKind

ESCAPE_PREFIX = "\\"

_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")
_INPUT_TOKEN = re.compile(r"self\.inputs\.([A-Za-z0-9_-]+)")

ConfigPath = tuple[Union[str, int], ...]


@dataclass(frozen=True)
class ReferenceExpression:
    kind: UnitKind
    unit_name: str
    field: str

    def fqn(self, stack_name: str) -> str:
        return f"{stack_name}.{self.kind.value}.{self.unit_name}"

    def __str__(self) -> str:
        return f"self.{self.kind.value}.{self.unit_name}.output.{self.field}"


@dataclass(frozen=True)
class ReferenceSite:
    """A place inside one unit's configuration that holds a reference."""

    unit: str
    path: ConfigPath
    expression: ReferenceExpression

    @property
    def pointer(self) -> str:
        return "/" + "/".join(str(part) for part in self.path)


def parse_reference(value: Any) -> ReferenceExpression | None:
    if not isinstance(value, str):
        return None
    parts = value.split(".")
    if len(parts) != 5 or parts[0] != "self" or parts[3] != "output":
        return None
    try:
        kind = UnitKind(parts[1])
    except ValueError:
        return None
    if not _SEGMENT.match(parts[2]) or not _SEGMENT.match(parts[4]):
        return None
    return ReferenceExpression(kind=kind, unit_name=parts[2], field=parts[4])


def is_escaped_reference(value: Any) -> bool:
    return (
        isinstance(value, str)
        and value.startswith(ESCAPE_PREFIX)
        and parse_reference(value[len(ESCAPE_PREFIX):]) is not None
    )


def unescape(value: Any) -> Any:
    if is_escaped_reference(value):
        return value[len(ESCAPE_PREFIX):]
    return value


def iter_string_leaves(value: Any, path: ConfigPath = ()) -> Iterator[tuple[ConfigPath, str]]:
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from iter_string_leaves(item, (*path, key))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from iter_string_leaves(item, (*path, index))


def find_references(value: Any, path: ConfigPath = ()) -> list[tuple[ConfigPath, ReferenceExpression]]:
    found: list[tuple[ConfigPath, ReferenceExpression]] = []
    for leaf_path, leaf in iter_string_leaves(value, path):
        expression = parse_reference(leaf)
        if expression is not None:
            found.append((leaf_path, expression))
    return found


def set_path(document: Any, path: ConfigPath, value: Any) -> None:
    if not path:
        raise ValueError("Cannot replace the document root.")
    current = document
    for part in path[:-1]:
        current = current[part]
    current[path[-1]] = value


def map_leaves(value: Any, fn) -> Any:
    if isinstance(value, dict):
        return {key: map_leaves(item, fn) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [map_leaves(item, fn) for item in value]
    return fn(value)


def init_step_tokens(step: str) -> list[str]:
    return _INPUT_TOKEN.findall(step)


def interpolate_init_step(step: str, inputs: dict[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in inputs:
            raise KeyError(name)
        value = inputs[name]
        if isinstance(value, str):
            return value
        return json.dumps(value, sort_keys=True)

    return _INPUT_TOKEN.sub(_replace, step)
