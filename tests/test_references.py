from __future__ import annotations

import pytest

from stackctl.config.model import UnitKind
from stackctl.core.references import (
    find_references,
    interpolate_init_step,
    is_escaped_reference,
    parse_reference,
    unescape,
)


def test_parse_reference_accepts_service_and_project_forms() -> None:
    service = parse_reference("self.service.postgres.output.host")
    project = parse_reference("self.project.web-app.output.image_tag")

    assert service is not None and service.kind is UnitKind.SERVICE
    assert (service.unit_name, service.field) == ("postgres", "host")
    assert project is not None and project.kind is UnitKind.PROJECT
    assert str(project) == "self.project.web-app.output.image_tag"


@pytest.mark.parametrize(
    "value",
    [
        "self.service.postgres.host",
        "self.widget.postgres.output.host",
        "self.service.postgres.output.host.extra",
        "postgres.output.host",
        "self.service..output.host",
        "see self.service.postgres.output.host",
        42,
        None,
    ],
)
def test_parse_reference_rejects_non_references(value) -> None:
    assert parse_reference(value) is None


def test_escaped_reference_is_recognized_and_unescaped() -> None:
    literal = "\\self.service.postgres.output.host"

    assert is_escaped_reference(literal)
    assert unescape(literal) == "self.service.postgres.output.host"
    assert unescape("\\not-a-reference") == "\\not-a-reference"


def test_find_references_reports_paths_through_lists_and_mappings() -> None:
    document = {
        "env": [
            {"name": "HOST", "value": "self.service.db.output.host"},
            {"name": "LITERAL", "value": "plain"},
        ],
        "port": "self.service.db.output.port",
    }
    found = find_references(document, ("values",))

    assert [(path, expr.field) for path, expr in found] == [
        (("values", "env", 0, "value"), "host"),
        (("values", "port"), "port"),
    ]


def test_interpolate_init_step_inserts_strings_as_is_and_json_otherwise() -> None:
    inputs = {"name": "frontend", "replicas": 2, "flags": ["--a"]}

    assert interpolate_init_step("create self.inputs.name", inputs) == "create frontend"
    assert interpolate_init_step("scale self.inputs.replicas", inputs) == "scale 2"
    assert interpolate_init_step("run self.inputs.flags", inputs) == 'run ["--a"]'


def test_interpolate_init_step_unknown_input_raises() -> None:
    with pytest.raises(KeyError):
        interpolate_init_step("echo self.inputs.missing", {})
