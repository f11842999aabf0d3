from __future__ import annotations

import json
import re
import sys
from pathlib import Path

import pytest

from stackctl.config.load import load_stack, parse_stack
from stackctl.config.model import DockerBuild, ExecutorConfig, ScriptBuild, UnitKind, normalize_name
from stackctl.core.errors import ConfigError, ExecutorConfigError
from stackctl.core.events import CommandStarted, UnitPhaseFailed
from stackctl.core.executors import UnitContext, load_executors
from stackctl.core.release import generate_release_name, namespace_for, release_name_for, service_host
from stackctl.core.stages import Phase
from stackctl.executors.exec import ExecExecutor
from stackctl.executors.noop import NoopExecutor
from stackctl.plugins.registry import discover_executors, load_executor


def _context(phase: Phase = Phase.DEPLOY, **overrides) -> UnitContext:
    fields = {
        "fqn": "demo.service.api",
        "name": "api",
        "kind": UnitKind.SERVICE,
        "phase": phase,
        "stack_name": "demo",
        "namespace": "demo",
        "release_name": "rel",
        "config": {"inputs": {}},
    }
    fields.update(overrides)
    return UnitContext(**fields)


def test_duplicate_yaml_keys_are_rejected(tmp_path: Path) -> None:
    (tmp_path / "stack.yaml").write_text(
        "name: demo\nservices:\n  api: {}\n  api: {}\n",
        encoding="utf-8",
    )
    with pytest.raises(ConfigError, match="Duplicate key"):
        load_stack(tmp_path)


def test_missing_stack_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Missing stack file"):
        load_stack(tmp_path)


def test_unknown_stack_field_is_a_config_error() -> None:
    with pytest.raises(ConfigError, match="unexpected"):
        parse_stack({"name": "demo", "unexpected": True})


def test_mapping_and_list_unit_forms_are_equivalent() -> None:
    mapped = parse_stack({"name": "demo", "services": {"api": {"inputs": {"a": 1}}}})
    listed = parse_stack({"name": "demo", "services": [{"name": "api", "inputs": {"a": 1}}]})

    assert mapped.services == listed.services
    assert mapped.services[0].kind is UnitKind.SERVICE


def test_stack_aliases_and_watcher_defaults() -> None:
    stack = parse_stack(
        {
            "name": "demo",
            "release": "pinned",
            "projects": {"web": {"project": "react-app", "build": {"build_script": "build.sh"}}},
        }
    )
    assert stack.release_name == "pinned"
    assert stack.watcher.paths == ["./"]
    assert stack.watcher.interval_ms == 3000
    assert stack.watcher.patch is True
    assert stack.projects[0].source == "react-app"
    assert stack.projects[0].build.script_path == "build.sh"


def test_normalize_name() -> None:
    assert normalize_name("My Stack/v1.2-beta") == "my_stackv1_2_beta"


def test_docker_image_label_skips_registry_for_local_builds() -> None:
    assert DockerBuild(tag="v1", registry="ghcr.io/acme").image_label("web") == "ghcr.io/acme/web:v1"
    assert DockerBuild(tag="v1", registry="local").image_label("web") == "web:v1"
    assert DockerBuild(tag="v1", registry="local").push is False


def test_namespace_precedence() -> None:
    stack = parse_stack(
        {
            "name": "demo_stack",
            "services": {"api": {"namespace": "edge"}, "db": {}},
        }
    )
    api, db = stack.services
    assert namespace_for(stack, api) == "edge"
    assert namespace_for(stack, db) == "demo-stack"

    pinned = parse_stack({"name": "demo_stack", "namespace": "shared", "services": {"db": {}}})
    assert namespace_for(pinned, pinned.services[0]) == "shared"


def test_release_name_policy() -> None:
    pinned = parse_stack({"name": "demo", "release_name": "prod"})
    floating = parse_stack({"name": "demo"})

    assert release_name_for(pinned, "old") == "prod"
    assert release_name_for(floating, "old") == "old"
    generated = release_name_for(floating)
    assert re.fullmatch(r"[a-z]+-[a-z]+-[0-9a-f]{4}", generated)
    assert re.fullmatch(r"[a-z]+-[a-z]+-[0-9a-f]{4}", generate_release_name())


def test_service_host_uses_kebab_display_name() -> None:
    stack = parse_stack({"name": "demo", "services": {"db": {"inputs": {"name": "main_db"}}}})
    assert service_host("rel", stack.services[0], "demo") == "rel-main-db.demo.svc.cluster.local"


def test_exec_executor_parses_json_stdout_for_deploy(tmp_path: Path) -> None:
    executor = ExecExecutor(
        tmp_path,
        cmd=[sys.executable, "-c", 'import json; print(json.dumps({"host": "10.0.0.5"}))'],
    )
    result = executor.run(_context())
    assert result.ok
    assert result.outputs == {"host": "10.0.0.5"}


def test_exec_executor_receives_context_on_stdin(tmp_path: Path) -> None:
    script = "import json, sys; data = json.load(sys.stdin); print(json.dumps({'seen': data['fqn']}))"
    executor = ExecExecutor(tmp_path, cmd=[sys.executable, "-c", script])
    result = executor.run(_context())
    assert result.outputs == {"seen": "demo.service.api"}


def test_exec_executor_reports_non_zero_exit(tmp_path: Path) -> None:
    executor = ExecExecutor(
        tmp_path,
        cmd=[sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(4)"],
    )
    result = executor.run(_context(Phase.INIT))
    assert not result.ok
    assert "exit code 4" in result.cause
    assert "boom" in result.cause


def test_exec_executor_rejects_non_object_deploy_output(tmp_path: Path) -> None:
    executor = ExecExecutor(tmp_path, cmd=[sys.executable, "-c", "print('[1, 2]')"])
    result = executor.run(_context())
    assert not result.ok
    assert "JSON object" in result.cause


def test_exec_executor_formats_placeholders(tmp_path: Path) -> None:
    executor = ExecExecutor(tmp_path, cmd=["deploy.sh", "{name}", "{namespace}", "{release}", "{phase}"])
    assert executor.command_for(_context()) == ["deploy.sh", "api", "demo", "rel", "deploy"]


def test_exec_executor_rejects_non_list_cmd(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="list of strings"):
        ExecExecutor(tmp_path, cmd="deploy.sh")  # type: ignore[arg-type]


def test_noop_executor_returns_configured_outputs(tmp_path: Path) -> None:
    executor = NoopExecutor(tmp_path, outputs={"api": {"port": 80}})
    assert executor.run(_context()).outputs == {"port": 80}
    assert executor.run(_context(Phase.INIT)).outputs is None


def test_registry_resolves_builtin_executors() -> None:
    assert load_executor("noop") is NoopExecutor
    assert load_executor("exec") is ExecExecutor
    with pytest.raises(ValueError, match="Unknown executor type"):
        load_executor("teleport")
    assert {"noop", "exec"} <= {item["type_key"] for item in discover_executors()}


def test_load_executors_rejects_bad_options(tmp_path: Path) -> None:
    with pytest.raises(ExecutorConfigError, match="exec"):
        load_executors(tmp_path, {"deploy": ExecutorConfig(type="exec", with_={"cmd": "nope"})})


def test_event_to_dict_serializes_paths() -> None:
    event = CommandStarted(
        command="deploy",
        project_dir=Path("project"),
        config_path=Path("project") / "stack.yaml",
    )
    payload = event.to_dict()

    assert payload["project_dir"] == "project"
    assert payload["config_path"] == str(Path("project") / "stack.yaml")


def test_failure_events_are_error_level() -> None:
    payload = UnitPhaseFailed(command="deploy", fqn="demo.service.api", phase="deploy", cause="x").to_dict()
    assert payload["level"] == "ERROR"
    assert json.loads(json.dumps(payload))["type"] == "UnitPhaseFailed"


def test_exec_executor_leaves_literal_braces_alone(tmp_path: Path) -> None:
    executor = ExecExecutor(
        tmp_path,
        cmd=["sh", "-c", "echo ${HOME} {name}", "jq", "{host: .ip}", "{unknown}"],
    )
    assert executor.command_for(_context()) == [
        "sh",
        "-c",
        "echo ${HOME} api",
        "jq",
        "{host: .ip}",
        "{unknown}",
    ]


def test_context_payload_carries_image_and_push(tmp_path: Path) -> None:
    local = _context(
        Phase.BUILD,
        kind=UnitKind.PROJECT,
        display_name="web_app",
        build=DockerBuild(tag="v1", registry="local"),
    ).to_dict()
    assert local["build"]["image"] == "web_app:v1"
    assert local["build"]["push"] is False

    remote = _context(
        Phase.BUILD,
        kind=UnitKind.PROJECT,
        display_name="web_app",
        build=DockerBuild(tag="v1", registry="ghcr.io/acme"),
    ).to_dict()
    assert remote["build"]["image"] == "ghcr.io/acme/web_app:v1"
    assert remote["build"]["push"] is True

    script = _context(Phase.BUILD, build=ScriptBuild(path="build.sh")).to_dict()
    assert script["build"] == {"path": "build.sh"}
