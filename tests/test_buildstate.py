from __future__ import annotations

import json
from pathlib import Path

import pytest

from stackctl.core.buildstate import (
    BUILDSTATE_DIR,
    BuildstateStore,
    PersistedState,
    fingerprint,
)
from stackctl.core.errors import BuildstateError
from stackctl.core.stages import Phase


def test_missing_state_loads_empty(tmp_path: Path) -> None:
    state = BuildstateStore(tmp_path).load("demo")
    assert state.stack == "demo"
    assert state.units == {}
    assert state.release_name is None


def test_save_then_load_round_trips_records(tmp_path: Path) -> None:
    store = BuildstateStore(tmp_path)
    state = PersistedState(stack="demo", release_name="calm-river-0a1b")
    store.mark_succeeded(state, "demo.service.db", Phase.INIT, "fp-init")
    store.mark_succeeded(
        state,
        "demo.service.db",
        Phase.DEPLOY,
        "fp-deploy",
        snapshot={"inputs": {"port": 5432}, "values": {}},
        outputs={"host": "10.0.0.5"},
    )
    path = store.save("demo", state)

    assert path == tmp_path / BUILDSTATE_DIR / "demo.json"
    assert [p.name for p in path.parent.iterdir()] == ["demo.json"]

    loaded = BuildstateStore(tmp_path).load("demo")
    record = loaded.units["demo.service.db"]
    assert loaded.release_name == "calm-river-0a1b"
    assert record.initialized and record.deployed and not record.built
    assert record.outputs == {"host": "10.0.0.5"}
    assert record.snapshot == {"inputs": {"port": 5432}, "values": {}}
    assert store.is_current(loaded, "demo.service.db", Phase.DEPLOY, "fp-deploy")
    assert not store.is_current(loaded, "demo.service.db", Phase.DEPLOY, "other")
    assert not store.is_current(loaded, "demo.service.db", Phase.BUILD, "fp-init")


def test_state_file_is_stable_json(tmp_path: Path) -> None:
    store = BuildstateStore(tmp_path)
    state = PersistedState(stack="demo")
    store.mark_succeeded(state, "demo.service.db", Phase.INIT, "fp")
    path = store.save("demo", state)

    text = path.read_text(encoding="utf-8")
    assert text.endswith("\n")
    assert json.loads(text)["units"]["demo.service.db"]["fingerprints"] == {"init": "fp"}


def test_corrupt_state_raises(tmp_path: Path) -> None:
    directory = tmp_path / BUILDSTATE_DIR
    directory.mkdir()
    (directory / "demo.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(BuildstateError, match="Unreadable"):
        BuildstateStore(tmp_path).load("demo")


def test_state_with_unknown_version_raises(tmp_path: Path) -> None:
    directory = tmp_path / BUILDSTATE_DIR
    directory.mkdir()
    (directory / "demo.json").write_text(json.dumps({"version": 99, "stack": "demo"}), encoding="utf-8")

    with pytest.raises(BuildstateError, match="version 99"):
        BuildstateStore(tmp_path).load("demo")


def test_mark_failed_clears_completion(tmp_path: Path) -> None:
    store = BuildstateStore(tmp_path)
    state = PersistedState(stack="demo")
    store.mark_succeeded(state, "demo.project.web", Phase.BUILD, "fp")
    store.mark_failed(state, "demo.project.web", Phase.BUILD)

    record = state.units["demo.project.web"]
    assert not record.built
    assert "build" not in record.fingerprints


def test_prune_drops_units_no_longer_in_the_stack() -> None:
    store = BuildstateStore(None)
    state = PersistedState(stack="demo")
    store.mark_succeeded(state, "demo.service.db", Phase.INIT, "a")
    store.mark_succeeded(state, "demo.service.gone", Phase.INIT, "b")

    assert store.prune(state, keep={"demo.service.db"}) == ["demo.service.gone"]
    assert list(state.units) == ["demo.service.db"]


def test_memory_only_store_never_writes(tmp_path: Path) -> None:
    store = BuildstateStore(None)
    assert store.save("demo", PersistedState()) is None
    assert not (tmp_path / BUILDSTATE_DIR).exists()


def test_fingerprint_ignores_key_order() -> None:
    assert fingerprint({"a": 1, "b": [1, 2]}) == fingerprint({"b": [1, 2], "a": 1})
    assert fingerprint({"a": 1}) != fingerprint({"a": 2})
