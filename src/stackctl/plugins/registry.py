from importlib import import_module
from importlib.metadata import entry_points

EXECUTOR_GROUP = "stackctl.executors"

BUILTIN_EXECUTORS = {
    "noop": "stackctl.executors.noop:NoopExecutor",
    "exec": "stackctl.executors.exec:ExecExecutor",
}


def load_executor(kind: str):
    for ep in entry_points(group=EXECUTOR_GROUP):
        if ep.name == kind:
            return ep.load()
    target = BUILTIN_EXECUTORS.get(kind)
    if target is not None:
        module_name, _, attr = target.partition(":")
        return getattr(import_module(module_name), attr)
    raise ValueError(f"Unknown executor type: {kind}")


def discover_executors() -> list[dict[str, str]]:
    found = {ep.name: ep.value for ep in entry_points(group=EXECUTOR_GROUP)}
    for name, target in BUILTIN_EXECUTORS.items():
        found.setdefault(name, target)
    return [{"type_key": name, "impl": impl} for name, impl in sorted(found.items())]
