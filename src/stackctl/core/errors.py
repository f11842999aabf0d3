from __future__ import annotations

from dataclasses import dataclass


class StackError(RuntimeError):
    error_code = "stack_error"


class ConfigError(StackError):
    error_code = "config_error"


class SchemaError(StackError):
    error_code = "schema_error"


class DuplicateNameError(StackError):
    error_code = "duplicate_name"


class UnknownUnitError(StackError):
    error_code = "unknown_unit"


class DependencyCycleError(StackError):
    error_code = "dependency_cycle"

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


class UnresolvedReferenceError(StackError):
    """A unit entered Deploy before every unit it references had recorded outputs."""

    error_code = "unresolved_reference"


class MissingOutputError(UnresolvedReferenceError):
    """The referenced unit deployed, but its outputs lack the referenced field."""

    error_code = "missing_output"


class DuplicateOutputError(StackError):
    error_code = "duplicate_output"


class ExecutorConfigError(StackError):
    error_code = "executor_config"


class BuildstateError(StackError):
    error_code = "buildstate_error"


@dataclass(frozen=True)
class ExecutorFailure:
    fqn: str
    phase: str
    cause: str
    timed_out: bool = False
