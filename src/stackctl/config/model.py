import copy
from enum import Enum
from typing import Any, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from stackctl.core.errors import SchemaError


class UnitKind(str, Enum):
    SERVICE = "service"
    PROJECT = "project"

    @property
    def plural(self) -> str:
        return f"{self.value}s"


class DockerBuild(BaseModel):
    model_config = ConfigDict(frozen=True)

    tag: str
    registry: str
    dockerfile: str = "Dockerfile"
    context: str | None = None

    @property
    def push(self) -> bool:
        return self.registry not in ("", "local")

    def image_label(self, display_name: str) -> str:
        if self.push:
            return f"{self.registry}/{display_name}:{self.tag}"
        return f"{display_name}:{self.tag}"


class ScriptBuild(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str


BuildSpec = Union[DockerBuild, ScriptBuild]


class BuildConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    tag: str | None = None
    registry: str | None = None
    dockerfile: str | None = None
    context: str | None = None
    script_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("script_path", "build_script"),
    )


class ChartRef(BaseModel):
    model_config = ConfigDict(extra="forbid")

    repository: str
    chart: str
    version: str


class DeploySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chart: ChartRef | None = None
    custom_chart: str | None = None
    iac: dict[str, Any] | None = None


class UnitDeps(BaseModel):
    model_config = ConfigDict(extra="forbid")

    services: list[str] = Field(default_factory=list)
    projects: list[str] = Field(default_factory=list)


class UnitDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    kind: UnitKind
    source: str | None = Field(
        default=None,
        validation_alias=AliasChoices("source", "service", "project"),
    )
    inputs: dict[str, Any] = Field(default_factory=dict)
    values: dict[str, Any] = Field(default_factory=dict)
    deps: list[str] | UnitDeps = Field(default_factory=list)
    build: BuildConfig | None = None
    deploy: DeploySpec | None = None
    namespace: str | None = None
    init_steps: list[str] = Field(default_factory=list)
    watch_paths: list[str] = Field(default_factory=list)

    def explicit_deps(self) -> list[tuple[UnitKind | None, str]]:
        if isinstance(self.deps, UnitDeps):
            qualified = [(UnitKind.SERVICE, name) for name in self.deps.services]
            qualified += [(UnitKind.PROJECT, name) for name in self.deps.projects]
            return qualified
        return [(None, name) for name in self.deps]

    def build_spec(self) -> BuildSpec | None:
        """Collapse the raw build block into exactly one build variant.

        Services never build. Projects must define either a Docker build
        (``tag`` and ``registry``) or a build script, never both.
        """
        build = self.build
        if self.kind is UnitKind.SERVICE:
            if build is not None:
                raise SchemaError(f"Service '{self.name}' cannot define a build block.")
            return None
        if build is None:
            raise SchemaError(
                f"Project '{self.name}' must define a build with either tag/registry or script_path."
            )
        docker_keys = [
            key
            for key in ("tag", "registry", "dockerfile", "context")
            if getattr(build, key) is not None
        ]
        if docker_keys and build.script_path is not None:
            raise SchemaError(
                f"Project '{self.name}' defines both a docker build ({', '.join(docker_keys)}) "
                "and script_path; they are mutually exclusive."
            )
        if build.script_path is not None:
            if not build.script_path:
                raise SchemaError(f"Project '{self.name}' has an empty script_path.")
            return ScriptBuild(path=build.script_path)
        if build.tag is None or build.registry is None:
            raise SchemaError(
                f"Project '{self.name}' must define either both tag and registry, or script_path."
            )
        return DockerBuild(
            tag=build.tag,
            registry=build.registry,
            dockerfile=build.dockerfile or "Dockerfile",
            context=build.context,
        )

    def check_deploy_spec(self) -> None:
        deploy = self.deploy
        if deploy is None:
            return
        if deploy.chart is not None and deploy.custom_chart is not None:
            raise SchemaError(
                f"Unit '{self.name}' defines both chart and custom_chart; choose one."
            )
        if deploy.chart is None and deploy.custom_chart is None:
            raise SchemaError(f"Unit '{self.name}' deploy block needs chart or custom_chart.")

    def display_name(self, *, kebab: bool = False) -> str:
        name = self.inputs.get("name")
        if not isinstance(name, str) or not name:
            name = self.name
        if kebab:
            return name.replace("_", "-")
        return name.replace("-", "_")

    def config_snapshot(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "inputs": copy.deepcopy(self.inputs),
            "values": copy.deepcopy(self.values),
            "build": self.build.model_dump(exclude_none=True) if self.build else None,
            "deploy": self.deploy.model_dump(exclude_none=True) if self.deploy else None,
            "namespace": self.namespace,
            "init_steps": list(self.init_steps),
        }


class ExecutorConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: str
    with_: dict[str, Any] = Field(default_factory=dict, alias="with")


class WatcherConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    paths: list[str] = Field(default_factory=lambda: ["./"])
    interval_ms: int = Field(default=3000, validation_alias=AliasChoices("interval_ms", "interval"))
    patch: bool = True


class Stack(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    version: str = "v1"
    release_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("release_name", "release"),
    )
    namespace: str | None = None
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    executors: dict[str, ExecutorConfig] = Field(default_factory=dict)
    services: list[UnitDefinition] = Field(default_factory=list)
    projects: list[UnitDefinition] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _expand_unit_mappings(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for kind in UnitKind:
            raw = data.get(kind.plural)
            if raw is None:
                continue
            if isinstance(raw, dict):
                entries = [_unit_entry(body, kind, name=key) for key, body in raw.items()]
            elif isinstance(raw, list):
                entries = [_unit_entry(body, kind) for body in raw]
            else:
                raise ValueError(f"{kind.plural} must be a mapping or a list of units.")
            data[kind.plural] = entries
        return data

    @model_validator(mode="after")
    def _validate_stack(self) -> "Stack":
        if not normalize_name(self.name):
            raise ValueError("Stack name must not be empty.")
        unknown = sorted(set(self.executors) - {"init", "build", "deploy"})
        if unknown:
            raise ValueError(f"Unknown executor phases: {', '.join(unknown)}")
        return self

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)

    def units(self) -> list[UnitDefinition]:
        return [*self.services, *self.projects]


def normalize_name(name: str) -> str:
    return (
        name.lower()
        .replace("-", "_")
        .replace("/", "")
        .replace(".", "_")
        .replace(" ", "_")
    )


def _unit_entry(body: Any, kind: UnitKind, *, name: str | None = None) -> Any:
    if isinstance(body, UnitDefinition):
        update: dict[str, Any] = {"kind": kind}
        if name is not None:
            update["name"] = name
        return body.model_copy(update=update)
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise ValueError(f"Unit '{name}' must be a mapping.")
    entry = {**body, "kind": kind}
    if name is not None:
        entry["name"] = name
    return entry
