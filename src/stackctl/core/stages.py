from enum import Enum

from stackctl.config.model import UnitKind


class Phase(str, Enum):
    INIT = "init"
    BUILD = "build"
    DEPLOY = "deploy"

    @property
    def index(self) -> int:
        return list(Phase).index(self)

    @property
    def done_flag(self) -> str:
        return {"init": "initialized", "build": "built", "deploy": "deployed"}[self.value]

    def applies_to(self, kind: UnitKind) -> bool:
        return not (self is Phase.BUILD and kind is UnitKind.SERVICE)


COMMAND_PHASES = {
    "init": [Phase.INIT],
    "build": [Phase.INIT, Phase.BUILD],
    "deploy": [Phase.INIT, Phase.BUILD, Phase.DEPLOY],
    "redeploy": [Phase.BUILD, Phase.DEPLOY],
}

PHASE_STAGES = [
    ("load_config", "Load stack"),
    ("resolve_graph", "Resolve dependency graph"),
    ("load_buildstate", "Load buildstate"),
    ("load_executors", "Load executors"),
    ("run_phases", "Run phases"),
    ("save_buildstate", "Save buildstate"),
]

REDEPLOY_STAGES = [
    ("load_config", "Load stack"),
    ("resolve_graph", "Resolve dependency graph"),
    ("load_buildstate", "Load buildstate"),
    ("plan_redeploy", "Plan affected units"),
    ("load_executors", "Load executors"),
    ("run_phases", "Run phases"),
    ("save_buildstate", "Save buildstate"),
]

GRAPH_STAGES = [
    ("load_config", "Load stack"),
    ("resolve_graph", "Resolve dependency graph"),
]


STAGE_ORDER = {
    "init": PHASE_STAGES,
    "build": PHASE_STAGES,
    "deploy": PHASE_STAGES,
    "redeploy": REDEPLOY_STAGES,
    "graph": GRAPH_STAGES,
}


STAGE_LABELS = {
    command: {stage_id: label for stage_id, label in stages}
    for command, stages in STAGE_ORDER.items()
}
