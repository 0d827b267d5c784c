import logging

from forgeworks_common.db import JobStore
from forgeworks_common.errors import UnknownBlueprintType
from forgeworks_common.schemas import Action, ArtifactKind, BlueprintType

from .graph import build_composite_graph
from .jobs import DeployHandler, ScaffoldHandler, require_name, require_version
from .state import JobContext

logger = logging.getLogger(__name__)


def resolve_type(blueprint: dict) -> BlueprintType:
    raw = blueprint.get("type")
    try:
        return BlueprintType(raw)
    except ValueError:
        raise UnknownBlueprintType(raw) from None


class Dispatcher:
    """Runs one blueprint against its action handler and returns the job outputs."""

    def __init__(self, store: JobStore, scaffold: ScaffoldHandler, deploy: DeployHandler):
        self.store = store
        self.scaffold = scaffold
        self.deploy = deploy
        self.composite = build_composite_graph(scaffold, deploy)
        self._actions = {
            Action.SCAFFOLD: self._run_scaffold,
            Action.DEPLOY: self._run_deploy,
            Action.CREATE_AND_DEPLOY: self._run_create_and_deploy,
        }
        missing = set(Action) - set(self._actions)
        if missing:
            raise RuntimeError(f"No handler for actions: {sorted(a.value for a in missing)}")

    def dispatch(self, job_id: str, blueprint: dict) -> dict:
        ctx = JobContext(job_id, self.store)
        ctx.log(f"Job runner picked up job. Type: {blueprint.get('type')}")
        btype = resolve_type(blueprint)
        name = require_name(blueprint, btype.value)
        result = self._actions[btype.action](ctx, btype.kind, name, blueprint)
        ctx.log("Job completed successfully.")
        return result

    def _run_scaffold(self, ctx: JobContext, kind: ArtifactKind, name: str, blueprint: dict) -> dict:
        return self.scaffold(ctx, kind, name)

    def _run_deploy(self, ctx: JobContext, kind: ArtifactKind, name: str, blueprint: dict) -> dict:
        return self.deploy(ctx, kind, name, require_version(blueprint))

    def _run_create_and_deploy(self, ctx: JobContext, kind: ArtifactKind, name: str, blueprint: dict) -> dict:
        final = self.composite.invoke({
            "ctx": ctx,
            "kind": kind,
            "name": name,
            "version": require_version(blueprint),
        })
        return {
            "success": True,
            "scaffoldStatus": final["scaffold_status"],
            "scaffoldResult": final["scaffold_result"],
            "deployResult": final["deploy_result"],
        }
