from __future__ import annotations

from langgraph.graph import END, StateGraph

from forgeworks_common.errors import AlreadyExists

from .state import CompositeState


def build_composite_graph(scaffold, deploy):
    """
    create-and-deploy: scaffold -> deploy -> END.

    An artifact that already exists satisfies the scaffold step; every other
    scaffold error propagates out of invoke() and deploy never runs.
    """

    def _scaffold(state: CompositeState) -> CompositeState:
        ctx, kind, name = state["ctx"], state["kind"], state["name"]
        ctx.log(f"Composite Job Step 1/2: Scaffolding {kind.label} '{name}'...")
        try:
            result = scaffold(ctx, kind, name)
        except AlreadyExists as e:
            ctx.log(f"{e} Continuing with the existing {kind.label}.")
            return {
                "scaffold_status": "already_exists",
                "scaffold_result": {"success": False, "alreadyExists": True, "message": str(e)},
            }
        return {"scaffold_status": "created", "scaffold_result": result}

    def _deploy(state: CompositeState) -> CompositeState:
        ctx, kind, name = state["ctx"], state["kind"], state["name"]
        ctx.log(f"Composite Job Step 2/2: Deploying {kind.label} '{name}'...")
        return {"deploy_result": deploy(ctx, kind, name, state.get("version", "latest"))}

    g = StateGraph(CompositeState)
    g.add_node("scaffold", _scaffold)
    g.add_node("deploy", _deploy)

    g.set_entry_point("scaffold")
    g.add_edge("scaffold", "deploy")
    g.add_edge("deploy", END)
    return g.compile()
