"""LangGraph routing of one conversation turn to the handler for its state."""

from typing import TYPE_CHECKING, Any, TypedDict

from langgraph.graph import END, START, StateGraph

from service_copilot.orchestration.state import (
    ConversationSnapshot,
    ConversationState,
    OrchestrationResult,
)
from service_copilot.tools.results import ToolContext

if TYPE_CHECKING:
    from service_copilot.orchestration.orchestrator import ChatOrchestrator


class TurnState(TypedDict):
    """State carried through a single turn."""

    snapshot: ConversationSnapshot
    message: str
    context: ToolContext
    result: OrchestrationResult | None


NODE_BY_STATE = {
    ConversationState.IDLE: "idle",
    ConversationState.PLANNING: "planning",
    ConversationState.AWAITING_CONFIRMATION: "awaiting_confirmation",
    ConversationState.EXECUTING: "executing",
}


def route_by_state(state: TurnState) -> str:
    return NODE_BY_STATE.get(state["snapshot"].state, "idle")


def build_turn_graph(orchestrator: "ChatOrchestrator") -> Any:
    """Compile the per-turn dispatch graph.

    Args:
        orchestrator: Provides one handler per conversation state

    Returns:
        Compiled graph; invoke with a TurnState and read ``result``
    """
    graph = StateGraph(TurnState)

    async def idle_node(state: TurnState) -> dict[str, Any]:
        result = await orchestrator.handle_idle(
            state["snapshot"], state["message"], state["context"]
        )
        return {"result": result}

    async def planning_node(state: TurnState) -> dict[str, Any]:
        result = await orchestrator.handle_planning(
            state["snapshot"], state["message"], state["context"]
        )
        return {"result": result}

    async def confirmation_node(state: TurnState) -> dict[str, Any]:
        result = await orchestrator.handle_awaiting_confirmation(
            state["snapshot"], state["message"], state["context"]
        )
        return {"result": result}

    async def executing_node(state: TurnState) -> dict[str, Any]:
        return {"result": orchestrator.handle_executing(state["snapshot"])}

    graph.add_node("idle", idle_node)
    graph.add_node("planning", planning_node)
    graph.add_node("awaiting_confirmation", confirmation_node)
    graph.add_node("executing", executing_node)

    graph.add_conditional_edges(
        START,
        route_by_state,
        {node: node for node in NODE_BY_STATE.values()},
    )
    for node in NODE_BY_STATE.values():
        graph.add_edge(node, END)

    return graph.compile()
