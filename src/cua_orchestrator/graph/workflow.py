"""LangGraph workflow for one agent run: prepare -> sample -> act -> checkpoint."""

from langgraph.graph import END, StateGraph

from cua_orchestrator.graph.nodes import act, checkpoint, prepare, sample
from cua_orchestrator.graph.runtime import AgentRuntime
from cua_orchestrator.graph.state import AgentState

NODES_PER_ITERATION = 4


def build_agent_graph(runtime: AgentRuntime):
    def _next_step(state: AgentState) -> str:
        return "done" if state.get("outcome") else "continue"

    graph = StateGraph(AgentState)

    graph.add_node("prepare", prepare.build(runtime))
    graph.add_node("sample", sample.build(runtime))
    graph.add_node("act", act.build(runtime))
    graph.add_node("checkpoint", checkpoint.build(runtime))

    graph.set_entry_point("prepare")
    graph.add_edge("prepare", "sample")
    graph.add_edge("sample", "act")
    graph.add_edge("act", "checkpoint")
    graph.add_conditional_edges("checkpoint", _next_step, {"continue": "prepare", "done": END})

    return graph.compile()


def run_agent(runtime: AgentRuntime, state: AgentState) -> AgentState:
    app = build_agent_graph(runtime)
    limit = NODES_PER_ITERATION * runtime.config.max_iterations + NODES_PER_ITERATION + 1
    return app.invoke(state, config={"recursion_limit": limit})
