"""LangGraph state machine that runs one customer turn.

Architecture:
  One inbound SMS is one graph run with four nodes:

    1. **call_model**     — Claude with the system prompt, history and tool
                            definitions; counts the round
    2. **execute_tools**  — runs every requested tool call in order, feeds the
                            results back and writes a ``system`` audit message
    3. **final_answer**   — extracts the reply text and stores it
    4. **max_rounds_exceeded** — static "still working on it" reply once the
                            round budget is spent

  Routing:
    call_model → (tool use?)      → execute_tools → (budget left?) → call_model
                                                  → (budget spent?) → max_rounds_exceeded → END
               → (end_turn / max_tokens / no tool calls) → final_answer → END

  A round is one model call plus its tool executions, so with a budget of
  five the model is called at most five times.

  Exceptions are not caught here.  The orchestrator owns the fallback reply
  for a failed turn; it reads the last streamed state to log how far the
  turn got.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AnyMessage, SystemMessage, ToolMessage
from langchain_core.runnables import Runnable
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from sms_concierge.config import CUSTOMER_APP_URL
from sms_concierge.services.metrics import metrics
from sms_concierge.storage.conversation_store import ConversationStore
from sms_concierge.storage.models import ROLE_ASSISTANT, ROLE_SYSTEM
from sms_concierge.tools.registry import ToolExecutor, ToolResult, tool_definitions

logger = logging.getLogger(__name__)

# Anything other than "the model wants tools" ends the turn.
FINAL_STOP_REASONS = frozenset({"end_turn", "max_tokens", "stop_sequence", "refusal"})

MAX_ROUNDS_RESPONSE = (
    "I'm working on that but it's taking longer than expected. "
    "Let me connect you with our team for help. You can also manage bookings at "
    f"{CUSTOMER_APP_URL}"
)

EMPTY_ANSWER_RESPONSE = "I'm sorry, I couldn't process that. Please try again or call us directly."

OUTCOME_ANSWERED = "answered"
OUTCOME_MAX_ROUNDS = "max_rounds"


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict):
    """The state that flows through the graph for one inbound SMS.

    ``messages`` uses the ``add_messages`` reducer so nodes append the
    model turn and tool results without rewriting the history.  The rest is
    per-turn bookkeeping: ids for the tools, the round counter and budget,
    and the reply the terminal node decided on.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    system_prompt: str
    conversation_id: str
    customer_id: str | None
    phone_number: str
    rounds: int
    max_rounds: int
    tools_used: list[str]
    reply: str
    outcome: str


# ── LLM builder ──────────────────────────────────────────────────────


def build_chat_model(
    api_key: str | None,
    *,
    model_name: str,
    max_tokens: int,
    base_url: str | None = None,
    request_timeout: float | None = None,
) -> Runnable | None:
    """Build Claude with the tool registry bound, or ``None`` without a key."""
    if not api_key:
        logger.warning("ANTHROPIC_API_KEY not set — AI orchestrator disabled")
        return None
    extra: dict[str, Any] = {"base_url": base_url} if base_url else {}
    llm: BaseChatModel = ChatAnthropic(
        model=model_name,
        api_key=api_key,
        max_tokens=max_tokens,
        temperature=0.3,
        default_request_timeout=request_timeout,
        max_retries=1,
        **extra,
    )
    return llm.bind_tools(tool_definitions())


# ── Message helpers ──────────────────────────────────────────────────


def extract_text(message: AnyMessage) -> str:
    """Join the text blocks of a model turn, ignoring tool_use blocks."""
    content = message.content
    if isinstance(content, str):
        parts = [content] if content.strip() else []
    else:
        parts = [
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
        ]
    return "\n".join(parts) or EMPTY_ANSWER_RESPONSE


def wants_tools(message: AnyMessage) -> bool:
    if not isinstance(message, AIMessage) or not message.tool_calls:
        return False
    return message.response_metadata.get("stop_reason") not in FINAL_STOP_REASONS


# ── Nodes ────────────────────────────────────────────────────────────


def _make_model_node(llm: Runnable, model_name: str, round_timeout: float | None):
    """Create the node that calls Claude once per round."""

    async def call_model(state: TurnState) -> dict:
        round_no = state["rounds"] + 1
        logger.info(
            "AI orchestrator: calling Claude (conversation=%s round=%d messages=%d)",
            state["conversation_id"], round_no, len(state["messages"]),
        )
        prompt = [SystemMessage(content=state["system_prompt"]), *state["messages"]]
        t0 = time.perf_counter()
        try:
            response = await asyncio.wait_for(llm.ainvoke(prompt), timeout=round_timeout)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "messages.create", error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "messages.create", latency_ms=elapsed)

        usage = getattr(response, "usage_metadata", None) or {}
        logger.info(
            "AI orchestrator: Claude responded (conversation=%s round=%d stop_reason=%s "
            "tool_calls=%d input_tokens=%s output_tokens=%s %.0fms)",
            state["conversation_id"], round_no, response.response_metadata.get("stop_reason"),
            len(getattr(response, "tool_calls", []) or []),
            usage.get("input_tokens"), usage.get("output_tokens"), elapsed,
        )
        return {"messages": [response], "rounds": round_no}

    return call_model


def _make_tools_node(executor: ToolExecutor, store: ConversationStore, model_name: str):
    """Create the node that executes every tool call of the last model turn."""

    async def execute_tools(state: TurnState) -> dict:
        last = state["messages"][-1]
        tools_used = list(state["tools_used"])
        tool_messages: list[ToolMessage] = []
        audit: list[dict[str, Any]] = []
        called: list[str] = []

        for call in last.tool_calls:
            name = call["name"]
            tools_used.append(name)
            called.append(name)
            logger.info(
                "AI orchestrator: executing tool %s (conversation=%s)", name, state["conversation_id"],
            )
            try:
                result = await executor.execute(
                    name,
                    call.get("args") or {},
                    state["customer_id"],
                    state["conversation_id"],
                    phone_number=state["phone_number"],
                )
            except Exception as exc:
                logger.exception("AI orchestrator: tool execution error (tool=%s)", name)
                result = ToolResult({"error": str(exc) or "Tool execution failed"}, is_error=True)

            tool_messages.append(
                ToolMessage(
                    content=result.to_json(),
                    tool_call_id=call["id"],
                    name=name,
                    status="error" if result.is_error else "success",
                )
            )
            audit.append(
                {
                    "type": "tool_result",
                    "tool_use_id": call["id"],
                    "name": name,
                    "input": call.get("args") or {},
                    "content": result.payload,
                    "is_error": result.is_error,
                }
            )

        await store.store(
            state["conversation_id"],
            ROLE_SYSTEM,
            f"Tool calls: {', '.join(called)}",
            tool_calls=audit,
            model_used=model_name,
        )
        return {"messages": tool_messages, "tools_used": tools_used}

    return execute_tools


def _make_final_node(store: ConversationStore, model_name: str):
    async def final_answer(state: TurnState) -> dict:
        reply = extract_text(state["messages"][-1])
        tools_used = state["tools_used"]
        await store.store(
            state["conversation_id"],
            ROLE_ASSISTANT,
            reply,
            model_used=model_name,
            intent=",".join(tools_used) if tools_used else "conversation",
        )
        return {"reply": reply, "outcome": OUTCOME_ANSWERED}

    return final_answer


def _make_max_rounds_node(store: ConversationStore, model_name: str):
    async def max_rounds_exceeded(state: TurnState) -> dict:
        logger.warning(
            "AI orchestrator: max tool rounds exceeded (conversation=%s rounds=%d tools=%s)",
            state["conversation_id"], state["rounds"], state["tools_used"],
        )
        await store.store(
            state["conversation_id"], ROLE_ASSISTANT, MAX_ROUNDS_RESPONSE, model_used=model_name,
        )
        return {"reply": MAX_ROUNDS_RESPONSE, "outcome": OUTCOME_MAX_ROUNDS}

    return max_rounds_exceeded


# ── Conditional edges ────────────────────────────────────────────────


def route_after_model(state: TurnState) -> str:
    if wants_tools(state["messages"][-1]):
        return "execute_tools"
    return "final_answer"


def route_after_tools(state: TurnState) -> str:
    if state["rounds"] >= state["max_rounds"]:
        return "max_rounds_exceeded"
    return "call_model"


# ── Graph assembly ───────────────────────────────────────────────────


def build_turn_graph(
    llm: Runnable,
    executor: ToolExecutor,
    store: ConversationStore,
    *,
    model_name: str,
    round_timeout: float | None = None,
):
    """Build and compile the per-turn graph.

    No checkpointer: history lives in the conversation store and is
    reloaded for every inbound SMS.  Invoke with a fully populated
    :class:`TurnState`.
    """
    graph = StateGraph(TurnState)

    graph.add_node("call_model", _make_model_node(llm, model_name, round_timeout))
    graph.add_node("execute_tools", _make_tools_node(executor, store, model_name))
    graph.add_node("final_answer", _make_final_node(store, model_name))
    graph.add_node("max_rounds_exceeded", _make_max_rounds_node(store, model_name))

    graph.set_entry_point("call_model")
    graph.add_conditional_edges(
        "call_model",
        route_after_model,
        {"execute_tools": "execute_tools", "final_answer": "final_answer"},
    )
    graph.add_conditional_edges(
        "execute_tools",
        route_after_tools,
        {"call_model": "call_model", "max_rounds_exceeded": "max_rounds_exceeded"},
    )
    graph.add_edge("final_answer", END)
    graph.add_edge("max_rounds_exceeded", END)

    compiled = graph.compile()
    logger.debug("Turn graph compiled — model: %s", model_name)
    return compiled


def recursion_limit_for(max_rounds: int) -> int:
    """Graph steps needed for *max_rounds* rounds plus the terminal node."""
    return max_rounds * 2 + 3
