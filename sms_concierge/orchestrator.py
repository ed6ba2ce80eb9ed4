"""Turn orchestrator: one inbound SMS in, exactly one reply out.

The orchestrator sits between the webhook and the turn graph.  It owns the
parts of a turn that are not the model conversation itself: throttling,
duplicate deliveries, context loading, conversation bookkeeping and the
static replies used when the AI is unavailable or the turn fails.

:meth:`Orchestrator.handle` never raises.  Whatever happens, the caller
gets a :class:`TurnResult` with a reply it can send.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from langchain_core.runnables import Runnable

from sms_concierge.agent import build_turn_graph, recursion_limit_for
from sms_concierge.config import (
    CUSTOMER_APP_URL,
    LLM_ROUND_TIMEOUT_SECONDS,
    MAX_TOOL_ROUNDS,
    MODEL_NAME,
)
from sms_concierge.context import ContextBuilder
from sms_concierge.history import normalize_history
from sms_concierge.prompts import build_system_prompt
from sms_concierge.services.gateway import normalize_phone_number
from sms_concierge.services.metrics import MetricsClient, metrics
from sms_concierge.services.rate_limiter import SmsRateLimiter
from sms_concierge.storage.conversation_store import ConversationStore, DuplicateInboundMessage
from sms_concierge.storage.models import ROLE_ASSISTANT, ROLE_CUSTOMER
from sms_concierge.tools.registry import ToolExecutor

logger = logging.getLogger(__name__)

FALLBACK_RESPONSE = (
    "Thanks for texting Happy Tail Happy Dog! Our AI assistant is currently offline. "
    f"Please call us or visit {CUSTOMER_APP_URL} to manage your bookings."
)

ERROR_RESPONSE = (
    "Sorry, I'm having trouble right now. Please try again in a moment or call us directly. "
    f"You can also visit {CUSTOMER_APP_URL}"
)

THROTTLED_RESPONSE = (
    "You've sent a lot of messages recently. Please wait a bit and try again, or call us directly."
)


class TurnOutcome(StrEnum):
    ANSWERED = "answered"
    MAX_ROUNDS = "max_rounds"
    OFFLINE = "offline"
    ERROR = "error"
    THROTTLED = "throttled"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class InboundSms:
    phone_number: str
    body: str
    gateway_message_id: str | None = None


@dataclass
class TurnResult:
    """What the gateway needs to answer the customer.

    ``reply`` is empty only for a duplicate delivery, which must not
    produce a second SMS.
    """

    reply: str
    outcome: TurnOutcome
    conversation_id: str | None = None
    tools_used: list[str] = field(default_factory=list)
    model_used: str = "none"
    rounds: int = 0


class Orchestrator:
    """Runs one customer turn end to end."""

    def __init__(
        self,
        *,
        llm: Runnable | None,
        context_builder: ContextBuilder,
        store: ConversationStore,
        executor: ToolExecutor,
        rate_limiter: SmsRateLimiter | None = None,
        model_name: str = MODEL_NAME,
        max_rounds: int = MAX_TOOL_ROUNDS,
        round_timeout: float | None = LLM_ROUND_TIMEOUT_SECONDS,
        metrics_client: MetricsClient = metrics,
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self._context_builder = context_builder
        self._store = store
        self._rate_limiter = rate_limiter
        self._model_name = model_name
        self._max_rounds = max_rounds
        self._metrics = metrics_client
        self._graph = (
            build_turn_graph(llm, executor, store, model_name=model_name, round_timeout=round_timeout)
            if llm is not None
            else None
        )

    @property
    def ai_enabled(self) -> bool:
        return self._graph is not None

    async def handle(self, inbound: InboundSms, *, now: datetime | None = None) -> TurnResult:
        """Process one inbound SMS and return the reply to send."""
        phone_number = normalize_phone_number(inbound.phone_number)
        t0 = time.perf_counter()

        conversation_id: str | None = None
        try:
            # Redeliveries are dropped before they can spend the sender's quota.
            if inbound.gateway_message_id and await self._store.has_gateway_message(
                inbound.gateway_message_id
            ):
                return self._duplicate(inbound, t0)

            if self._rate_limiter is not None and not self._rate_limiter.admit(phone_number):
                logger.warning("SMS throttled for %s", phone_number)
                return self._finish(TurnResult(THROTTLED_RESPONSE, TurnOutcome.THROTTLED), t0)

            context = await self._context_builder.build(phone_number)
            conversation_id = await self._store.find_or_create(phone_number, context.customer_id)
            await self._store.store(
                conversation_id,
                ROLE_CUSTOMER,
                inbound.body,
                gateway_message_id=inbound.gateway_message_id,
            )
        except DuplicateInboundMessage:
            return self._duplicate(inbound, t0)
        except Exception:
            logger.exception(
                "AI orchestrator: failed to prepare turn (phone=%s conversation=%s)",
                phone_number, conversation_id,
            )
            await self._store_reply(conversation_id, ERROR_RESPONSE)
            return self._finish(TurnResult(ERROR_RESPONSE, TurnOutcome.ERROR, conversation_id), t0)

        if self._graph is None:
            logger.warning("AI orchestrator offline; sending fallback to %s", phone_number)
            await self._store_reply(conversation_id, FALLBACK_RESPONSE)
            return self._finish(TurnResult(FALLBACK_RESPONSE, TurnOutcome.OFFLINE, conversation_id), t0)

        logger.info(
            "AI orchestrator: processing message (conversation=%s customer=%s)",
            conversation_id, context.customer_id or "unknown",
        )
        initial: dict[str, Any] = {
            "messages": normalize_history(context.recent_messages, inbound.body),
            "system_prompt": build_system_prompt(context, now),
            "conversation_id": conversation_id,
            "customer_id": context.customer_id,
            "phone_number": phone_number,
            "rounds": 0,
            "max_rounds": self._max_rounds,
            "tools_used": [],
            "reply": "",
            "outcome": "",
        }

        last_state: dict[str, Any] = initial
        try:
            async for state in self._graph.astream(
                initial,
                config={"recursion_limit": recursion_limit_for(self._max_rounds)},
                stream_mode="values",
            ):
                last_state = state
        except Exception:
            logger.exception(
                "AI orchestrator: turn failed (phone=%s conversation=%s round=%d tools=%s)",
                phone_number, conversation_id, last_state.get("rounds", 0), last_state.get("tools_used", []),
            )
            await self._store_reply(conversation_id, ERROR_RESPONSE)
            return self._finish(
                TurnResult(
                    ERROR_RESPONSE,
                    TurnOutcome.ERROR,
                    conversation_id,
                    tools_used=list(last_state.get("tools_used", [])),
                    rounds=last_state.get("rounds", 0),
                ),
                t0,
            )

        tools_used = list(last_state["tools_used"])
        logger.info(
            "AI orchestrator: response ready (conversation=%s rounds=%d tools=%s)",
            conversation_id, last_state["rounds"], tools_used,
        )
        return self._finish(
            TurnResult(
                last_state["reply"],
                TurnOutcome(last_state["outcome"]),
                conversation_id,
                tools_used=tools_used,
                model_used=self._model_name,
                rounds=last_state["rounds"],
            ),
            t0,
        )

    # ── Helpers ──────────────────────────────────────────────────────

    async def _store_reply(self, conversation_id: str | None, reply: str) -> None:
        """Persist a static reply; the customer still gets it if this fails."""
        if conversation_id is None:
            return
        try:
            await self._store.store(conversation_id, ROLE_ASSISTANT, reply)
        except Exception:
            logger.exception("Failed to store reply for conversation %s", conversation_id)

    def _duplicate(self, inbound: InboundSms, t0: float) -> TurnResult:
        logger.info("Duplicate delivery of %s ignored", inbound.gateway_message_id)
        return self._finish(TurnResult("", TurnOutcome.DUPLICATE), t0)

    def _finish(self, result: TurnResult, t0: float) -> TurnResult:
        elapsed = (time.perf_counter() - t0) * 1000
        self._metrics.record_outcome(result.outcome.value, rounds=result.rounds)
        logger.debug("Turn finished: outcome=%s %.0fms", result.outcome.value, elapsed)
        return result
