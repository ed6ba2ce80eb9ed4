"""SMS Concierge — an AI assistant that answers customer text messages.

Architecture Overview
=====================

An inbound SMS arrives on the Twilio webhook and flows through:

1. **Gateway** — verifies the ``X-Twilio-Signature``, normalises the sender
   number and answers with TwiML (HTTP 200 on every path so Twilio does not
   retry a turn).

2. **Orchestrator** — drops duplicate deliveries, throttles abusive senders,
   loads a fresh context snapshot (customer, dogs, bookings, wallet, recent
   history), records the inbound message and runs the turn graph.

3. **Turn graph** — a LangGraph state machine that calls Claude, executes
   the requested tools, feeds results back and stops on a final answer or
   after a fixed number of rounds.

Routing: call_model → (tool use?) → execute_tools → call_model … → final_answer / max_rounds_exceeded → END

Key Design Decisions
--------------------
- **No in-memory chat memory**: every turn reloads history from the
  conversation store, so a restart or a second worker sees the same thread.
- **One active conversation per phone number**, enforced by a partial
  unique index; concurrent first messages converge on the same row.
- **Never fail the webhook**: every failure path yields a static reply
  and is logged with the conversation, round and tools used.
- **Backoffice API**: bookings, dogs, wallet and staff notifications are
  plain HTTP calls with retries on idempotent reads only.

Package Structure
-----------------
- ``sms_concierge/agent.py`` — LangGraph turn graph and Claude builder
- ``sms_concierge/orchestrator.py`` — one inbound SMS → one reply
- ``sms_concierge/context.py`` — per-turn context snapshot
- ``sms_concierge/history.py`` — stored history → alternating turns
- ``sms_concierge/prompts.py`` — system prompt rendering
- ``sms_concierge/config.py`` — configuration from env / SSM
- ``sms_concierge/server.py`` — FastAPI application
- ``sms_concierge/main.py`` — CLI SMS simulator
- ``sms_concierge/api/`` — webhook, status and health routes
- ``sms_concierge/services/`` — Twilio gateway, backoffice client, rate limiter, metrics
- ``sms_concierge/storage/`` — SQLAlchemy models and the conversation store
- ``sms_concierge/tools/`` — tool registry and executor
"""
