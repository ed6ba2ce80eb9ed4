"""FastAPI server for the SMS concierge.

Run with:
    uv run uvicorn sms_concierge.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response

from sms_concierge import config
from sms_concierge.agent import build_chat_model
from sms_concierge.api.routes import router
from sms_concierge.context import ContextBuilder
from sms_concierge.orchestrator import Orchestrator
from sms_concierge.services.backoffice_client import BackofficeClient
from sms_concierge.services.gateway import SmsSender, WebhookAuthenticator
from sms_concierge.services.metrics import metrics
from sms_concierge.services.rate_limiter import SmsRateLimiter
from sms_concierge.storage.conversation_store import ConversationStore
from sms_concierge.storage.database import Database
from sms_concierge.tools.registry import ToolExecutor

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: open the database, build the orchestrator, wire the gateway.

    Everything the webhook needs hangs off ``app.state``; routes read it
    from there rather than from module globals.
    """
    database = Database(config.DATABASE_URL)
    await database.create_all()
    store = ConversationStore(database.session_factory)
    backoffice = BackofficeClient(config.BACKOFFICE_BASE_URL, config.BACKOFFICE_API_TOKEN)

    llm = build_chat_model(
        config.ANTHROPIC_API_KEY,
        model_name=config.MODEL_NAME,
        max_tokens=config.MAX_OUTPUT_TOKENS,
        base_url=config.ANTHROPIC_BASE_URL,
        request_timeout=config.LLM_ROUND_TIMEOUT_SECONDS,
    )
    application.state.database = database
    application.state.backoffice = backoffice
    application.state.orchestrator = Orchestrator(
        llm=llm,
        context_builder=ContextBuilder.from_config(backoffice, store),
        store=store,
        executor=ToolExecutor(backoffice, store),
        rate_limiter=SmsRateLimiter(config.SMS_RATE_LIMIT, config.SMS_RATE_WINDOW_SECONDS),
        model_name=config.MODEL_NAME,
        max_rounds=config.MAX_TOOL_ROUNDS,
        round_timeout=config.LLM_ROUND_TIMEOUT_SECONDS,
    )
    application.state.authenticator = WebhookAuthenticator(config.TWILIO_AUTH_TOKEN, config.SIGNATURE_POLICY)
    application.state.sender = SmsSender(
        config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN, config.TWILIO_PHONE_NUMBER,
    )
    application.state.reply_mode = config.REPLY_MODE
    logger.info(
        "SMS concierge ready (ai=%s reply_mode=%s signature_policy=%s)",
        "on" if llm is not None else "offline", config.REPLY_MODE, config.SIGNATURE_POLICY,
    )
    yield
    await backoffice.aclose()
    await database.dispose()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="SMS Concierge",
    description="AI concierge that answers customer text messages for a pet-care business.",
    version="2.0.0",
    lifespan=lifespan,
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "SMS Concierge",
        "version": "2.0.0",
        "webhook": "/api/sms/webhook",
        "status": "/api/sms/status",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting SMS concierge on %s:%d", config.SERVER_HOST, config.SERVER_PORT)
    uvicorn.run("sms_concierge.server:app", host=config.SERVER_HOST, port=config.SERVER_PORT)
