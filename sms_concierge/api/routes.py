"""FastAPI route definitions for the SMS gateway.

Twilio retries a webhook that does not answer with 2xx, which would run the
same turn again, so the webhook answers HTTP 200 with a TwiML document on
every path except an enforced signature rejection.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Request, Response

from sms_concierge import config
from sms_concierge.api.schemas import HealthResponse, StatusResponse
from sms_concierge.orchestrator import FALLBACK_RESPONSE, InboundSms, Orchestrator, TurnOutcome
from sms_concierge.services.gateway import (
    SmsSender,
    WebhookAuthenticator,
    format_twiml,
    normalize_phone_number,
    public_request_url,
)

logger = logging.getLogger(__name__)

router = APIRouter()

MISSING_INPUT_RESPONSE = "Sorry, I didn't catch that. Could you try again?"
INTERNAL_ERROR_RESPONSE = "Sorry, something went wrong on our end. Please try again or call us directly."

TWIML_MEDIA_TYPE = "text/xml"


def _twiml(reply: str | None, status_code: int = 200) -> Response:
    return Response(content=format_twiml(reply), media_type=TWIML_MEDIA_TYPE, status_code=status_code)


def _get_orchestrator(request: Request) -> Orchestrator | None:
    """The orchestrator is built once in the lifespan (see ``server.py``)."""
    return getattr(request.app.state, "orchestrator", None)


async def _reply_out_of_band(orchestrator: Orchestrator, sender: SmsSender, inbound: InboundSms) -> None:
    """Run the turn after the webhook has returned and text the reply."""
    result = await orchestrator.handle(inbound)
    if not result.reply:
        return
    try:
        await sender.send_async(normalize_phone_number(inbound.phone_number), result.reply)
    except Exception:
        logger.exception(
            "Failed to send reply SMS (conversation=%s outcome=%s)", result.conversation_id, result.outcome,
        )


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/sms/status", response_model=StatusResponse)
async def sms_status():
    """Report whether Twilio and Anthropic credentials are configured."""
    sms_ok = config.sms_configured()
    ai_ok = config.ai_configured()
    return StatusResponse(
        sms="configured" if sms_ok else "not_configured",
        ai="configured" if ai_ok else "not_configured",
        status="operational" if sms_ok and ai_ok else "partial",
    )


@router.post("/sms/webhook")
async def sms_webhook(request: Request, background_tasks: BackgroundTasks) -> Response:
    """Receive an inbound SMS from Twilio and answer with TwiML.

    In ``sync`` reply mode the answer is the TwiML body.  In ``async`` mode
    the webhook acknowledges with an empty document and the answer is sent
    as an outbound SMS once the turn completes.
    """
    request_id = getattr(request.state, "request_id", "?")
    try:
        form = await request.form()
        params = {key: str(value) for key, value in form.items()}

        authenticator: WebhookAuthenticator | None = getattr(request.app.state, "authenticator", None)
        if authenticator is not None:
            url = public_request_url(
                str(request.url),
                request.headers.get("X-Forwarded-Proto"),
                request.headers.get("X-Forwarded-Host"),
            )
            if authenticator.should_reject(url, params, request.headers.get("X-Twilio-Signature")):
                return _twiml(None, status_code=403)

        phone_number = params.get("From", "").strip()
        body = params.get("Body", "").strip()
        if not phone_number or not body:
            logger.info("[%s] SMS webhook missing From or Body", request_id)
            return _twiml(MISSING_INPUT_RESPONSE)

        orchestrator = _get_orchestrator(request)
        if orchestrator is None:
            logger.warning("[%s] SMS received before the orchestrator was ready", request_id)
            return _twiml(FALLBACK_RESPONSE)

        inbound = InboundSms(
            phone_number=phone_number,
            body=body,
            gateway_message_id=params.get("MessageSid") or None,
        )
        logger.info("[%s] SMS received from %s", request_id, normalize_phone_number(phone_number))

        sender: SmsSender | None = getattr(request.app.state, "sender", None)
        # Without a working sender the reply can only travel back in the TwiML.
        out_of_band = sender is not None and sender.enabled
        if getattr(request.app.state, "reply_mode", "sync") == "async" and out_of_band:
            background_tasks.add_task(_reply_out_of_band, orchestrator, sender, inbound)
            return _twiml(None)

        result = await orchestrator.handle(inbound)
        if result.outcome is TurnOutcome.DUPLICATE:
            return _twiml(None)
        return _twiml(result.reply)

    except Exception:
        # The client only ever sees the apology.
        logger.exception("[%s] SMS webhook error", request_id)
        return _twiml(INTERNAL_ERROR_RESPONSE)
