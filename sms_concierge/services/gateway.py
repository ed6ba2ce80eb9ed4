"""Twilio SMS gateway helpers.

* :class:`WebhookAuthenticator` — checks ``X-Twilio-Signature`` and applies
  the configured policy (``log_only`` or ``enforce``).
* :func:`format_twiml` — renders a reply as a TwiML messaging document.
* :func:`normalize_phone_number` — canonical E.164-ish key for a sender.
* :class:`SmsSender` — outbound SMS through the Twilio REST API.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping

from twilio.request_validator import RequestValidator
from twilio.rest import Client
from twilio.twiml.messaging_response import MessagingResponse

logger = logging.getLogger(__name__)

POLICY_LOG_ONLY = "log_only"
POLICY_ENFORCE = "enforce"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone_number(phone: str) -> str:
    """Normalise a phone number so every lookup uses the same key.

    US numbers get a ``+1`` prefix; anything already in ``+`` form is kept.
    """
    phone = phone.strip()
    digits = _NON_DIGITS.sub("", phone)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if phone.startswith("+"):
        return phone
    return f"+{digits}"


def format_twiml(reply: str | None) -> str:
    """Wrap *reply* in a TwiML ``<Response>``; an empty reply sends no SMS."""
    response = MessagingResponse()
    if reply:
        response.message(reply)
    return str(response)


def public_request_url(url: str, forwarded_proto: str | None = None, forwarded_host: str | None = None) -> str:
    """Rebuild the URL Twilio signed when the app sits behind a proxy.

    The proxy terminates TLS, so the scheme the app sees is ``http`` even
    though Twilio posted to ``https``.
    """
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    if forwarded_proto:
        scheme = forwarded_proto.split(",")[0].strip()
    if forwarded_host:
        _, slash, path = rest.partition("/")
        rest = forwarded_host.split(",")[0].strip() + (slash + path if slash else "")
    return f"{scheme}://{rest}"


class WebhookAuthenticator:
    """Validates that a webhook request was signed by Twilio."""

    def __init__(self, auth_token: str | None, policy: str = POLICY_LOG_ONLY) -> None:
        if policy not in (POLICY_LOG_ONLY, POLICY_ENFORCE):
            raise ValueError(f"Unknown signature policy: {policy}")
        self._validator = RequestValidator(auth_token) if auth_token else None
        self.policy = policy

    @property
    def enabled(self) -> bool:
        return self._validator is not None

    def verify(self, url: str, params: Mapping[str, str], signature: str | None) -> bool:
        """Return ``True`` when *signature* matches *url* + *params*.

        Without an auth token there is nothing to check against, so every
        request passes.
        """
        if self._validator is None:
            logger.debug("Twilio auth token not set — skipping signature validation")
            return True
        if not signature:
            return False
        return self._validator.validate(url, dict(params), signature)

    def should_reject(self, url: str, params: Mapping[str, str], signature: str | None) -> bool:
        """Verify and apply the policy; mismatches are always logged."""
        if self.verify(url, params, signature):
            return False
        logger.warning(
            "Invalid Twilio signature on SMS webhook (policy=%s, url=%s, has_signature=%s)",
            self.policy, url, bool(signature),
        )
        return self.policy == POLICY_ENFORCE


class SmsSender:
    """Sends outbound SMS; logs instead of sending when Twilio is unconfigured."""

    def __init__(
        self,
        account_sid: str | None,
        auth_token: str | None,
        from_number: str | None,
        *,
        client: Client | None = None,
    ) -> None:
        self._from = from_number
        if client is not None:
            self._client = client
        elif account_sid and auth_token:
            self._client = Client(account_sid, auth_token)
        else:
            logger.warning("Twilio credentials not configured — outbound SMS disabled")
            self._client = None

    @property
    def enabled(self) -> bool:
        return self._client is not None and bool(self._from)

    def send(self, to: str, body: str) -> str | None:
        """Send *body* to *to*; returns the Twilio message SID (``None`` in dev)."""
        if not self.enabled:
            logger.info("[SMS DEV] To: %s | Body: %s", to, body)
            return None
        message = self._client.messages.create(to=to, from_=self._from, body=body)
        logger.info("SMS sent to %s — SID: %s", to, message.sid)
        return message.sid

    async def send_async(self, to: str, body: str) -> str | None:
        """Same as :meth:`send`, off the event loop (the Twilio client blocks)."""
        return await asyncio.to_thread(self.send, to, body)
