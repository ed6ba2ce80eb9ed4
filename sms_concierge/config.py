"""Centralized configuration for the SMS concierge.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/sms-concierge/<VARIABLE_NAME>``.

Credentials are optional here.  A missing Anthropic key puts the
orchestrator in offline mode and missing Twilio credentials disable
signature checks and outbound SMS, so the webhook keeps answering either way.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/sms-concierge/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_env(name: str) -> str | None:
    """Return a config value from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    return None


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _choice_env(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in choices:
        raise OSError(
            f"Invalid value for {name}: {value!r}. Expected one of {', '.join(choices)}."
        )
    return value


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str | None = _optional_env("ANTHROPIC_API_KEY")
ANTHROPIC_BASE_URL: str | None = os.getenv("ANTHROPIC_BASE_URL") or None
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5-20250929")
MAX_OUTPUT_TOKENS: int = _int_env("MAX_OUTPUT_TOKENS", 1024)
MAX_TOOL_ROUNDS: int = _int_env("MAX_TOOL_ROUNDS", 5)
LLM_ROUND_TIMEOUT_SECONDS: float = float(os.getenv("LLM_ROUND_TIMEOUT_SECONDS", "20"))

# ── Twilio (SMS gateway) ────────────────────────────────────────────
TWILIO_ACCOUNT_SID: str | None = _optional_env("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN: str | None = _optional_env("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER: str | None = os.getenv("TWILIO_PHONE_NUMBER") or None

# ``log_only`` keeps answering when the signature does not match (proxies
# rewrite URLs); ``enforce`` rejects the request with HTTP 403.
SIGNATURE_POLICY: str = _choice_env("SIGNATURE_POLICY", "log_only", ("log_only", "enforce"))

# ``sync`` replies inside the webhook response; ``async`` acknowledges with
# an empty document and delivers the answer as an outbound SMS.
REPLY_MODE: str = _choice_env("REPLY_MODE", "sync", ("sync", "async"))

# ── Abuse throttling ────────────────────────────────────────────────
SMS_RATE_LIMIT: int = _int_env("SMS_RATE_LIMIT", 20)
SMS_RATE_WINDOW_SECONDS: int = _int_env("SMS_RATE_WINDOW_SECONDS", 60 * 60)

# ── Context window ──────────────────────────────────────────────────
HISTORY_LIMIT: int = _int_env("HISTORY_LIMIT", 20)
BOOKINGS_LIMIT: int = _int_env("BOOKINGS_LIMIT", 10)

# ── Persistence ─────────────────────────────────────────────────────
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./sms_concierge.db")

# ── Backoffice (booking / wallet / profile CRUD API) ───────────────
BACKOFFICE_BASE_URL: str = os.getenv("BACKOFFICE_BASE_URL", "http://localhost:3001/api/internal")
BACKOFFICE_API_TOKEN: str | None = _optional_env("BACKOFFICE_API_TOKEN")

# ── Business ────────────────────────────────────────────────────────
BUSINESS_TIMEZONE: str = os.getenv("BUSINESS_TIMEZONE", "America/Denver")
CUSTOMER_APP_URL: str = os.getenv("CUSTOMER_APP_URL", "https://hthd.internationalaidesign.com")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _int_env("SERVER_PORT", 8000)


def ai_configured() -> bool:
    """True when an Anthropic credential is available."""
    return bool(ANTHROPIC_API_KEY)


def sms_configured() -> bool:
    """True when both Twilio account SID and auth token are available."""
    return bool(TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN)
