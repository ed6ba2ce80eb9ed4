"""Pydantic schemas for the JSON endpoints.

The SMS webhook itself speaks form-encoded in and TwiML out, so it has no
schema here.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class StatusResponse(BaseModel):
    """Which integrations are configured right now."""

    sms: Literal["configured", "not_configured"] = Field(..., description="Twilio credentials present")
    ai: Literal["configured", "not_configured"] = Field(..., description="Anthropic credential present")
    status: Literal["operational", "partial"]
    version: str = "v2"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "sms-concierge"
