"""Shared test fixtures for the SMS concierge test suite."""

from __future__ import annotations

import os
import uuid
from typing import Any

import pytest
from langchain_core.messages import AIMessage, BaseMessage


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py reads predictable values.
    Package imports in this file stay inside functions for the same reason.
    """
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.setdefault("CUSTOMER_APP_URL", "https://app.example.com")


KNOWN_PHONE = "+13035550142"
UNKNOWN_PHONE = "+17205550199"
CUSTOMER_ID = "cust-1"


class FakeBackoffice:
    """In-memory stand-in for :class:`BackofficeClient` with the same async surface.

    Add a method name to ``failing`` to make it raise ``BackofficeAPIError``.
    """

    def __init__(self) -> None:
        self.customers: dict[str, dict[str, Any]] = {
            KNOWN_PHONE: {
                "id": CUSTOMER_ID,
                "firstName": "Jane",
                "lastName": "Doe",
                "email": "jane@example.com",
                "phone": KNOWN_PHONE,
                "pointsBalance": 120,
            }
        }
        self.dogs: dict[str, list[dict[str, Any]]] = {
            CUSTOMER_ID: [
                {"id": "dog-1", "name": "Biscuit", "breed": "Beagle", "sizeCategory": "MEDIUM"},
                {"id": "dog-2", "name": "Luna", "breed": None, "sizeCategory": None},
            ]
        }
        self.bookings: dict[str, list[dict[str, Any]]] = {
            CUSTOMER_ID: [
                {
                    "id": "bk-1",
                    "serviceType": {"name": "Daycare"},
                    "status": "CONFIRMED",
                    "date": "2026-11-02",
                    "dogs": [{"name": "Biscuit"}],
                    "totalCents": 4700,
                }
            ]
        }
        self.wallets: dict[str, dict[str, Any]] = {CUSTOMER_ID: {"balanceCents": 2500, "tier": "SILVER"}}
        self.service_types: list[dict[str, Any]] = [
            {"id": "svc-daycare", "name": "daycare", "basePriceCents": 4700, "durationMinutes": None},
            {"id": "svc-boarding", "name": "boarding", "basePriceCents": 7000, "durationMinutes": None},
            {"id": "svc-grooming", "name": "grooming", "basePriceCents": 4800, "durationMinutes": 90},
        ]
        self.failing: set[str] = set()
        self.calls: list[str] = []
        self.created: list[dict[str, Any]] = []
        self.cancelled: list[tuple[str, str, str | None]] = []
        self.escalations: list[dict[str, Any]] = []

    def _record(self, name: str) -> None:
        from sms_concierge.services.backoffice_client import BackofficeAPIError

        self.calls.append(name)
        if name in self.failing:
            raise BackofficeAPIError(f"{name} unavailable", status_code=503)

    async def find_customer_by_phone(self, phone_number):
        self._record("find_customer_by_phone")
        return self.customers.get(phone_number)

    async def get_customer(self, customer_id):
        self._record("get_customer")
        return next((c for c in self.customers.values() if c["id"] == customer_id), None)

    async def list_dogs(self, customer_id):
        self._record("list_dogs")
        return list(self.dogs.get(customer_id, []))

    async def list_bookings(self, customer_id, *, upcoming_only=True, limit=10):
        self._record("list_bookings")
        bookings = self.bookings.get(customer_id, [])
        return {"bookings": bookings[:limit], "total": len(bookings)}

    async def list_service_types(self):
        self._record("list_service_types")
        return list(self.service_types)

    async def check_availability(self, service_type_id, start_date, end_date):
        self._record("check_availability")
        return [{"date": start_date, "available": True, "spotsRemaining": 4}]

    async def get_wallet(self, customer_id):
        self._record("get_wallet")
        return self.wallets.get(customer_id)

    async def create_booking(self, **kwargs):
        self._record("create_booking")
        self.created.append(kwargs)
        return {"id": "bk-new", "status": "CONFIRMED", "totalCents": 4700 * len(kwargs["dog_ids"])}

    async def cancel_booking(self, booking_id, customer_id, reason=None):
        self._record("cancel_booking")
        self.cancelled.append((booking_id, customer_id, reason))
        return {"id": booking_id, "status": "CANCELLED"}

    async def reschedule_booking(self, booking_id, customer_id, new_start_date, new_end_date):
        self._record("reschedule_booking")
        return {
            "id": booking_id,
            "status": "CONFIRMED",
            "startDate": new_start_date,
            "endDate": new_end_date,
            "totalCents": 4700,
        }

    async def notify_staff(self, **kwargs):
        self._record("notify_staff")
        self.escalations.append(kwargs)
        return {"ok": True}

    async def aclose(self):
        return None


@pytest.fixture
def backoffice() -> FakeBackoffice:
    return FakeBackoffice()


@pytest.fixture
async def database(tmp_path):
    """File-backed SQLite so every session sees the same data."""
    from sms_concierge.storage.database import Database

    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'conversations.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def store(database):
    from sms_concierge.storage.conversation_store import ConversationStore

    return ConversationStore(database.session_factory)


# ── Scripted chat model ──────────────────────────────────────────────


def text_message(text: str, stop_reason: str = "end_turn") -> AIMessage:
    return AIMessage(content=[{"type": "text", "text": text}], response_metadata={"stop_reason": stop_reason})


def tool_use_message(*calls: tuple[str, dict[str, Any]], text: str = "") -> AIMessage:
    """A model turn requesting ``calls`` as (name, args) pairs, in order."""
    tool_calls = [
        {"name": name, "args": args, "id": f"toolu_{uuid.uuid4().hex[:12]}", "type": "tool_call"}
        for name, args in calls
    ]
    content: list[dict[str, Any]] = [{"type": "text", "text": text}] if text else []
    content += [{"type": "tool_use", "id": c["id"], "name": c["name"], "input": c["args"]} for c in tool_calls]
    return AIMessage(content=content, tool_calls=tool_calls, response_metadata={"stop_reason": "tool_use"})


class ScriptedChatModel:
    """Stands in for the tool-bound Claude runnable.

    Returns the scripted responses in order (the last one repeats) and
    keeps a copy of every message list it was called with.
    """

    def __init__(self, *responses: AIMessage | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[list[BaseMessage]] = []

    async def ainvoke(self, messages, config=None, **kwargs):
        self.calls.append(list(messages))
        response = self.responses[min(len(self.calls), len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        # A fresh copy per call so the graph assigns each turn its own id.
        return response.model_copy(deep=True)
