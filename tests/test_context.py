"""Tests for the per-turn context builder and system prompt rendering."""

from __future__ import annotations

from datetime import UTC, date, datetime

from conftest import CUSTOMER_ID, KNOWN_PHONE, UNKNOWN_PHONE

from sms_concierge import config
from sms_concierge.context import ContextBuilder, ContextSnapshot
from sms_concierge.prompts import build_system_prompt
from sms_concierge.storage.models import ROLE_CUSTOMER


class TestContextBuilder:
    async def test_known_customer_gets_full_snapshot(self, backoffice, store):
        snapshot = await ContextBuilder(backoffice, store).build(KNOWN_PHONE)

        assert snapshot.customer_id == CUSTOMER_ID
        assert snapshot.customer.full_name == "Jane Doe"
        assert [d.name for d in snapshot.dogs] == ["Biscuit", "Luna"]
        assert snapshot.upcoming_bookings[0].id == "bk-1"
        assert snapshot.upcoming_bookings[0].date == date(2026, 11, 2)
        assert snapshot.upcoming_bookings[0].dogs == ("Biscuit",)
        assert snapshot.wallet.balance_cents == 2500
        assert snapshot.degraded is False

    async def test_unknown_number_only_loads_history(self, backoffice, store):
        snapshot = await ContextBuilder(backoffice, store).build(UNKNOWN_PHONE)

        assert snapshot.customer is None
        assert snapshot.customer_id is None
        assert snapshot.dogs == []
        assert snapshot.degraded is False
        assert backoffice.calls == ["find_customer_by_phone"]

    async def test_includes_recent_history(self, backoffice, store):
        conversation_id = await store.find_or_create(KNOWN_PHONE, CUSTOMER_ID)
        await store.store(conversation_id, ROLE_CUSTOMER, "Earlier question")

        snapshot = await ContextBuilder(backoffice, store).build(KNOWN_PHONE)
        assert [m.content for m in snapshot.recent_messages] == ["Earlier question"]

    async def test_history_limit_is_applied(self, backoffice, store):
        conversation_id = await store.find_or_create(KNOWN_PHONE, CUSTOMER_ID)
        for i in range(5):
            await store.store(conversation_id, ROLE_CUSTOMER, f"m{i}")

        snapshot = await ContextBuilder(backoffice, store, history_limit=2).build(KNOWN_PHONE)
        assert [m.content for m in snapshot.recent_messages] == ["m3", "m4"]

    async def test_from_config_applies_configured_limits(self, backoffice, store, monkeypatch):
        monkeypatch.setattr(config, "HISTORY_LIMIT", 1)
        monkeypatch.setattr(config, "BOOKINGS_LIMIT", 0)
        conversation_id = await store.find_or_create(KNOWN_PHONE, CUSTOMER_ID)
        await store.store(conversation_id, ROLE_CUSTOMER, "First")
        await store.store(conversation_id, ROLE_CUSTOMER, "Second")

        snapshot = await ContextBuilder.from_config(backoffice, store).build(KNOWN_PHONE)

        assert len(snapshot.recent_messages) == 1
        assert snapshot.upcoming_bookings == []

    async def test_failed_sub_fetch_degrades_instead_of_raising(self, backoffice, store):
        backoffice.failing.add("list_bookings")
        snapshot = await ContextBuilder(backoffice, store).build(KNOWN_PHONE)

        assert snapshot.degraded is True
        assert snapshot.upcoming_bookings == []
        assert [d.name for d in snapshot.dogs] == ["Biscuit", "Luna"]

    async def test_failed_customer_lookup_degrades(self, backoffice, store):
        backoffice.failing.add("find_customer_by_phone")
        snapshot = await ContextBuilder(backoffice, store).build(KNOWN_PHONE)

        assert snapshot.customer is None
        assert snapshot.degraded is True


class TestSystemPrompt:
    _NOW = datetime(2026, 10, 19, 18, 30, tzinfo=UTC)  # 12:30 PM in Denver

    async def test_known_customer_sections(self, backoffice, store):
        snapshot = await ContextBuilder(backoffice, store).build(KNOWN_PHONE)
        prompt = build_system_prompt(snapshot, now=self._NOW)

        assert "Monday, October 19, 2026 12:30 PM" in prompt
        assert "Name: Jane Doe" in prompt
        assert "Wallet Balance: $25.00" in prompt
        assert "Biscuit (Beagle), MEDIUM" in prompt
        assert "[id: bk-1]" in prompt
        assert "Unknown Number" not in prompt

    def test_unknown_number_section(self):
        prompt = build_system_prompt(ContextSnapshot(phone_number=UNKNOWN_PHONE), now=self._NOW)
        assert "Unknown Number" in prompt
        assert "Current Customer" not in prompt

    def test_degraded_note(self):
        prompt = build_system_prompt(ContextSnapshot(phone_number=KNOWN_PHONE, degraded=True), now=self._NOW)
        assert "could not be loaded" in prompt
