"""Tests for turning stored SMS history into alternating model turns."""

from __future__ import annotations

import random
from datetime import UTC, datetime

import pytest
from langchain_core.messages import AIMessage, HumanMessage

from sms_concierge.history import normalize_history
from sms_concierge.storage.conversation_store import StoredMessage

_NOW = datetime(2026, 10, 1, tzinfo=UTC)


def _msg(role: str, content: str, idx: int = 0) -> StoredMessage:
    return StoredMessage(id=idx, role=role, content=content, created_at=_NOW)


def _roles(messages) -> list[str]:
    return ["user" if isinstance(m, HumanMessage) else "assistant" for m in messages]


class TestNormalizeHistory:
    def test_empty_history_is_just_the_inbound(self):
        result = normalize_history([], "Hi!")
        assert len(result) == 1
        assert isinstance(result[0], HumanMessage)
        assert result[0].content == "Hi!"

    def test_maps_roles_and_appends_inbound(self):
        history = [_msg("customer", "Hello", 1), _msg("assistant", "Hi Jane!", 2)]
        result = normalize_history(history, "Book daycare")
        assert _roles(result) == ["user", "assistant", "user"]
        assert result[-1].content == "Book daycare"

    def test_merges_consecutive_customer_messages(self):
        history = [
            _msg("customer", "Hello", 1),
            _msg("assistant", "Hi!", 2),
            _msg("customer", "Are you open", 3),
        ]
        result = normalize_history(history, "on Sunday?")
        assert _roles(result) == ["user", "assistant", "user"]
        assert result[-1].content == "Are you open\non Sunday?"

    def test_drops_system_audit_rows(self):
        history = [
            _msg("customer", "Cancel my booking", 1),
            _msg("system", "Tool calls: cancel_booking", 2),
            _msg("assistant", "Done!", 3),
        ]
        result = normalize_history(history, "Thanks")
        assert [m.content for m in result] == ["Cancel my booking", "Done!", "Thanks"]

    def test_leading_assistant_turn_is_dropped(self):
        history = [_msg("assistant", "Reminder: see you tomorrow", 1)]
        result = normalize_history(history, "Thanks!")
        assert _roles(result) == ["user"]
        assert result[0].content == "Thanks!"

    def test_assistant_replies_become_ai_messages(self):
        result = normalize_history([_msg("customer", "a", 1), _msg("assistant", "b", 2)], "c")
        assert isinstance(result[1], AIMessage)

    @pytest.mark.parametrize("seed", range(25))
    def test_random_histories_always_alternate_starting_with_user(self, seed):
        rng = random.Random(seed)
        history = [
            _msg(rng.choice(["customer", "assistant", "system"]), f"m{i}", i)
            for i in range(rng.randint(0, 15))
        ]
        result = normalize_history(history, "latest")

        roles = _roles(result)
        assert roles[0] == "user"
        assert roles[-1] == "user"
        assert all(a != b for a, b in zip(roles, roles[1:]))
        assert result[-1].content.endswith("latest")
