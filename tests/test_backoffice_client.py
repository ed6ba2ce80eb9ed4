"""Tests for the BackofficeClient service."""

from __future__ import annotations

import json

import httpx
import pytest

from sms_concierge.services import backoffice_client
from sms_concierge.services.backoffice_client import MAX_RETRIES, BackofficeAPIError, BackofficeClient

BASE_URL = "http://backoffice.test/api/internal"


# ── Helpers ──────────────────────────────────────────────────────────


class Recorder:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _client(recorder: Recorder, token: str | None = "svc-token") -> BackofficeClient:
    return BackofficeClient(BASE_URL, token, transport=httpx.MockTransport(recorder))


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(backoffice_client, "INITIAL_BACKOFF_SECONDS", 0)


# ── Tests: reads ─────────────────────────────────────────────────────


class TestReads:
    async def test_lookup_customer_by_phone(self):
        recorder = Recorder(httpx.Response(200, json={"customer": {"id": "cust-1", "firstName": "Jane"}}))
        client = _client(recorder)

        customer = await client.find_customer_by_phone("+13035550142")

        assert customer["id"] == "cust-1"
        request = recorder.requests[0]
        assert request.url.path == "/api/internal/customers/lookup"
        assert request.url.params["phone"] == "+13035550142"
        assert request.headers["Authorization"] == "Bearer svc-token"

    async def test_lookup_404_is_none(self):
        client = _client(Recorder(httpx.Response(404, json={"error": "Customer not found"})))
        assert await client.find_customer_by_phone("+17205550199") is None

    async def test_list_bookings_sends_upcoming_filter(self):
        recorder = Recorder(httpx.Response(200, json={"bookings": [{"id": "bk-1"}], "total": 1}))
        result = await _client(recorder).list_bookings("cust-1", upcoming_only=True, limit=5)

        assert result == {"bookings": [{"id": "bk-1"}], "total": 1}
        params = recorder.requests[0].url.params
        assert params["upcoming"] == "true"
        assert params["limit"] == "5"

    async def test_service_types_are_cached(self):
        recorder = Recorder(httpx.Response(200, json={"serviceTypes": [{"id": "svc-1", "name": "daycare"}]}))
        client = _client(recorder)

        await client.list_service_types()
        await client.list_service_types()
        assert len(recorder.requests) == 1

    async def test_wallet_missing_is_none(self):
        client = _client(Recorder(httpx.Response(404, json={"error": "No wallet"})))
        assert await client.get_wallet("cust-1") is None


# ── Tests: retries ───────────────────────────────────────────────────


class TestRetries:
    async def test_get_retries_on_5xx_then_succeeds(self):
        recorder = Recorder(
            httpx.Response(503, json={"error": "unavailable"}),
            httpx.Response(200, json={"dogs": [{"id": "dog-1", "name": "Biscuit"}]}),
        )
        dogs = await _client(recorder).list_dogs("cust-1")

        assert [d["name"] for d in dogs] == ["Biscuit"]
        assert len(recorder.requests) == 2

    async def test_get_gives_up_after_max_retries(self):
        recorder = Recorder(httpx.Response(500, text="oops"))
        with pytest.raises(BackofficeAPIError) as exc_info:
            await _client(recorder).list_dogs("cust-1")

        assert len(recorder.requests) == MAX_RETRIES
        assert exc_info.value.status_code == 500

    async def test_get_retries_on_timeout(self):
        recorder = Recorder(
            httpx.ReadTimeout("slow"),
            httpx.Response(200, json={"dates": []}),
        )
        assert await _client(recorder).check_availability("svc-1", "2026-11-02", "2026-11-02") == []
        assert len(recorder.requests) == 2

    async def test_4xx_is_not_retried(self):
        recorder = Recorder(httpx.Response(400, json={"error": "Bad date"}))
        with pytest.raises(BackofficeAPIError, match="Bad date"):
            await _client(recorder).check_availability("svc-1", "nope", "nope")
        assert len(recorder.requests) == 1

    async def test_post_is_never_retried(self):
        recorder = Recorder(httpx.Response(502, text="bad gateway"))
        with pytest.raises(BackofficeAPIError):
            await _client(recorder).cancel_booking("bk-1", "cust-1")
        assert len(recorder.requests) == 1


# ── Tests: writes ────────────────────────────────────────────────────


class TestWrites:
    async def test_single_day_booking(self):
        recorder = Recorder(httpx.Response(201, json={"booking": {"id": "bk-9", "status": "CONFIRMED"}}))
        booking = await _client(recorder).create_booking(
            customer_id="cust-1",
            service_type_id="svc-1",
            start_date="2026-11-02",
            end_date="2026-11-02",
            dog_ids=["dog-1"],
        )

        assert booking["id"] == "bk-9"
        request = recorder.requests[0]
        assert request.url.path == "/api/internal/bookings"
        assert json.loads(request.content) == {
            "customerId": "cust-1",
            "serviceTypeId": "svc-1",
            "dogIds": ["dog-1"],
            "date": "2026-11-02",
        }

    async def test_multi_day_booking(self):
        recorder = Recorder(httpx.Response(201, json={"booking": {"id": "bk-10"}}))
        await _client(recorder).create_booking(
            customer_id="cust-1",
            service_type_id="svc-2",
            start_date="2026-11-02",
            end_date="2026-11-05",
            dog_ids=["dog-1", "dog-2"],
            notes="Needs meds at 8pm",
        )

        request = recorder.requests[0]
        assert request.url.path == "/api/internal/bookings/multi-day"
        body = json.loads(request.content)
        assert body["startDate"] == "2026-11-02"
        assert body["endDate"] == "2026-11-05"
        assert body["notes"] == "Needs meds at 8pm"

    async def test_notify_staff_payload(self):
        recorder = Recorder(httpx.Response(200, json={"ok": True}))
        await _client(recorder).notify_staff(
            conversation_id="conv-1", phone_number="+13035550142", customer_id=None, reason="Angry customer",
        )
        body = json.loads(recorder.requests[0].content)
        assert body["channel"] == "sms"
        assert body["reason"] == "Angry customer"
