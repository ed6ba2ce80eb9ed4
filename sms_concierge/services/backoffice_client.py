"""Async HTTP client for the platform's internal booking / wallet / profile API.

The booking engine, wallet ledger and customer records live in the main
web application.  The concierge never touches that schema directly; it
reads and writes through these internal endpoints, authenticated with a
service token passed as a Bearer token.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from sms_concierge.config import BACKOFFICE_API_TOKEN, BACKOFFICE_BASE_URL
from sms_concierge.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10.0

# Service types change rarely; keep them for a few minutes.
SERVICE_TYPES_TTL_SECONDS = 300.0

_RETRYABLE_METHODS = frozenset({"GET"})


class BackofficeAPIError(Exception):
    """Raised when a backoffice call fails (after retries for reads)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text


class BackofficeClient:
    """Thin async wrapper around the internal CRUD API.

    Reads (GET) are retried with exponential backoff on timeouts, connection
    errors and 5xx responses.  Writes are sent once: a timed-out
    ``POST /bookings`` may still have succeeded, and retrying it could
    double-book a dog.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        token = token or BACKOFFICE_API_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url or BACKOFFICE_BASE_URL,
            headers=headers,
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._service_types: list[dict[str, Any]] | None = None
        self._service_types_at = 0.0

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request, retrying reads with exponential backoff."""
        attempts = MAX_RETRIES if method in _RETRYABLE_METHODS else 1
        operation = f"{method} {path.split('?')[0]}"
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            t0 = time.perf_counter()
            try:
                response = await self._client.request(method, path, params=params, json=json_body)
                elapsed = (time.perf_counter() - t0) * 1000
                if response.status_code >= 500:
                    raise BackofficeAPIError(
                        f"Server error {response.status_code}: {_error_message(response)}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    metrics.record_failure(
                        "backoffice", operation, error_type=f"http_{response.status_code}", latency_ms=elapsed,
                    )
                    raise BackofficeAPIError(
                        _error_message(response), status_code=response.status_code,
                    )
                metrics.record_success("backoffice", operation, latency_ms=elapsed)
                return response.json() if response.content else {}

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure("backoffice", operation, error_type=type(exc).__name__)
                logger.warning(
                    "Backoffice %s attempt %d/%d failed (%s)",
                    operation, attempt, attempts, type(exc).__name__,
                )
            except BackofficeAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    metrics.record_failure("backoffice", operation, error_type="http_5xx")
                    logger.warning(
                        "Backoffice server error on %s attempt %d/%d", operation, attempt, attempts,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < attempts:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise BackofficeAPIError(
            f"Backoffice request {operation} failed after {attempts} attempt(s): {last_error}",
            status_code=getattr(last_error, "status_code", None),
        )

    async def _get_optional(self, path: str, **kwargs: Any) -> dict[str, Any] | None:
        """GET that maps 404 to ``None``."""
        try:
            return await self._request("GET", path, **kwargs)
        except BackofficeAPIError as exc:
            if exc.status_code == 404:
                return None
            raise

    # ── Customer profile ─────────────────────────────────────────────

    async def find_customer_by_phone(self, phone_number: str) -> dict[str, Any] | None:
        """Return the customer record for *phone_number*, or ``None``."""
        data = await self._get_optional("/customers/lookup", params={"phone": phone_number})
        if not data:
            return None
        return data.get("customer")

    async def get_customer(self, customer_id: str) -> dict[str, Any] | None:
        data = await self._get_optional(f"/customers/{customer_id}")
        return data.get("customer") if data else None

    async def list_dogs(self, customer_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/customers/{customer_id}/dogs")
        return data.get("dogs", [])

    # ── Bookings ─────────────────────────────────────────────────────

    async def list_bookings(
        self,
        customer_id: str,
        *,
        upcoming_only: bool = True,
        limit: int = 10,
    ) -> dict[str, Any]:
        """Return ``{"bookings": [...], "total": n}`` for the customer."""
        params: dict[str, Any] = {"limit": limit}
        if upcoming_only:
            params["upcoming"] = "true"
        data = await self._request("GET", f"/customers/{customer_id}/bookings", params=params)
        bookings = data.get("bookings", [])
        return {"bookings": bookings, "total": data.get("total", len(bookings))}

    async def list_service_types(self) -> list[dict[str, Any]]:
        """List bookable service types (cached for a few minutes)."""
        now = time.monotonic()
        if self._service_types is not None and now - self._service_types_at < SERVICE_TYPES_TTL_SECONDS:
            return self._service_types
        data = await self._request("GET", "/service-types")
        self._service_types = data.get("serviceTypes", [])
        self._service_types_at = now
        return self._service_types

    async def check_availability(
        self, service_type_id: str, start_date: str, end_date: str,
    ) -> list[dict[str, Any]]:
        """Per-day availability for a service between two ISO dates (inclusive)."""
        data = await self._request(
            "GET",
            "/availability",
            params={"serviceTypeId": service_type_id, "startDate": start_date, "endDate": end_date},
        )
        return data.get("dates", [])

    async def create_booking(
        self,
        *,
        customer_id: str,
        service_type_id: str,
        start_date: str,
        end_date: str,
        dog_ids: list[str],
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Create a single-day or multi-day booking.  Not retried."""
        payload: dict[str, Any] = {
            "customerId": customer_id,
            "serviceTypeId": service_type_id,
            "dogIds": dog_ids,
        }
        if notes:
            payload["notes"] = notes
        if start_date == end_date:
            payload["date"] = start_date
            data = await self._request("POST", "/bookings", json_body=payload)
        else:
            payload["startDate"] = start_date
            payload["endDate"] = end_date
            data = await self._request("POST", "/bookings/multi-day", json_body=payload)
        return data["booking"]

    async def cancel_booking(
        self, booking_id: str, customer_id: str, reason: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"customerId": customer_id}
        if reason:
            payload["reason"] = reason
        data = await self._request("POST", f"/bookings/{booking_id}/cancel", json_body=payload)
        return data["booking"]

    async def reschedule_booking(
        self, booking_id: str, customer_id: str, new_start_date: str, new_end_date: str,
    ) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"/bookings/{booking_id}/reschedule",
            json_body={"customerId": customer_id, "startDate": new_start_date, "endDate": new_end_date},
        )
        return data["booking"]

    # ── Wallet / loyalty ─────────────────────────────────────────────

    async def get_wallet(self, customer_id: str) -> dict[str, Any] | None:
        """Return ``{"balanceCents", "tier", "pointsBalance"}`` or ``None``."""
        data = await self._get_optional(f"/customers/{customer_id}/wallet")
        return data.get("wallet") if data else None

    # ── Staff ────────────────────────────────────────────────────────

    async def notify_staff(
        self,
        *,
        conversation_id: str,
        phone_number: str | None,
        customer_id: str | None,
        reason: str,
    ) -> dict[str, Any]:
        """Raise a staff alert so a human picks up the conversation."""
        return await self._request(
            "POST",
            "/staff/escalations",
            json_body={
                "conversationId": conversation_id,
                "phoneNumber": phone_number,
                "customerId": customer_id,
                "channel": "sms",
                "reason": reason,
            },
        )
