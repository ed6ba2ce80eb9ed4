"""Context builder: everything the model should know about the sender.

A :class:`ContextSnapshot` is assembled fresh for every inbound SMS and
never cached.  The customer is resolved by phone number first; the dogs,
upcoming bookings, wallet and recent history are then fetched concurrently.
Unknown numbers still get a snapshot (customer ``None``) so the assistant
can point them to sign-up.

A failing sub-fetch does not fail the turn: the snapshot is flagged
``degraded`` and the prompt tells the model that account data is
temporarily unavailable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sms_concierge import config
from sms_concierge.services.backoffice_client import BackofficeClient
from sms_concierge.storage.conversation_store import ConversationStore, StoredMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomerProfile:
    id: str
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    points_balance: int

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class Dog:
    id: str
    name: str
    breed: str | None = None
    size_category: str | None = None
    birth_date: date | None = None


@dataclass(frozen=True)
class BookingSummary:
    id: str
    service_type: str
    status: str
    date: date | None
    start_date: date | None = None
    end_date: date | None = None
    dogs: tuple[str, ...] = ()
    total_cents: int = 0

    @property
    def date_label(self) -> str:
        if self.start_date and self.end_date and self.start_date != self.end_date:
            return f"{self.start_date.isoformat()} to {self.end_date.isoformat()}"
        day = self.date or self.start_date
        return day.isoformat() if day else "date TBD"


@dataclass(frozen=True)
class WalletSummary:
    balance_cents: int
    tier: str | None = None


@dataclass
class ContextSnapshot:
    phone_number: str
    customer: CustomerProfile | None = None
    dogs: list[Dog] = field(default_factory=list)
    upcoming_bookings: list[BookingSummary] = field(default_factory=list)
    wallet: WalletSummary | None = None
    recent_messages: list[StoredMessage] = field(default_factory=list)
    degraded: bool = False

    @property
    def customer_id(self) -> str | None:
        return self.customer.id if self.customer else None


# ── Parsing helpers (backoffice JSON → snapshot types) ──────────────


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _customer_from_json(data: dict[str, Any]) -> CustomerProfile:
    return CustomerProfile(
        id=str(data["id"]),
        first_name=data.get("firstName") or "",
        last_name=data.get("lastName") or "",
        email=data.get("email"),
        phone=data.get("phone"),
        points_balance=int(data.get("pointsBalance") or 0),
    )


def _dog_from_json(data: dict[str, Any]) -> Dog:
    return Dog(
        id=str(data["id"]),
        name=data["name"],
        breed=data.get("breed"),
        size_category=data.get("sizeCategory"),
        birth_date=_parse_date(data.get("birthDate")),
    )


def _booking_from_json(data: dict[str, Any]) -> BookingSummary:
    service = data.get("serviceType")
    if isinstance(service, dict):
        service = service.get("name")
    dogs = data.get("dogs") or []
    dog_names = tuple(d if isinstance(d, str) else (d.get("name") or "") for d in dogs)
    return BookingSummary(
        id=str(data["id"]),
        service_type=service or "Unknown",
        status=data.get("status", "unknown"),
        date=_parse_date(data.get("date")),
        start_date=_parse_date(data.get("startDate")),
        end_date=_parse_date(data.get("endDate")),
        dogs=tuple(n for n in dog_names if n),
        total_cents=int(data.get("totalCents") or 0),
    )


def _wallet_from_json(data: dict[str, Any] | None) -> WalletSummary | None:
    if not data:
        return None
    return WalletSummary(balance_cents=int(data.get("balanceCents") or 0), tier=data.get("tier"))


# ── Builder ──────────────────────────────────────────────────────────


class ContextBuilder:
    """Loads a :class:`ContextSnapshot` for a normalised phone number."""

    def __init__(
        self,
        backoffice: BackofficeClient,
        store: ConversationStore,
        *,
        history_limit: int = 20,
        bookings_limit: int = 10,
    ) -> None:
        self._backoffice = backoffice
        self._store = store
        self._history_limit = history_limit
        self._bookings_limit = bookings_limit

    @classmethod
    def from_config(cls, backoffice: BackofficeClient, store: ConversationStore) -> ContextBuilder:
        """Builder with the history and booking limits from :mod:`sms_concierge.config`."""
        return cls(
            backoffice,
            store,
            history_limit=config.HISTORY_LIMIT,
            bookings_limit=config.BOOKINGS_LIMIT,
        )

    async def build(self, phone_number: str) -> ContextSnapshot:
        snapshot = ContextSnapshot(phone_number=phone_number)

        try:
            customer_json = await self._backoffice.find_customer_by_phone(phone_number)
        except Exception:
            logger.exception("Customer lookup failed for %s; continuing without account data", phone_number)
            customer_json = None
            snapshot.degraded = True

        if customer_json:
            snapshot.customer = _customer_from_json(customer_json)
        elif not snapshot.degraded:
            logger.info("No customer found for phone: %s", phone_number)

        history_task = self._store.recent_messages(phone_number, self._history_limit)
        if snapshot.customer is None:
            snapshot.recent_messages = await self._fetch("history", history_task, snapshot, default=[])
            return snapshot

        customer_id = snapshot.customer.id
        dogs, bookings, wallet, history = await asyncio.gather(
            self._fetch("dogs", self._backoffice.list_dogs(customer_id), snapshot, default=[]),
            self._fetch(
                "bookings",
                self._backoffice.list_bookings(customer_id, upcoming_only=True, limit=self._bookings_limit),
                snapshot,
                default={"bookings": []},
            ),
            self._fetch("wallet", self._backoffice.get_wallet(customer_id), snapshot, default=None),
            self._fetch("history", history_task, snapshot, default=[]),
        )

        snapshot.dogs = [_dog_from_json(d) for d in dogs]
        snapshot.upcoming_bookings = [
            _booking_from_json(b) for b in bookings.get("bookings", [])[: self._bookings_limit]
        ]
        snapshot.wallet = _wallet_from_json(wallet)
        snapshot.recent_messages = history
        return snapshot

    async def _fetch(self, label: str, awaitable, snapshot: ContextSnapshot, *, default):
        """Await one sub-fetch; on failure log, flag the snapshot and use *default*."""
        try:
            return await awaitable
        except Exception:
            logger.exception("Context fetch '%s' failed for %s", label, snapshot.phone_number)
            snapshot.degraded = True
            return default
