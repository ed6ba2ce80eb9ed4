"""Tools the concierge model may call, and the executor that runs them.

The registry is closed: every tool has a :class:`ToolName`, a pydantic
argument model (which also produces the JSON schema sent to Anthropic) and
an async handler.  Handlers talk to the backoffice API and return plain
JSON-serialisable dicts.

:meth:`ToolExecutor.execute` never raises.  An unknown tool, arguments that
fail validation, a :class:`ToolError` from a handler or any unexpected
exception all come back as ``ToolResult(payload={"error": ...},
is_error=True)`` so one failing tool cannot abort the customer's turn.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from sms_concierge.services.backoffice_client import BackofficeAPIError, BackofficeClient
from sms_concierge.storage.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

NO_ACCOUNT_ERROR = "No account found for this phone number."
MAX_LOYALTY_POINTS = 500

ServiceName = Literal["daycare", "boarding", "grooming"]


class ToolError(Exception):
    """A tool could not do what was asked; the message is shown to the model."""


class ToolName(StrEnum):
    CHECK_AVAILABILITY = "check_availability"
    CREATE_BOOKING = "create_booking"
    GET_MY_BOOKINGS = "get_my_bookings"
    CANCEL_BOOKING = "cancel_booking"
    RESCHEDULE_BOOKING = "reschedule_booking"
    GET_WALLET_BALANCE = "get_wallet_balance"
    GET_SERVICES_AND_PRICING = "get_services_and_pricing"
    ESCALATE_TO_STAFF = "escalate_to_staff"


# ── Argument models ──────────────────────────────────────────────────


class _DateRange(BaseModel):
    start_date: date = Field(description="Start date in YYYY-MM-DD format")
    end_date: date = Field(description="End date in YYYY-MM-DD format. Same as start_date for single-day bookings.")

    @model_validator(mode="after")
    def _end_not_before_start(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class CheckAvailabilityArgs(_DateRange):
    service_name: ServiceName = Field(description="The service type: daycare, boarding, or grooming")


class CreateBookingArgs(_DateRange):
    service_name: ServiceName = Field(description="The service type: daycare, boarding, or grooming")
    dog_names: list[str] = Field(min_length=1, description="Names of the dogs to book for. Must match dogs on file.")
    notes: str | None = Field(default=None, description="Optional notes for the booking")


class GetMyBookingsArgs(BaseModel):
    include_past: bool = Field(
        default=False,
        description="Whether to include past/completed bookings. Defaults to false (upcoming only).",
    )


class CancelBookingArgs(BaseModel):
    booking_id: str = Field(description="The booking ID to cancel")
    reason: str | None = Field(default=None, description="Reason for cancellation")


class RescheduleBookingArgs(BaseModel):
    booking_id: str = Field(description="The booking ID to move")
    new_start_date: date = Field(description="New start date in YYYY-MM-DD format")
    new_end_date: date | None = Field(
        default=None, description="New end date for boarding stays. Omit for single-day services.",
    )


class NoArgs(BaseModel):
    pass


class EscalateToStaffArgs(BaseModel):
    reason: str = Field(description="Short summary of why a human needs to take over")


# ── Handler plumbing ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolContext:
    customer_id: str | None
    conversation_id: str
    phone_number: str | None
    backoffice: BackofficeClient
    store: ConversationStore

    def require_customer(self) -> str:
        if not self.customer_id:
            raise ToolError(NO_ACCOUNT_ERROR)
        return self.customer_id


ToolHandler = Callable[[Any, ToolContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    args_model: type[BaseModel]
    handler: ToolHandler

    def definition(self) -> dict[str, Any]:
        """Anthropic tool definition (``name``, ``description``, ``input_schema``)."""
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return {"name": self.name.value, "description": self.description, "input_schema": schema}


@dataclass(frozen=True)
class ToolResult:
    payload: dict[str, Any]
    is_error: bool = False

    def to_json(self) -> str:
        return json.dumps(self.payload, default=str)


def _money(cents: int | None) -> str:
    return f"${(cents or 0) / 100:.2f}"


async def _resolve_service_type(ctx: ToolContext, service_name: str) -> dict[str, Any]:
    for service in await ctx.backoffice.list_service_types():
        if service.get("name", "").lower() == service_name.lower():
            return service
    raise ToolError(f"Unknown service: {service_name}")


async def _resolve_dogs(ctx: ToolContext, customer_id: str, dog_names: list[str]) -> list[dict[str, Any]]:
    dogs = await ctx.backoffice.list_dogs(customer_id)
    by_name = {d["name"].lower(): d for d in dogs}
    resolved = []
    for name in dog_names:
        match = by_name.get(name.strip().lower())
        if match is None:
            raise ToolError(f'Dog "{name}" not found on your account')
        resolved.append(match)
    return resolved


def _booking_dates(booking: dict[str, Any]) -> str:
    start, end = booking.get("startDate"), booking.get("endDate")
    if start and end:
        return f"{str(start)[:10]} to {str(end)[:10]}"
    return str(booking.get("date", ""))[:10]


# ── Handlers ─────────────────────────────────────────────────────────


async def check_availability(args: CheckAvailabilityArgs, ctx: ToolContext) -> dict[str, Any]:
    service = await _resolve_service_type(ctx, args.service_name)
    days = await ctx.backoffice.check_availability(
        service["id"], args.start_date.isoformat(), args.end_date.isoformat(),
    )
    return {
        "service": service["name"],
        "basePrice": _money(service.get("basePriceCents")),
        "dates": [
            {"date": d.get("date"), "available": d.get("available"), "spotsLeft": d.get("spotsRemaining")}
            for d in days
        ],
    }


async def create_booking(args: CreateBookingArgs, ctx: ToolContext) -> dict[str, Any]:
    if not ctx.customer_id:
        raise ToolError(
            "You need an account to make bookings. Please visit us or call to set up your account first."
        )
    service = await _resolve_service_type(ctx, args.service_name)
    dogs = await _resolve_dogs(ctx, ctx.customer_id, args.dog_names)
    start, end = args.start_date.isoformat(), args.end_date.isoformat()

    booking = await ctx.backoffice.create_booking(
        customer_id=ctx.customer_id,
        service_type_id=service["id"],
        start_date=start,
        end_date=end,
        dog_ids=[d["id"] for d in dogs],
        notes=args.notes,
    )
    return {
        "success": True,
        "bookingId": booking["id"],
        "service": service["name"],
        "date": start if start == end else f"{start} to {end}",
        "dogs": [d["name"] for d in dogs],
        "totalPrice": _money(booking.get("totalCents")),
        "status": booking.get("status"),
    }


async def get_my_bookings(args: GetMyBookingsArgs, ctx: ToolContext) -> dict[str, Any]:
    customer_id = ctx.require_customer()
    result = await ctx.backoffice.list_bookings(customer_id, upcoming_only=not args.include_past, limit=10)
    bookings = []
    for b in result["bookings"]:
        service = b.get("serviceType")
        bookings.append(
            {
                "id": b["id"],
                "service": (service.get("name") if isinstance(service, dict) else service) or "Unknown",
                "date": _booking_dates(b),
                "dogs": [d if isinstance(d, str) else d.get("name") for d in b.get("dogs", [])],
                "status": b.get("status"),
                "price": _money(b.get("totalCents")),
            }
        )
    return {"total": result["total"], "bookings": bookings}


async def cancel_booking(args: CancelBookingArgs, ctx: ToolContext) -> dict[str, Any]:
    customer_id = ctx.require_customer()
    booking = await ctx.backoffice.cancel_booking(args.booking_id, customer_id, args.reason)
    return {
        "success": True,
        "bookingId": booking.get("id", args.booking_id),
        "status": "cancelled",
        "message": "Booking has been cancelled.",
    }


async def reschedule_booking(args: RescheduleBookingArgs, ctx: ToolContext) -> dict[str, Any]:
    customer_id = ctx.require_customer()
    new_end = args.new_end_date or args.new_start_date
    if new_end < args.new_start_date:
        raise ToolError("new_end_date must be on or after new_start_date")
    booking = await ctx.backoffice.reschedule_booking(
        args.booking_id, customer_id, args.new_start_date.isoformat(), new_end.isoformat(),
    )
    return {
        "success": True,
        "bookingId": booking.get("id", args.booking_id),
        "date": _booking_dates(booking) or args.new_start_date.isoformat(),
        "status": booking.get("status"),
        "totalPrice": _money(booking.get("totalCents")),
    }


async def get_wallet_balance(args: NoArgs, ctx: ToolContext) -> dict[str, Any]:
    customer_id = ctx.require_customer()
    wallet, customer = await asyncio.gather(
        ctx.backoffice.get_wallet(customer_id),
        ctx.backoffice.get_customer(customer_id),
    )
    return {
        "walletBalance": _money(wallet.get("balanceCents")) if wallet else "No wallet yet",
        "tier": wallet.get("tier") if wallet else None,
        "loyaltyPoints": (customer or {}).get("pointsBalance", 0),
        "maxPoints": MAX_LOYALTY_POINTS,
    }


async def get_services_and_pricing(args: NoArgs, ctx: ToolContext) -> dict[str, Any]:
    services = await ctx.backoffice.list_service_types()
    return {
        "services": [
            {
                "name": s["name"],
                "basePrice": _money(s.get("basePriceCents")),
                "duration": f"{s['durationMinutes']} min" if s.get("durationMinutes") else "Full day",
            }
            for s in services
            if s.get("isActive", True)
        ],
        "notes": "Grooming price varies by dog size and coat condition. Multi-dog discount: 10% off for 2+ dogs.",
    }


async def escalate_to_staff(args: EscalateToStaffArgs, ctx: ToolContext) -> dict[str, Any]:
    await ctx.store.mark_escalated(ctx.conversation_id, args.reason)
    await ctx.backoffice.notify_staff(
        conversation_id=ctx.conversation_id,
        phone_number=ctx.phone_number,
        customer_id=ctx.customer_id,
        reason=args.reason,
    )
    return {"success": True, "message": "A team member has been notified and will follow up shortly."}


TOOL_REGISTRY: dict[ToolName, ToolSpec] = {
    tool_spec.name: tool_spec
    for tool_spec in (
        ToolSpec(
            ToolName.CHECK_AVAILABILITY,
            "Check if a service (daycare, boarding, grooming) is available on specific dates. "
            "Always check before creating a booking.",
            CheckAvailabilityArgs,
            check_availability,
        ),
        ToolSpec(
            ToolName.CREATE_BOOKING,
            "Create a booking for the customer. For boarding (multi-day), use start_date and end_date. "
            "For daycare/grooming, start_date and end_date should be the same. Always check availability first.",
            CreateBookingArgs,
            create_booking,
        ),
        ToolSpec(
            ToolName.GET_MY_BOOKINGS,
            "Get the customer's upcoming bookings.",
            GetMyBookingsArgs,
            get_my_bookings,
        ),
        ToolSpec(
            ToolName.CANCEL_BOOKING,
            "Cancel a booking by ID. Remind the customer about the 24-hour cancellation policy.",
            CancelBookingArgs,
            cancel_booking,
        ),
        ToolSpec(
            ToolName.RESCHEDULE_BOOKING,
            "Move an existing booking to new dates. Check availability for the new dates first.",
            RescheduleBookingArgs,
            reschedule_booking,
        ),
        ToolSpec(
            ToolName.GET_WALLET_BALANCE,
            "Check the customer's wallet balance and loyalty points.",
            NoArgs,
            get_wallet_balance,
        ),
        ToolSpec(
            ToolName.GET_SERVICES_AND_PRICING,
            "Get the list of available services and their base pricing.",
            NoArgs,
            get_services_and_pricing,
        ),
        ToolSpec(
            ToolName.ESCALATE_TO_STAFF,
            "Hand the conversation to a human team member. Use when the customer asks for a person, "
            "or when you cannot resolve their issue.",
            EscalateToStaffArgs,
            escalate_to_staff,
        ),
    )
}


def tool_definitions() -> list[dict[str, Any]]:
    """All tool definitions in Anthropic format, in registry order."""
    return [tool_spec.definition() for tool_spec in TOOL_REGISTRY.values()]


class ToolExecutor:
    """Dispatches a model tool call to its handler and normalises the outcome."""

    def __init__(self, backoffice: BackofficeClient, store: ConversationStore) -> None:
        self._backoffice = backoffice
        self._store = store

    async def execute(
        self,
        tool_name: str,
        args: dict[str, Any] | None,
        customer_id: str | None,
        conversation_id: str,
        *,
        phone_number: str | None = None,
    ) -> ToolResult:
        try:
            tool_spec = TOOL_REGISTRY[ToolName(tool_name)]
        except ValueError:
            logger.warning("Model requested unknown tool %r", tool_name)
            return ToolResult({"error": f"Unknown tool: {tool_name}"}, is_error=True)

        try:
            parsed = tool_spec.args_model.model_validate(args or {})
        except ValidationError as exc:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in exc.errors()
            )
            return ToolResult({"error": f"Invalid arguments for {tool_name}: {errors}"}, is_error=True)

        ctx = ToolContext(
            customer_id=customer_id,
            conversation_id=conversation_id,
            phone_number=phone_number,
            backoffice=self._backoffice,
            store=self._store,
        )
        logger.info("Executing tool: %s (customer=%s)", tool_name, customer_id)
        try:
            return ToolResult(await tool_spec.handler(parsed, ctx))
        except (ToolError, BackofficeAPIError) as exc:
            logger.info("Tool %s returned an error: %s", tool_name, exc)
            return ToolResult({"error": str(exc)}, is_error=True)
        except Exception as exc:
            logger.exception("Tool %s failed (conversation=%s)", tool_name, conversation_id)
            return ToolResult({"error": str(exc) or "Tool execution failed"}, is_error=True)
