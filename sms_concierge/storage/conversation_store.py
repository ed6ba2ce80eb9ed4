"""Conversation store: find-or-create conversations and append messages.

Messages are append-only; nothing here updates or deletes a message.  The
only mutable state is on the conversation row (linked customer, last
activity, escalation, status).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sms_concierge.storage.models import (
    CHANNEL_SMS,
    STATUS_ACTIVE,
    STATUS_CLOSED,
    Conversation,
    Message,
)

logger = logging.getLogger(__name__)


class DuplicateInboundMessage(Exception):
    """The gateway redelivered a message we already stored."""

    def __init__(self, gateway_message_id: str):
        self.gateway_message_id = gateway_message_id
        super().__init__(f"Message {gateway_message_id} already stored")


@dataclass(frozen=True)
class StoredMessage:
    id: int
    role: str
    content: str
    created_at: datetime
    model_used: str | None = None
    intent: str | None = None
    tool_calls: Any = None


@dataclass(frozen=True)
class ConversationRecord:
    id: str
    channel: str
    phone_number: str
    customer_id: str | None
    status: str
    escalated_at: datetime | None
    updated_at: datetime


def _to_stored(row: Message) -> StoredMessage:
    return StoredMessage(
        id=row.id,
        role=row.role,
        content=row.content,
        created_at=row.created_at,
        model_used=row.model_used,
        intent=row.intent,
        tool_calls=row.tool_calls,
    )


class ConversationStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], channel: str = CHANNEL_SMS) -> None:
        self._session_factory = session_factory
        self._channel = channel

    async def _find_active(self, session: AsyncSession, phone_number: str) -> Conversation | None:
        result = await session.execute(
            select(Conversation)
            .where(
                Conversation.phone_number == phone_number,
                Conversation.channel == self._channel,
                Conversation.status == STATUS_ACTIVE,
            )
            .order_by(Conversation.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_or_create(self, phone_number: str, customer_id: str | None) -> str:
        """Return the active conversation id for *phone_number*, creating it if needed.

        A concurrent create for the same number loses on the partial unique
        index; the loser rolls back and returns the winner's id.
        """
        async with self._session_factory() as session:
            existing = await self._find_active(session, phone_number)
            if existing is not None:
                if customer_id and existing.customer_id is None:
                    existing.customer_id = customer_id
                    await session.commit()
                    logger.info("Linked conversation %s to customer %s", existing.id, customer_id)
                return existing.id

            conversation = Conversation(
                channel=self._channel,
                phone_number=phone_number,
                customer_id=customer_id,
                status=STATUS_ACTIVE,
            )
            session.add(conversation)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_active(session, phone_number)
                if existing is None:
                    raise
                logger.info("Lost create race for %s; reusing conversation %s", phone_number, existing.id)
                return existing.id

            logger.info(
                "Created new SMS conversation %s for %s%s",
                conversation.id, phone_number, "" if customer_id else " (no customer)",
            )
            return conversation.id

    async def store(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        model_used: str | None = None,
        intent: str | None = None,
        tool_calls: Any = None,
        gateway_message_id: str | None = None,
    ) -> int:
        """Append a message and bump the conversation's last activity."""
        async with self._session_factory() as session:
            message = Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                channel=self._channel,
                model_used=model_used,
                intent=intent,
                tool_calls=tool_calls,
                gateway_message_id=gateway_message_id,
            )
            session.add(message)
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(updated_at=datetime.now(UTC))
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if gateway_message_id:
                    raise DuplicateInboundMessage(gateway_message_id) from None
                raise
            return message.id

    async def has_gateway_message(self, gateway_message_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message.id).where(Message.gateway_message_id == gateway_message_id).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def recent_messages(self, phone_number: str, limit: int = 20) -> list[StoredMessage]:
        """Last *limit* messages of the active conversation, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message)
                .join(Conversation, Message.conversation_id == Conversation.id)
                .where(
                    Conversation.phone_number == phone_number,
                    Conversation.channel == self._channel,
                    Conversation.status == STATUS_ACTIVE,
                )
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
            )
            rows = list(result.scalars())
        rows.reverse()
        return [_to_stored(row) for row in rows]

    async def messages(self, conversation_id: str) -> list[StoredMessage]:
        """Every message of a conversation, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at, Message.id)
            )
            return [_to_stored(row) for row in result.scalars()]

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Conversation, conversation_id)
            if row is None:
                return None
            return ConversationRecord(
                id=row.id,
                channel=row.channel,
                phone_number=row.phone_number,
                customer_id=row.customer_id,
                status=row.status,
                escalated_at=row.escalated_at,
                updated_at=row.updated_at,
            )

    async def mark_escalated(self, conversation_id: str, reason: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(escalated_at=datetime.now(UTC), escalation_reason=reason)
            )
            await session.commit()
        logger.info("Conversation %s escalated to staff: %s", conversation_id, reason)

    async def close(self, conversation_id: str) -> None:
        """Close a conversation; the next inbound message opens a new one."""
        async with self._session_factory() as session:
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(status=STATUS_CLOSED, updated_at=datetime.now(UTC))
            )
            await session.commit()
        logger.info("Conversation %s closed", conversation_id)
