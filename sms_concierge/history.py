"""Turn stored SMS history into a message list the Anthropic API accepts.

The Messages API requires the first turn to come from the user and the
roles to strictly alternate.  Stored history does not always look like
that: a customer may text twice before we answer, an old reply may be the
oldest message we loaded, and audit rows sit between turns.
"""

from __future__ import annotations

from collections.abc import Iterable

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from sms_concierge.storage.conversation_store import StoredMessage
from sms_concierge.storage.models import ROLE_ASSISTANT, ROLE_CUSTOMER

_ROLE_MAP = {
    ROLE_CUSTOMER: "user",
    ROLE_ASSISTANT: "assistant",
}


def _to_message(role: str, content: str) -> BaseMessage:
    return HumanMessage(content=content) if role == "user" else AIMessage(content=content)


def normalize_history(history: Iterable[StoredMessage], inbound: str) -> list[BaseMessage]:
    """Build the model-facing history for a new inbound message.

    * ``customer`` → user, ``assistant`` → assistant, audit rows dropped
    * the inbound text is appended as the final user turn
    * consecutive same-role turns are merged with a newline
    * leading assistant turns are dropped so the list starts with user
    """
    turns: list[tuple[str, str]] = []
    for message in history:
        role = _ROLE_MAP.get(message.role)
        if role is None:
            continue
        turns.append((role, message.content))
    turns.append(("user", inbound))

    merged: list[tuple[str, str]] = []
    for role, content in turns:
        if merged and merged[-1][0] == role:
            merged[-1] = (role, f"{merged[-1][1]}\n{content}")
        else:
            merged.append((role, content))

    while merged and merged[0][0] != "user":
        merged.pop(0)

    return [_to_message(role, content) for role, content in merged]

