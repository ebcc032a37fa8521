"""Pydantic DTOs for conversations, participants and messages.

These models define the public contract of the conversation store; the
REST layer serializes them with model_dump(mode="json").
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from duo.utils import UtcDatetime

ConversationType = Literal["direct", "group"]


class ConversationDetail(BaseModel):
    id: str
    name: str | None
    type: ConversationType
    created_by: str
    is_archived: bool
    created_at: UtcDatetime


class ParticipantRef(BaseModel):
    id: str
    name: str


class ParticipantInfo(BaseModel):
    """A member of a conversation, with presence and read cursor."""

    id: str
    name: str
    status: str
    status_message: str | None = None
    joined_at: UtcDatetime
    last_read_at: UtcDatetime | None = None


class ConversationSummary(ConversationDetail):
    """Conversation as listed for one partner."""

    unread_count: int = 0
    last_message_at: UtcDatetime | None = None
    participants: list[ParticipantRef] = []


class MessageDetail(BaseModel):
    id: int
    conversation_id: str
    from_id: str
    content: str
    created_at: UtcDatetime


class NotificationPreview(BaseModel):
    """Truncated unread message, used by the notes-file side channel."""

    from_id: str
    conversation_id: str
    content: str
    created_at: UtcDatetime


class LeaveResult(BaseModel):
    left: bool
    archived: bool
