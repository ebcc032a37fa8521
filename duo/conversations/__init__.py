"""Conversation & message store.

Public API: ConversationStore + id helpers + schema types from schemas.py.
"""

from duo.conversations.schemas import (
    ConversationDetail,
    ConversationSummary,
    ConversationType,
    LeaveResult,
    MessageDetail,
    NotificationPreview,
    ParticipantInfo,
    ParticipantRef,
)
from duo.conversations.store import ConversationStore, direct_conversation_id, new_group_id

__all__ = [
    "ConversationStore",
    "direct_conversation_id",
    "new_group_id",
    # Type aliases
    "ConversationType",
    # Conversations
    "ConversationDetail",
    "ConversationSummary",
    "LeaveResult",
    # Members
    "ParticipantInfo",
    "ParticipantRef",
    # Messages
    "MessageDetail",
    "NotificationPreview",
]
