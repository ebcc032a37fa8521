"""Conversation & message store.

Direct conversations have a deterministic id built from the sorted pair of
partner ids; resolution is an INSERT ... ON CONFLICT DO NOTHING for the
conversation and both participant rows, so both sides of a pair can race
to open it and still end up with one conversation. A readable id already
held by a different pair (("a_b", "c") vs ("a", "b_c")) is never joined;
that pair gets a hashed id instead.

Read state lives on the participant row (last_read_at), never on messages.
All mutating methods follow the session injection pattern: pass a session
to join an outer transaction, omit it to commit on return.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time
from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from duo.conversations.schemas import (
    ConversationDetail,
    ConversationSummary,
    LeaveResult,
    MessageDetail,
    NotificationPreview,
    ParticipantInfo,
    ParticipantRef,
)
from duo.errors import Forbidden, NotFound, ValidationError
from duo.storage.database import Database
from duo.storage.models import Conversation, Message, Participant, Partner, utcnow
from duo.utils import truncate

logger = logging.getLogger(__name__)


def direct_conversation_id(partner_a: str, partner_b: str) -> str:
    """Order-independent id for the direct conversation between two partners."""
    lo, hi = sorted((partner_a, partner_b))
    return f"direct_{lo}_{hi}"


def hashed_direct_id(partner_a: str, partner_b: str) -> str:
    """Collision-free direct id, used when the readable one is taken by another pair.

    Readable ids always hold at least two underscores; this form holds one.
    """
    lo, hi = sorted((partner_a, partner_b))
    digest = hashlib.sha256(f"{lo}\0{hi}".encode("utf-8")).hexdigest()[:32]
    return f"direct_{digest}"


def new_group_id() -> str:
    """Opaque group id: epoch milliseconds plus 48 random bits."""
    return f"group_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


class ConversationStore:
    """Conversations, membership, messages and read cursors."""

    def __init__(self, database: Database, preview_chars: int = 200) -> None:
        self.db = database
        self.preview_chars = preview_chars

    # ------------------------------------------------------------------
    # resolve_direct()
    # ------------------------------------------------------------------

    async def resolve_direct(
        self, partner_a: str, partner_b: str, session: AsyncSession | None = None
    ) -> ConversationDetail:
        """Get or create the direct conversation between two partners."""
        if session is None:
            async with self.db.session() as session:
                result = await self._resolve_direct(partner_a, partner_b, session)
                await session.commit()
                return result
        return await self._resolve_direct(partner_a, partner_b, session)

    async def _resolve_direct(self, partner_a: str, partner_b: str, session: AsyncSession) -> ConversationDetail:
        if partner_a == partner_b:
            raise ValidationError("Cannot open a direct conversation with yourself")

        pair = (partner_a, partner_b)
        conv = await self._claim_direct(direct_conversation_id(*pair), pair, session)
        if conv is None:
            # The readable id belongs to another pair (ids containing "_")
            conv = await self._claim_direct(hashed_direct_id(*pair), pair, session)
        if conv is None:
            raise ValidationError("Cannot open a direct conversation for this pair")
        return self._to_detail(conv)

    async def _claim_direct(
        self, conversation_id: str, pair: tuple[str, str], session: AsyncSession
    ) -> Conversation | None:
        """Get or create conversation_id for pair; None when another pair owns it."""
        now = utcnow()
        await session.execute(
            self.db.insert(Conversation)
            .values(
                id=conversation_id,
                name=None,
                type="direct",
                created_by=pair[0],
                is_archived=False,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["id"])
        )
        conv = (
            await session.execute(select(Conversation).where(Conversation.id == conversation_id))
        ).scalar_one()
        members = set(
            (
                await session.execute(
                    select(Participant.partner_id).where(Participant.conversation_id == conversation_id)
                )
            ).scalars().all()
        )
        if conv.type != "direct" or (members and members != set(pair)):
            return None

        if not members:
            await session.execute(
                self.db.insert(Participant)
                .values(
                    [
                        {"conversation_id": conversation_id, "partner_id": pid, "joined_at": now}
                        for pid in sorted(pair)
                    ]
                )
                .on_conflict_do_nothing(index_elements=["conversation_id", "partner_id"])
            )
        return conv

    # ------------------------------------------------------------------
    # create_group()
    # ------------------------------------------------------------------

    async def create_group(
        self,
        name: str,
        creator_id: str,
        participant_ids: list[str],
        session: AsyncSession | None = None,
    ) -> ConversationDetail:
        """Create a group with the creator plus every listed participant."""
        if session is None:
            async with self.db.session() as session:
                result = await self._create_group(name, creator_id, participant_ids, session)
                await session.commit()
                return result
        return await self._create_group(name, creator_id, participant_ids, session)

    async def _create_group(
        self, name: str, creator_id: str, participant_ids: list[str], session: AsyncSession
    ) -> ConversationDetail:
        if not name:
            raise ValidationError("name required")

        members = list(dict.fromkeys([creator_id, *participant_ids]))
        found = set(
            (await session.execute(select(Partner.id).where(Partner.id.in_(members)))).scalars().all()
        )
        missing = [m for m in members if m not in found]
        if missing:
            raise NotFound(f"Partner \"{missing[0]}\" not found")

        now = utcnow()
        conv = Conversation(
            id=new_group_id(),
            name=name,
            type="group",
            created_by=creator_id,
            is_archived=False,
            created_at=now,
        )
        session.add(conv)
        await session.flush()
        session.add_all(
            [Participant(conversation_id=conv.id, partner_id=pid, joined_at=now) for pid in members]
        )
        await session.flush()
        logger.info("Group conversation created: %s by %s (%d members)", conv.id, creator_id, len(members))
        return self._to_detail(conv)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, conversation_id: str) -> ConversationDetail | None:
        async with self.db.session() as session:
            conv = await session.get(Conversation, conversation_id)
            return self._to_detail(conv) if conv is not None else None

    async def is_participant(self, conversation_id: str, partner_id: str) -> bool:
        async with self.db.session() as session:
            return await self._is_participant(conversation_id, partner_id, session)

    async def _is_participant(self, conversation_id: str, partner_id: str, session: AsyncSession) -> bool:
        row = await session.get(Participant, (conversation_id, partner_id))
        return row is not None

    async def participant_ids(self, conversation_id: str) -> list[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Participant.partner_id)
                .where(Participant.conversation_id == conversation_id)
                .order_by(Participant.joined_at, Participant.partner_id)
            )
            return list(result.scalars().all())

    async def participants(self, conversation_id: str) -> list[ParticipantInfo]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Participant, Partner)
                .join(Partner, Partner.id == Participant.partner_id)
                .where(Participant.conversation_id == conversation_id)
                .order_by(Participant.joined_at, Participant.partner_id)
            )
            return [
                ParticipantInfo(
                    id=partner.id,
                    name=partner.name,
                    status=partner.status,
                    status_message=partner.status_message,
                    joined_at=part.joined_at,
                    last_read_at=part.last_read_at,
                )
                for part, partner in result.all()
            ]

    # ------------------------------------------------------------------
    # append()
    # ------------------------------------------------------------------

    async def append(
        self,
        conversation_id: str,
        from_id: str,
        content: str,
        session: AsyncSession | None = None,
    ) -> MessageDetail:
        """Append a message. The author must be a participant."""
        if session is None:
            async with self.db.session() as session:
                result = await self._append(conversation_id, from_id, content, session)
                await session.commit()
                return result
        return await self._append(conversation_id, from_id, content, session)

    async def _append(self, conversation_id: str, from_id: str, content: str, session: AsyncSession) -> MessageDetail:
        # Write-lock the conversation row before stamping created_at: within one
        # conversation commit order then matches created_at order, so a cursor
        # set from delivered messages never passes a later commit.
        locked = await session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(is_archived=Conversation.is_archived)
            .execution_options(synchronize_session=False)
        )
        if locked.rowcount == 0:
            raise NotFound("Conversation not found")
        if not await self._is_participant(conversation_id, from_id, session):
            raise Forbidden("Not a participant of this conversation")

        msg = Message(conversation_id=conversation_id, from_id=from_id, content=content, created_at=utcnow())
        session.add(msg)
        await session.flush()
        return self._to_message(msg)

    # ------------------------------------------------------------------
    # Unread tracking
    # ------------------------------------------------------------------

    def _unread_query(self, partner_id: str, conversation_id: str | None = None, columns: tuple = (Message,)):
        q = (
            select(*columns)
            .select_from(Message)
            .join(
                Participant,
                and_(
                    Participant.conversation_id == Message.conversation_id,
                    Participant.partner_id == partner_id,
                ),
            )
            .where(Message.from_id != partner_id)
            .where(or_(Participant.last_read_at.is_(None), Message.created_at > Participant.last_read_at))
        )
        if conversation_id is not None:
            q = q.where(Message.conversation_id == conversation_id)
        return q

    async def unread_for(self, partner_id: str, conversation_id: str | None = None) -> list[MessageDetail]:
        """Messages from others after the partner's read cursor, oldest first."""
        q = self._unread_query(partner_id, conversation_id).order_by(Message.created_at, Message.id)
        async with self.db.session() as session:
            result = await session.execute(q)
            return [self._to_message(m) for m in result.scalars().all()]

    async def mark_read(
        self,
        conversation_id: str,
        partner_id: str,
        upto: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> None:
        """Advance the read cursor to upto (default now). Never moves it backwards."""
        if session is None:
            async with self.db.session() as session:
                await self._mark_read(conversation_id, partner_id, upto, session)
                await session.commit()
                return
        await self._mark_read(conversation_id, partner_id, upto, session)

    async def _mark_read(
        self, conversation_id: str, partner_id: str, upto: datetime | None, session: AsyncSession
    ) -> None:
        cursor = upto or utcnow()
        await session.execute(
            update(Participant)
            .where(
                Participant.conversation_id == conversation_id,
                Participant.partner_id == partner_id,
                or_(Participant.last_read_at.is_(None), Participant.last_read_at < cursor),
            )
            .values(last_read_at=cursor)
        )

    async def mark_delivered(self, partner_id: str, messages: list[MessageDetail]) -> None:
        """Advance each touched conversation's cursor to its newest delivered message."""
        newest: dict[str, datetime] = {}
        for m in messages:
            if m.conversation_id not in newest or m.created_at > newest[m.conversation_id]:
                newest[m.conversation_id] = m.created_at
        if not newest:
            return
        async with self.db.session() as session:
            for conversation_id, upto in newest.items():
                await self._mark_read(conversation_id, partner_id, upto, session)
            await session.commit()

    async def notifications(self, partner_id: str) -> list[NotificationPreview]:
        """Truncated previews of unread messages. Does not mark anything read."""
        return [
            NotificationPreview(
                from_id=m.from_id,
                conversation_id=m.conversation_id,
                content=truncate(m.content, self.preview_chars),
                created_at=m.created_at,
            )
            for m in await self.unread_for(partner_id)
        ]

    # ------------------------------------------------------------------
    # leave()
    # ------------------------------------------------------------------

    async def leave(self, conversation_id: str, partner_id: str) -> LeaveResult:
        """Leave a group conversation; the last one out archives it."""
        async with self.db.session() as session:
            conv = await session.get(Conversation, conversation_id)
            if conv is None:
                raise NotFound("Conversation not found")
            if conv.type == "direct":
                raise ValidationError("Direct conversations cannot be left")

            result = await session.execute(
                delete(Participant).where(
                    Participant.conversation_id == conversation_id,
                    Participant.partner_id == partner_id,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                raise Forbidden("Not a participant of this conversation")

            remaining = (
                await session.execute(
                    select(func.count())
                    .select_from(Participant)
                    .where(Participant.conversation_id == conversation_id)
                )
            ).scalar() or 0
            archived = remaining == 0
            if archived:
                conv.is_archived = True
            await session.commit()
            logger.info("%s left %s%s", partner_id, conversation_id, " (archived)" if archived else "")
            return LeaveResult(left=True, archived=archived)

    # ------------------------------------------------------------------
    # history() / list_for_partner()
    # ------------------------------------------------------------------

    async def history(self, conversation_id: str, limit: int = 50) -> list[MessageDetail]:
        """The newest `limit` messages, oldest first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
            )
            messages = [self._to_message(m) for m in result.scalars().all()]
        messages.reverse()
        return messages

    async def list_for_partner(self, partner_id: str) -> list[ConversationSummary]:
        """Every conversation the partner belongs to, with unread counts and members."""
        async with self.db.session() as session:
            result = await session.execute(
                select(Conversation)
                .join(Participant, Participant.conversation_id == Conversation.id)
                .where(Participant.partner_id == partner_id)
                .order_by(Conversation.created_at.desc())
            )
            conversations = list(result.scalars().all())
            if not conversations:
                return []
            ids = [c.id for c in conversations]

            unread_q = (
                self._unread_query(partner_id, columns=(Message.conversation_id, func.count(Message.id)))
                .group_by(Message.conversation_id)
            )
            unread = {cid: count for cid, count in (await session.execute(unread_q)).all()}

            last_q = (
                select(Message.conversation_id, func.max(Message.created_at))
                .where(Message.conversation_id.in_(ids))
                .group_by(Message.conversation_id)
            )
            last_message = {cid: ts for cid, ts in (await session.execute(last_q)).all()}

            members_q = (
                select(Participant.conversation_id, Partner.id, Partner.name)
                .join(Partner, Partner.id == Participant.partner_id)
                .where(Participant.conversation_id.in_(ids))
                .order_by(Participant.joined_at, Partner.id)
            )
            members: dict[str, list[ParticipantRef]] = {}
            for cid, pid, pname in (await session.execute(members_q)).all():
                members.setdefault(cid, []).append(ParticipantRef(id=pid, name=pname))

        return [
            ConversationSummary(
                **self._to_detail(c).model_dump(),
                unread_count=unread.get(c.id, 0),
                last_message_at=last_message.get(c.id),
                participants=members.get(c.id, []),
            )
            for c in conversations
        ]

    # ------------------------------------------------------------------
    # Converters
    # ------------------------------------------------------------------

    @staticmethod
    def _to_detail(conv: Conversation) -> ConversationDetail:
        return ConversationDetail(
            id=conv.id,
            name=conv.name,
            type=conv.type,
            created_by=conv.created_by,
            is_archived=conv.is_archived,
            created_at=conv.created_at,
        )

    @staticmethod
    def _to_message(msg: Message) -> MessageDetail:
        return MessageDetail(
            id=msg.id,
            conversation_id=msg.conversation_id,
            from_id=msg.from_id,
            content=msg.content,
            created_at=msg.created_at,
        )
