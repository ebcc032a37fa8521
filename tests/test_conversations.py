"""Tests for ConversationStore: direct resolution, groups, messages, read cursors."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from duo.conversations import direct_conversation_id
from duo.conversations.store import hashed_direct_id, new_group_id
from duo.errors import Forbidden, NotFound, ValidationError


@pytest_asyncio.fixture
async def trio(partners):
    """alice, bob and carol registered."""
    for pid in ("alice", "bob", "carol"):
        await partners.register(pid, name=pid.title())
    return ("alice", "bob", "carol")


# ---------------------------------------------------------------------------
# Ids
# ---------------------------------------------------------------------------


class TestIds:
    def test_direct_id_order_independent(self):
        assert direct_conversation_id("alice", "bob") == "direct_alice_bob"
        assert direct_conversation_id("bob", "alice") == "direct_alice_bob"

    def test_group_ids_unique(self):
        ids = {new_group_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("group_") for i in ids)


# ---------------------------------------------------------------------------
# resolve_direct()
# ---------------------------------------------------------------------------


class TestResolveDirect:
    @pytest.mark.asyncio
    async def test_creates_with_both_participants(self, conversations, trio):
        conv = await conversations.resolve_direct("bob", "alice")
        assert conv.id == "direct_alice_bob"
        assert conv.type == "direct"
        assert conv.name is None
        assert await conversations.participant_ids(conv.id) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_idempotent(self, conversations, trio):
        first = await conversations.resolve_direct("alice", "bob")
        second = await conversations.resolve_direct("bob", "alice")
        assert first.id == second.id
        assert first.created_at == second.created_at
        assert len(await conversations.participant_ids(first.id)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_resolution_single_conversation(self, conversations, trio):
        results = await asyncio.gather(
            conversations.resolve_direct("alice", "bob"),
            conversations.resolve_direct("bob", "alice"),
        )
        assert {c.id for c in results} == {"direct_alice_bob"}
        assert len(await conversations.list_for_partner("alice")) == 1

    @pytest.mark.asyncio
    async def test_colliding_readable_ids_stay_separate(self, conversations, partners):
        for pid in ("a_b", "c", "a", "b_c"):
            await partners.register(pid)

        first = await conversations.resolve_direct("a_b", "c")
        await conversations.append(first.id, "a_b", "private to c")
        second = await conversations.resolve_direct("a", "b_c")

        assert first.id == "direct_a_b_c"
        assert second.id == hashed_direct_id("a", "b_c")
        assert sorted(await conversations.participant_ids(first.id)) == ["a_b", "c"]
        assert sorted(await conversations.participant_ids(second.id)) == ["a", "b_c"]
        assert await conversations.history(second.id) == []

        again = await conversations.resolve_direct("b_c", "a")
        assert again.id == second.id
        assert len(await conversations.participant_ids(second.id)) == 2

    @pytest.mark.asyncio
    async def test_self_conversation_rejected(self, conversations, trio):
        with pytest.raises(ValidationError):
            await conversations.resolve_direct("alice", "alice")


# ---------------------------------------------------------------------------
# create_group()
# ---------------------------------------------------------------------------


class TestCreateGroup:
    @pytest.mark.asyncio
    async def test_creator_always_member(self, conversations, trio):
        conv = await conversations.create_group("standup", "alice", ["bob", "carol"])
        assert conv.type == "group"
        assert conv.name == "standup"
        assert conv.created_by == "alice"
        assert sorted(await conversations.participant_ids(conv.id)) == ["alice", "bob", "carol"]

    @pytest.mark.asyncio
    async def test_duplicates_collapsed(self, conversations, trio):
        conv = await conversations.create_group("pair", "alice", ["bob", "bob", "alice"])
        assert sorted(await conversations.participant_ids(conv.id)) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_unknown_member_creates_nothing(self, conversations, trio):
        with pytest.raises(NotFound):
            await conversations.create_group("ghosts", "alice", ["bob", "ghost"])
        assert await conversations.list_for_partner("alice") == []

    @pytest.mark.asyncio
    async def test_name_required(self, conversations, trio):
        with pytest.raises(ValidationError):
            await conversations.create_group("", "alice", ["bob"])


# ---------------------------------------------------------------------------
# append() / unread
# ---------------------------------------------------------------------------


class TestMessages:
    @pytest.mark.asyncio
    async def test_append_requires_participant(self, conversations, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        with pytest.raises(Forbidden):
            await conversations.append(conv.id, "carol", "let me in")

    @pytest.mark.asyncio
    async def test_append_unknown_conversation(self, conversations, trio):
        with pytest.raises(NotFound):
            await conversations.append("direct_nobody_else", "alice", "hi")

    @pytest.mark.asyncio
    async def test_ids_increase(self, conversations, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        m1 = await conversations.append(conv.id, "alice", "one")
        m2 = await conversations.append(conv.id, "bob", "two")
        assert m2.id > m1.id
        assert m2.created_at >= m1.created_at

    @pytest.mark.asyncio
    async def test_concurrent_appends_commit_in_timestamp_order(self, conversations, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        sent = await asyncio.gather(
            *(conversations.append(conv.id, "alice", f"m{i}") for i in range(10))
        )
        by_id = sorted(sent, key=lambda m: m.id)
        assert [m.created_at for m in by_id] == sorted(m.created_at for m in sent)

        # Delivering the oldest never marks a later commit read
        await conversations.mark_delivered("bob", by_id[:1])
        assert [m.id for m in await conversations.unread_for("bob")] == [m.id for m in by_id[1:]]

    @pytest.mark.asyncio
    async def test_unread_excludes_own_messages(self, conversations, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        await conversations.append(conv.id, "alice", "from alice")
        await conversations.append(conv.id, "bob", "from bob")
        unread = await conversations.unread_for("bob")
        assert [m.content for m in unread] == ["from alice"]

    @pytest.mark.asyncio
    async def test_unread_oldest_first_across_conversations(self, conversations, trio):
        direct = await conversations.resolve_direct("alice", "bob")
        group = await conversations.create_group("g", "carol", ["bob"])
        await conversations.append(direct.id, "alice", "first")
        await conversations.append(group.id, "carol", "second")
        await conversations.append(direct.id, "alice", "third")
        assert [m.content for m in await conversations.unread_for("bob")] == ["first", "second", "third"]
        assert [m.content for m in await conversations.unread_for("bob", group.id)] == ["second"]

    @pytest.mark.asyncio
    async def test_mark_read_idempotent(self, conversations, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        await conversations.append(conv.id, "alice", "hi")
        await conversations.mark_read(conv.id, "bob")
        await conversations.mark_read(conv.id, "bob")
        assert await conversations.unread_for("bob") == []

    @pytest.mark.asyncio
    async def test_mark_read_never_moves_back(self, conversations, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        msg = await conversations.append(conv.id, "alice", "hi")
        await conversations.mark_read(conv.id, "bob")
        await conversations.mark_read(conv.id, "bob", upto=msg.created_at - timedelta(hours=1))
        assert await conversations.unread_for("bob") == []

    @pytest.mark.asyncio
    async def test_mark_delivered_stops_at_newest_delivered(self, conversations, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        delivered = [await conversations.append(conv.id, "alice", "one")]
        later = await conversations.append(conv.id, "alice", "two")
        await conversations.mark_delivered("bob", delivered)
        assert [m.id for m in await conversations.unread_for("bob")] == [later.id]

    @pytest.mark.asyncio
    async def test_mark_delivered_empty_is_noop(self, conversations, trio):
        await conversations.mark_delivered("bob", [])

    @pytest.mark.asyncio
    async def test_notifications_truncated_not_marked_read(self, conversations, trio, settings):
        conv = await conversations.resolve_direct("alice", "bob")
        await conversations.append(conv.id, "alice", "x" * 50)
        previews = await conversations.notifications("bob")
        assert len(previews) == 1
        assert previews[0].content == "x" * settings.preview_chars + "..."
        assert previews[0].from_id == "alice"
        assert len(await conversations.unread_for("bob")) == 1


# ---------------------------------------------------------------------------
# leave()
# ---------------------------------------------------------------------------


class TestLeave:
    @pytest.mark.asyncio
    async def test_direct_cannot_be_left(self, conversations, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        with pytest.raises(ValidationError):
            await conversations.leave(conv.id, "alice")

    @pytest.mark.asyncio
    async def test_non_member_forbidden(self, conversations, trio):
        conv = await conversations.create_group("g", "alice", ["bob"])
        with pytest.raises(Forbidden):
            await conversations.leave(conv.id, "carol")

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, conversations, trio):
        with pytest.raises(NotFound):
            await conversations.leave("group_0_nothing", "alice")

    @pytest.mark.asyncio
    async def test_last_one_out_archives(self, conversations, trio):
        conv = await conversations.create_group("g", "alice", ["bob"])
        first = await conversations.leave(conv.id, "alice")
        assert first.left and not first.archived
        assert await conversations.participant_ids(conv.id) == ["bob"]

        second = await conversations.leave(conv.id, "bob")
        assert second.archived
        assert (await conversations.get(conv.id)).is_archived is True

    @pytest.mark.asyncio
    async def test_history_survives_leaving(self, conversations, trio):
        conv = await conversations.create_group("g", "alice", ["bob"])
        await conversations.append(conv.id, "alice", "bye")
        await conversations.leave(conv.id, "alice")
        assert [m.content for m in await conversations.history(conv.id)] == ["bye"]


# ---------------------------------------------------------------------------
# history() / list_for_partner() / participants()
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_history_newest_window_oldest_first(self, conversations, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        for i in range(5):
            await conversations.append(conv.id, "alice", f"m{i}")
        assert [m.content for m in await conversations.history(conv.id, limit=3)] == ["m2", "m3", "m4"]
        assert len(await conversations.history(conv.id)) == 5

    @pytest.mark.asyncio
    async def test_list_for_partner_with_unread(self, conversations, trio):
        direct = await conversations.resolve_direct("alice", "bob")
        group = await conversations.create_group("g", "carol", ["bob", "alice"])
        await conversations.append(direct.id, "alice", "a1")
        await conversations.append(direct.id, "alice", "a2")
        await conversations.append(group.id, "bob", "b1")

        summaries = {c.id: c for c in await conversations.list_for_partner("bob")}
        assert set(summaries) == {direct.id, group.id}
        assert summaries[direct.id].unread_count == 2
        assert summaries[group.id].unread_count == 0
        assert summaries[direct.id].last_message_at is not None
        assert sorted(p.id for p in summaries[group.id].participants) == ["alice", "bob", "carol"]

    @pytest.mark.asyncio
    async def test_list_for_outsider_empty(self, conversations, trio):
        await conversations.resolve_direct("alice", "bob")
        assert await conversations.list_for_partner("carol") == []

    @pytest.mark.asyncio
    async def test_participants_carry_presence(self, conversations, partners, trio):
        conv = await conversations.resolve_direct("alice", "bob")
        await partners.set_offline("bob")
        await partners.set_status_message("alice", "busy")
        info = {p.id: p for p in await conversations.participants(conv.id)}
        assert info["bob"].status == "offline"
        assert info["alice"].status_message == "busy"
        assert info["alice"].last_read_at is None
