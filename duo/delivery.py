"""Long-poll delivery engine.

Holds at most one pending listen per partner. A pending listen ends in
exactly one of these ways:

- notify: a message landed in a conversation it covers -> delivered
- timeout: its timer fired -> reason "timeout"
- supersede: the same partner listened again -> reason "reconnect"
- close: the partner unregistered -> reason "unregistered"
- disconnect: the client went away -> never resolved, partner goes offline

Every registry mutation happens in a synchronous section of the event loop
(no await between the lookup and the mutation), so two contexts can never
both own one partner's entry. Each PendingListen owns its timer handle and
releases it on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal

from duo.conversations import ConversationStore, MessageDetail
from duo.partners import PartnerRegistry

logger = logging.getLogger(__name__)

ListenReason = Literal["timeout", "reconnect", "unregistered", "shutdown", "error"]


@dataclass
class ListenResult:
    """What a listen request answers with."""

    has_messages: bool
    messages: list[MessageDetail] = field(default_factory=list)
    reason: ListenReason | None = None
    timeout_minutes: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "hasMessages": self.has_messages,
            "messages": [m.model_dump(mode="json") for m in self.messages],
        }
        if self.reason is not None:
            data["reason"] = self.reason
        if self.timeout_minutes is not None:
            data["timeoutMinutes"] = self.timeout_minutes
        return data


@dataclass(eq=False)
class PendingListen:
    """One blocked listen request and the resources it owns."""

    partner_id: str
    conversation_id: str | None
    timeout_seconds: float
    heartbeat_interval: float
    future: asyncio.Future[ListenResult]
    started_at: float = field(default_factory=time.monotonic)
    closed: bool = False
    _timeout_handle: asyncio.TimerHandle | None = None

    @property
    def done(self) -> bool:
        return self.future.done()

    def covers(self, conversation_id: str | None) -> bool:
        """True when a message in conversation_id should wake this listen."""
        return self.conversation_id is None or conversation_id is None or self.conversation_id == conversation_id

    def release(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def resolve(self, result: ListenResult) -> bool:
        self.release()
        if self.future.done():
            return False
        self.future.set_result(result)
        return True

    async def stream(self) -> AsyncIterator[ListenResult | None]:
        """Yield None on every heartbeat tick, then the result once."""
        while True:
            try:
                result = await asyncio.wait_for(asyncio.shield(self.future), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                yield None
                continue
            yield result
            return


class DeliveryEngine:
    """Matches appended messages to blocked listen requests."""

    def __init__(
        self,
        conversations: ConversationStore,
        partners: PartnerRegistry,
        heartbeat_interval: float = 30.0,
    ) -> None:
        self.conversations = conversations
        self.partners = partners
        self.heartbeat_interval = heartbeat_interval
        self._waiting: dict[str, PendingListen] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def is_listening(self, partner_id: str) -> bool:
        return partner_id in self._waiting

    def listening_ids(self) -> frozenset[str]:
        return frozenset(self._waiting)

    @property
    def waiting_count(self) -> int:
        return len(self._waiting)

    def pending(self, partner_id: str) -> PendingListen | None:
        return self._waiting.get(partner_id)

    # ------------------------------------------------------------------
    # register()
    # ------------------------------------------------------------------

    def register(
        self,
        partner_id: str,
        timeout_seconds: float,
        conversation_id: str | None = None,
    ) -> PendingListen:
        """Register a blocked listen, superseding any previous one for the partner."""
        loop = asyncio.get_running_loop()

        previous = self._waiting.pop(partner_id, None)
        if previous is not None:
            previous.resolve(ListenResult(has_messages=False, reason="reconnect"))
            logger.info("%s reconnected, previous listen superseded", partner_id)

        wait = PendingListen(
            partner_id=partner_id,
            conversation_id=conversation_id,
            timeout_seconds=timeout_seconds,
            heartbeat_interval=self.heartbeat_interval,
            future=loop.create_future(),
        )
        wait._timeout_handle = loop.call_later(timeout_seconds, self._expire, wait)
        self._waiting[partner_id] = wait
        logger.info(
            "%s is now listening%s (timeout %.0fs)",
            partner_id,
            f" on {conversation_id}" if conversation_id else "",
            timeout_seconds,
        )
        return wait

    def _expire(self, wait: PendingListen) -> None:
        if self._waiting.get(wait.partner_id) is wait:
            del self._waiting[wait.partner_id]
        if wait.resolve(
            ListenResult(has_messages=False, reason="timeout", timeout_minutes=wait.timeout_seconds / 60)
        ):
            logger.info("Listen timed out for %s", wait.partner_id)

    def _claim(self, partner_id: str, conversation_id: str | None = None) -> PendingListen | None:
        wait = self._waiting.get(partner_id)
        if wait is None or not wait.covers(conversation_id):
            return None
        del self._waiting[partner_id]
        wait.release()
        return wait

    # ------------------------------------------------------------------
    # notify() / deliver_pending()
    # ------------------------------------------------------------------

    async def notify(self, partner_id: str, conversation_id: str) -> bool:
        """Push unread messages to the partner's pending listen, if it covers conversation_id.

        Returns True when the listen was resolved with messages, False when
        the message stays queued in the store for a later pull.
        """
        wait = self._claim(partner_id, conversation_id)
        if wait is None:
            return False
        return await self._deliver(wait)

    async def deliver_pending(self, wait: PendingListen) -> bool:
        """Resolve a freshly registered listen at once if unread messages already exist."""
        try:
            messages = await self.conversations.unread_for(wait.partner_id, wait.conversation_id)
        except Exception:
            logger.exception("Unread check for %s failed, listen keeps waiting", wait.partner_id)
            return False
        if not messages or self._waiting.get(wait.partner_id) is not wait:
            return False
        del self._waiting[wait.partner_id]
        wait.release()
        return await self._deliver(wait, messages)

    async def _deliver(self, wait: PendingListen, messages: list[MessageDetail] | None = None) -> bool:
        try:
            if messages is None:
                messages = await self.conversations.unread_for(wait.partner_id, wait.conversation_id)
            if wait.closed:
                return False
            await self.conversations.mark_delivered(wait.partner_id, messages)
        except Exception:
            logger.exception("Delivery to %s failed, messages stay unread", wait.partner_id)
            wait.resolve(ListenResult(has_messages=False, reason="error"))
            return False

        wait.resolve(ListenResult(has_messages=bool(messages), messages=messages))
        logger.info("Delivered %d message(s) to %s", len(messages), wait.partner_id)
        return bool(messages)

    # ------------------------------------------------------------------
    # close() / disconnect() / shutdown()
    # ------------------------------------------------------------------

    def close(self, partner_id: str, reason: ListenReason = "unregistered") -> bool:
        """Resolve the partner's pending listen (any filter) with an empty result."""
        wait = self._waiting.pop(partner_id, None)
        if wait is None:
            return False
        return wait.resolve(ListenResult(has_messages=False, reason=reason))

    def disconnect(self, wait: PendingListen) -> None:
        """The client went away before resolution: drop the wait and mark the partner offline.

        Never writes to the response. Synchronous so it is safe to call from
        a cancelled response stream.
        """
        wait.closed = True
        wait.release()
        if self._waiting.get(wait.partner_id) is wait:
            del self._waiting[wait.partner_id]
        if wait.done:
            return
        logger.info("%s disconnected after %.1fs", wait.partner_id, time.monotonic() - wait.started_at)
        task = asyncio.get_running_loop().create_task(
            self._mark_offline(wait.partner_id), name=f"offline-{wait.partner_id}"
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _mark_offline(self, partner_id: str) -> None:
        if partner_id in self._waiting:
            return
        try:
            await self.partners.set_offline(partner_id)
        except Exception:
            logger.warning("Failed to mark %s offline", partner_id)

    async def drain(self) -> None:
        """Wait for background presence updates to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Resolve every pending listen so open requests complete on stop."""
        for partner_id in list(self._waiting):
            self.close(partner_id, reason="shutdown")
        await self.drain()
        logger.info("Delivery engine stopped")
