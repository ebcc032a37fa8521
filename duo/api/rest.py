"""REST API for the Duo broker.

Endpoints:
  POST /register                               - Register / re-register a partner
  POST /talk                                   - Send a message (direct or to a conversation)
  GET  /listen/{partnerId}                     - Long-poll for messages
  POST /conversations                          - Create a group conversation
  GET  /conversations/{partnerId}              - Conversations of a partner
  POST /conversations/{conversationId}/leave   - Leave a group conversation
  GET  /conversations/{conversationId}/messages     - History
  GET  /conversations/{conversationId}/participants - Members
  GET  /partners                               - Public partner list
  POST /partners/{partnerId}/status            - Set status message
  POST /partners/{partnerId}/notifications     - Toggle notifications
  POST /partners/{partnerId}/rotate-key        - Issue a fresh secret key
  POST /unregister                             - Go offline, close open listen
  GET  /notifications/{partnerId}              - Unread previews (does not mark read)
  GET  /health                                 - Counts of partners / online / listening
"""

from __future__ import annotations

import functools
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from duo.api.auth import (
    DeploymentKeyMiddleware,
    authenticate,
    bearer_token,
    require_self,
    verify_friend_key,
)
from duo.config import Settings
from duo.conversations import ConversationStore
from duo.delivery import DeliveryEngine, PendingListen
from duo.errors import BrokerError, Forbidden, NotFound, ValidationError
from duo.partners import PartnerRegistry

logger = logging.getLogger(__name__)

Endpoint = Callable[[Request], Awaitable[Response]]


def _endpoint(handler: Endpoint) -> Endpoint:
    """Render BrokerError as {"error", "kind"} and anything else as a logged 500."""

    @functools.wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except BrokerError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        except Exception as e:
            logger.exception("%s %s failed", request.method, request.url.path)
            return JSONResponse({"error": str(e), "kind": "server_error"}, status_code=500)

    return wrapper


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def _query_number(request: Request, name: str, cast: type = int) -> Any:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    try:
        return cast(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number")


def create_app(
    partners: PartnerRegistry,
    conversations: ConversationStore,
    delivery: DeliveryEngine,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @_endpoint
    async def register(request: Request) -> Response:
        """POST /register - New partner (no bearer) or re-registration (own bearer)."""
        body = await _json_body(request)
        detail = await partners.register(
            body.get("partnerId"),
            name=body.get("name"),
            project_path=body.get("projectPath"),
            presented_key=bearer_token(request),
        )
        return JSONResponse({"success": True, "partner": detail.to_owner_dict()})

    @_endpoint
    async def unregister(request: Request) -> Response:
        """POST /unregister - Close any open listen and go offline."""
        partner = await authenticate(request, partners)
        delivery.close(partner.id, reason="unregistered")
        await partners.set_offline(partner.id)
        logger.info("Unregistered: %s", partner.id)
        return JSONResponse({"success": True})

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    @_endpoint
    async def talk(request: Request) -> Response:
        """POST /talk - Send to a conversation, or directly to a partner with its friend key."""
        sender = await authenticate(request, partners)
        body = await _json_body(request)
        content = body.get("content")
        to = body.get("to")
        conversation_id = body.get("conversationId")

        if not content or not isinstance(content, str):
            raise ValidationError("content required")
        if not to and not conversation_id:
            raise ValidationError("Either 'to' or 'conversationId' required")

        if conversation_id:
            message = await conversations.append(conversation_id, sender.id, content)
            targets = [pid for pid in await conversations.participant_ids(conversation_id) if pid != sender.id]
        else:
            friend_key = body.get("friendKey")
            if not friend_key:
                raise Forbidden("friendKey required for direct messages")
            recipient = await partners.get(to)
            if recipient is None:
                raise NotFound(f"Recipient \"{to}\" is not registered")
            verify_friend_key(recipient, friend_key)
            conv = await conversations.resolve_direct(sender.id, recipient.id)
            message = await conversations.append(conv.id, sender.id, content)
            targets = [recipient.id]

        await partners.set_online(sender.id)
        logger.info("%s -> %s: %r", sender.id, message.conversation_id, content[:50])

        # Each target is notified independently; the append is never rolled back
        notified = 0
        for target in targets:
            try:
                if await delivery.notify(target, message.conversation_id):
                    notified += 1
            except Exception:
                logger.exception("Notify %s failed", target)

        return JSONResponse(
            {
                "success": True,
                "conversationId": message.conversation_id,
                "messageId": message.id,
                "notified": notified,
                "queued": len(targets) - notified,
            }
        )

    async def _listen_stream(wait: PendingListen) -> AsyncIterator[bytes]:
        # Whitespace heartbeats keep intermediaries from reaping the
        # connection; JSON parsers skip leading whitespace.
        delivered = False
        try:
            async for result in wait.stream():
                if result is None:
                    yield b" "
                    continue
                delivered = True
                yield json.dumps(result.to_dict()).encode("utf-8")
        finally:
            if not delivered:
                delivery.disconnect(wait)

    @_endpoint
    async def listen(request: Request) -> Response:
        """GET /listen/{partnerId}?conversationId=&timeout= - Long-poll for messages."""
        partner_id = request.path_params["partnerId"]
        partner = await authenticate(request, partners)
        require_self(partner, partner_id)

        conversation_id = request.query_params.get("conversationId") or None
        minutes = settings.clamp_listen_minutes(_query_number(request, "timeout", float))

        if conversation_id is not None:
            if await conversations.get(conversation_id) is None:
                raise NotFound("Conversation not found")
            if not await conversations.is_participant(conversation_id, partner_id):
                raise Forbidden("Not a participant of this conversation")

        await partners.set_online(partner_id)
        wait = delivery.register(partner_id, minutes * 60, conversation_id)
        await delivery.deliver_pending(wait)

        return StreamingResponse(
            _listen_stream(wait),
            media_type="application/json",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    @_endpoint
    async def create_conversation(request: Request) -> Response:
        """POST /conversations - Create a group; friendKeys[i] is the key of participants[i]."""
        creator = await authenticate(request, partners)
        body = await _json_body(request)
        name = body.get("name")
        participant_ids = body.get("participants")
        friend_keys = body.get("friendKeys")

        if not name or not isinstance(participant_ids, list) or not participant_ids:
            raise ValidationError("name and participants required")
        if not isinstance(friend_keys, list) or len(friend_keys) != len(participant_ids):
            raise ValidationError("friendKeys required — one key per participant")

        # Every key is checked before anything is written
        for pid, key in zip(participant_ids, friend_keys):
            if pid == creator.id:
                continue
            participant = await partners.get(pid)
            if participant is None:
                raise NotFound(f"Partner \"{pid}\" not found")
            verify_friend_key(participant, key)

        conv = await conversations.create_group(name, creator.id, participant_ids)
        return JSONResponse({"success": True, "conversation": conv.model_dump(mode="json")})

    @_endpoint
    async def list_conversations(request: Request) -> Response:
        """GET /conversations/{partnerId} - Conversations with unread counts and members."""
        partner_id = request.path_params["partnerId"]
        partner = await authenticate(request, partners)
        require_self(partner, partner_id)

        summaries = await conversations.list_for_partner(partner_id)
        return JSONResponse({"conversations": [c.model_dump(mode="json") for c in summaries]})

    @_endpoint
    async def leave_conversation(request: Request) -> Response:
        """POST /conversations/{conversationId}/leave - Leave a group conversation."""
        partner = await authenticate(request, partners)
        result = await conversations.leave(request.path_params["conversationId"], partner.id)
        return JSONResponse({"success": True, **result.model_dump()})

    async def _participant_conversation(request: Request) -> str:
        partner = await authenticate(request, partners)
        conversation_id = request.path_params["conversationId"]
        if await conversations.get(conversation_id) is None:
            raise NotFound("Conversation not found")
        if not await conversations.is_participant(conversation_id, partner.id):
            raise Forbidden("Not a participant of this conversation")
        return conversation_id

    @_endpoint
    async def history(request: Request) -> Response:
        """GET /conversations/{conversationId}/messages?limit=50 - Oldest to newest."""
        conversation_id = await _participant_conversation(request)
        limit = _query_number(request, "limit") or settings.history_default_limit
        limit = max(1, min(settings.history_max_limit, limit))

        conv = await conversations.get(conversation_id)
        messages = await conversations.history(conversation_id, limit)
        return JSONResponse(
            {
                "conversation": conv.model_dump(mode="json"),
                "messages": [m.model_dump(mode="json") for m in messages],
            }
        )

    @_endpoint
    async def list_participants(request: Request) -> Response:
        """GET /conversations/{conversationId}/participants"""
        conversation_id = await _participant_conversation(request)
        members = await conversations.participants(conversation_id)
        return JSONResponse({"participants": [p.model_dump(mode="json") for p in members]})

    # ------------------------------------------------------------------
    # Partners
    # ------------------------------------------------------------------

    @_endpoint
    async def list_partners(request: Request) -> Response:
        """GET /partners?search= - Public list, no keys."""
        found = await partners.list(
            search=request.query_params.get("search"),
            listening=delivery.listening_ids(),
        )
        return JSONResponse({"partners": [p.model_dump(mode="json") for p in found]})

    @_endpoint
    async def set_status(request: Request) -> Response:
        """POST /partners/{partnerId}/status - {message} (null clears it)."""
        partner_id = request.path_params["partnerId"]
        partner = await authenticate(request, partners)
        require_self(partner, partner_id)
        body = await _json_body(request)
        message = body.get("message")
        if message is not None and not isinstance(message, str):
            raise ValidationError("message must be a string or null")
        await partners.set_status_message(partner_id, message)
        return JSONResponse({"success": True})

    @_endpoint
    async def set_notifications(request: Request) -> Response:
        """POST /partners/{partnerId}/notifications - {enabled: bool}."""
        partner_id = request.path_params["partnerId"]
        partner = await authenticate(request, partners)
        require_self(partner, partner_id)
        body = await _json_body(request)
        enabled = body.get("enabled")
        if not isinstance(enabled, bool):
            raise ValidationError("enabled must be a boolean")
        await partners.set_notifications_enabled(partner_id, enabled)
        return JSONResponse({"success": True})

    @_endpoint
    async def rotate_key(request: Request) -> Response:
        """POST /partners/{partnerId}/rotate-key - Old key and friend keys stop working."""
        partner_id = request.path_params["partnerId"]
        partner = await authenticate(request, partners)
        require_self(partner, partner_id)
        detail = await partners.rotate_key(partner_id)
        return JSONResponse({"success": True, "partner": detail.to_owner_dict()})

    @_endpoint
    async def notifications(request: Request) -> Response:
        """GET /notifications/{partnerId} - Unread previews, nothing is marked read."""
        partner_id = request.path_params["partnerId"]
        partner = await authenticate(request, partners)
        require_self(partner, partner_id)
        previews = await conversations.notifications(partner_id)
        return JSONResponse({"notifications": [n.model_dump(mode="json") for n in previews]})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            total, online = await partners.counts()
            return JSONResponse(
                {
                    "status": "ok",
                    "partners": total,
                    "online": online,
                    "listening": delivery.waiting_count,
                }
            )
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/register", register, methods=["POST"]),
        Route("/unregister", unregister, methods=["POST"]),
        Route("/talk", talk, methods=["POST"]),
        Route("/listen/{partnerId}", listen),
        Route("/conversations", create_conversation, methods=["POST"]),
        Route("/conversations/{partnerId}", list_conversations),
        Route("/conversations/{conversationId}/leave", leave_conversation, methods=["POST"]),
        Route("/conversations/{conversationId}/messages", history),
        Route("/conversations/{conversationId}/participants", list_participants),
        Route("/partners", list_partners),
        Route("/partners/{partnerId}/status", set_status, methods=["POST"]),
        Route("/partners/{partnerId}/notifications", set_notifications, methods=["POST"]),
        Route("/partners/{partnerId}/rotate-key", rotate_key, methods=["POST"]),
        Route("/notifications/{partnerId}", notifications),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if settings.api_key:
        kwargs["middleware"] = [Middleware(DeploymentKeyMiddleware, api_key=settings.api_key)]
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
