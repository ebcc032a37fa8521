"""Authorization layer.

Two independent gates:

- Deployment secret: optional, checked by DeploymentKeyMiddleware on every
  HTTP request (X-Api-Key header) before routing. Constant-time compare.
- Partner secret: Authorization: Bearer <partner key>, resolved through
  PartnerRegistry.lookup_by_key(). Routes add acting-as-self and friend-key
  checks on top.
"""

from __future__ import annotations

import hmac
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from duo.errors import Forbidden, Unauthorized
from duo.partners import PartnerRegistry
from duo.storage.models import Partner

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"


def secrets_match(presented: str | None, expected: str | None) -> bool:
    """Constant-time equality that also rejects empty values."""
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class DeploymentKeyMiddleware:
    """Rejects every HTTP request lacking the deployment-wide secret."""

    def __init__(self, app: ASGIApp, api_key: str) -> None:
        self.app = app
        self.api_key = api_key

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.api_key:
            await self.app(scope, receive, send)
            return

        presented = None
        for name, value in scope.get("headers", []):
            if name.decode("latin-1").lower() == API_KEY_HEADER:
                presented = value.decode("latin-1")
                break

        if not secrets_match(presented, self.api_key):
            logger.warning("Rejected request to %s: bad deployment key", scope.get("path"))
            response = JSONResponse(
                Unauthorized("Unauthorized — invalid or missing API key").to_dict(),
                status_code=401,
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


def bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        return None
    token = auth[len("Bearer "):].strip()
    return token or None


async def authenticate(request: Request, partners: PartnerRegistry) -> Partner:
    """Resolve the calling partner from its bearer key or raise Unauthorized."""
    partner = await partners.lookup_by_key(bearer_token(request))
    if partner is None:
        raise Unauthorized("Unauthorized — invalid or missing partner key")
    return partner


def require_self(partner: Partner, partner_id: str) -> None:
    """Acting-as-self: the key owner must be the partner named in the path."""
    if partner.id != partner_id:
        raise Forbidden("Partner key does not match partnerId")


def verify_friend_key(recipient: Partner, friend_key: str | None) -> None:
    """The sender must hold the recipient's current secret key."""
    if not friend_key:
        raise Forbidden("friendKey required for direct messages")
    if not secrets_match(friend_key, recipient.secret_key):
        raise Forbidden(f"Invalid friendKey for \"{recipient.id}\" — does not match recipient")
