"""Async HTTP client for the Duo broker.

Returns parsed JSON and raises the broker's typed errors. Keys live only in
memory on the client instance; persisting them is up to the caller.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from duo.api.auth import API_KEY_HEADER
from duo.errors import ERRORS_BY_KIND, BrokerError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = httpx.Timeout(connect=10, read=60, write=10, pool=10)


class BrokerClient:
    """One partner's view of the broker."""

    def __init__(
        self,
        base_url: str,
        partner_id: str,
        partner_key: str | None = None,
        api_key: str | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.partner_id = partner_id
        self.partner_key = partner_key
        headers = {API_KEY_HEADER: api_key} if api_key else {}
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(base_url=base_url, timeout=_DEFAULT_TIMEOUT)
        self._http.headers.update(headers)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "BrokerClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = kwargs.pop("headers", {})
        if self.partner_key:
            headers["Authorization"] = f"Bearer {self.partner_key}"
        resp = await self._http.request(method, path, headers=headers, **kwargs)
        try:
            data = resp.json()
        except ValueError:
            resp.raise_for_status()
            raise BrokerError(f"Unexpected non-JSON response from {path}")
        if resp.is_error:
            error_cls = ERRORS_BY_KIND.get(data.get("kind", ""), BrokerError)
            raise error_cls(data.get("error", f"HTTP {resp.status_code}"))
        return data

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def register(self, name: str | None = None, project_path: str | None = None) -> dict[str, Any]:
        """Register (or re-register) and remember the returned key."""
        data = await self._request(
            "POST",
            "/register",
            json={"partnerId": self.partner_id, "name": name, "projectPath": project_path},
        )
        self.partner_key = data["partner"]["partnerKey"]
        return data["partner"]

    async def rotate_key(self) -> str:
        data = await self._request("POST", f"/partners/{self.partner_id}/rotate-key")
        self.partner_key = data["partner"]["partnerKey"]
        return self.partner_key

    async def unregister(self) -> None:
        await self._request("POST", "/unregister")

    async def set_status(self, message: str | None) -> None:
        await self._request("POST", f"/partners/{self.partner_id}/status", json={"message": message})

    async def set_notifications(self, enabled: bool) -> None:
        await self._request("POST", f"/partners/{self.partner_id}/notifications", json={"enabled": enabled})

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def talk(
        self,
        content: str,
        to: str | None = None,
        friend_key: str | None = None,
        conversation_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"content": content}
        if conversation_id:
            body["conversationId"] = conversation_id
        else:
            body["to"] = to
            body["friendKey"] = friend_key
        return await self._request("POST", "/talk", json=body)

    async def listen(self, conversation_id: str | None = None, timeout_minutes: float | None = None) -> dict[str, Any]:
        """Block until messages arrive or the broker-side timeout elapses."""
        params: dict[str, Any] = {}
        if conversation_id:
            params["conversationId"] = conversation_id
        if timeout_minutes:
            params["timeout"] = timeout_minutes
        # Heartbeat bytes keep the read alive; the broker bounds the wait
        return await self._request(
            "GET",
            f"/listen/{self.partner_id}",
            params=params,
            timeout=httpx.Timeout(connect=10, read=None, write=10, pool=10),
        )

    async def notifications(self) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/notifications/{self.partner_id}")
        return data["notifications"]

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_group(self, name: str, participants: list[str], friend_keys: list[str]) -> dict[str, Any]:
        data = await self._request(
            "POST",
            "/conversations",
            json={"name": name, "participants": participants, "friendKeys": friend_keys},
        )
        return data["conversation"]

    async def conversations(self) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/conversations/{self.partner_id}")
        return data["conversations"]

    async def leave(self, conversation_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/conversations/{conversation_id}/leave")

    async def history(self, conversation_id: str, limit: int | None = None) -> dict[str, Any]:
        params = {"limit": limit} if limit else {}
        return await self._request("GET", f"/conversations/{conversation_id}/messages", params=params)

    async def participants(self, conversation_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/conversations/{conversation_id}/participants")
        return data["participants"]

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    async def partners(self, search: str | None = None) -> list[dict[str, Any]]:
        params = {"search": search} if search else {}
        data = await self._request("GET", "/partners", params=params)
        return data["partners"]

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")
