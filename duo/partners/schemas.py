"""Pydantic DTOs for Partner Registry inputs and outputs."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from duo.utils import UtcDatetime

PartnerStatus = Literal["online", "offline"]


class PartnerSummary(BaseModel):
    """Public view of a partner. Never carries the secret key."""

    id: str
    name: str
    status: PartnerStatus
    status_message: str | None = None
    created_at: UtcDatetime
    last_seen: UtcDatetime
    is_listening: bool = False


class PartnerDetail(BaseModel):
    """Owner view of a partner, returned by register and key rotation only."""

    id: str
    name: str
    secret_key: str
    project_path: str | None
    status: PartnerStatus
    status_message: str | None
    notifications_enabled: bool
    created_at: UtcDatetime
    last_seen: UtcDatetime

    def to_owner_dict(self) -> dict:
        """Wire form: secret key exposed as partnerKey."""
        data = self.model_dump(mode="json", exclude={"secret_key"})
        data["partnerKey"] = self.secret_key
        return data
