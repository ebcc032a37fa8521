"""Partner registry: identity, secret keys, presence.

Secret keys are issued once, by an atomic INSERT ... ON CONFLICT DO NOTHING,
so two racing first registrations of the same id can never both win.
Re-registration of an existing id requires that partner's key.
"""

from __future__ import annotations

import logging
import secrets

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from duo.errors import NotFound, Unauthorized, ValidationError
from duo.partners.schemas import PartnerDetail, PartnerSummary
from duo.storage.database import Database
from duo.storage.models import Partner, utcnow

logger = logging.getLogger(__name__)

_KEY_BYTES = 32


def generate_secret_key() -> str:
    return secrets.token_urlsafe(_KEY_BYTES)


class PartnerRegistry:
    """Creates and updates partner identities."""

    def __init__(self, database: Database) -> None:
        self.db = database

    # ------------------------------------------------------------------
    # register()
    # ------------------------------------------------------------------

    async def register(
        self,
        partner_id: str,
        name: str | None = None,
        project_path: str | None = None,
        presented_key: str | None = None,
    ) -> PartnerDetail:
        """Create a partner, or update it when the caller proves ownership.

        Raises ValidationError on a missing id and Unauthorized when the id
        exists and presented_key does not belong to it.
        """
        if not partner_id or not isinstance(partner_id, str):
            raise ValidationError("partnerId required")

        async with self.db.session() as session:
            now = utcnow()
            stmt = (
                self.db.insert(Partner)
                .values(
                    id=partner_id,
                    name=name or partner_id,
                    secret_key=generate_secret_key(),
                    project_path=project_path,
                    status="online",
                    notifications_enabled=True,
                    created_at=now,
                    last_seen=now,
                )
                .on_conflict_do_nothing(index_elements=["id"])
                .returning(Partner.id)
            )
            created = (await session.execute(stmt)).scalar_one_or_none()
            if created is not None:
                await session.commit()
                partner = await session.get(Partner, partner_id)
                logger.info("New registration: %s (%s)", partner.name, partner_id)
                return self._to_detail(partner)

            owner = await self._lookup_by_key(presented_key, session) if presented_key else None
            if owner is None or owner.id != partner_id:
                await session.rollback()
                raise Unauthorized("Partner already exists — provide your partner key to re-register")

            if name:
                owner.name = name
            if project_path is not None:
                owner.project_path = project_path
            owner.status = "online"
            owner.last_seen = now
            await session.commit()
            logger.info("Re-registered: %s (%s)", owner.name, partner_id)
            return self._to_detail(owner)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def lookup_by_key(self, secret_key: str | None) -> Partner | None:
        """Resolve a partner from its secret key. The only authentication primitive."""
        if not secret_key:
            return None
        async with self.db.session() as session:
            return await self._lookup_by_key(secret_key, session)

    async def _lookup_by_key(self, secret_key: str, session: AsyncSession) -> Partner | None:
        result = await session.execute(select(Partner).where(Partner.secret_key == secret_key))
        return result.scalar_one_or_none()

    async def get(self, partner_id: str) -> Partner | None:
        async with self.db.session() as session:
            return await session.get(Partner, partner_id)

    async def list(self, search: str | None = None, listening: set[str] | frozenset[str] = frozenset()) -> list[PartnerSummary]:
        """Public partner list, newest activity first."""
        q = select(Partner).order_by(Partner.last_seen.desc())
        if search:
            needle = search.lower()
            q = q.where(
                or_(
                    func.lower(Partner.id).contains(needle, autoescape=True),
                    func.lower(Partner.name).contains(needle, autoescape=True),
                )
            )
        async with self.db.session() as session:
            result = await session.execute(q)
            return [
                PartnerSummary(
                    id=p.id,
                    name=p.name,
                    status=p.status,
                    status_message=p.status_message,
                    created_at=p.created_at,
                    last_seen=p.last_seen,
                    is_listening=p.id in listening,
                )
                for p in result.scalars().all()
            ]

    async def counts(self) -> tuple[int, int]:
        """Return (total partners, partners online)."""
        async with self.db.session() as session:
            total = (await session.execute(select(func.count()).select_from(Partner))).scalar() or 0
            online = (
                await session.execute(
                    select(func.count()).select_from(Partner).where(Partner.status == "online")
                )
            ).scalar() or 0
            return total, online

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    async def set_online(self, partner_id: str) -> None:
        await self._update(partner_id, status="online", last_seen=utcnow())

    async def set_offline(self, partner_id: str) -> None:
        await self._update(partner_id, status="offline", last_seen=utcnow())

    async def set_status_message(self, partner_id: str, message: str | None) -> None:
        await self._update(partner_id, status_message=message or None)

    async def set_notifications_enabled(self, partner_id: str, enabled: bool) -> None:
        await self._update(partner_id, notifications_enabled=bool(enabled))

    async def rotate_key(self, partner_id: str) -> PartnerDetail:
        """Issue a fresh secret key. Friend keys holding the old one stop working."""
        async with self.db.session() as session:
            partner = await session.get(Partner, partner_id)
            if partner is None:
                raise NotFound(f"Partner \"{partner_id}\" not found")
            partner.secret_key = generate_secret_key()
            partner.last_seen = utcnow()
            await session.commit()
            logger.info("Rotated key for %s", partner_id)
            return self._to_detail(partner)

    async def _update(self, partner_id: str, **values: object) -> None:
        async with self.db.session() as session:
            await session.execute(update(Partner).where(Partner.id == partner_id).values(**values))
            await session.commit()

    @staticmethod
    def _to_detail(partner: Partner) -> PartnerDetail:
        return PartnerDetail(
            id=partner.id,
            name=partner.name,
            secret_key=partner.secret_key,
            project_path=partner.project_path,
            status=partner.status,
            status_message=partner.status_message,
            notifications_enabled=partner.notifications_enabled,
            created_at=partner.created_at,
            last_seen=partner.last_seen,
        )
