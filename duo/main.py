"""Duo broker entry point.

Initializes all components and starts the server:
  Settings -> Database -> PartnerRegistry -> ConversationStore -> DeliveryEngine -> App -> Uvicorn

Uses Starlette lifespan to connect the database and to release pending
listens on the same event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from duo.config import Settings
from duo.conversations import ConversationStore
from duo.delivery import DeliveryEngine
from duo.partners import PartnerRegistry
from duo.storage.database import Database

logger = logging.getLogger(__name__)


def create_components(settings: Settings) -> dict:
    """Build all components in dependency order.

    1. Database - engine + session factory (connected in lifespan)
    2. PartnerRegistry - identities and keys
    3. ConversationStore - conversations, messages, read cursors
    4. DeliveryEngine - pending listens
    """
    database = Database(settings)
    partners = PartnerRegistry(database)
    conversations = ConversationStore(database, preview_chars=settings.preview_chars)
    delivery = DeliveryEngine(conversations, partners, heartbeat_interval=settings.heartbeat_interval)
    return {
        "database": database,
        "partners": partners,
        "conversations": conversations,
        "delivery": delivery,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Duo broker...")

    delivery = components.get("delivery")
    if delivery:
        await delivery.shutdown()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Duo broker shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app with lifespan-managed components."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await components["database"].connect()

        # Store on app.state for access in tests
        app.state.components = components

        logger.info("Duo broker started on %s:%s", settings.host, settings.port)
        logger.info(
            "Listen timeout: default=%sm, range=[%s, %s]m, heartbeat=%ss",
            settings.listen_default_minutes,
            settings.listen_min_minutes,
            settings.listen_max_minutes,
            settings.heartbeat_interval,
        )
        yield

        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from duo.api.rest import create_app

    return create_app(
        partners=components["partners"],
        conversations=components["conversations"],
        delivery=components["delivery"],
        settings=settings,
        lifespan=lifespan,
    )


def main() -> None:
    """Read settings, configure logging and serve the broker with uvicorn."""
    settings = Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Duo broker")
    logger.info("Database: %s", settings.db_url.split("@")[-1])
    logger.info("Deployment key: %s", "enabled" if settings.api_key else "disabled")

    if not settings.api_key and settings.host not in ("127.0.0.1", "localhost"):
        logger.warning(
            "DUO_API_KEY / BROKER_API_KEY is not set and the broker binds %s; "
            "anyone who can reach it may register partners",
            settings.host,
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
