"""Glucose source MCP server: application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastmcp import FastMCP

from bgsource.core.audit.logger import AuditLogger
from bgsource.core.config.settings import get_settings
from bgsource.core.storage.database import GlucoseDatabase
from bgsource.core.storage.encryption import DocumentCipher, EncryptionError
from bgsource.core.storage.repository import GlucoseRepository
from bgsource.domains.glucose.feed import FeedClient
from bgsource.domains.glucose.feed.memory import InMemoryFeedClient
from bgsource.domains.glucose.lifecycle import (
    DataSourceFeatureFlag,
    ExecutionMode,
    LifecycleController,
)
from bgsource.domains.glucose.sink import IdempotentSink
from bgsource.domains.glucose.subscriber import ChangeFeedSubscriber
from bgsource.domains.glucose.tools.glucose_source_tools import register_glucose_source_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "Glucose Change-Feed Source"
SERVER_VERSION = "0.1.0"


def create_app(
    *,
    feed_client_override: FeedClient | None = None,
    repository_override: GlucoseRepository | None = None,
) -> FastMCP:
    """Create and configure the glucose source MCP server.

    This is the main application factory. It:
    1. Opens the local glucose store (and the raw-document cipher if a key is set)
    2. Creates the change-feed client (Firestore, or in-memory as a fallback)
    3. Wires sink, subscriber, feature flag and lifecycle controller
    4. Registers all tools, with a lifespan that starts and stops ingestion
    """
    settings = get_settings()

    # --- Storage ---
    if repository_override is not None:
        repository = repository_override
        database = repository_override.database
    else:
        cipher: DocumentCipher | None = None
        if settings.encryption_key:
            try:
                cipher = DocumentCipher(settings.encryption_key)
            except EncryptionError as exc:
                logger.error("Invalid ENCRYPTION_KEY: %s", exc)
                logger.warning("Continuing without raw document copies")
        else:
            logger.info(
                "No ENCRYPTION_KEY configured; readings are stored without the raw document. "
                "Set ENCRYPTION_KEY to keep an encrypted copy."
            )
        database = GlucoseDatabase(settings.db_path)
        database.initialize()
        repository = GlucoseRepository(database, cipher)
        logger.info(
            "Glucose store initialized: %s (schema v%d)",
            settings.db_path,
            database.get_schema_version(),
        )

    audit_logger = AuditLogger(database)

    # --- Change feed ---
    if feed_client_override is not None:
        feed = feed_client_override
        feed_backend = type(feed).__name__
    elif settings.feed_backend == "firestore" and settings.firestore_project:
        from bgsource.domains.glucose.feed.firestore import FirestoreFeedClient

        feed = FirestoreFeedClient(
            settings.firestore_project,
            database=settings.firestore_database or None,
            credentials_path=settings.firestore_credentials_path,
        )
        feed_backend = "firestore"
        logger.info("Firestore feed configured for project %s", settings.firestore_project)
    else:
        if settings.feed_backend == "firestore":
            logger.warning("No FIRESTORE_PROJECT configured; falling back to in-memory feed")
        feed = InMemoryFeedClient()
        feed_backend = "memory"

    # --- Pipeline ---
    sink = IdempotentSink(repository, source_tag=settings.source_tag, observer=audit_logger)
    subscriber = ChangeFeedSubscriber(
        feed,
        sink,
        collection=settings.feed_collection,
        lookback_minutes=settings.feed_lookback_minutes,
        observer=audit_logger,
    )
    flag = DataSourceFeatureFlag(
        repository,
        settings.source_tag,
        display_name=f"{settings.source_tag} change feed",
        default=settings.glucose_source_enabled,
    )
    controller = LifecycleController(
        subscriber,
        flag,
        mode=ExecutionMode(settings.execution_mode),
        work_unit_timeout_seconds=settings.work_unit_timeout_seconds or None,
    )

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        try:
            await controller.on_enable()
        except Exception as exc:
            logger.error("Glucose listener failed to start, enable it again by tool: %s", exc)
        try:
            yield
        finally:
            await controller.on_disable()

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        instructions=(
            "Glucose change-feed source. Listens to a remote document collection "
            "of CGM entries, stores each new reading exactly once in a local "
            "database, and exposes status, control and read-back tools."
        ),
        lifespan=lifespan,
    )

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "feed_backend": feed_backend,
            "collection": settings.feed_collection,
            "execution_mode": controller.mode.value,
            "source_enabled": flag.is_enabled(),
            "readings_stored": repository.count_readings(),
        }

    register_glucose_source_tools(
        server, controller, flag, repository, audit_logger, source_tag=settings.source_tag
    )
    logger.info("Glucose source tools registered (feed=%s)", feed_backend)

    return server


# Module-level instance for FastMCP discovery ("...app.py:mcp").
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
