"""
Database helpers — connection pool management and schema initialisation.

Uses ``asyncpg`` for async PostgreSQL access.  The mirror keeps four
relations plus two bookkeeping tables:

- ``channels`` / ``channel_messages``: team channels and their messages,
  each message row carrying its replies as one ordered JSON array.
- ``chats`` / ``chat_messages``: one-on-one and group chats.
- ``delta_links``: resumable ``@odata.deltaLink`` per collection.
- ``audit_log``: structured audit events.

Message rows cascade-delete with their parent channel/chat.  Channels are
never deleted by the syncer itself, only flagged ``deleted``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")

# ``last_download`` holds ``YYYY-MM-DD`` or '' for "never downloaded".
# '' sorts before every date, so never-synced rows always pass
# ``last_download <= cutoff``.
SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS channels (
        id            BIGSERIAL PRIMARY KEY,
        ms_team_id    TEXT NOT NULL,
        ms_channel_id TEXT NOT NULL,
        team_name     TEXT NOT NULL,
        channel_name  TEXT NOT NULL,
        channel_json  JSONB NOT NULL,
        last_download TEXT NOT NULL DEFAULT '',
        deleted       BOOLEAN NOT NULL DEFAULT FALSE,
        CONSTRAINT ak__channels UNIQUE (ms_team_id, ms_channel_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS channel_messages (
        id            BIGSERIAL PRIMARY KEY,
        channel_id    BIGINT NOT NULL
            REFERENCES channels (id) ON DELETE CASCADE,
        ms_message_id TEXT NOT NULL,
        message_json  JSONB NOT NULL,
        replies_json  JSONB NOT NULL,
        CONSTRAINT ak__channel_messages UNIQUE (channel_id, ms_message_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id            BIGSERIAL PRIMARY KEY,
        ms_chat_id    TEXT NOT NULL,
        chat_name     TEXT NOT NULL,
        chat_json     JSONB NOT NULL,
        members_json  JSONB NOT NULL,
        last_download TEXT NOT NULL DEFAULT '',
        CONSTRAINT ak__chats UNIQUE (ms_chat_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id            BIGSERIAL PRIMARY KEY,
        chat_id       BIGINT NOT NULL
            REFERENCES chats (id) ON DELETE CASCADE,
        ms_message_id TEXT NOT NULL,
        message_json  JSONB NOT NULL,
        CONSTRAINT ak__chat_messages UNIQUE (chat_id, ms_message_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS delta_links (
        collection_key TEXT PRIMARY KEY,
        delta_link     TEXT NOT NULL,
        updated_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    )
    """,
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``, ``password``,
                and optionally ``min_size``, ``max_size``.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=config.get("port", 5432),
        database=config["database"],
        user=config.get("user"),
        password=config.get("password"),
        min_size=config.get("min_size", 1),
        max_size=config.get("max_size", 4),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user"),
        config.get("host") or "localhost",
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables if they do not exist.  Idempotent."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Database schema ready (%d statements)", len(SCHEMA_STATEMENTS))

