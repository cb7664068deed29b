"""
PostgreSQL persistence for the mirror.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...) — **never** string interpolation.

:class:`StoragePort` is the contract the reconciler depends on;
:class:`MirrorStore` implements it on top of the schema created by
:func:`shared.db.init_database`.  Every write is an upsert on the natural
key, so re-running a pass is always safe.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol

import asyncpg

logger = logging.getLogger("syncer.store")

_MARK_ALL_CHANNELS_DELETED_SQL = "UPDATE channels SET deleted = TRUE"

_UPSERT_CHANNEL_SQL = """
    INSERT INTO channels (
        ms_team_id, ms_channel_id, team_name, channel_name, channel_json, deleted
    )
    VALUES ($1, $2, $3, $4, $5::jsonb, FALSE)
    ON CONFLICT (ms_team_id, ms_channel_id)
    DO UPDATE SET
        team_name = EXCLUDED.team_name,
        channel_name = EXCLUDED.channel_name,
        channel_json = EXCLUDED.channel_json,
        deleted = FALSE
"""

_SELECT_CHANNELS_DUE_SQL = """
    SELECT id, ms_team_id, ms_channel_id, team_name, channel_name
    FROM channels
    WHERE last_download <= $1 AND NOT deleted
    ORDER BY id
"""

_SET_CHANNEL_WATERMARK_SQL = "UPDATE channels SET last_download = $1 WHERE id = $2"

_UPSERT_CHANNEL_MESSAGE_SQL = """
    INSERT INTO channel_messages (channel_id, ms_message_id, message_json, replies_json)
    VALUES ($1, $2, $3::jsonb, $4::jsonb)
    ON CONFLICT (channel_id, ms_message_id)
    DO UPDATE SET
        message_json = EXCLUDED.message_json,
        replies_json = EXCLUDED.replies_json
"""

_UPSERT_CHAT_SQL = """
    INSERT INTO chats (ms_chat_id, chat_name, chat_json, members_json)
    VALUES ($1, $2, $3::jsonb, $4::jsonb)
    ON CONFLICT (ms_chat_id)
    DO UPDATE SET
        chat_name = EXCLUDED.chat_name,
        chat_json = EXCLUDED.chat_json,
        members_json = EXCLUDED.members_json
"""

_SELECT_CHATS_DUE_SQL = """
    SELECT id, ms_chat_id, chat_name
    FROM chats
    WHERE last_download <= $1
    ORDER BY id
"""

_SET_CHAT_WATERMARK_SQL = "UPDATE chats SET last_download = $1 WHERE id = $2"

_UPSERT_CHAT_MESSAGE_SQL = """
    INSERT INTO chat_messages (chat_id, ms_message_id, message_json)
    VALUES ($1, $2, $3::jsonb)
    ON CONFLICT (chat_id, ms_message_id)
    DO UPDATE SET message_json = EXCLUDED.message_json
"""

_SELECT_DELTA_LINK_SQL = "SELECT delta_link FROM delta_links WHERE collection_key = $1"

_DELETE_DELTA_LINK_SQL = "DELETE FROM delta_links WHERE collection_key = $1"

_UPSERT_DELTA_LINK_SQL = """
    INSERT INTO delta_links (collection_key, delta_link, updated_at)
    VALUES ($1, $2, NOW())
    ON CONFLICT (collection_key)
    DO UPDATE SET delta_link = EXCLUDED.delta_link, updated_at = NOW()
"""


@dataclass(frozen=True)
class ChannelRow:
    id: int
    ms_team_id: str
    ms_channel_id: str
    team_name: str
    channel_name: str


@dataclass(frozen=True)
class ChatRow:
    id: int
    ms_chat_id: str
    chat_name: str


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class ChannelSweepPort(Protocol):
    """Handle valid inside one mark-and-sweep transaction."""

    async def upsert_channel(
        self,
        team_id: str,
        channel_id: str,
        team_name: str,
        channel_name: str,
        channel_json: str,
    ) -> None:
        ...


class StoragePort(Protocol):
    """Storage operations required by the reconciler."""

    def channel_sweep(self) -> AsyncContextManager[ChannelSweepPort]:
        ...

    async def channels_due(self, cutoff: str) -> List[ChannelRow]:
        ...

    async def upsert_channel_message(
        self, channel_id: int, message_id: str, message_json: str, replies_json: str
    ) -> None:
        ...

    async def set_channel_watermark(self, channel_id: int, last_download: str) -> None:
        ...

    async def upsert_chat(
        self, chat_id: str, chat_name: str, chat_json: str, members_json: str
    ) -> None:
        ...

    async def chats_due(self, cutoff: str) -> List[ChatRow]:
        ...

    async def upsert_chat_message(self, chat_id: int, message_id: str, message_json: str) -> None:
        ...

    async def set_chat_watermark(self, chat_id: int, last_download: str) -> None:
        ...

    async def get_delta_link(self, collection_key: str) -> Optional[str]:
        ...

    async def set_delta_link(self, collection_key: str, delta_link: str) -> None:
        ...

    async def clear_delta_link(self, collection_key: str) -> None:
        ...

    async def get_sync_stats(self) -> Dict[str, Any]:
        ...


# ---------------------------------------------------------------------------
# asyncpg implementation
# ---------------------------------------------------------------------------


class ChannelSweep:
    """Upserts channels on the connection holding the sweep transaction."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn
        self.upserted = 0

    async def upsert_channel(
        self,
        team_id: str,
        channel_id: str,
        team_name: str,
        channel_name: str,
        channel_json: str,
    ) -> None:
        await self._conn.execute(
            _UPSERT_CHANNEL_SQL,
            team_id,
            channel_id,
            team_name,
            channel_name,
            channel_json,
        )
        self.upserted += 1


class MirrorStore:
    """Manages mirror persistence in PostgreSQL.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def channel_sweep(self) -> AsyncIterator[ChannelSweep]:
        """Mark every channel deleted and yield a handle to restore the live ones.

        Marking and all upserts share one transaction, so readers never see
        the intermediate state where every channel is flagged deleted.  An
        exception inside the block rolls the whole sweep back.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                status = await conn.execute(_MARK_ALL_CHANNELS_DELETED_SQL)
                logger.debug("Channel sweep started: %s", status)
                sweep = ChannelSweep(conn)
                yield sweep
        logger.debug("Channel sweep committed: %d channel(s) live", sweep.upserted)

    async def channels_due(self, cutoff: str) -> List[ChannelRow]:
        """Return live channels whose messages were last downloaded on or before ``cutoff``."""
        rows = await self._pool.fetch(_SELECT_CHANNELS_DUE_SQL, cutoff)
        return [
            ChannelRow(
                id=int(row["id"]),
                ms_team_id=row["ms_team_id"],
                ms_channel_id=row["ms_channel_id"],
                team_name=row["team_name"],
                channel_name=row["channel_name"],
            )
            for row in rows
        ]

    async def upsert_channel_message(
        self, channel_id: int, message_id: str, message_json: str, replies_json: str
    ) -> None:
        await self._pool.execute(
            _UPSERT_CHANNEL_MESSAGE_SQL, channel_id, message_id, message_json, replies_json
        )

    async def set_channel_watermark(self, channel_id: int, last_download: str) -> None:
        await self._pool.execute(_SET_CHANNEL_WATERMARK_SQL, last_download, channel_id)

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def upsert_chat(
        self, chat_id: str, chat_name: str, chat_json: str, members_json: str
    ) -> None:
        await self._pool.execute(_UPSERT_CHAT_SQL, chat_id, chat_name, chat_json, members_json)

    async def chats_due(self, cutoff: str) -> List[ChatRow]:
        rows = await self._pool.fetch(_SELECT_CHATS_DUE_SQL, cutoff)
        return [
            ChatRow(id=int(row["id"]), ms_chat_id=row["ms_chat_id"], chat_name=row["chat_name"])
            for row in rows
        ]

    async def upsert_chat_message(self, chat_id: int, message_id: str, message_json: str) -> None:
        await self._pool.execute(_UPSERT_CHAT_MESSAGE_SQL, chat_id, message_id, message_json)

    async def set_chat_watermark(self, chat_id: int, last_download: str) -> None:
        await self._pool.execute(_SET_CHAT_WATERMARK_SQL, last_download, chat_id)

    # ------------------------------------------------------------------
    # Delta links
    # ------------------------------------------------------------------

    async def get_delta_link(self, collection_key: str) -> Optional[str]:
        return await self._pool.fetchval(_SELECT_DELTA_LINK_SQL, collection_key)

    async def set_delta_link(self, collection_key: str, delta_link: str) -> None:
        await self._pool.execute(_UPSERT_DELTA_LINK_SQL, collection_key, delta_link)

    async def clear_delta_link(self, collection_key: str) -> None:
        """Forget a delta link the server no longer accepts."""
        await self._pool.execute(_DELETE_DELTA_LINK_SQL, collection_key)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def get_sync_stats(self) -> Dict[str, Any]:
        """Return summary statistics for monitoring."""
        async with self._pool.acquire() as conn:
            channels = await conn.fetchval("SELECT COUNT(*) FROM channels WHERE NOT deleted")
            deleted_channels = await conn.fetchval("SELECT COUNT(*) FROM channels WHERE deleted")
            channel_messages = await conn.fetchval("SELECT COUNT(*) FROM channel_messages")
            chats = await conn.fetchval("SELECT COUNT(*) FROM chats")
            chat_messages = await conn.fetchval("SELECT COUNT(*) FROM chat_messages")

        return {
            "channels": channels or 0,
            "deleted_channels": deleted_channels or 0,
            "channel_messages": channel_messages or 0,
            "chats": chats or 0,
            "chat_messages": chat_messages or 0,
        }
