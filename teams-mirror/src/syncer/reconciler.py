"""
Reconciliation of the remote Teams graph with the local mirror.

Two patterns, applied independently per collection family:

Mark-and-sweep (channels)
    Inside one transaction every stored channel is flagged deleted, then
    every channel listed by Graph is upserted with ``deleted = FALSE``.
    Channels Graph no longer returns stay flagged, keeping their history.

Watermark-gated download (channel and chat messages)
    Channels/chats whose ``last_download`` is on or before a cutoff date are
    re-downloaded; ``''`` ("never") sorts before every date, so new
    collections are always picked up.  The watermark of a collection is
    moved to the run date only after all of its messages were stored.

Chats have no tombstones: discovery only upserts.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from shared.audit import AuditLogger
from syncer.errors import UnexpectedResponseError
from syncer.graph_client import GraphClient
from syncer.progress import CollectionProgress, PassProgress
from syncer.records import FetchResult, Record
from syncer.store import StoragePort

logger = logging.getLogger("syncer.reconciler")

WATERMARK_FORMAT = "%Y-%m-%d"
NEVER = ""

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Expired or unknown delta tokens (Graph answers 410 syncStateNotFound).
_STALE_DELTA_LINK_STATUSES = frozenset({400, 404, 410})


def format_watermark(day: Union[date, str]) -> str:
    """Normalize a date (or ``YYYY-MM-DD`` string) to the stored watermark form.

    Raises:
        ValueError: If a string is not a valid ``YYYY-MM-DD`` date.
    """
    if isinstance(day, datetime):
        return day.date().strftime(WATERMARK_FORMAT)
    if isinstance(day, date):
        return day.strftime(WATERMARK_FORMAT)
    return datetime.strptime(day, WATERMARK_FORMAT).strftime(WATERMARK_FORMAT)


def _reply_sort_key(reply: Record) -> tuple[datetime, str]:
    raw = reply.created_date_time
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH, raw
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed, raw


def sort_replies(replies: Iterable[Record]) -> List[Record]:
    """Order replies by creation time, oldest first (stable for ties)."""
    return sorted(replies, key=_reply_sort_key)


def chat_display_name(chat: Record, members: Iterable[Record]) -> str:
    """Chat topic, or the members' display names joined when there is none."""
    return chat.topic or ", ".join(member.display_name for member in members)


def _json_array(records: Iterable[Record]) -> str:
    return json.dumps([dict(r.payload) for r in records], ensure_ascii=False)


@dataclass
class SyncSummary:
    channels_seen: int = 0
    channels_downloaded: int = 0
    channel_messages: int = 0
    replies: int = 0
    chats_seen: int = 0
    chats_downloaded: int = 0
    chat_messages: int = 0
    interrupted: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncReconciler:
    """Drives Graph fetches and writes the results through ``store``.

    Args:
        client: Graph list operations.
        store: Storage contract implementation.
        audit: Optional audit trail; one event per phase and per collection.
        run_date: Date written as the watermark for every collection
            finished in this run (defaults to today, UTC).
        use_delta_links: Resume message downloads from stored delta links
            and persist the new ones.
        should_stop: Polled between collections; a true value ends the
            phase early, leaving finished collections committed.
    """

    def __init__(
        self,
        client: GraphClient,
        store: StoragePort,
        audit: Optional[AuditLogger] = None,
        run_date: Optional[date] = None,
        use_delta_links: bool = True,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> None:
        self._client = client
        self._store = store
        self._audit = audit
        self._use_delta_links = use_delta_links
        self._should_stop = should_stop
        self.run_watermark = format_watermark(run_date or datetime.now(timezone.utc).date())
        self.summary = SyncSummary()

    async def _audit_event(self, action: str, details: Dict[str, Any], success: bool = True) -> None:
        if self._audit is not None:
            await self._audit.log("syncer", action, details, success=success)

    def _stop_requested(self, phase: str, done: int, total: int) -> bool:
        if not self._should_stop():
            return False
        logger.info("Shutdown requested; stopping %s after %d/%d", phase, done, total)
        self.summary.interrupted = True
        return True

    async def _fetch_resumable(
        self,
        collection_key: str,
        fetch: Callable[[Optional[str]], Awaitable[FetchResult]],
    ) -> FetchResult:
        if not self._use_delta_links:
            return await fetch(None)

        delta_link = await self._store.get_delta_link(collection_key)
        if not delta_link:
            return await fetch(None)

        logger.debug("Resuming %s from stored delta link", collection_key)
        try:
            return await fetch(delta_link)
        except UnexpectedResponseError as err:
            if err.status not in _STALE_DELTA_LINK_STATUSES:
                raise
            logger.warning(
                "Stored delta link for %s rejected (HTTP %d); refetching in full",
                collection_key,
                err.status,
            )
            await self._store.clear_delta_link(collection_key)
            return await fetch(None)

    async def _remember_delta_link(self, collection_key: str, result: FetchResult) -> None:
        if self._use_delta_links and result.delta_link:
            await self._store.set_delta_link(collection_key, result.delta_link)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def sync_channels(self) -> int:
        """Mark-and-sweep every channel of every team.

        Returns:
            Number of channels Graph listed (all now non-deleted).
        """
        seen = 0
        async with self._store.channel_sweep() as sweep:
            teams = await self._client.list_teams()
            for team in teams.values():
                channels = await self._client.list_channels(team.id)
                for channel in channels.values():
                    logger.info(
                        "Found channel %s in team %s", channel.display_name, team.display_name
                    )
                    await sweep.upsert_channel(
                        team.id,
                        channel.id,
                        team.display_name,
                        channel.display_name,
                        channel.to_json(),
                    )
                    seen += 1

        self.summary.channels_seen += seen
        logger.info("Channel sweep complete: %d live channel(s) in %d team(s)", seen, len(teams))
        await self._audit_event("sync_channels", {"teams": len(teams), "channels": seen})
        return seen

    async def sync_channel_messages(self, cutoff: Union[date, str]) -> int:
        """Download messages and replies of every due channel.

        Returns:
            Number of channels whose watermark moved to the run date.
        """
        cutoff_str = format_watermark(cutoff)
        channels = await self._store.channels_due(cutoff_str)
        logger.info("%d channel(s) due for download (cutoff %s)", len(channels), cutoff_str)
        pass_progress = PassProgress("channels", len(channels))

        for index, row in enumerate(channels):
            if self._stop_requested("channel downloads", index, len(channels)):
                break

            progress = CollectionProgress(
                index + 1, len(channels), f"channel {row.channel_name} in team {row.team_name}"
            )
            progress.log_start()

            key = self._client.channel_messages_url(row.ms_team_id, row.ms_channel_id)
            messages = await self._fetch_resumable(
                key,
                lambda delta, row=row: self._client.list_channel_messages(
                    row.ms_team_id, row.ms_channel_id, delta
                ),
            )
            for message in messages.values():
                replies = await self._client.list_replies(
                    row.ms_team_id, row.ms_channel_id, message.id
                )
                ordered = sort_replies(replies.values())
                await self._store.upsert_channel_message(
                    row.id, message.id, message.to_json(), _json_array(ordered)
                )
                progress.add_message(len(ordered))

            await self._remember_delta_link(key, messages)
            await self._store.set_channel_watermark(row.id, self.run_watermark)

            progress.log_complete()
            pass_progress.update_from(progress)
            self.summary.channels_downloaded += 1
            self.summary.channel_messages += progress.messages
            self.summary.replies += progress.replies
            await self._audit_event(
                "sync_channel_messages",
                {
                    "team_id": row.ms_team_id,
                    "channel_id": row.ms_channel_id,
                    "messages": progress.messages,
                    "replies": progress.replies,
                },
            )
            if (index + 1) % 5 == 0:
                pass_progress.log_progress()

        pass_progress.log_progress()
        return pass_progress.completed

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def sync_chats(self) -> int:
        """Upsert every chat with its members.  Returns the number of chats stored."""
        chats = await self._client.list_chats()
        seen = 0
        for index, chat in enumerate(chats.values()):
            if self._stop_requested("chat discovery", index, len(chats)):
                break
            members = await self._client.list_chat_members(chat.id)
            chat_name = chat_display_name(chat, members.values())
            logger.info("Found chat %s (chat id %s)", chat_name, chat.id)
            await self._store.upsert_chat(
                chat.id, chat_name, chat.to_json(), _json_array(members.values())
            )
            seen += 1

        self.summary.chats_seen += seen
        await self._audit_event("sync_chats", {"listed": len(chats), "chats": seen})
        return seen

    async def sync_chat_messages(self, cutoff: Union[date, str]) -> int:
        """Download messages of every due chat.  Returns chats completed."""
        cutoff_str = format_watermark(cutoff)
        chats = await self._store.chats_due(cutoff_str)
        logger.info("%d chat(s) due for download (cutoff %s)", len(chats), cutoff_str)
        pass_progress = PassProgress("chats", len(chats))

        for index, row in enumerate(chats):
            if self._stop_requested("chat downloads", index, len(chats)):
                break

            progress = CollectionProgress(
                index + 1, len(chats), f"chat {row.chat_name} (chat id {row.ms_chat_id})"
            )
            progress.log_start()

            key = self._client.chat_messages_url(row.ms_chat_id)
            messages = await self._fetch_resumable(
                key,
                lambda delta, row=row: self._client.list_chat_messages(row.ms_chat_id, delta),
            )
            for message in messages.values():
                await self._store.upsert_chat_message(row.id, message.id, message.to_json())
                progress.add_message()

            await self._remember_delta_link(key, messages)
            await self._store.set_chat_watermark(row.id, self.run_watermark)

            progress.log_complete()
            pass_progress.update_from(progress)
            self.summary.chats_downloaded += 1
            self.summary.chat_messages += progress.messages
            await self._audit_event(
                "sync_chat_messages",
                {"chat_id": row.ms_chat_id, "messages": progress.messages},
            )
            if (index + 1) % 5 == 0:
                pass_progress.log_progress()

        pass_progress.log_progress()
        return pass_progress.completed

    # ------------------------------------------------------------------
    # Full pass
    # ------------------------------------------------------------------

    async def run(
        self,
        cutoff: Union[date, str],
        include_channels: bool = True,
        include_chats: bool = True,
    ) -> SyncSummary:
        """Channels, channel messages, chats, chat messages, in that order."""
        if include_channels:
            await self.sync_channels()
            if not self.summary.interrupted:
                await self.sync_channel_messages(cutoff)
        if include_chats and not self.summary.interrupted:
            await self.sync_chats()
            if not self.summary.interrupted:
                await self.sync_chat_messages(cutoff)

        logger.info("Sync pass finished: %s", self.summary.as_dict())
        await self._audit_event("sync_pass", self.summary.as_dict())
        return self.summary
