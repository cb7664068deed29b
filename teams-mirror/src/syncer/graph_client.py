"""Microsoft Graph list operations used by the syncer.

Thin layer that knows the collection URLs; all paging, retry and
rate-limit handling lives in :class:`syncer.paged_fetcher.PagedFetcher`.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from syncer.paged_fetcher import PagedFetcher
from syncer.records import EntityKind, FetchResult

GRAPH_BASE_URL = "https://graph.microsoft.com/beta"


def _seg(value: str) -> str:
    # Graph ids look like "19:abc@thread.tacv2"; keep ':' and '@' readable.
    return quote(value, safe=":@")


class GraphClient:
    """Read-only Graph client for teams, channels, chats and their contents.

    Usage::

        client = GraphClient(PagedFetcher(session, token))
        teams = await client.list_teams()
        for team in teams.values():
            channels = await client.list_channels(team.id)
    """

    def __init__(self, fetcher: PagedFetcher, base_url: str = GRAPH_BASE_URL) -> None:
        self._fetcher = fetcher
        self.base_url = base_url.rstrip("/")

    # ========== Teams and channels ==========

    async def list_teams(self, delta_link: Optional[str] = None) -> FetchResult:
        return await self._fetcher.fetch_all(
            EntityKind.TEAM, f"{self.base_url}/teams", delta_link
        )

    async def list_channels(
        self, team_id: str, delta_link: Optional[str] = None
    ) -> FetchResult:
        return await self._fetcher.fetch_all(
            EntityKind.CHANNEL,
            f"{self.base_url}/teams/{_seg(team_id)}/channels",
            delta_link,
        )

    async def list_channel_members(
        self, team_id: str, channel_id: str, delta_link: Optional[str] = None
    ) -> FetchResult:
        return await self._fetcher.fetch_all(
            EntityKind.MEMBER,
            f"{self.base_url}/teams/{_seg(team_id)}/channels/{_seg(channel_id)}/members",
            delta_link,
        )

    async def list_channel_messages(
        self, team_id: str, channel_id: str, delta_link: Optional[str] = None
    ) -> FetchResult:
        return await self._fetcher.fetch_all(
            EntityKind.MESSAGE,
            self.channel_messages_url(team_id, channel_id),
            delta_link,
        )

    async def list_replies(
        self,
        team_id: str,
        channel_id: str,
        message_id: str,
        delta_link: Optional[str] = None,
    ) -> FetchResult:
        """List replies to a channel message (order as returned by the API)."""
        url = (
            f"{self.channel_messages_url(team_id, channel_id)}"
            f"/{_seg(message_id)}/replies"
        )
        return await self._fetcher.fetch_all(EntityKind.REPLY, url, delta_link)

    # ========== Chats ==========

    async def list_chats(self, delta_link: Optional[str] = None) -> FetchResult:
        return await self._fetcher.fetch_all(
            EntityKind.CHAT, f"{self.base_url}/chats", delta_link
        )

    async def list_chat_members(
        self, chat_id: str, delta_link: Optional[str] = None
    ) -> FetchResult:
        return await self._fetcher.fetch_all(
            EntityKind.MEMBER,
            f"{self.base_url}/chats/{_seg(chat_id)}/members",
            delta_link,
        )

    async def list_chat_messages(
        self, chat_id: str, delta_link: Optional[str] = None
    ) -> FetchResult:
        return await self._fetcher.fetch_all(
            EntityKind.MESSAGE, self.chat_messages_url(chat_id), delta_link
        )

    # ========== URLs (also used as delta-link keys) ==========

    def channel_messages_url(self, team_id: str, channel_id: str) -> str:
        return f"{self.base_url}/teams/{_seg(team_id)}/channels/{_seg(channel_id)}/messages"

    def chat_messages_url(self, chat_id: str) -> str:
        return f"{self.base_url}/chats/{_seg(chat_id)}/messages"
