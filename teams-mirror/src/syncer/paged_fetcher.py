"""
Generic "fetch every item of a collection" engine for Graph list endpoints.

A collection is walked page by page following ``@odata.nextLink`` until the
server stops returning one.  The last ``@odata.deltaLink`` seen is handed
back so the caller can resume incrementally on the next run.

Key behaviours:
    - Items are merged into one dict keyed by id; a repeated id overwrites
      the earlier copy and is logged as a warning.
    - HTTP 429 retries the same URL after ``Retry-After`` seconds, or after
      an exponential backoff (2s doubling up to 300s) when the header is
      missing.
    - HTTP 403 ends the walk quietly with whatever was collected so far.
    - Any other non-200 status, a revisited URL, or a page carrying both
      links aborts with an exception.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Set

import aiohttp

from syncer.errors import (
    MalformedPayloadError,
    ProtocolViolationError,
    ShutdownRequested,
    TransportError,
    UnexpectedResponseError,
)
from syncer.records import EntityKind, FetchResult, Page, decode_page
from syncer.shutdown import sleep_with_shutdown

logger = logging.getLogger("syncer.paged_fetcher")

MIN_RETRY_AFTER = 2
MAX_RETRY_AFTER = 300


def next_retry_after(previous: float, header_value: Optional[str] = None) -> float:
    """Return the delay before retrying a rate-limited request.

    The backoff doubles ``previous`` and clamps it to
    ``[MIN_RETRY_AFTER, MAX_RETRY_AFTER]``.  A parseable ``Retry-After``
    header wins over the computed backoff.
    """
    delay = max(MIN_RETRY_AFTER, min(MAX_RETRY_AFTER, previous * 2))
    if header_value:
        try:
            return max(0, int(header_value.strip()))
        except ValueError:
            # HTTP-date form is not used by Graph; fall back to backoff.
            logger.debug("Unparseable Retry-After header: %r", header_value)
    return delay


class PagedFetcher:
    """Walks paginated Graph collections with a bearer token.

    Args:
        session: Shared ``aiohttp`` session.
        access_token: OAuth access token sent as ``Authorization: Bearer``.
        timeout_seconds: Total timeout for a single GET.
        should_stop: Polled during rate-limit waits; a true value aborts
            the fetch with ``ShutdownRequested``.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        access_token: str,
        timeout_seconds: float = 60.0,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> None:
        self._session = session
        self._should_stop = should_stop
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def fetch_all(
        self,
        kind: EntityKind,
        collection_url: str,
        resume_delta_link: Optional[str] = None,
    ) -> FetchResult:
        """Fetch every item reachable from ``resume_delta_link`` or ``collection_url``.

        Raises:
            ProtocolViolationError: A URL was visited twice in this call, or a
                page carried both a next link and a delta link.
            UnexpectedResponseError: The API returned a status other than
                200, 403 or 429.
            MalformedPayloadError: A page could not be decoded.
            TransportError: The request failed below HTTP.
            ShutdownRequested: Shutdown was requested during a rate-limit wait.
        """
        result = FetchResult()
        visited: Set[str] = set()
        url: Optional[str] = resume_delta_link or collection_url
        pages = 0

        while url:
            if url in visited:
                raise ProtocolViolationError(
                    f"Url was already visited when getting {kind.value} items: {url}"
                )
            visited.add(url)

            page = await self._get_page(kind, url)
            if page is None:
                break
            pages += 1

            for item in page.items:
                previous = result.items.get(item.id)
                if previous is not None:
                    logger.warning(
                        "Duplicate %s: old %s, new %s",
                        kind.value,
                        previous.describe(),
                        item.describe(),
                    )
                result.items[item.id] = item

            url = page.next_link
            if page.delta_link:
                result.delta_link = page.delta_link

        logger.debug(
            "Fetched %d %s item(s) in %d page(s) from %s",
            len(result.items),
            kind.value,
            pages,
            collection_url,
        )
        return result

    async def _get_page(self, kind: EntityKind, url: str) -> Optional[Page]:
        """GET one page, retrying on 429.  Returns ``None`` on 403."""
        retry_after: float = 0
        while True:
            try:
                async with self._session.get(
                    url, headers=self._headers, timeout=self._timeout
                ) as resp:
                    if resp.status == 200:
                        body = await self._read_json(resp, url)
                        return decode_page(kind, body)
                    if resp.status == 403:
                        logger.info("Access to resource is forbidden: %s", url)
                        return None
                    if resp.status != 429:
                        text = await resp.text()
                        raise UnexpectedResponseError(resp.status, url, text)
                    retry_after = next_retry_after(
                        retry_after, resp.headers.get("Retry-After")
                    )
            except (asyncio.TimeoutError, aiohttp.ClientError) as err:
                raise TransportError(f"GET {url} failed: {err}") from err

            logger.info("Too many requests, waiting %s seconds before retrying %s", retry_after, url)
            if await sleep_with_shutdown(retry_after, self._should_stop):
                raise ShutdownRequested(f"Shutdown requested while rate limited on {url}")

    @staticmethod
    async def _read_json(resp: Any, url: str) -> Any:
        try:
            return await resp.json(content_type=None)
        except ValueError as err:
            raise MalformedPayloadError(f"Response from {url} is not valid JSON") from err
