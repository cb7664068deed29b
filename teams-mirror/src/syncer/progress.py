"""
Download progress logging for journalctl output.

``CollectionProgress`` follows one channel or chat while its messages are
downloaded; ``PassProgress`` sums those up for a whole reconciliation
phase.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("syncer.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        if secs:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{hours}h {mins}m"
    return f"{hours}h"


class CollectionProgress:
    """Counts messages and replies stored for one channel or chat.

    Args:
        index: 1-based position of this collection in the phase.
        total: Number of collections selected for the phase.
        label: Display label, e.g. ``"General in team Ops"``.
    """

    def __init__(self, index: int, total: int, label: str) -> None:
        self.index = index
        self.total = total
        self.label = label
        self.messages = 0
        self.replies = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Messages stored per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.messages / elapsed

    def add_message(self, replies: int = 0) -> None:
        self.messages += 1
        self.replies += replies

    def log_start(self) -> None:
        logger.info("[%d/%d] Downloading messages from %s", self.index, self.total, self.label)

    def log_complete(self) -> None:
        logger.info(
            "[%d/%d] Downloaded %d messages and %d replies from %s in %s (%.1f msg/s)",
            self.index,
            self.total,
            self.messages,
            self.replies,
            self.label,
            _format_duration(self.elapsed_seconds),
            self.rate,
        )


class PassProgress:
    """Totals for one reconciliation phase (all channels or all chats).

    Args:
        phase: Phase name used in log lines.
        total: Number of collections selected for the phase.
    """

    def __init__(self, phase: str, total: int) -> None:
        self.phase = phase
        self.total = total
        self.completed = 0
        self.messages = 0
        self.replies = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds left, from the average time per collection."""
        if self.completed <= 0 or self.total <= self.completed:
            return None
        per_collection = self.elapsed_seconds / self.completed
        return per_collection * (self.total - self.completed)

    def update_from(self, collection: CollectionProgress) -> None:
        self.completed += 1
        self.messages += collection.messages
        self.replies += collection.replies

    def log_progress(self) -> None:
        eta = self.eta_seconds
        eta_str = f" | ETA: ~{_format_duration(eta)}" if eta is not None else ""
        logger.info(
            "  %s: %d/%d done, %d messages, %d replies%s",
            self.phase,
            self.completed,
            self.total,
            self.messages,
            self.replies,
            eta_str,
        )
