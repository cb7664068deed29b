"""
Structured audit logging — records sync events to both a JSON Lines file
and the PostgreSQL ``audit_log`` table.

Every significant action (login, channel sweep, per-channel download,
pass summary, fatal error) is recorded with a timestamp, service name,
action, details dict, and success flag.

The syncer is a single sequential task, so events are written inline: one
file append and one INSERT per event.  A failure on either sink is logged
and never interrupts the sync.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

DEFAULT_LOG_PATH = Path("/var/log/teams-mirror/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


class AuditLogger:
    """Audit trail writer.

    Args:
        pool: ``asyncpg`` pool, or ``None`` to write the file only (used
              before the database is reachable, e.g. during login).
        log_path: Path to the JSON Lines audit log file, or ``None`` to
              skip the file sink.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool],
        log_path: Optional[Path] = DEFAULT_LOG_PATH,
    ) -> None:
        self._pool = pool
        self._log_path = log_path
        self._closed = False

    def attach_pool(self, pool: asyncpg.Pool) -> None:
        """Start mirroring events to the database once it is available."""
        self._pool = pool

    def _write_file(self, line: str) -> None:
        if self._log_path is None:
            return
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError:
            logger.exception("Failed to write audit log file %s", self._log_path)

    async def _write_db(self, service: str, action: str, details_json: str, success: bool) -> None:
        if self._pool is None:
            return
        try:
            await self._pool.execute(_INSERT_AUDIT_SQL, service, action, details_json, success)
        except (asyncpg.PostgresError, OSError):
            logger.exception("Failed to write audit log to database")

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Record an audit event.

        Args:
            service: Originating component (``"syncer"``, ``"auth"``).
            action: Action identifier (e.g. ``"sync_channels"``,
                    ``"sync_channel_messages"``, ``"login"``).
            details: Arbitrary JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        if self._closed:
            logger.debug("Dropping audit event after close: %s/%s", service, action)
            return

        details_payload = details or {}
        details_json = json.dumps(details_payload, default=str)
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": service,
            "action": action,
            "details": details_payload,
            "success": success,
        }
        self._write_file(json.dumps(event, default=str) + "\n")
        await self._write_db(service, action, details_json, success)

    async def close(self) -> None:
        """Stop accepting events.  Safe to call more than once."""
        self._closed = True
