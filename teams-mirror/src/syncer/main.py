"""
Syncer entry point — signs in with the device code flow, then mirrors
teams, channels, chats and their messages from Microsoft Graph into
PostgreSQL.

Meant to be invoked repeatedly (cron / systemd timer).  Every invocation is
one pass and resumes from the state the previous one committed: channel
deletion flags, per-collection ``last_download`` watermarks and stored
delta links.

Key behaviours:
    - Loads configuration from ``/etc/teams-mirror/settings.toml``
      (override with ``--config`` or ``TEAMS_MIRROR_CONFIG``).
    - Prints the verification URL and user code, then waits for sign-in.
    - Handles SIGTERM / SIGINT by finishing the current channel/chat and
      stopping; a signal during sign-in or a rate-limit wait aborts at once
      (exit status 130).
    - Logs the pass summary and any fatal error to the audit log.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import asyncpg
import toml

from shared.audit import DEFAULT_LOG_PATH, AuditLogger
from shared.db import get_connection_pool, init_database
from shared.secrets import get_client_id
from syncer.device_auth import DEFAULT_SCOPES, DeviceAuthSession
from syncer.errors import ConfigurationError, MirrorError, ShutdownRequested
from syncer.graph_client import GRAPH_BASE_URL, GraphClient
from syncer.paged_fetcher import PagedFetcher
from syncer.reconciler import SyncReconciler, format_watermark
from syncer.store import MirrorStore

logger = logging.getLogger("syncer.main")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("TEAMS_MIRROR_CONFIG", "/etc/teams-mirror/settings.toml")
)
_DEFAULT_REDOWNLOAD_AFTER_DAYS = 7

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    required = [
        ("database",),
        ("database", "database"),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


def resolve_cutoff(
    config: Dict[str, Any],
    override: Optional[str] = None,
    today: Optional[date] = None,
) -> str:
    """Return the ``YYYY-MM-DD`` cutoff for watermark-gated downloads.

    Collections whose ``last_download`` is on or before the cutoff are
    downloaded again.  Preference order: ``override`` (``--cutoff``),
    ``syncer.cutoff_date``, then today minus ``syncer.redownload_after_days``.
    """
    if override:
        return format_watermark(override)

    syncer_config = config.get("syncer", {})
    configured = syncer_config.get("cutoff_date")
    if configured:
        # toml parses bare dates into ``datetime.date``.
        return format_watermark(configured if isinstance(configured, date) else str(configured))

    try:
        days = int(syncer_config.get("redownload_after_days", _DEFAULT_REDOWNLOAD_AFTER_DAYS))
    except (TypeError, ValueError):
        logger.warning("Invalid redownload_after_days; using %d", _DEFAULT_REDOWNLOAD_AFTER_DAYS)
        days = _DEFAULT_REDOWNLOAD_AFTER_DAYS
    today = today or datetime.now(timezone.utc).date()
    return format_watermark(today - timedelta(days=max(0, days)))


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


async def login(
    session: aiohttp.ClientSession,
    config: Dict[str, Any],
    client_id: str,
    should_stop: Callable[[], bool] = lambda: False,
) -> str:
    """Run the device code flow and return an access token."""
    auth_config = config.get("auth", {})
    auth = DeviceAuthSession(
        session,
        client_id,
        scopes=auth_config.get("scopes", DEFAULT_SCOPES),
        tenant=auth_config.get("tenant", "common"),
        enforce_expiry=bool(auth_config.get("enforce_expiry", True)),
        should_stop=should_stop,
    )
    await auth.request_code()

    print(
        f"Go to {auth.verification_uri} and enter code {auth.verification_code}",
        flush=True,
    )

    await auth.poll_for_token()
    return auth.access_token


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler — waits and collection loops stop at their next check."""
    logger.info("Received signal %s, finishing current collection then stopping...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def _resolve_client_id() -> str:
    """Look up the application id, reporting a missing one as a config error."""
    try:
        return get_client_id()
    except RuntimeError as err:
        raise ConfigurationError(str(err)) from err


async def _audit_failure(audit: AuditLogger, err: BaseException) -> None:
    await audit.log(
        "syncer",
        "sync_pass",
        {"error": str(err), "error_type": type(err).__name__},
        success=False,
    )


async def main(args: argparse.Namespace) -> int:
    """Run one sync pass.  Returns the process exit status."""
    config = load_config(Path(args.config))
    syncer_config = config.get("syncer", {})
    graph_config = config.get("graph", {})

    audit_path = syncer_config.get("audit_log_path")
    audit = AuditLogger(None, Path(audit_path) if audit_path else DEFAULT_LOG_PATH)
    cutoff = resolve_cutoff(config, args.cutoff)
    pool = None

    try:
        client_id = _resolve_client_id()
        pool = await get_connection_pool(config["database"])
        await init_database(pool)
        audit.attach_pool(pool)
        store = MirrorStore(pool)

        async with aiohttp.ClientSession() as session:
            access_token = await login(
                session, config, client_id, should_stop=_shutdown_event.is_set
            )
            await audit.log("auth", "login", {}, success=True)

            fetcher = PagedFetcher(
                session,
                access_token,
                timeout_seconds=float(graph_config.get("request_timeout_seconds", 60)),
                should_stop=_shutdown_event.is_set,
            )
            client = GraphClient(fetcher, graph_config.get("base_url", GRAPH_BASE_URL))
            reconciler = SyncReconciler(
                client,
                store,
                audit,
                use_delta_links=bool(syncer_config.get("use_delta_links", True)),
                should_stop=_shutdown_event.is_set,
            )
            summary = await reconciler.run(
                cutoff,
                include_channels=args.only in (None, "channels"),
                include_chats=args.only in (None, "chats"),
            )

        stats = await store.get_sync_stats()
        logger.info("Mirror totals: %s", stats)
        return 0 if not summary.interrupted else 130

    except ShutdownRequested as err:
        logger.info("Sync pass interrupted: %s", err)
        await audit.log("syncer", "sync_pass", {"interrupted": True, "reason": str(err)})
        return 130
    except MirrorError as err:
        logger.exception("Sync pass aborted")
        await _audit_failure(audit, err)
        return 1
    except (asyncpg.PostgresError, OSError) as err:
        logger.exception("Sync pass aborted by database or I/O error")
        await _audit_failure(audit, err)
        return 1
    finally:
        await audit.close()
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Syncer shut down.")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="teams-mirror",
        description="Mirror Microsoft Teams channels and chats into PostgreSQL.",
    )
    parser.add_argument(
        "--config",
        default=str(_DEFAULT_CONFIG_PATH),
        help="path to settings.toml (default: %(default)s)",
    )
    parser.add_argument(
        "--cutoff",
        help="re-download collections last downloaded on or before this YYYY-MM-DD date",
    )
    parser.add_argument(
        "--only",
        choices=("channels", "chats"),
        help="sync only channels or only chats",
    )
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> None:
    """Synchronous entry point (console script ``teams-mirror``)."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    run()
