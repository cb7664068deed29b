"""
Secrets and keychain integration — retrieves the application (client) id
used for device login from the system keychain.

Values are looked up with ``secret-tool`` (``libsecret``) first and fall
back to environment variables for development machines and CI.  OAuth
tokens obtained at login are kept in memory only and never stored here.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Sequence

logger = logging.getLogger("shared.secrets")

SERVICE_NAME = "teams-mirror"


def _env_keys(key_name: str, service: str) -> list[str]:
    normalized = key_name.upper().replace("-", "_")
    prefix = service.upper().replace("-", "_")
    return [f"{prefix}_{normalized}"]


def get_secret(
    key_name: str,
    service: str = SERVICE_NAME,
    extra_env_keys: Sequence[str] = (),
) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` under the hood::

        secret-tool lookup service teams-mirror key <key_name>

    Falls back to ``TEAMS_MIRROR_<KEY_NAME>`` and then to each of
    ``extra_env_keys`` (e.g. the legacy ``TEAMS_CLIENT_ID``).

    Raises:
        RuntimeError: If the secret is not found anywhere.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.debug("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
    except OSError:
        logger.warning("secret-tool failed; falling back to environment variable", exc_info=True)

    env_keys = _env_keys(key_name, service) + list(extra_env_keys)
    for env_key in env_keys:
        env_val = os.environ.get(env_key)
        if env_val:
            logger.info("Using environment variable %s for secret '%s'", env_key, key_name)
            return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variables {', '.join(env_keys)}"
    )


def get_client_id() -> str:
    """Return the Entra ID application id used for device login."""
    return get_secret("client-id", extra_env_keys=("TEAMS_CLIENT_ID",))
