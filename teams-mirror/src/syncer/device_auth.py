"""
OAuth 2.0 device authorization grant against the Microsoft identity platform.

The flow suits a headless syncer:
    1. ``request_code()`` asks the identity platform for a device code.
    2. The user opens ``verification_uri`` in any browser and enters
       ``verification_code``.
    3. ``poll_for_token()`` polls the token endpoint until the user has
       finished (or refused) and stores the issued tokens.

A session object covers exactly one login attempt.  Tokens are held in
memory only and never written anywhere.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

import aiohttp

from syncer.errors import AuthenticationError, ShutdownRequested, UsageError
from syncer.shutdown import sleep_with_shutdown

logger = logging.getLogger("syncer.device_auth")

AUTHORITY = "https://login.microsoftonline.com"
DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
MIN_POLL_INTERVAL = 5

# Read-only permissions needed to mirror teams, channels and chats.
DEFAULT_SCOPES = (
    "User.Read",
    "Chat.Read",
    "Team.ReadBasic.All",
    "Channel.ReadBasic.All",
)


class AuthPhase(enum.Enum):
    CREATED = "created"
    CODE_REQUESTED = "code_requested"
    POLLING = "polling"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class DeviceCode:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


@dataclass(frozen=True)
class TokenInfo:
    access_token: str
    expires_in: int
    scope: str = ""
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None


class DeviceAuthSession:
    """One device-code login attempt.

    Args:
        session: ``aiohttp`` session used for both endpoints.
        client_id: Application (client) id registered in Entra ID.
        scopes: Delegated permissions to request.
        tenant: Tenant id or ``"common"``.
        enforce_expiry: Stop polling once the device code's ``expires_in``
            has elapsed instead of polling until the server answers
            ``expired_token``.
        should_stop: Polled while waiting between token polls; a true value
            ends the attempt with ``ShutdownRequested``.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        client_id: str,
        scopes: Sequence[str] = DEFAULT_SCOPES,
        tenant: str = "common",
        authority: str = AUTHORITY,
        enforce_expiry: bool = True,
        timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> None:
        self._session = session
        self.client_id = client_id
        self.scopes = list(scopes)
        self._login_url = f"{authority.rstrip('/')}/{tenant}/oauth2/v2.0"
        self._enforce_expiry = enforce_expiry
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._clock = clock
        self._should_stop = should_stop

        self._phase = AuthPhase.CREATED
        self._device_code: Optional[DeviceCode] = None
        self._deadline: Optional[float] = None
        self._token: Optional[TokenInfo] = None

    @property
    def phase(self) -> AuthPhase:
        return self._phase

    # ----- step 1: device code --------------------------------------------

    async def request_code(self) -> None:
        """Request a device code and user code.

        Raises:
            UsageError: If this session already requested a code.
            AuthenticationError: If the identity platform rejects the request.
        """
        if self._phase is not AuthPhase.CREATED:
            raise UsageError(
                f"request_code called in phase {self._phase.value}; "
                "create a new session for another login attempt"
            )

        form = {"client_id": self.client_id, "scope": " ".join(self.scopes)}
        status, body = await self._post(f"{self._login_url}/devicecode", form)
        if status != 200:
            self._phase = AuthPhase.FAILED
            error_code = body.get("error") if isinstance(body, dict) else None
            raise AuthenticationError(
                f"Failed to get device code (HTTP {status}): {_describe_error(body)}",
                error_code=error_code,
            )

        try:
            self._device_code = DeviceCode(
                device_code=str(body["device_code"]),
                user_code=str(body["user_code"]),
                verification_uri=str(body["verification_uri"]),
                expires_in=int(body.get("expires_in", 900)),
                interval=int(body.get("interval", MIN_POLL_INTERVAL)),
            )
        except (KeyError, TypeError, ValueError) as err:
            self._phase = AuthPhase.FAILED
            raise AuthenticationError(f"Malformed device code response: {body!r}") from err

        self._deadline = self._clock() + self._device_code.expires_in
        self._phase = AuthPhase.CODE_REQUESTED
        logger.info(
            "Device code issued (expires in %ds, poll interval %ds)",
            self._device_code.expires_in,
            self._device_code.interval,
        )

    def _require_device_code(self) -> DeviceCode:
        if self._device_code is None:
            raise UsageError("request_code not called or not succeeded")
        return self._device_code

    @property
    def verification_code(self) -> str:
        """Short code the user types at :attr:`verification_uri`."""
        return self._require_device_code().user_code

    @property
    def verification_uri(self) -> str:
        return self._require_device_code().verification_uri

    # ----- step 2: token polling ------------------------------------------

    async def poll_for_token(self) -> TokenInfo:
        """Poll the token endpoint until the user completes sign-in.

        ``authorization_pending`` keeps polling; every other error code
        ends the attempt.

        Raises:
            UsageError: If ``request_code`` has not succeeded.
            AuthenticationError: On any error other than
                ``authorization_pending``, or when the device code expired.
            ShutdownRequested: If shutdown was requested while polling.
        """
        device = self._require_device_code()
        if self._phase is not AuthPhase.CODE_REQUESTED:
            raise UsageError(f"poll_for_token called in phase {self._phase.value}")

        self._phase = AuthPhase.POLLING
        form = {
            "client_id": self.client_id,
            "grant_type": DEVICE_CODE_GRANT,
            "device_code": device.device_code,
        }
        interval = max(device.interval, MIN_POLL_INTERVAL)
        url = f"{self._login_url}/token"

        while True:
            if await sleep_with_shutdown(interval, self._should_stop):
                self._phase = AuthPhase.FAILED
                raise ShutdownRequested("Shutdown requested while waiting for sign-in")

            if self._enforce_expiry and self._deadline is not None and self._clock() >= self._deadline:
                self._phase = AuthPhase.FAILED
                raise AuthenticationError(
                    "Device code expired before sign-in completed", error_code="expired_token"
                )

            try:
                status, body = await self._post(url, form)
            except AuthenticationError:
                self._phase = AuthPhase.FAILED
                raise

            if status == 400 and isinstance(body, dict):
                error_code = body.get("error")
                if error_code == "authorization_pending":
                    logger.debug("Authorization pending, polling again in %ds", interval)
                    continue
                self._phase = AuthPhase.FAILED
                raise AuthenticationError(
                    f"Unrecoverable authentication error: {_describe_error(body)}",
                    error_code=error_code,
                )

            if status != 200:
                self._phase = AuthPhase.FAILED
                raise AuthenticationError(
                    f"Token request failed (HTTP {status}): {_describe_error(body)}"
                )

            self._token = self._decode_token(body)
            self._phase = AuthPhase.AUTHENTICATED
            logger.info("Signed in; token valid for %ds", self._token.expires_in)
            return self._token

    def _decode_token(self, body: Any) -> TokenInfo:
        try:
            return TokenInfo(
                access_token=str(body["access_token"]),
                expires_in=int(body.get("expires_in", 3600)),
                scope=str(body.get("scope", "")),
                refresh_token=body.get("refresh_token"),
                id_token=body.get("id_token"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as err:
            self._phase = AuthPhase.FAILED
            raise AuthenticationError("Token response without access_token") from err

    def _require_token(self) -> TokenInfo:
        if self._token is None or self._phase is not AuthPhase.AUTHENTICATED:
            raise UsageError("poll_for_token not called or not succeeded")
        return self._token

    @property
    def access_token(self) -> str:
        return self._require_token().access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._require_token().refresh_token

    @property
    def id_token(self) -> Optional[str]:
        return self._require_token().id_token

    # ----- transport --------------------------------------------------------

    async def _post(self, url: str, form: Dict[str, str]) -> tuple[int, Any]:
        try:
            async with self._session.post(url, data=form, timeout=self._timeout) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = await resp.text()
                return resp.status, body
        except (asyncio.TimeoutError, aiohttp.ClientError) as err:
            raise AuthenticationError(f"POST {url} failed: {err}") from err


def _describe_error(body: Any) -> str:
    if isinstance(body, dict):
        code = body.get("error", "unknown_error")
        description = body.get("error_description")
        return f"{code}: {description}" if description else str(code)
    return str(body)[:500]
