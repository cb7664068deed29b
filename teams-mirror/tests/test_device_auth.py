"""
Unit tests for the device code login session.
"""

import pytest

from syncer.device_auth import (
    DEVICE_CODE_GRANT,
    AuthPhase,
    DeviceAuthSession,
)
from syncer.errors import AuthenticationError, ShutdownRequested, UsageError

LOGIN = "https://login.test/common/oauth2/v2.0"

DEVICE_CODE_BODY = {
    "device_code": "dev-123",
    "user_code": "ABCD-EFGH",
    "verification_uri": "https://microsoft.com/devicelogin",
    "expires_in": 900,
    "interval": 5,
}

TOKEN_BODY = {
    "token_type": "Bearer",
    "scope": "User.Read Chat.Read",
    "expires_in": 3599,
    "access_token": "access-xyz",
    "refresh_token": "refresh-xyz",
    "id_token": "id-xyz",
}


class DummyResp:
    def __init__(self, status, data):
        self.status = status
        self._data = data

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, content_type=None):
        return self._data

    async def text(self):
        return str(self._data)


class Session:
    """Returns queued responses in order and records each POST."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, data=None, timeout=None):
        self.calls.append((url, dict(data or {})))
        return self.responses.pop(0)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps(monkeypatch, clock):
    delays = []

    async def fake_sleep(delay, should_stop):
        delays.append(delay)
        clock.now += delay
        return should_stop()

    monkeypatch.setattr("syncer.device_auth.sleep_with_shutdown", fake_sleep)
    return delays


def _auth(session, clock, **kwargs):
    return DeviceAuthSession(
        session,
        "client-1",
        scopes=["User.Read", "Chat.Read"],
        authority="https://login.test",
        clock=clock,
        **kwargs,
    )


class TestRequestCode:
    @pytest.mark.asyncio
    async def test_posts_client_id_and_scopes(self, clock):
        session = Session(DummyResp(200, DEVICE_CODE_BODY))
        auth = _auth(session, clock)

        await auth.request_code()

        url, form = session.calls[0]
        assert url == f"{LOGIN}/devicecode"
        assert form == {"client_id": "client-1", "scope": "User.Read Chat.Read"}
        assert auth.phase is AuthPhase.CODE_REQUESTED
        assert auth.verification_code == "ABCD-EFGH"
        assert auth.verification_uri == "https://microsoft.com/devicelogin"

    @pytest.mark.asyncio
    async def test_tenant_in_login_url(self, clock):
        session = Session(DummyResp(200, DEVICE_CODE_BODY))
        auth = _auth(session, clock, tenant="contoso.onmicrosoft.com")

        await auth.request_code()

        assert session.calls[0][0] == (
            "https://login.test/contoso.onmicrosoft.com/oauth2/v2.0/devicecode"
        )

    @pytest.mark.asyncio
    async def test_non_200_fails(self, clock):
        body = {"error": "invalid_client", "error_description": "unknown app"}
        auth = _auth(Session(DummyResp(400, body)), clock)

        with pytest.raises(AuthenticationError) as exc_info:
            await auth.request_code()

        assert exc_info.value.error_code == "invalid_client"
        assert "unknown app" in str(exc_info.value)
        assert auth.phase is AuthPhase.FAILED

    @pytest.mark.asyncio
    async def test_malformed_body_fails(self, clock):
        auth = _auth(Session(DummyResp(200, {"user_code": "X"})), clock)

        with pytest.raises(AuthenticationError, match="Malformed"):
            await auth.request_code()
        assert auth.phase is AuthPhase.FAILED

    @pytest.mark.asyncio
    async def test_second_request_is_usage_error(self, clock):
        auth = _auth(Session(DummyResp(200, DEVICE_CODE_BODY)), clock)
        await auth.request_code()

        with pytest.raises(UsageError):
            await auth.request_code()


class TestAccessorsBeforeSuccess:
    def test_verification_code_before_request(self, clock):
        auth = _auth(Session(), clock)
        with pytest.raises(UsageError, match="request_code not called"):
            auth.verification_code
        with pytest.raises(UsageError):
            auth.verification_uri

    def test_tokens_before_poll(self, clock):
        auth = _auth(Session(), clock)
        for name in ("access_token", "refresh_token", "id_token"):
            with pytest.raises(UsageError, match="poll_for_token not called"):
                getattr(auth, name)

    @pytest.mark.asyncio
    async def test_poll_before_request(self, clock):
        auth = _auth(Session(), clock)
        with pytest.raises(UsageError):
            await auth.poll_for_token()


class TestPollForToken:
    @pytest.mark.asyncio
    async def test_pending_then_success(self, clock, sleeps):
        pending = {"error": "authorization_pending"}
        session = Session(
            DummyResp(200, DEVICE_CODE_BODY),
            DummyResp(400, pending),
            DummyResp(400, pending),
            DummyResp(200, TOKEN_BODY),
        )
        auth = _auth(session, clock)
        await auth.request_code()

        token = await auth.poll_for_token()

        assert token.access_token == "access-xyz"
        assert auth.phase is AuthPhase.AUTHENTICATED
        assert auth.access_token == "access-xyz"
        assert auth.refresh_token == "refresh-xyz"
        assert auth.id_token == "id-xyz"
        assert sleeps == [5, 5, 5]

        token_calls = session.calls[1:]
        assert len(token_calls) == 3
        url, form = token_calls[0]
        assert url == f"{LOGIN}/token"
        assert form == {
            "client_id": "client-1",
            "grant_type": DEVICE_CODE_GRANT,
            "device_code": "dev-123",
        }

    @pytest.mark.asyncio
    async def test_interval_has_floor(self, clock, sleeps):
        session = Session(
            DummyResp(200, {**DEVICE_CODE_BODY, "interval": 1}),
            DummyResp(200, TOKEN_BODY),
        )
        auth = _auth(session, clock)
        await auth.request_code()
        await auth.poll_for_token()

        assert sleeps == [5]

    @pytest.mark.asyncio
    async def test_longer_server_interval_is_honoured(self, clock, sleeps):
        session = Session(
            DummyResp(200, {**DEVICE_CODE_BODY, "interval": 12}),
            DummyResp(200, TOKEN_BODY),
        )
        auth = _auth(session, clock)
        await auth.request_code()
        await auth.poll_for_token()

        assert sleeps == [12]

    @pytest.mark.asyncio
    async def test_unrecoverable_error_aborts_after_one_poll(self, clock, sleeps):
        session = Session(
            DummyResp(200, DEVICE_CODE_BODY),
            DummyResp(400, {"error": "bad_verification_code"}),
            DummyResp(200, TOKEN_BODY),
        )
        auth = _auth(session, clock)
        await auth.request_code()

        with pytest.raises(AuthenticationError, match="Unrecoverable") as exc_info:
            await auth.poll_for_token()

        assert exc_info.value.error_code == "bad_verification_code"
        assert auth.phase is AuthPhase.FAILED
        assert len(session.calls) == 2
        with pytest.raises(UsageError):
            auth.access_token

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["authorization_declined", "expired_token"])
    async def test_other_terminal_codes(self, clock, sleeps, code):
        session = Session(DummyResp(200, DEVICE_CODE_BODY), DummyResp(400, {"error": code}))
        auth = _auth(session, clock)
        await auth.request_code()

        with pytest.raises(AuthenticationError) as exc_info:
            await auth.poll_for_token()
        assert exc_info.value.error_code == code

    @pytest.mark.asyncio
    async def test_server_error_fails(self, clock, sleeps):
        session = Session(DummyResp(200, DEVICE_CODE_BODY), DummyResp(500, "oops"))
        auth = _auth(session, clock)
        await auth.request_code()

        with pytest.raises(AuthenticationError, match="HTTP 500"):
            await auth.poll_for_token()
        assert auth.phase is AuthPhase.FAILED

    @pytest.mark.asyncio
    async def test_local_expiry_stops_polling(self, clock, sleeps):
        pending = DummyResp(400, {"error": "authorization_pending"})
        session = Session(
            DummyResp(200, {**DEVICE_CODE_BODY, "expires_in": 12, "interval": 5}),
            pending,
            pending,
        )
        auth = _auth(session, clock)
        await auth.request_code()

        with pytest.raises(AuthenticationError) as exc_info:
            await auth.poll_for_token()

        assert exc_info.value.error_code == "expired_token"
        # Polls at t+5 and t+10; the check at t+15 ends the attempt.
        assert len(session.calls) == 3
        assert auth.phase is AuthPhase.FAILED

    @pytest.mark.asyncio
    async def test_expiry_not_enforced_keeps_polling(self, clock, sleeps):
        pending = {"error": "authorization_pending"}
        session = Session(
            DummyResp(200, {**DEVICE_CODE_BODY, "expires_in": 5}),
            DummyResp(400, pending),
            DummyResp(400, pending),
            DummyResp(200, TOKEN_BODY),
        )
        auth = _auth(session, clock, enforce_expiry=False)
        await auth.request_code()

        token = await auth.poll_for_token()

        assert token.access_token == "access-xyz"
        assert len(session.calls) == 4

    @pytest.mark.asyncio
    async def test_token_without_access_token_fails(self, clock, sleeps):
        session = Session(DummyResp(200, DEVICE_CODE_BODY), DummyResp(200, {"scope": "x"}))
        auth = _auth(session, clock)
        await auth.request_code()

        with pytest.raises(AuthenticationError):
            await auth.poll_for_token()
        assert auth.phase is AuthPhase.FAILED

    @pytest.mark.asyncio
    async def test_shutdown_stops_unbounded_polling(self, clock, sleeps):
        pending = {"error": "authorization_pending"}
        session = Session(
            DummyResp(200, DEVICE_CODE_BODY),
            DummyResp(400, pending),
            DummyResp(400, pending),
            DummyResp(200, TOKEN_BODY),
        )
        stop = {"requested": False}
        auth = _auth(session, clock, enforce_expiry=False, should_stop=lambda: stop["requested"])
        await auth.request_code()

        original_post = session.post

        def post_then_signal(url, data=None, timeout=None):
            stop["requested"] = True
            return original_post(url, data=data, timeout=timeout)

        session.post = post_then_signal

        with pytest.raises(ShutdownRequested):
            await auth.poll_for_token()

        # One token poll, then the wait before the next one sees the signal.
        assert len(session.calls) == 2
        assert auth.phase is AuthPhase.FAILED
