"""
Tests for the login flows: local listener round trip (real uvicorn on 127.0.0.1, httpx as the
browser), fallback when the listener cannot start, and the URI-callback flow's state handling.
"""
import asyncio
from unittest.mock import patch
from urllib.parse import parse_qs, quote, urlsplit

import httpx
import pytest

from auth_session.callback_server import CallbackServer
from auth_session.errors import (
    AuthFailure,
    CallbackError,
    LoginTimeoutError,
    MissingVerifierError,
    ServerStartError,
    StateMismatchError,
)
from auth_session.login_flow import (
    LocalServerFlow,
    LoginFlow,
    UriCallbackFlow,
    UriEventHandler,
    is_remote_host,
    select_login_flow,
)
from auth_session.pkce import code_challenge_for
from auth_session.tokens import Account, Session

from conftest import wait_until

SCOPE = "offline_access openid"
CALLBACK_URI = "authsession://auth-session/did-authenticate"
AUTHORIZE_URL = "https://login.example/common/authorize"


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


class RecordingExchange:
    def __init__(self, error: Exception | None = None):
        self.calls: list[tuple[str, str, str, str]] = []
        self.error = error

    async def __call__(self, code, code_verifier, redirect_uri, scope):
        self.calls.append((code, code_verifier, redirect_uri, scope))
        if self.error is not None:
            raise self.error
        return Session(
            id="tenant-1/user-1/s1",
            access_token="at",
            account=Account(id="tenant-1/user-1", label="user@example.com"),
            scopes=scope.split(" "),
        )


class Browser:
    """
    Plays the browser for the local listener flow: follows /signin to the provider, then
    returns to the listener's /callback with the given query instead of the provider's.
    """

    def __init__(self, callback_params: dict[str, str] | None = None):
        self.callback_params = callback_params
        self.opened: list[str] = []
        self.authorize_url: str | None = None
        self.final_location: str | None = None
        self._tasks: list[asyncio.Task] = []

    def open(self, url: str) -> None:
        self.opened.append(url)
        self._tasks.append(asyncio.get_running_loop().create_task(self._visit(url)))

    async def _visit(self, url: str) -> None:
        async with httpx.AsyncClient(trust_env=False, follow_redirects=False) as client:
            r = await client.get(url.replace("localhost", "127.0.0.1"))
            assert r.status_code == 302
            self.authorize_url = r.headers["location"]
            authorize = query_of(self.authorize_url)
            params = self.callback_params or {"code": "auth-code", "state": authorize["state"]}
            callback_url = authorize["redirect_uri"].replace("localhost", "127.0.0.1")
            r = await client.get(callback_url, params=params)
            assert r.status_code == 302
            self.final_location = r.headers["location"]

    async def finished(self) -> None:
        await asyncio.gather(*self._tasks)


def local_flow(browser: Browser, **kwargs) -> LocalServerFlow:
    kwargs.setdefault("close_grace", 0)
    kwargs.setdefault("timeout", 5)
    return LocalServerFlow(open_external=browser.open, authorize_url=AUTHORIZE_URL, client_id="client1", **kwargs)


# --- local listener flow ----------------------------------------------------


@pytest.mark.asyncio
async def test_local_flow_round_trip():
    browser = Browser()
    exchange = RecordingExchange()
    flow = local_flow(browser)

    session = await flow.login(SCOPE, exchange)
    await browser.finished()
    await flow.dispose()

    assert session.id == "tenant-1/user-1/s1"
    (signin,) = browser.opened
    assert signin.startswith("http://localhost:") and "/signin?nonce=" in signin
    authorize = query_of(browser.authorize_url)
    assert browser.authorize_url.startswith(AUTHORIZE_URL + "?")
    assert authorize["client_id"] == "client1"
    assert authorize["code_challenge_method"] == "S256"
    assert authorize["prompt"] == "select_account"
    port = urlsplit(signin).port
    assert authorize["redirect_uri"] == f"http://localhost:{port}/callback"
    assert authorize["state"].startswith(f"{port},")

    ((code, verifier, redirect_uri, scope),) = exchange.calls
    assert code == "auth-code"
    assert code_challenge_for(verifier) == authorize["code_challenge"]
    assert redirect_uri == authorize["redirect_uri"]
    assert scope == SCOPE
    assert browser.final_location == "/"


@pytest.mark.asyncio
async def test_local_flow_provider_error():
    browser = Browser({"error": "access_denied", "error_description": "User cancelled"})
    exchange = RecordingExchange()
    flow = local_flow(browser)

    with pytest.raises(CallbackError, match="User cancelled"):
        await flow.login(SCOPE, exchange)
    await browser.finished()
    await flow.dispose()

    assert exchange.calls == []
    assert browser.final_location.startswith("/?error=")


@pytest.mark.asyncio
async def test_local_flow_nonce_mismatch():
    browser = Browser({"code": "auth-code", "state": "1234,not-the-nonce"})
    flow = local_flow(browser)

    with pytest.raises(CallbackError, match="Nonce does not match."):
        await flow.login(SCOPE, RecordingExchange())
    await browser.finished()
    await flow.dispose()


@pytest.mark.asyncio
async def test_local_flow_exchange_failure_redirects_to_error():
    browser = Browser()
    exchange = RecordingExchange(error=AuthFailure("Unable to login. invalid_grant", status_code=400))
    flow = local_flow(browser)

    with pytest.raises(AuthFailure):
        await flow.login(SCOPE, exchange)
    await browser.finished()
    await flow.dispose()

    assert browser.final_location == "/?error=" + quote("Unable to login. invalid_grant", safe="")


@pytest.mark.asyncio
async def test_local_flow_joins_login_in_progress():
    browser = Browser()
    exchange = RecordingExchange()
    flow = local_flow(browser)

    first, second = await asyncio.gather(flow.login(SCOPE, exchange), flow.login(SCOPE, exchange))
    await browser.finished()
    await flow.dispose()

    assert len(browser.opened) == 1
    assert len(exchange.calls) == 1
    assert first is second


@pytest.mark.asyncio
async def test_local_flow_timeout():
    opened = []
    flow = LocalServerFlow(open_external=opened.append, timeout=0.05, close_grace=0)

    with pytest.raises(LoginTimeoutError):
        await flow.login(SCOPE, RecordingExchange())
    await flow.dispose()

    assert len(opened) == 1


class StubFlow(LoginFlow):
    def __init__(self):
        self.scopes: list[str] = []
        self.disposed = False

    async def login(self, scope, exchange):
        self.scopes.append(scope)
        return await exchange("fallback-code", "verifier", CALLBACK_URI, scope)

    async def dispose(self):
        self.disposed = True


@pytest.mark.asyncio
async def test_local_flow_falls_back_when_listener_fails():
    fallback = StubFlow()
    opened = []
    flow = LocalServerFlow(open_external=opened.append, fallback=fallback)
    exchange = RecordingExchange()

    with patch.object(CallbackServer, "start", side_effect=ServerStartError("Error listening to server")):
        session = await flow.login(SCOPE, exchange)
    await flow.dispose()

    assert session.id == "tenant-1/user-1/s1"
    assert fallback.scopes == [SCOPE]
    assert exchange.calls[0][0] == "fallback-code"
    assert opened == []
    assert fallback.disposed


@pytest.mark.asyncio
async def test_local_flow_without_fallback_reports_listener_failure():
    flow = LocalServerFlow(open_external=lambda url: None)
    with patch.object(CallbackServer, "start", side_effect=ServerStartError("Error listening to server")):
        with pytest.raises(ServerStartError, match="Error listening to server"):
            await flow.login(SCOPE, RecordingExchange())


# --- URI-callback flow ------------------------------------------------------


class UriHarness:
    def __init__(self, timeout: float = 5):
        self.opened: list[str] = []
        self.handler = UriEventHandler()
        self.flow = UriCallbackFlow(
            self.handler,
            open_external=self.opened.append,
            callback_uri=CALLBACK_URI,
            authorize_url=AUTHORIZE_URL,
            client_id="client1",
            timeout=timeout,
        )

    def state(self, index: int = 0) -> str:
        return query_of(self.opened[index])["state"]

    def activate(self, **params) -> None:
        query = "&".join(f"{k}={quote(v, safe='')}" for k, v in params.items())
        self.handler.handle_uri(f"{CALLBACK_URI}?{query}")


@pytest.mark.asyncio
async def test_uri_flow_authorize_request():
    h = UriHarness()
    exchange = RecordingExchange()
    login = asyncio.create_task(h.flow.login(SCOPE, exchange))
    await wait_until(lambda: h.opened)

    authorize = query_of(h.opened[0])
    assert authorize["redirect_uri"] == CALLBACK_URI
    assert authorize["response_type"] == "code"
    assert authorize["scope"] == SCOPE
    assert authorize["state"].startswith("authsession,80,")
    assert h.flow.pending_scopes() == [SCOPE]

    h.activate(code="c1", state=h.state())
    await login
    ((code, verifier, redirect_uri, _),) = exchange.calls
    assert code == "c1"
    assert code_challenge_for(verifier) == authorize["code_challenge"]
    assert redirect_uri == CALLBACK_URI
    assert not h.flow.has_pending_state()


@pytest.mark.asyncio
async def test_uri_flow_timeout_releases_state():
    h = UriHarness(timeout=0.05)
    with pytest.raises(LoginTimeoutError, match="Login timed out."):
        await h.flow.login(SCOPE, RecordingExchange())
    assert not h.flow.has_pending_state()


@pytest.mark.asyncio
async def test_uri_flow_unknown_state_rejects_pending_login():
    h = UriHarness()
    exchange = RecordingExchange()
    login = asyncio.create_task(h.flow.login(SCOPE, exchange))
    await wait_until(lambda: h.opened)

    h.activate(code="c1", state="authsession,80,somebody-else,")

    with pytest.raises(StateMismatchError):
        await login
    assert exchange.calls == []
    assert not h.flow.has_pending_state()


@pytest.mark.asyncio
async def test_uri_flow_accepts_double_encoded_state():
    h = UriHarness()
    exchange = RecordingExchange()
    login = asyncio.create_task(h.flow.login(SCOPE, exchange))
    await wait_until(lambda: h.opened)

    h.activate(code="c1", state=quote(h.state(), safe=""))

    session = await login
    assert session.id == "tenant-1/user-1/s1"
    assert len(exchange.calls) == 1


@pytest.mark.asyncio
async def test_uri_flow_missing_verifier():
    h = UriHarness()
    login = asyncio.create_task(h.flow.login(SCOPE, RecordingExchange()))
    await wait_until(lambda: h.opened)
    h.flow._code_verifiers.clear()

    h.activate(code="c1", state=h.state())

    with pytest.raises(MissingVerifierError, match="No available code verifier"):
        await login


@pytest.mark.asyncio
async def test_uri_flow_missing_code():
    h = UriHarness()
    login = asyncio.create_task(h.flow.login(SCOPE, RecordingExchange()))
    await wait_until(lambda: h.opened)

    h.activate(state=h.state())

    with pytest.raises(CallbackError, match="Missing code parameter."):
        await login


@pytest.mark.asyncio
async def test_uri_flow_ignores_repeated_activation():
    h = UriHarness()
    exchange = RecordingExchange()
    login = asyncio.create_task(h.flow.login(SCOPE, exchange))
    await wait_until(lambda: h.opened)
    state = h.state()

    h.activate(code="c1", state=state)
    h.activate(code="c2", state=state)
    await login
    h.activate(code="c3", state=state)

    assert [c[0] for c in exchange.calls] == ["c1"]


@pytest.mark.asyncio
async def test_uri_flow_logins_for_different_scopes_are_independent():
    h = UriHarness()
    exchange = RecordingExchange()
    first = asyncio.create_task(h.flow.login("openid", exchange))
    second = asyncio.create_task(h.flow.login(SCOPE, exchange))
    await wait_until(lambda: len(h.opened) == 2)
    states = {query_of(u)["scope"]: query_of(u)["state"] for u in h.opened}

    h.activate(error="access_denied", state=states["openid"])
    with pytest.raises(CallbackError, match="access_denied"):
        await first
    assert not second.done()

    h.activate(code="c2", state=states[SCOPE])
    await second
    assert [c[0] for c in exchange.calls] == ["c2"]


@pytest.mark.asyncio
async def test_uri_flow_dispose_cancels_pending_login():
    h = UriHarness()
    login = asyncio.create_task(h.flow.login(SCOPE, RecordingExchange()))
    await wait_until(lambda: h.opened)

    await h.flow.dispose()

    with pytest.raises(asyncio.CancelledError):
        await login
    assert len(h.handler) == 0


# --- flow selection ---------------------------------------------------------


def test_select_login_flow():
    local, uri = StubFlow(), StubFlow()
    assert select_login_flow(lambda: False, local, uri) is local
    assert select_login_flow(lambda: True, local, uri) is uri


def test_is_remote_host_follows_configuration():
    with patch("auth_session.login_flow.REMOTE_NAME", "codespaces"):
        assert is_remote_host()
    with patch("auth_session.login_flow.REMOTE_NAME", None):
        assert not is_remote_host()
