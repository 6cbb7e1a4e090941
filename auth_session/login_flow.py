"""
Interactive login strategies. Both drive an authorization-code + PKCE round trip and hand the
code to an exchange callback supplied by the session manager:

- LocalServerFlow: ephemeral localhost listener receives the provider redirect.
- UriCallbackFlow: the provider redirects to the host's URI scheme; the host forwards the
  activation URI to a UriEventHandler.

Which one is used is decided by the host (select_login_flow), not by the flows themselves.
Every per-attempt entry (state, verifier, listener) is released on success, failure and timeout.
"""
import asyncio
import inspect
import logging
import webbrowser
from abc import ABC, abstractmethod
from typing import Awaitable, Callable
from urllib.parse import parse_qs, quote, urlsplit

from auth_session.callback_server import CallbackServer, error_location
from auth_session.config import (
    AUTHORIZE_URL,
    CALLBACK_URI,
    CLIENT_ID,
    LOGIN_TIMEOUT_SECONDS,
    REMOTE_NAME,
    SERVER_CLOSE_GRACE_SECONDS,
    SERVER_START_TIMEOUT_SECONDS,
)
from auth_session.errors import (
    CallbackError,
    LoginTimeoutError,
    MissingVerifierError,
    ServerStartError,
    StateMismatchError,
)
from auth_session.events import EventChannel
from auth_session.pkce import (
    build_authorize_url,
    build_local_state,
    build_uri_state,
    generate_nonce,
    generate_pkce,
    state_candidates,
)
from auth_session.tokens import Session

logger = logging.getLogger(__name__)

# (code, code_verifier, redirect_uri, scope) -> Session
ExchangeCallback = Callable[[str, str, str, str], Awaitable[Session]]
OpenExternal = Callable[[str], object]


def default_open_external(url: str) -> bool:
    return webbrowser.open(url)


async def _open(open_external: OpenExternal, url: str) -> None:
    result = open_external(url)
    if inspect.isawaitable(result):
        await result


def parse_query(uri: str) -> dict[str, str]:
    """First value of each query parameter of an activation URI."""
    return {k: v[0] for k, v in parse_qs(urlsplit(uri).query).items()}


class LoginFlow(ABC):
    @abstractmethod
    async def login(self, scope: str, exchange: ExchangeCallback) -> Session:
        """Run one interactive login for scope; resolves with the session the exchange produced."""

    async def dispose(self) -> None:
        """Release listeners and pending attempts."""


class UriEventHandler(EventChannel[str]):
    """Host-facing activation channel: the host calls handle_uri with each URI it is activated with."""

    def handle_uri(self, uri: str) -> None:
        self.fire(uri)


class LocalServerFlow(LoginFlow):
    def __init__(
        self,
        *,
        open_external: OpenExternal = default_open_external,
        authorize_url: str = AUTHORIZE_URL,
        client_id: str = CLIENT_ID,
        fallback: LoginFlow | None = None,
        timeout: float = LOGIN_TIMEOUT_SECONDS,
        start_timeout: float = SERVER_START_TIMEOUT_SECONDS,
        close_grace: float = SERVER_CLOSE_GRACE_SECONDS,
    ):
        self._open_external = open_external
        self.authorize_url = authorize_url
        self.client_id = client_id
        self.fallback = fallback
        self.timeout = timeout
        self.start_timeout = start_timeout
        self.close_grace = close_grace
        # One browser round trip per scope; concurrent logins for the same scope join it
        self._in_flight: dict[str, asyncio.Task] = {}
        self._closers: set[asyncio.Task] = set()

    async def login(self, scope: str, exchange: ExchangeCallback) -> Session:
        attempt = self._in_flight.get(scope)
        if attempt is None:
            attempt = asyncio.get_running_loop().create_task(self._login(scope, exchange))
            self._in_flight[scope] = attempt
            attempt.add_done_callback(lambda t: self._forget_attempt(scope, t))
        else:
            logger.info("Joining login already in progress for scope '%s'", scope)
        return await asyncio.shield(attempt)

    def _forget_attempt(self, scope: str, task: asyncio.Task) -> None:
        if self._in_flight.get(scope) is task:
            del self._in_flight[scope]
        if not task.cancelled():
            task.exception()

    async def _login(self, scope: str, exchange: ExchangeCallback) -> Session:
        nonce = generate_nonce()
        server = CallbackServer(nonce, start_timeout=self.start_timeout)
        try:
            port = await server.start()
        except ServerStartError as e:
            logger.error("Local login server failed: %s", e)
            if self.fallback is None:
                raise
            logger.info("Falling back to login without a local server")
            return await self.fallback.login(scope, exchange)

        try:
            return await asyncio.wait_for(self._round_trip(server, port, nonce, scope, exchange), self.timeout)
        except asyncio.TimeoutError:
            raise LoginTimeoutError() from None
        finally:
            closer = asyncio.get_running_loop().create_task(server.close_after(self.close_grace))
            self._closers.add(closer)
            closer.add_done_callback(self._closers.discard)

    async def _round_trip(
        self, server: CallbackServer, port: int, nonce: str, scope: str, exchange: ExchangeCallback
    ) -> Session:
        await _open(self._open_external, f"http://localhost:{port}/signin?nonce={quote(nonce, safe='')}")

        # The browser may reach us through a forwarded port; route the provider back through it
        redirect_port = await server.redirect_request or port
        redirect_uri = f"http://localhost:{redirect_port}/callback"
        code_verifier, code_challenge = generate_pkce()
        server.respond_to_signin(
            build_authorize_url(
                authorize_url=self.authorize_url,
                client_id=self.client_id,
                redirect_uri=redirect_uri,
                scope=scope,
                state=build_local_state(redirect_port, nonce),
                code_challenge=code_challenge,
            )
        )

        code = await server.code_result
        try:
            session = await exchange(code, code_verifier, redirect_uri, scope)
        except Exception as e:
            server.respond_to_callback(error_location(str(e)))
            raise
        server.respond_to_callback("/")
        logger.info("Login successful")
        return session

    async def dispose(self) -> None:
        for task in list(self._in_flight.values()):
            task.cancel()
        self._in_flight.clear()
        if self._closers:
            await asyncio.gather(*self._closers, return_exceptions=True)
        if self.fallback is not None:
            await self.fallback.dispose()


class UriCallbackFlow(LoginFlow):
    """
    Login through the host's URI scheme. Concurrent logins for one scope each open the browser
    with their own state and verifier, but share a single exchange: the first activation carrying
    any of their states is exchanged once and every caller gets that result.
    """

    def __init__(
        self,
        uri_handler: UriEventHandler,
        *,
        open_external: OpenExternal = default_open_external,
        callback_uri: str = CALLBACK_URI,
        authorize_url: str = AUTHORIZE_URL,
        client_id: str = CLIENT_ID,
        timeout: float = LOGIN_TIMEOUT_SECONDS,
    ):
        self._open_external = open_external
        self.callback_uri = callback_uri
        self.authorize_url = authorize_url
        self.client_id = client_id
        self.timeout = timeout
        self._pending_states: dict[str, list[str]] = {}
        self._code_verifiers: dict[str, str] = {}
        self._code_exchanges: dict[str, asyncio.Future] = {}
        self._exchange_callbacks: dict[str, ExchangeCallback] = {}
        self._exchange_tasks: dict[str, asyncio.Task] = {}
        self._unsubscribe = uri_handler.subscribe(self._handle_uri)

    def pending_scopes(self) -> list[str]:
        return list(self._pending_states)

    def has_pending_state(self) -> bool:
        return bool(self._pending_states or self._code_verifiers or self._code_exchanges)

    async def login(self, scope: str, exchange: ExchangeCallback) -> Session:
        state = build_uri_state(self.callback_uri, generate_nonce())
        code_verifier, code_challenge = generate_pkce()

        self._pending_states.setdefault(scope, []).append(state)
        self._code_verifiers[state] = code_verifier
        shared = self._code_exchanges.get(scope)
        if shared is None:
            shared = asyncio.get_running_loop().create_future()
            self._code_exchanges[scope] = shared
            self._exchange_callbacks[scope] = exchange
            shared.add_done_callback(lambda f: self._release_scope(scope, f))

        try:
            await _open(
                self._open_external,
                build_authorize_url(
                    authorize_url=self.authorize_url,
                    client_id=self.client_id,
                    redirect_uri=self.callback_uri,
                    scope=scope,
                    state=state,
                    code_challenge=code_challenge,
                ),
            )
            return await asyncio.wait_for(asyncio.shield(shared), self.timeout)
        except asyncio.TimeoutError:
            logger.info("Login for scope '%s' timed out", scope)
            raise LoginTimeoutError() from None
        finally:
            self._release_attempt(scope, state)

    def _handle_uri(self, uri: str) -> None:
        query = parse_query(uri)
        state = query.get("state", "")
        candidates = state_candidates(state) if state else []
        scope = next(
            (s for s, states in self._pending_states.items() if any(c in states for c in candidates)),
            None,
        )
        if scope is None:
            logger.warning("Received login callback with unknown state")
            if len(self._code_exchanges) == 1:
                (only,) = self._code_exchanges.values()
                if not only.done() and not self._exchange_tasks:
                    only.set_exception(StateMismatchError())
            return

        shared = self._code_exchanges.get(scope)
        if shared is None or shared.done() or scope in self._exchange_tasks:
            logger.debug("Ignoring duplicate login callback for scope '%s'", scope)
            return

        if query.get("error"):
            shared.set_exception(CallbackError(query.get("error_description") or query["error"]))
            return
        code_verifier = next((self._code_verifiers[c] for c in candidates if c in self._code_verifiers), None)
        if code_verifier is None:
            shared.set_exception(MissingVerifierError())
            return
        code = query.get("code")
        if not code:
            shared.set_exception(CallbackError("Missing code parameter."))
            return

        exchange = self._exchange_callbacks[scope]
        task = asyncio.get_running_loop().create_task(exchange(code, code_verifier, self.callback_uri, scope))
        self._exchange_tasks[scope] = task
        task.add_done_callback(lambda t: self._exchange_done(scope, shared, t))

    def _exchange_done(self, scope: str, shared: asyncio.Future, task: asyncio.Task) -> None:
        if self._exchange_tasks.get(scope) is task:
            del self._exchange_tasks[scope]
        if task.cancelled():
            if not shared.done():
                shared.cancel()
            return
        exc = task.exception()
        if shared.done():
            return
        if exc is not None:
            shared.set_exception(exc)
        else:
            shared.set_result(task.result())

    def _release_attempt(self, scope: str, state: str) -> None:
        self._code_verifiers.pop(state, None)
        states = self._pending_states.get(scope)
        if states is not None and state in states:
            states.remove(state)
        if states == [] and scope not in self._exchange_tasks:
            # Last waiter for this scope is gone; nobody is left to receive a result
            del self._pending_states[scope]
            shared = self._code_exchanges.get(scope)
            if shared is not None:
                if not shared.done():
                    shared.cancel()
                self._release_scope(scope, shared)

    def _release_scope(self, scope: str, shared: asyncio.Future | None) -> None:
        if shared is not None and self._code_exchanges.get(scope) is not shared:
            return
        self._code_exchanges.pop(scope, None)
        self._exchange_callbacks.pop(scope, None)
        for state in self._pending_states.pop(scope, []):
            self._code_verifiers.pop(state, None)

    async def dispose(self) -> None:
        self._unsubscribe()
        for task in list(self._exchange_tasks.values()):
            task.cancel()
        for shared in list(self._code_exchanges.values()):
            if not shared.done():
                shared.cancel()
        self._pending_states.clear()
        self._code_verifiers.clear()
        self._code_exchanges.clear()
        self._exchange_callbacks.clear()


def is_remote_host() -> bool:
    """True when the host runs remotely and a localhost listener is unreachable from the browser."""
    return REMOTE_NAME is not None


def select_login_flow(
    is_remote: Callable[[], bool],
    local_flow: LoginFlow,
    uri_flow: LoginFlow,
) -> LoginFlow:
    return uri_flow if is_remote() else local_flow
