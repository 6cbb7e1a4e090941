"""
Session lifecycle manager.

Owns the in-memory token list, one refresh timer per session, the network-failure
retry/poll chain and the change-event channel. Runs on a single asyncio loop: every
mutation of the token list is one synchronous step (upsert, reschedule) followed by an
awaited write of the whole list to the credential store.

Per-session states:
    FRESH     access token cached and unexpired
    STALE     access token expired; refreshed on next use or by its timer
    DEGRADED  refresh failed for network reasons; access token cleared, retry/poll running
A session whose refresh token is rejected is removed (revoked) and never comes back.
"""
import asyncio
import enum
import logging
from typing import Callable

import httpx

from auth_session.config import DEFAULT_TENANT, REFRESH_SKEW_SECONDS
from auth_session.credential_store import CredentialStore
from auth_session.database import init_db
from auth_session.errors import (
    AuthFailure,
    NetworkFailure,
    NetworkProblemError,
    RefreshError,
    StoredDataError,
    TokenClaimsError,
)
from auth_session.events import EventChannel, SessionsChangeEvent
from auth_session.login_flow import (
    LocalServerFlow,
    LoginFlow,
    OpenExternal,
    UriCallbackFlow,
    UriEventHandler,
    default_open_external,
    is_remote_host,
    select_login_flow,
)
from auth_session.scheduler import RetryPolicy, TaskScheduler
from auth_session.tokens import (
    Session,
    StoredSession,
    Token,
    parse_stored_data,
    serialize_tokens,
    token_from_response,
)
from auth_session.token_exchange import TokenExchange

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    FRESH = "fresh"
    STALE = "stale"
    DEGRADED = "degraded"


class SessionManager:
    def __init__(
        self,
        *,
        store: CredentialStore,
        exchange: TokenExchange,
        login_flow: LoginFlow,
        uri_handler: UriEventHandler | None = None,
        scheduler: TaskScheduler | None = None,
        retry_policy: RetryPolicy | None = None,
        refresh_skew: float = REFRESH_SKEW_SECONDS,
        default_tenant: str = DEFAULT_TENANT,
    ):
        self._store = store
        self._exchange = exchange
        self._login_flow = login_flow
        self.uri_handler = uri_handler
        self._scheduler = scheduler or TaskScheduler()
        self._retry_policy = retry_policy or RetryPolicy()
        self._refresh_skew = refresh_skew
        self._default_tenant = default_tenant
        self._tokens: dict[str, Token] = {}
        self._events: EventChannel[SessionsChangeEvent] = EventChannel()

    # --- events -------------------------------------------------------------

    @property
    def on_did_change_sessions(self) -> EventChannel[SessionsChangeEvent]:
        return self._events

    def subscribe(self, listener: Callable[[SessionsChangeEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(listener)

    def _fire(self, *, added=(), removed=(), changed=()) -> None:
        self._events.fire(SessionsChangeEvent(added=list(added), removed=list(removed), changed=list(changed)))

    # --- loading and syncing with the store --------------------------------

    async def initialize(self) -> None:
        """
        Load stored sessions (migrating the legacy record if needed) and refresh each one.
        Refreshes run concurrently; one failing never aborts the others.
        """
        stored_data = await self._store.get() or await self._store.migrate_legacy()
        if not stored_data:
            return
        try:
            sessions = parse_stored_data(stored_data)
        except StoredDataError as e:
            logger.info("Failed to initialize stored data: %s", e)
            await self.clear_sessions()
            return

        revoked: list[str] = []
        results = await asyncio.gather(
            *(self._restore_session(s, revoked) for s in sessions), return_exceptions=True
        )
        for stored, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.error("Restoring session '%s' failed: %s", stored.id, result)

        if revoked:
            for session_id in revoked:
                self._remove_in_memory_session_data(session_id)
            await self._store_or_delete()
            self._fire(removed=revoked)

    async def _restore_session(self, stored: StoredSession, revoked: list[str]) -> None:
        if not stored.refresh_token:
            return
        try:
            await self._refresh_token(stored.refresh_token, stored.scope, stored.id)
        except NetworkFailure:
            self._insert_degraded(stored)
            self._handle_refresh_network_error(stored.id)
        except AuthFailure as e:
            logger.info("Stored session '%s' could not be refreshed: %s", stored.id, e)
            revoked.append(stored.id)

    async def check_for_updates(self) -> None:
        """
        Reconcile memory with the store after another process changed it.
        Sessions are matched by (scope, id); one combined event reports the difference.
        """
        added: list[str] = []
        removed: list[str] = []
        stored_data = await self._store.get()

        if not stored_data:
            if self._tokens:
                logger.info("No stored session data, clearing local data")
                removed = list(self._tokens)
                self._tokens.clear()
                self._scheduler.cancel_all()
        else:
            try:
                sessions = parse_stored_data(stored_data)
            except StoredDataError as e:
                logger.error("Stored session data is malformed: %s", e)
                removed = list(self._tokens)
                await self.clear_sessions()
            else:
                stored_keys = {(s.scope, s.id) for s in sessions}
                known_keys = {(t.scope, t.session_id) for t in self._tokens.values()}
                current = list(self._tokens.values())
                # New stored sessions that did not refresh cleanly; the store is rewritten once for them
                unsettled: list[str] = []

                async def add(stored: StoredSession) -> None:
                    if (stored.scope, stored.id) in known_keys or not stored.refresh_token:
                        return
                    try:
                        await self._refresh_token(stored.refresh_token, stored.scope, stored.id)
                    except NetworkFailure:
                        logger.info("Stored session '%s' unreachable, keeping it until a refresh succeeds", stored.id)
                        self._insert_degraded(stored)
                        self._handle_refresh_network_error(stored.id, notify=False)
                        unsettled.append(stored.id)
                    except AuthFailure as e:
                        logger.info("Stored session '%s' was rejected, removing it: %s", stored.id, e)
                        unsettled.append(stored.id)
                        return
                    added.append(stored.id)

                async def drop(token: Token) -> None:
                    if (token.scope, token.session_id) not in stored_keys:
                        self._remove_in_memory_session_data(token.session_id)
                        removed.append(token.session_id)

                await asyncio.gather(*(add(s) for s in sessions), *(drop(t) for t in current))
                if unsettled:
                    await self._store_or_delete()

        if added or removed:
            self._fire(added=added, removed=removed)

    # --- public session API -------------------------------------------------

    @property
    def session_ids(self) -> list[str]:
        return list(self._tokens)

    def session_state(self, session_id: str) -> SessionState | None:
        token = self._tokens.get(session_id)
        if token is None:
            return None
        if not token.access_token:
            return SessionState.DEGRADED
        return SessionState.FRESH if token.access_token_valid() else SessionState.STALE

    async def get_sessions(self) -> list[Session]:
        """All sessions with resolved access tokens; degraded sessions carry access_token=None."""
        sessions = []
        for token in list(self._tokens.values()):
            try:
                session = await self._to_session(token)
            except NetworkProblemError:
                session = Session(id=token.session_id, access_token=None, account=token.account, scopes=token.scopes)
            # Logged out while its token was being refreshed
            if token.session_id in self._tokens:
                sessions.append(session)
        return sessions

    async def get_access_token(self, session_id: str) -> str | None:
        """Resolved access token for a session id, or None if there is no such session."""
        token = self._tokens.get(session_id)
        if token is None:
            return None
        return await self.resolve_access_token(token)

    async def login(self, scope: str) -> Session:
        """Interactive login for a sorted, space-joined scope string."""
        logger.info("Logging in...")
        if "offline_access" not in scope.split(" "):
            logger.warning(
                "The 'offline_access' scope was not included, so the generated token will not be able to be refreshed."
            )
        return await self._login_flow.login(scope, self._exchange_code_for_session)

    async def _exchange_code_for_session(self, code: str, code_verifier: str, redirect_uri: str, scope: str) -> Session:
        data = await self._exchange.exchange_code(code, code_verifier, redirect_uri, scope)
        token = token_from_response(data, scope, default_tenant=self._default_tenant)
        await self.set_token(token, scope)
        self._fire(added=[token.session_id])
        return await self._to_session(token)

    async def logout(self, session_id: str) -> None:
        """Remove a session and its timer. Unknown ids are ignored (no store write, no event)."""
        if session_id not in self._tokens:
            logger.debug("Logout of unknown session '%s' ignored", session_id)
            return
        logger.info("Logging out of session '%s'", session_id)
        self._remove_in_memory_session_data(session_id)
        await self._store_or_delete()
        self._fire(removed=[session_id])

    async def clear_sessions(self) -> None:
        logger.info("Logging out of all sessions")
        self._tokens.clear()
        self._scheduler.cancel_all()
        await self._store.delete()

    async def dispose(self) -> None:
        self._scheduler.cancel_all()
        await self._login_flow.dispose()
        await self._exchange.aclose()

    # --- tokens -------------------------------------------------------------

    async def _to_session(self, token: Token) -> Session:
        access_token = await self.resolve_access_token(token)
        return Session(id=token.session_id, access_token=access_token, account=token.account, scopes=token.scopes)

    async def resolve_access_token(self, token: Token) -> str | None:
        """
        Cached access token if still valid, otherwise a freshly refreshed one.
        None if the session was removed while the refresh was in flight.
        """
        if token.access_token_valid():
            logger.info("Token available from cache")
            return token.access_token
        logger.info("Token expired or unavailable, trying refresh")
        try:
            refreshed = await self._refresh_token(
                token.refresh_token, token.scope, token.session_id, require_existing=True
            )
        except RefreshError as e:
            raise NetworkProblemError() from e
        if refreshed is None:
            return None
        if not refreshed.access_token:
            raise NetworkProblemError()
        return refreshed.access_token

    async def set_token(self, token: Token, scope: str) -> None:
        """Upsert by session id, reschedule its refresh timer, then persist the list."""
        token.scope = scope
        self._tokens[token.session_id] = token
        self._scheduler.cancel(token.session_id)
        if token.expires_in and token.refresh_token:
            session_id = token.session_id
            self._scheduler.schedule(
                session_id,
                max(token.expires_in - self._refresh_skew, 0),
                lambda: self._scheduled_refresh(session_id),
            )
        await self._store_token_data()

    async def _refresh_token(
        self, refresh_token: str, scope: str, session_id: str, *, require_existing: bool = False
    ) -> Token | None:
        """
        Refresh and store the result under session_id. With require_existing, a session that was
        removed while the request was in flight stays removed and None is returned.
        """
        data = await self._exchange.refresh(refresh_token, scope)
        if require_existing and session_id not in self._tokens:
            logger.info("Session '%s' was removed during refresh, discarding the new token", session_id)
            return None
        try:
            token = token_from_response(data, scope, existing_id=session_id, default_tenant=self._default_tenant)
        except TokenClaimsError as e:
            raise AuthFailure(str(e)) from e
        if not token.refresh_token:
            token.refresh_token = refresh_token
        await self.set_token(token, scope)
        return token

    async def _scheduled_refresh(self, session_id: str) -> None:
        token = self._tokens.get(session_id)
        if token is None:
            return
        try:
            refreshed = await self._refresh_token(token.refresh_token, token.scope, session_id, require_existing=True)
        except NetworkFailure:
            self._handle_refresh_network_error(session_id)
            return
        except AuthFailure as e:
            logger.info("Refresh token for '%s' rejected, signing out: %s", session_id, e)
            await self.logout(session_id)
            return
        if refreshed is not None:
            self._fire(changed=[session_id])

    # --- network failure recovery ------------------------------------------

    def _insert_degraded(self, stored: StoredSession) -> None:
        self._tokens.setdefault(
            stored.id,
            Token(
                session_id=stored.id,
                refresh_token=stored.refresh_token,
                scope=stored.scope,
                account=stored.account,
            ),
        )

    def _handle_refresh_network_error(self, session_id: str, *, notify: bool = True) -> None:
        """
        First failure: clear the access token so consumers see no token rather than a wrong one,
        then retry on the backoff schedule, falling back to slow polling.
        """
        token = self._tokens.get(session_id)
        if token is None:
            return
        token.access_token = None
        if notify:
            self._fire(changed=[session_id])
        self._schedule_retry(session_id, 1)

    def _schedule_retry(self, session_id: str, attempt: int) -> None:
        if attempt == self._retry_policy.max_attempts + 1:
            logger.error("Token refresh failed after %d attempts, polling for reconnect", self._retry_policy.max_attempts)
        delay = self._retry_policy.delay_for(attempt)
        logger.info("Retrying refresh of '%s' in %s seconds (attempt %d)", session_id, delay, attempt)
        self._scheduler.schedule(session_id, delay, lambda: self._retry_refresh(session_id, attempt))

    async def _retry_refresh(self, session_id: str, attempt: int) -> None:
        token = self._tokens.get(session_id)
        if token is None:
            return
        try:
            await self._refresh_token(token.refresh_token, token.scope, session_id, require_existing=True)
        except NetworkFailure:
            self._schedule_retry(session_id, attempt + 1)
        except AuthFailure as e:
            logger.info("Refresh token for '%s' rejected during retry, signing out: %s", session_id, e)
            await self.logout(session_id)

    # --- persistence --------------------------------------------------------

    def _remove_in_memory_session_data(self, session_id: str) -> None:
        self._tokens.pop(session_id, None)
        self._scheduler.cancel(session_id)

    async def _store_token_data(self) -> None:
        try:
            await self._store.set(serialize_tokens(self._tokens.values()))
        except Exception as e:
            logger.error("Storing session data failed: %s", e)

    async def _store_or_delete(self) -> None:
        if self._tokens:
            await self._store_token_data()
        else:
            await self._store.delete()


def create_session_manager(
    *,
    open_external: OpenExternal = default_open_external,
    is_remote: Callable[[], bool] = is_remote_host,
    http_client: httpx.AsyncClient | None = None,
    store: CredentialStore | None = None,
) -> SessionManager:
    """
    Default wiring: SQLite credential store, httpx token exchange, and the login flow picked by
    is_remote. A local flow that cannot bind a listener falls back to the URI-callback flow.
    """
    if store is None:
        init_db()
        store = CredentialStore()
    uri_handler = UriEventHandler()
    uri_flow = UriCallbackFlow(uri_handler, open_external=open_external)
    local_flow = LocalServerFlow(open_external=open_external, fallback=uri_flow)
    return SessionManager(
        store=store,
        exchange=TokenExchange(http_client=http_client),
        login_flow=select_login_flow(is_remote, local_flow, uri_flow),
        uri_handler=uri_handler,
    )
