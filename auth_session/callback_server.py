"""
Ephemeral local listener for the browser round trip of the local-server login flow.
GET /signin?nonce=... redirects the browser to the provider; the provider redirects back to
GET /callback?code=...&state=...; GET / shows the outcome (?error=... on failure).
Bound to 127.0.0.1 on a free port, served by uvicorn inside the caller's event loop.
"""
import asyncio
import html
import logging
import re
import socket
from urllib.parse import quote

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from auth_session.config import SERVER_START_TIMEOUT_SECONDS
from auth_session.errors import CallbackError, ServerStartError
from auth_session.pkce import nonce_from_local_state, state_candidates

logger = logging.getLogger(__name__)

_HOST_PORT = re.compile(r"^[^:]+:(\d+)$")


def error_location(message: str) -> str:
    return f"/?error={quote(message or 'Unknown error', safe='')}"


def _resolve(fut: asyncio.Future, value) -> None:
    if not fut.done():
        fut.set_result(value)


def _reject(fut: asyncio.Future, exc: BaseException) -> None:
    if not fut.done():
        fut.set_exception(exc)


class CallbackServer:
    """
    One login attempt's listener. Exposes two captures:
    redirect_request resolves with the port the browser used for /signin,
    code_result resolves with the authorization code (or fails with CallbackError).
    Each handler then waits for the flow to say where to send the browser next.
    """

    def __init__(self, nonce: str, *, host: str = "127.0.0.1", start_timeout: float = SERVER_START_TIMEOUT_SECONDS):
        self.nonce = nonce
        self.host = host
        self.start_timeout = start_timeout
        self.port: int | None = None
        loop = asyncio.get_running_loop()
        self.redirect_request: asyncio.Future[int] = loop.create_future()
        self.code_result: asyncio.Future[str] = loop.create_future()
        self._signin_location: asyncio.Future[str] = loop.create_future()
        self._callback_location: asyncio.Future[str] = loop.create_future()
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self.app = self._build_app()

    def _nonce_matches(self, state: str | None) -> bool:
        if not state:
            return False
        return any(nonce_from_local_state(s) == self.nonce for s in state_candidates(state))

    def _build_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.get("/signin")
        async def signin(request: Request, nonce: str = ""):
            if nonce != self.nonce:
                _reject(self.redirect_request, CallbackError("Nonce does not match."))
                return RedirectResponse(error_location("Nonce does not match."), status_code=302)
            match = _HOST_PORT.match(request.headers.get("host", ""))
            _resolve(self.redirect_request, int(match.group(1)) if match else self.port)
            location = await self._signin_location
            return RedirectResponse(location, status_code=302)

        @app.get("/callback")
        async def callback(
            code: str | None = None,
            state: str | None = None,
            error: str | None = None,
            error_description: str | None = None,
        ):
            if error:
                failure = CallbackError(error_description or error)
            elif not self._nonce_matches(state):
                failure = CallbackError("Nonce does not match.")
            elif not code:
                failure = CallbackError("Missing code parameter.")
            else:
                failure = None
            if failure is not None:
                _reject(self.code_result, failure)
                return RedirectResponse(error_location(str(failure)), status_code=302)
            _resolve(self.code_result, code)
            location = await self._callback_location
            return RedirectResponse(location, status_code=302)

        @app.get("/", response_class=HTMLResponse)
        def index(error: str | None = None):
            if error:
                return HTMLResponse(
                    f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Sign-in failed</title></head>
<body>
  <h1>Sign-in failed</h1>
  <p>{html.escape(error)}</p>
  <p>You can close this window and try again.</p>
</body>
</html>""",
                    status_code=400,
                )
            return HTMLResponse(
                """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Signed in</title></head>
<body>
  <h1>You are signed in now</h1>
  <p>You can close this window and return to the application.</p>
</body>
</html>"""
            )

        return app

    async def start(self) -> int:
        """Bind a free port and start serving. Raises ServerStartError if not up within start_timeout."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.host, 0))
        except OSError as e:
            sock.close()
            raise ServerStartError("Error listening to server") from e
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(self.app, log_level="warning", lifespan="off", access_log=False)
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.get_running_loop().create_task(self._server.serve(sockets=[sock]))
        try:
            await asyncio.wait_for(self._wait_started(), self.start_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise ServerStartError("Timeout waiting for port")
        except ServerStartError:
            await self.close()
            raise
        logger.debug("Callback server listening on %s:%s", self.host, self.port)
        return self.port

    async def _wait_started(self) -> None:
        while not self._server.started:
            if self._serve_task.done():
                raise ServerStartError("Closed")
            await asyncio.sleep(0.01)

    def respond_to_signin(self, location: str) -> None:
        """Where /signin sends the browser (the provider authorize URL, or an error page)."""
        _resolve(self._signin_location, location)

    def respond_to_callback(self, location: str) -> None:
        """Where /callback sends the browser once the code exchange has finished."""
        _resolve(self._callback_location, location)

    async def close(self) -> None:
        # Release handlers still waiting on the flow so shutdown can complete
        _resolve(self._signin_location, error_location("Closed"))
        _resolve(self._callback_location, error_location("Closed"))
        for fut in (self.redirect_request, self.code_result):
            if not fut.done():
                fut.cancel()
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await asyncio.gather(self._serve_task, return_exceptions=True)
            self._serve_task = None
        logger.debug("Callback server on port %s closed", self.port)

    async def close_after(self, delay: float) -> None:
        """Keep serving for delay seconds (so the final redirect renders), then close."""
        await asyncio.sleep(delay)
        await self.close()
