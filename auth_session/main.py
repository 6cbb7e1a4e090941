"""
Host application for the session manager.
Exposes sessions, login/logout and token resolution over HTTP, and receives URI activations
(GET /did-authenticate) for the URI-callback login flow when served behind a web host.
Port 8000 by default.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from auth_session.config import DEFAULT_SCOPE, HOST, PORT
from auth_session.errors import LoginError, NetworkProblemError, RefreshError
from auth_session.manager import SessionManager, create_session_manager
from auth_session.tokens import normalize_scope

logger = logging.getLogger(__name__)


class LoginRequest(BaseModel):
    scopes: list[str] | None = None


def create_app(manager: SessionManager | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build (unless given) and initialize the manager; dispose it on shutdown."""
        app.state.manager = manager or create_session_manager()
        await app.state.manager.initialize()
        yield
        await app.state.manager.dispose()

    app = FastAPI(title="Auth Session", version="0.1.0", lifespan=lifespan)

    def get_manager(request: Request) -> SessionManager:
        return request.app.state.manager

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "auth_session"}

    @app.get("/sessions")
    async def list_sessions(request: Request):
        sessions = await get_manager(request).get_sessions()
        return [asdict(s) for s in sessions]

    @app.post("/login")
    async def login(request: Request, body: LoginRequest | None = None):
        """Interactive login; scopes are normalized (sorted, de-duplicated) before use."""
        scopes = (body.scopes if body else None) or DEFAULT_SCOPE.split()
        try:
            session = await get_manager(request).login(normalize_scope(scopes))
        except (LoginError, RefreshError) as e:
            logger.info("Login failed: %s", e)
            raise HTTPException(status_code=400, detail={"error": "login_failed", "error_description": str(e)})
        return asdict(session)

    @app.post("/logout/{session_id:path}")
    async def logout(request: Request, session_id: str):
        await get_manager(request).logout(session_id)
        return {"status": "ok"}

    @app.get("/sessions/{session_id:path}/token")
    async def access_token(request: Request, session_id: str):
        try:
            token = await get_manager(request).get_access_token(session_id)
        except NetworkProblemError as e:
            raise HTTPException(status_code=503, detail={"error": "temporarily_unavailable", "error_description": str(e)})
        if token is None:
            raise HTTPException(status_code=404, detail={"error": "not_found", "error_description": "Unknown session"})
        return {"access_token": token}

    @app.get("/did-authenticate", response_class=HTMLResponse)
    async def did_authenticate(request: Request):
        """URI activation from the provider redirect; handed to the URI-callback login flow."""
        handler = get_manager(request).uri_handler
        if handler is None:
            raise HTTPException(status_code=404, detail={"error": "not_found"})
        handler.handle_uri(str(request.url))
        return HTMLResponse(
            """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Signing in</title></head>
<body>
  <h1>Sign-in received</h1>
  <p>You can close this window and return to the application.</p>
</body>
</html>"""
        )

    @app.post("/store-changed")
    async def store_changed(request: Request):
        """Another process changed the credential store; reconcile."""
        await get_manager(request).check_for_updates()
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "auth_session.main:app",
        host=HOST,
        port=PORT,
    )
