"""
Pytest configuration for auth_session. In-memory SQLite credential store and a fake
identity provider token endpoint served through httpx.MockTransport.
"""
import asyncio
import json
import os
import time
from urllib.parse import parse_qs

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["AUTH_SESSION_DATABASE_URL"] = "sqlite:///:memory:"
os.environ.pop("AUTH_SESSION_REMOTE_NAME", None)

import httpx
import jwt
import pytest

from auth_session.credential_store import CredentialStore
from auth_session.database import SessionLocal, init_db
from auth_session.models import Credential

TOKEN_URL = "https://login.example/common/token"
SIGNING_SECRET = "test-signing-secret-0123456789abcdef"


def make_jwt(**claims) -> str:
    payload = {"tid": "tenant-1", "oid": "user-1", "email": "user@example.com", "exp": int(time.time()) + 3600}
    payload.update(claims)
    return jwt.encode(payload, SIGNING_SECRET, algorithm="HS256")


def stored_blob(*sessions: dict) -> str:
    return json.dumps(list(sessions))


def stored_session(session_id: str, refresh_token: str = "rt-stored", scope: str = "offline_access openid") -> dict:
    return {
        "id": session_id,
        "refreshToken": refresh_token,
        "scope": scope,
        "account": {"id": "tenant-1/user-1", "label": "user@example.com"},
    }


class FakeProvider:
    """
    Token endpoint double. Outcomes are consumed per refresh request:
    "ok" -> 200 with fresh tokens, "network" -> transport error, "reject" -> 400 invalid_grant.
    When the queue is empty, default_outcome is used.
    """

    def __init__(self, expires_in: int | None = 3600, default_outcome: str = "ok"):
        self.expires_in = expires_in
        self.default_outcome = default_outcome
        self.refresh_outcomes: list[str] = []
        self.code_outcomes: list[str] = []
        self.requests: list[dict[str, str]] = []
        self.claims: dict = {}
        # Refresh tokens that always get a 400, regardless of the outcome queue
        self.revoked: set[str] = set()
        # Refresh tokens whose requests always fail in transport
        self.unreachable: set[str] = set()
        self._issued = 0

    def grants(self, grant_type: str) -> list[dict[str, str]]:
        return [r for r in self.requests if r.get("grant_type") == grant_type]

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append(form)
        queue = self.refresh_outcomes if form.get("grant_type") == "refresh_token" else self.code_outcomes
        outcome = queue.pop(0) if queue else self.default_outcome
        if form.get("refresh_token") in self.revoked:
            outcome = "reject"
        elif form.get("refresh_token") in self.unreachable:
            outcome = "network"
        if outcome == "network":
            raise httpx.ConnectError("token endpoint unreachable", request=request)
        if outcome == "reject":
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "Refresh token revoked"},
            )
        self._issued += 1
        body = {
            "access_token": make_jwt(**self.claims),
            "refresh_token": f"rt-{self._issued}",
            "token_type": "Bearer",
        }
        if self.expires_in is not None:
            body["expires_in"] = self.expires_in
        return httpx.Response(200, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def store():
    """Fresh credentials table for each test."""
    init_db()
    db = SessionLocal()
    try:
        db.query(Credential).delete()
        db.commit()
    finally:
        db.close()
    return CredentialStore()


@pytest.fixture
def provider():
    return FakeProvider()
