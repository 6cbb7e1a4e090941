"""
Token and session data model.
Tokens are private to the manager; Sessions are what consumers see. Only
{id, refreshToken, scope, account} is ever persisted; access tokens and claims stay in memory.
"""
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

import jwt

from auth_session.errors import StoredDataError, TokenClaimsError

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_LABEL = "user@example.com"


@dataclass
class Account:
    id: str
    label: str


@dataclass
class Token:
    session_id: str
    refresh_token: str
    scope: str
    account: Account
    access_token: str | None = None
    expires_in: int | None = None
    expires_at: float | None = None

    def access_token_valid(self) -> bool:
        """True if an access token is cached and not past its expiry (no expiry means valid)."""
        if not self.access_token:
            return False
        return self.expires_at is None or self.expires_at > time.time()

    @property
    def scopes(self) -> list[str]:
        return self.scope.split(" ")


@dataclass
class Session:
    id: str
    access_token: str | None
    account: Account
    scopes: list[str] = field(default_factory=list)


def normalize_scope(scopes: Iterable[str]) -> str:
    """Sorted, de-duplicated, space-joined scope string; the key used for login de-duplication."""
    return " ".join(sorted({s for s in scopes if s}))


def get_token_claims(token: str) -> dict[str, Any]:
    """Decode the JWT payload without verifying it. Raises TokenClaimsError if unreadable."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.debug("Token claims decode failed: %s", e)
        raise TokenClaimsError() from e
    if not isinstance(claims, dict):
        raise TokenClaimsError()
    return claims


def _subject(claims: dict[str, Any]) -> str:
    for key in ("oid", "altsecid", "ipd", "sub"):
        if claims.get(key):
            return str(claims[key])
    return ""


def token_from_response(
    data: dict[str, Any],
    scope: str,
    *,
    existing_id: str | None = None,
    default_tenant: str = "common",
) -> Token:
    """
    Build a Token from a token endpoint response.
    Identity comes from the access token claims, or the id_token when the access token is opaque.
    A refresh keeps the existing session id; a new login gets '<tenant>/<subject>/<uuid4>'.
    """
    access_token = data.get("access_token")
    try:
        if not access_token:
            raise TokenClaimsError()
        claims = get_token_claims(access_token)
    except TokenClaimsError:
        id_token = data.get("id_token")
        if not id_token:
            raise
        logger.info("Failed to read claims from access_token. Attempting to parse id_token instead")
        claims = get_token_claims(id_token)

    tenant = str(claims.get("tid") or default_tenant)
    account_id = f"{tenant}/{_subject(claims)}"
    label = (
        claims.get("email")
        or claims.get("unique_name")
        or claims.get("preferred_username")
        or DEFAULT_ACCOUNT_LABEL
    )
    expires_in = data.get("expires_in")
    if expires_in is not None:
        expires_in = int(expires_in)
    return Token(
        session_id=existing_id or f"{account_id}/{uuid.uuid4()}",
        access_token=access_token,
        refresh_token=data.get("refresh_token", ""),
        scope=scope,
        account=Account(id=account_id, label=str(label)),
        expires_in=expires_in,
        expires_at=time.time() + expires_in if expires_in else None,
    )


@dataclass
class StoredSession:
    id: str
    refresh_token: str
    scope: str
    account: Account


def serialize_tokens(tokens: Iterable[Token]) -> str:
    """JSON blob for the credential store. Access tokens are never included."""
    return json.dumps(
        [
            {
                "id": t.session_id,
                "refreshToken": t.refresh_token,
                "scope": t.scope,
                "account": {"id": t.account.id, "label": t.account.label},
            }
            for t in tokens
        ]
    )


def parse_stored_data(data: str) -> list[StoredSession]:
    """Parse the credential store blob. Raises StoredDataError on anything malformed."""
    try:
        raw = json.loads(data)
    except (TypeError, ValueError) as e:
        raise StoredDataError(f"Stored session data is not JSON: {e}") from e
    if not isinstance(raw, list):
        raise StoredDataError("Stored session data is not a list")

    sessions = []
    for item in raw:
        try:
            account = item["account"]
            sessions.append(
                StoredSession(
                    id=str(item["id"]),
                    refresh_token=item.get("refreshToken") or "",
                    scope=str(item["scope"]),
                    # Older records carried displayName instead of label
                    account=Account(
                        id=str(account["id"]),
                        label=str(account.get("label") or account.get("displayName") or DEFAULT_ACCOUNT_LABEL),
                    ),
                )
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise StoredDataError(f"Malformed stored session: {e}") from e
    return sessions
