"""
PKCE (RFC 7636), nonce and state helpers for login initiation.
S256 only. State carries enough context to route the callback back to the attempt that started it.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import quote, unquote, urlencode, urlsplit


def generate_nonce() -> str:
    """One-time value correlating a login attempt with its callback."""
    return secrets.token_urlsafe(16)


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is base64url of 32 random bytes (43 chars).
    """
    code_verifier = urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge_for(code_verifier)


def code_challenge_for(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_authorize_url(
    *,
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
) -> str:
    """Build the provider authorize URL; the account picker is always shown."""
    params = {
        "response_type": "code",
        "response_mode": "query",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "scope": scope,
        "prompt": "select_account",
        "code_challenge_method": "S256",
        "code_challenge": code_challenge,
    }
    return f"{authorize_url}?{urlencode(params)}"


def build_local_state(port: int, nonce: str) -> str:
    """State for the local listener flow: '<port>,<urlencoded nonce>'."""
    return f"{port},{quote(nonce, safe='')}"


def nonce_from_local_state(state: str) -> str | None:
    """Nonce embedded in a local listener state, decoded; None if the state is malformed."""
    _, sep, nonce = state.partition(",")
    if not sep:
        return None
    return unquote(nonce)


def callback_environment(callback_uri: str) -> str:
    """
    Prefix telling the redirect page which host environment to return to.
    Codespaces-style hosts are identified by authority, everything else by URI scheme.
    """
    parts = urlsplit(callback_uri)
    authority = parts.netloc
    if authority.endswith(".workspaces.github.com") or authority.endswith(".github.dev"):
        return f"{authority},"
    return f"{parts.scheme},"


def build_uri_state(callback_uri: str, nonce: str) -> str:
    """State for the URI-callback flow: '<environment>,<port>,<nonce>,<callback query>' (urlencoded parts)."""
    parts = urlsplit(callback_uri)
    port = parts.port or (443 if parts.scheme == "https" else 80)
    return (
        f"{callback_environment(callback_uri)}{port},"
        f"{quote(nonce, safe='')},{quote(parts.query, safe='')}"
    )


def state_candidates(state: str) -> list[str]:
    """
    Raw and percent-decoded forms of a returned state.
    Some web hosts encode the state twice on the way back; both forms are accepted.
    """
    decoded = unquote(state)
    return [state] if decoded == state else [state, decoded]
