"""
Session manager configuration. Endpoints, client registration and timings.
No secrets in this file; the client is public (PKCE) and tokens live in the credential store.
"""
import os

# Identity provider (issuer); authorize and token endpoints hang off it
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:9000").rstrip("/")
AUTHORIZE_URL = os.environ.get("OAUTH_AUTHORIZE_URL", f"{ISSUER}/authorize")
TOKEN_URL = os.environ.get("OAUTH_TOKEN_URL", f"{ISSUER}/token")

# Public client registered at the provider
CLIENT_ID = os.environ.get("OAUTH_CLIENT_ID", "test-client")

# Tenant used for account ids when the token carries no tid claim
DEFAULT_TENANT = os.environ.get("OAUTH_TENANT", "common")

# Scopes requested when the host does not pass any; offline_access is needed for refresh tokens
DEFAULT_SCOPE = os.environ.get("OAUTH_SCOPE", "openid profile offline_access")

# Host URI scheme; the URI-callback login flow redirects here
URI_SCHEME = os.environ.get("AUTH_SESSION_URI_SCHEME", "authsession")
CALLBACK_URI = os.environ.get("AUTH_SESSION_CALLBACK_URI", f"{URI_SCHEME}://auth-session/did-authenticate")

# When set, the host runs remotely and cannot receive localhost redirects
REMOTE_NAME = os.environ.get("AUTH_SESSION_REMOTE_NAME", "").strip() or None

# Credential store (SQLite by default)
DATABASE_URL = os.environ.get("AUTH_SESSION_DATABASE_URL", "sqlite:///./auth_session.db")
SERVICE_ID = "oauth.login"
LEGACY_SERVICE_ID = f"{URI_SCHEME}-oauth.login"
ACCOUNT_ID = "account"

# Refresh this many seconds before the access token expires
REFRESH_SKEW_SECONDS = 30

# Network failure recovery: retry after 5 * attempt**2 seconds, then poll
REFRESH_MAX_ATTEMPTS = 3
REFRESH_BACKOFF_BASE_SECONDS = 5
RECONNECT_POLL_SECONDS = 30 * 60

# URI-callback login gives up after 5 minutes
LOGIN_TIMEOUT_SECONDS = 5 * 60

# Local callback listener: wait for bind, then keep serving after completion so the browser redirect renders
SERVER_START_TIMEOUT_SECONDS = 5
SERVER_CLOSE_GRACE_SECONDS = 5

# Token endpoint request timeout
HTTP_TIMEOUT_SECONDS = float(os.environ.get("AUTH_SESSION_HTTP_TIMEOUT", "10"))

# Host API (python -m auth_session.main)
HOST = os.environ.get("AUTH_SESSION_HOST", "127.0.0.1")
PORT = int(os.environ.get("AUTH_SESSION_PORT", "8000"))
