"""
Exceptions raised by the session manager, token exchange and login flows.
"""


class AuthSessionError(Exception):
    """Base class for all session manager errors."""


class RefreshError(AuthSessionError):
    """A token request (refresh or code exchange) failed."""


class NetworkFailure(RefreshError):
    """The token endpoint could not be reached. The session is kept and retried."""

    def __init__(self, message: str = "Network failure"):
        super().__init__(message)


class AuthFailure(RefreshError):
    """The token endpoint answered but rejected the grant, or the response was unusable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TokenClaimsError(AuthSessionError):
    def __init__(self, message: str = "Unable to read token claims"):
        super().__init__(message)


class StoredDataError(AuthSessionError):
    """Persisted session record is not a list of well-formed sessions."""


class NetworkProblemError(AuthSessionError):
    def __init__(self, message: str = "Unavailable due to network problems"):
        super().__init__(message)


class LoginError(AuthSessionError):
    """A single login attempt failed; other pending logins are unaffected."""


class StateMismatchError(LoginError):
    def __init__(self, message: str = "State does not match."):
        super().__init__(message)


class MissingVerifierError(LoginError):
    def __init__(self, message: str = "No available code verifier"):
        super().__init__(message)


class LoginTimeoutError(LoginError):
    def __init__(self, message: str = "Login timed out."):
        super().__init__(message)


class ServerStartError(LoginError):
    """The local callback listener could not be started."""


class CallbackError(LoginError):
    """The browser round trip reported an error (provider error, nonce mismatch, missing code)."""
