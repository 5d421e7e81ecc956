from __future__ import annotations


class AuthorizationError(RuntimeError):
    def __init__(self, message: str = "Authorization failed.") -> None:
        super().__init__(message)
        self.status_code = 500


class ExchangeError(AuthorizationError):
    """Token endpoint rejected the grant or returned an incomplete token set."""

    def __init__(self, message: str, *, body: str = "", status: int | None = None) -> None:
        super().__init__(message)
        self.status_code = 502
        self.body = body
        self.upstream_status = status


class AuthorizationTimeoutError(AuthorizationError):
    def __init__(self, message: str = "Authorization timed out.") -> None:
        super().__init__(message)
        self.status_code = 504


class RegistryFullError(AuthorizationError):
    def __init__(self, message: str = "Too many pending authorizations.") -> None:
        super().__init__(message)
        self.status_code = 503


class SessionStoreError(RuntimeError):
    """The saved session file cannot be read back into a token set."""

    def __init__(self, message: str, *, path: str = "") -> None:
        super().__init__(message)
        self.path = path
