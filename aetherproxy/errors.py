from __future__ import annotations


class ProxyError(RuntimeError):
    def __init__(self, message: str = "Proxy request failed.") -> None:
        super().__init__(message)
        self.status_code = 500


class ValidationError(ProxyError):
    def __init__(self, message: str = "Invalid request.") -> None:
        super().__init__(message)
        self.status_code = 400


class AuthRequiredError(ProxyError):
    def __init__(self, message: str = "No authorization header and no API key found.") -> None:
        super().__init__(message)
        self.status_code = 401


class UpstreamTransientError(ProxyError):
    """Network failure or availability error from a strategy."""

    def __init__(self, message: str = "All attempts failed. Check quota or API key.") -> None:
        super().__init__(message)
        self.status_code = 503


class UpstreamTerminalError(ProxyError):
    """A non-success upstream response that must reach the caller unchanged."""

    def __init__(
        self,
        status_code: int,
        body: bytes,
        *,
        content_type: str | None = None,
        source: str = "",
    ) -> None:
        super().__init__(f"Upstream {source or 'request'} failed with status {status_code}.")
        self.status_code = status_code
        self.body = body
        self.content_type = content_type or "application/json"
        self.source = source
