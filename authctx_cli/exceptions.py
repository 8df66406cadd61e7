"""Exception types shared by the connector, snapshot loader and CLI."""


class AuthContextError(Exception):
    """Base class for all authctx errors."""


class NotAuthenticatedError(AuthContextError):
    """Raised when a connector is used before sign-in."""


class SnapshotError(AuthContextError):
    """Raised when a tenant snapshot file cannot be read or written."""


class APIError(AuthContextError):
    """Raised when a Graph/ARM API call returns a non-2xx status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}: {body[:200]}")

    def is_auth_error(self) -> bool:
        if self.status_code in (401, 403):
            return True
        return ("InvalidAuthenticationToken" in self.body
                or "Authorization_RequestDenied" in self.body)

    def is_not_found(self) -> bool:
        return self.status_code == 404
