from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and an error_code
    drawn from the OAuth2 error vocabulary (RFC 6749 §5.2, RFC 6750 §3.1):
    - invalid_request (400)
    - invalid_client (401)
    - invalid_grant (400)
    - invalid_scope (400)
    - unsupported_grant_type (400)
    - invalid_token (401)
    - access_denied (403)
    - temporarily_unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidRequestError(ServiceError):
    """Request is missing a parameter or is otherwise malformed (400)."""
    status_code = 400
    error_code = "invalid_request"


class InvalidRedirectURIError(InvalidRequestError):
    """redirect_uri is not registered for the client."""
    pass


class PKCERequiredError(InvalidRequestError):
    """Missing code_challenge or a method other than S256."""
    pass


class ScopeNotAllowedError(ServiceError):
    """Requested scope outside the client's allowed scopes (400)."""
    status_code = 400
    error_code = "invalid_scope"


class InvalidClientError(ServiceError):
    """Unknown client or bad client credentials (401)."""
    status_code = 401
    error_code = "invalid_client"


class InvalidGrantError(ServiceError):
    """Code or refresh token is unknown, expired, used, revoked or mismatched (400).

    The caller only ever sees a generic message. ``reason`` carries the
    specific cause for logs and the audit trail.
    """

    status_code = 400
    error_code = "invalid_grant"

    def __init__(self, reason: str, *, detail: Optional[dict] = None) -> None:
        super().__init__("invalid grant", detail=detail)
        self.reason = reason


class BindingViolationError(InvalidGrantError):
    """Refresh token presented from a different device or network."""
    pass


class UnsupportedGrantTypeError(ServiceError):
    """grant_type is not handled by the token endpoint (400)."""
    status_code = 400
    error_code = "unsupported_grant_type"


class InvalidTokenError(ServiceError):
    """Bearer token missing, malformed, expired or revoked (401)."""
    status_code = 401
    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Authenticated principal lacks the required standing (403)."""
    status_code = 403
    error_code = "access_denied"


class TokenRotationError(ServiceError):
    """Rotation could not be committed; the family has been revoked (503)."""
    status_code = 503
    error_code = "temporarily_unavailable"


class PermissionResolutionError(ServiceError):
    """Membership data is in a state that cannot be resolved safely (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "InvalidRequestError",
    "InvalidRedirectURIError",
    "PKCERequiredError",
    "ScopeNotAllowedError",
    "InvalidClientError",
    "InvalidGrantError",
    "BindingViolationError",
    "UnsupportedGrantTypeError",
    "InvalidTokenError",
    "ForbiddenError",
    "TokenRotationError",
    "PermissionResolutionError",
]
