"""OIDC exceptions."""

from fastapi import HTTPException, status

from src.features.auth.exceptions import AuthenticationException


class OidcValidationException(HTTPException):
    """Raised when an OIDC request or callback fails validation.

    Covers state and nonce mismatches, unknown, expired or replayed request
    states, and authorization errors reported by the provider.
    """

    def __init__(self, detail: str = "Invalid OIDC request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class OidcUnavailableException(HTTPException):
    """Raised when OIDC is not configured or the provider cannot be reached."""

    def __init__(self, detail: str = "OIDC authentication is not available"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class OidcAuthenticationException(AuthenticationException):
    """Raised when a provider token fails signature, issuer, audience or expiry checks."""

    def __init__(self, detail: str = "OIDC token validation failed"):
        super().__init__(detail=detail)
