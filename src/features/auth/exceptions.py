"""Authentication exceptions."""

from fastapi import HTTPException, status


class AuthenticationException(HTTPException):
    """Base authentication exception."""

    def __init__(self, detail: str = "Authentication failed"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class InvalidCredentialsException(AuthenticationException):
    """Raised when email or password is incorrect.

    Also raised for unknown, inactive and OIDC-only accounts so callers cannot
    tell these cases apart.
    """

    def __init__(self):
        super().__init__(detail="Invalid email or password")


class InvalidTwoFactorCodeException(AuthenticationException):
    """Raised when a submitted TOTP code is wrong, outside the window or replayed."""

    def __init__(self):
        super().__init__(detail="Invalid two-factor authentication code")


class InvalidTokenException(AuthenticationException):
    """Raised when a token is malformed, badly signed, revoked or of the wrong type."""

    def __init__(self, detail: str = "Invalid token"):
        super().__init__(detail=detail)


class TokenExpiredException(InvalidTokenException):
    """Raised when a token has expired."""

    def __init__(self):
        super().__init__(detail="Token has expired")


class InvalidTokenTypeException(InvalidTokenException):
    """Raised when token type is invalid."""

    def __init__(self, expected: str = "access"):
        super().__init__(detail=f"Invalid token type, expected {expected}")


class SessionRevokedException(InvalidTokenException):
    """Raised when a token belongs to a revoked or unknown session."""

    def __init__(self):
        super().__init__(detail="Session has been revoked")


class RefreshTokenReuseException(InvalidTokenException):
    """Raised when a rotated-out refresh token is presented again."""

    def __init__(self):
        super().__init__(detail="Refresh token has already been used")


class InvalidApiTokenException(InvalidTokenException):
    """Raised when an API token is malformed, unknown, expired or its owner is inactive."""

    def __init__(self):
        super().__init__(detail="Invalid API token")


class SessionTokenRequiredException(InvalidTokenException):
    """Raised when an API token is used on an endpoint that manages sessions or credentials."""

    def __init__(self):
        super().__init__(detail="This endpoint requires a session access token")


class TwoFactorSetupException(HTTPException):
    """Raised when a 2FA setup operation is not valid for the account state."""

    def __init__(self, detail: str = "Two-factor setup failed"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class TwoFactorAlreadyEnabledException(TwoFactorSetupException):
    """Raised when enabling 2FA on an account that already has it."""

    def __init__(self):
        super().__init__(detail="Two-factor authentication is already enabled")


class TwoFactorNotInitiatedException(TwoFactorSetupException):
    """Raised when verifying 2FA setup before a secret was generated."""

    def __init__(self):
        super().__init__(detail="Two-factor setup has not been initiated")


class TwoFactorNotEnabledException(TwoFactorSetupException):
    """Raised when disabling 2FA on an account without it."""

    def __init__(self):
        super().__init__(detail="Two-factor authentication is not enabled")


class SessionNotFoundException(HTTPException):
    """Raised when a session does not exist or belongs to another user."""

    def __init__(self):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")


class UserInactiveException(HTTPException):
    """Raised when user account is inactive."""

    def __init__(self):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")


class ApiTokenNotFoundException(HTTPException):
    """Raised when an API token does not exist or belongs to another user."""

    def __init__(self):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail="API token not found")


class ApiTokenExpiryException(HTTPException):
    """Raised when a new API token is given an expiry in the past."""

    def __init__(self):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail="API token expiry must be in the future")
