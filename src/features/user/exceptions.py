"""User-related exceptions."""

from fastapi import HTTPException, status


class UserException(HTTPException):
    """Base user exception."""

    def __init__(self, detail: str = "User operation failed", status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(status_code=status_code, detail=detail)


class UserAlreadyExists(UserException):
    """Raised when trying to create a user that already exists."""

    def __init__(self, field: str = "user"):
        super().__init__(detail=f"{field.capitalize()} already registered", status_code=status.HTTP_409_CONFLICT)


class EmailAlreadyExists(UserAlreadyExists):
    """Raised when email already exists."""

    def __init__(self):
        super().__init__(field="email")


class IncorrectPassword(UserException):
    """Raised when the current password is incorrect."""

    def __init__(self):
        super().__init__(detail="Current password is incorrect")


class NoLocalPassword(UserException):
    """Raised when an account created through OIDC tries to change a password it does not have."""

    def __init__(self):
        super().__init__(detail="Account has no local password; sign in with your identity provider")


class PasswordReused(UserException):
    """Raised when the new password equals the current one."""

    def __init__(self):
        super().__init__(detail="New password must differ from the current password")
