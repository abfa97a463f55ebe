from __future__ import annotations


class AuthError(Exception):
    """Base class for errors surfaced on the primary authentication path."""

    status_code: int = 400
    public_message: str = "Authentication request failed."

    def __init__(self, message: str | None = None, *, user_id: str | None = None) -> None:
        super().__init__(message or self.public_message)
        # Known account behind the failure, kept for fraud/audit records only.
        self.user_id = user_id


class ValidationError(AuthError):
    status_code = 400
    public_message = "Request is invalid."


class InvalidCredentials(AuthError):
    status_code = 401
    public_message = "Invalid credentials"


class AccountLocked(AuthError):
    status_code = 403
    public_message = "Account is temporarily locked due to multiple failed attempts"


class TokenError(AuthError):
    status_code = 401
    public_message = "Invalid or expired token"


class SecurityMismatch(AuthError):
    status_code = 403
    public_message = "Security verification failed"


class InvalidCode(AuthError):
    status_code = 401
    public_message = "Invalid MFA code"


class InfrastructureError(AuthError):
    status_code = 500
    public_message = "Service temporarily unavailable."


class DatabaseError(InfrastructureError):
    """Raised when a read or write against Supabase fails."""
