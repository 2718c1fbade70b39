"""
Application error taxonomy.

Every error carries the HTTP status it is rendered with; main.py turns them into
``{"detail": message}`` responses, the same shape HTTPException produces.
"""

from typing import Optional


class AppError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = 400

    @classmethod
    def from_schema(cls, exc) -> "ValidationError":
        """Build from a pydantic ValidationError, keeping only the first problem."""
        err = exc.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "Invalid value").replace("Value error, ", "")
        return cls(f"{field}: {msg}" if field else msg)


class InvalidAssignee(ValidationError):
    def __init__(self, message: str = "Can only assign to admin users"):
        super().__init__(message)


class NotFound(AppError):
    status_code = 404


class Unauthorized(AppError):
    status_code = 401


class InvalidCredentials(Unauthorized):
    # Same message for unknown email and wrong password
    def __init__(self):
        super().__init__("Invalid email or password")


class Forbidden(AppError):
    status_code = 403


class AccountDeactivated(Forbidden):
    def __init__(self):
        super().__init__("Account has been deactivated")


class Conflict(AppError):
    status_code = 409


class AlreadyRegistered(Conflict):
    def __init__(self):
        super().__init__("User already exists with this email")


class RateLimited(AppError):
    status_code = 429

    def __init__(self, message: str = "Too many requests, please try again later.", retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class CredentialError(AppError):
    """One-time code, session or reset token could not be accepted."""
    status_code = 400


class OtpNotFound(CredentialError):
    def __init__(self):
        super().__init__("Invalid or expired OTP")


class OtpAlreadyUsed(CredentialError):
    def __init__(self):
        super().__init__("OTP has already been used")


class OtpExpired(CredentialError):
    def __init__(self):
        super().__init__("OTP has expired")


class TooManyAttempts(CredentialError):
    def __init__(self):
        super().__init__("Too many failed attempts")


class InvalidCode(CredentialError):
    def __init__(self):
        super().__init__("Invalid OTP")


class InvalidResetToken(CredentialError):
    def __init__(self, message: str = "Invalid or expired password reset token"):
        super().__init__(message)


class DependencyFailure(AppError):
    status_code = 503


class DispatchFailure(DependencyFailure):
    def __init__(self, message: str = "Failed to send email, please try again"):
        super().__init__(message)
