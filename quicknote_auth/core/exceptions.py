import logging
from fastapi import HTTPException

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Base class for failures raised by the authentication core."""

    # Message safe to show to the end user
    user_message = "Authentication failed. Please try again."


class EncodingError(AuthError):
    user_message = "Could not generate the QR code."


class IdentityRequiredError(AuthError):
    user_message = "Please sign in with your account first."


class CryptoError(AuthError):
    user_message = "Stored credentials could not be read. Please register again."


class InvalidSecretError(AuthError):
    user_message = "The secret key is not valid. Check it and try again."


class StorageUnavailableError(AuthError):
    user_message = "Authentication is currently unavailable."


class RateLimitedError(AuthError):
    user_message = "Too many attempts. Please wait a few minutes and try again."


class InvalidTransitionError(AuthError):
    user_message = "This step is not available right now."


# Custom HTTPException class to handle secure errors, so we don't expose internal details to the client
class SecureHTTPException(HTTPException):
    def __init__(self, status_code: int, detail: str, internal_detail: str = None):
        super().__init__(status_code=status_code, detail=detail)
        if internal_detail:
            logger.error(f"Internal error: {internal_detail}")


_STATUS_CODES = {
    EncodingError: 500,
    IdentityRequiredError: 401,
    CryptoError: 409,
    InvalidSecretError: 422,
    StorageUnavailableError: 503,
    RateLimitedError: 429,
    InvalidTransitionError: 409,
}


def handle_auth_error(e: AuthError) -> HTTPException:
    status_code = _STATUS_CODES.get(type(e), 400)
    return SecureHTTPException(
        status_code=status_code,
        detail=e.user_message,
        internal_detail=f"{type(e).__name__}: {e}"
    )