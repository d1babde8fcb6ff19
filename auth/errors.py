"""
auth/errors.py -- Exception taxonomy for the token lifecycle engine.

Every error carries a stable machine-readable ``code`` and a ``message`` that
is safe to return to the caller. Messages never include token values, claim
contents, or signing secrets.

The signer and the stores raise these; SessionAuthority lets them propagate;
the gateway (auth/dependencies.py) and the route layer turn them into
rejection responses. Anything that is not an AuthError (for example a
storage outage surfacing as sqlalchemy.exc.OperationalError) is an internal
error and maps to 500 in api/main.py.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for locally recoverable authentication failures."""

    code: str = "unauthorized"
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidSignatureError(AuthError):
    code = "invalid_signature"
    message = "Token signature is invalid."


class TokenExpiredError(AuthError):
    code = "expired"
    message = "Token has expired."


class WrongKindError(AuthError):
    code = "wrong_kind"
    message = "Token type is not accepted here."


class TokenNotFoundError(AuthError):
    """Unknown or already-revoked token. The two cases are deliberately indistinguishable."""

    code = "not_found"
    message = "Token not found or revoked."


class TokenRevokedError(AuthError):
    code = "revoked"
    message = "Token has been revoked or has expired."


class IpMismatchError(AuthError):
    code = "ip_mismatch"
    message = "Client IP address is not allowed for this token."


class DuplicateTokenError(AuthError):
    code = "duplicate_token"
    message = "Token value already exists."


class CredentialValidationError(AuthError):
    """Malformed registration or login input."""

    code = "validation_error"
    message = "Invalid input."


class DuplicateUserError(CredentialValidationError):
    message = "A user with that username already exists."
