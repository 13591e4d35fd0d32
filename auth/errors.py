"""
auth/errors.py -- Error taxonomy for the auth core.

Every failure the core can report is an AuthError subclass carrying a stable
machine-readable code and the HTTP status the handshake endpoint answers with.
The Authorizer maps all of them to 401 regardless of status_code; handshake
handlers use status_code directly.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for auth failures.

    provider is the originating provider name for handshake failures, so the
    caller can tell which login attempt went wrong.
    """

    code = "auth_error"
    status_code = 401

    def __init__(self, message: str = "", provider: str = "", status_code: int | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.provider = provider
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        data = {"code": self.code, "message": self.message}
        if self.provider:
            data["provider"] = self.provider
        return data


class SignatureInvalid(AuthError):
    code = "signature_invalid"


class Malformed(AuthError):
    code = "malformed"
    status_code = 400


class XSRFMismatch(AuthError):
    code = "xsrf_mismatch"
    status_code = 403


class HandshakeTokenRejected(AuthError):
    code = "handshake_token_rejected"


class NoUserInClaim(AuthError):
    code = "no_user_in_claim"


class ValidatorRejected(AuthError):
    code = "validator_rejected"
    status_code = 403


class ProviderNotAllowed(AuthError):
    code = "provider_not_allowed"


class ProviderNotFound(AuthError):
    code = "provider_not_found"
    status_code = 400


class DuplicateProvider(AuthError):
    code = "duplicate_provider"
    status_code = 500


class NonceMismatch(AuthError):
    code = "nonce_mismatch"
    status_code = 403


class ExchangeFailed(AuthError):
    code = "exchange_failed"
    status_code = 502


class RefreshFailed(AuthError):
    code = "refresh_failed"


class CredentialCheckFailed(AuthError):
    code = "credential_check_failed"
    status_code = 403
