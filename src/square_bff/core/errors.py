"""
Error taxonomy for the OAuth and webhook subsystems.

Every error carries a stable machine-readable ``code`` and the HTTP status the
transport layer answers with. ``detail`` is safe to show to clients; it never
contains tokens, secrets, or stack traces.
"""

from typing import Optional


class SquareBffError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "internal_error"
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_dict(self) -> dict[str, str]:
        """Response body for this error."""
        return {"error": self.code, "detail": self.detail}


class InvalidRequest(SquareBffError):
    code = "invalid_request"
    status_code = 400
    default_detail = "Invalid request"


class MissingParameter(InvalidRequest):
    code = "missing_parameter"
    default_detail = "A required parameter is missing"


class MalformedPayload(InvalidRequest):
    code = "malformed_payload"
    default_detail = "Malformed payload"


class InvalidState(SquareBffError):
    code = "invalid_state"
    status_code = 400
    default_detail = "OAuth state is invalid, expired, or already used"


class PKCEMismatch(SquareBffError):
    code = "pkce_mismatch"
    status_code = 400
    default_detail = "PKCE code verifier does not match"


class ProviderDenied(SquareBffError):
    code = "provider_denied"
    status_code = 403
    default_detail = "Authorization was denied by Square"


class ExchangeFailed(SquareBffError):
    code = "exchange_failed"
    status_code = 502
    default_detail = "Square token exchange failed"


class IdentityFetchFailed(SquareBffError):
    code = "identity_fetch_failed"
    status_code = 502
    default_detail = "Unable to fetch merchant identity from Square"


class PersistenceConflict(SquareBffError):
    code = "persistence_conflict"
    status_code = 409
    default_detail = "Persistence conflict"


class AlreadyExists(PersistenceConflict):
    code = "already_exists"
    default_detail = "Record already exists"


class NotFound(PersistenceConflict):
    code = "not_found"
    status_code = 404
    default_detail = "Record not found"


class StorageError(SquareBffError):
    code = "storage_error"
    status_code = 500
    default_detail = "Storage layer failure"


class SignatureInvalid(SquareBffError):
    code = "signature_invalid"
    status_code = 401
    default_detail = "Invalid webhook signature"


class HandlerFailure(SquareBffError):
    """A webhook handler raised while processing a stored event."""

    code = "handler_failure"
    status_code = 500
    default_detail = "Webhook handler failed"

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        webhook_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> None:
        super().__init__(detail)
        self.webhook_id = webhook_id
        self.event_id = event_id
