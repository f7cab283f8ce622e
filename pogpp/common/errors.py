"""Typed outcomes for visit admission, verification, and badge claims.

Every failure the engine can report has its own class so the HTTP layer can
map it to a response without string matching. `code` is stable and is what
clients see; `status_code` is the suggested HTTP status.
"""

from typing import Any


class PogppError(Exception):
    """Base class for all engine outcomes other than success."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# Input errors: client-caused, never retried.


class InputError(PogppError):
    code = "invalid_input"
    status_code = 400


class InvalidLocation(InputError):
    code = "invalid_location"


class InsufficientAccuracy(InputError):
    code = "insufficient_accuracy"


class InvalidTimestamp(InputError):
    code = "invalid_timestamp"


class InvalidWalletAddress(InputError):
    code = "invalid_wallet_address"


class InvalidSignature(InputError):
    code = "invalid_signature"
    status_code = 401


class ChallengeExpired(InputError):
    code = "challenge_expired"
    status_code = 401


# Not found.


class NotFoundError(PogppError):
    code = "not_found"
    status_code = 404


class VisitNotFound(NotFoundError):
    code = "visit_not_found"


class ClaimNotFound(NotFoundError):
    code = "claim_not_found"


class UserNotFound(NotFoundError):
    code = "user_not_found"


# Conflicts: expected, the caller has to change intent.


class ConflictError(PogppError):
    code = "conflict"
    status_code = 409


class DuplicateVisit(ConflictError):
    code = "duplicate_visit"


class DuplicateFingerprint(ConflictError):
    code = "duplicate_fingerprint"


class VisitNotPending(ConflictError):
    code = "visit_not_pending"


class VisitNotVerified(ConflictError):
    code = "visit_not_verified"


class ClaimInProgress(ConflictError):
    code = "claim_in_progress"


class AlreadyClaimedLocally(ConflictError):
    code = "already_claimed_locally"

    def __init__(self, message: str = "", claim=None, **details: Any) -> None:
        super().__init__(message, **details)
        self.claim = claim


class AlreadyClaimedOnChain(ConflictError):
    code = "already_claimed_on_chain"

    def __init__(self, message: str = "", claim=None, **details: Any) -> None:
        super().__init__(message, **details)
        self.claim = claim


# Integrity: potentially adversarial, needs out-of-band review.


class IntegrityMismatch(PogppError):
    code = "integrity_mismatch"
    status_code = 422


# Infrastructure.


class InfrastructureError(PogppError):
    code = "infrastructure_error"
    status_code = 503


class ContentStoreUnavailable(InfrastructureError):
    code = "content_store_unavailable"


class LedgerUnavailable(InfrastructureError):
    code = "ledger_unavailable"


class MintFailed(InfrastructureError):
    code = "mint_failed"
    status_code = 502


class MintIndeterminate(InfrastructureError):
    code = "mint_indeterminate"
    status_code = 202


class RateLimitExceeded(PogppError):
    code = "rate_limit_exceeded"
    status_code = 429
