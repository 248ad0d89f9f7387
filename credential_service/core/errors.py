"""Error taxonomy shared by every core component.

Retry policy follows the class, not the call site:

  ValidationError          never retried, returned immediately
  TransientStoreError      retried inside the component that owns the call,
                           converted to IssuanceFailed / VerificationUnavailable /
                           RevocationFailed once the attempts run out
  AuthorizationError       fatal, never retried
  ConsistencyError         never retried; verification reports it as a
                           verdict, not as an exception

A duplicate issuance request is not an error at all: the coordinator
returns the existing result.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from credential_service.services.rate_limiter import RateLimitDecision


class CredentialServiceError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(CredentialServiceError, ValueError):
    """Malformed input: missing fields, non-canonicalizable payload."""


class TransientStoreError(CredentialServiceError):
    """Network failure or timeout talking to a backing store."""

    def __init__(self, store: str, operation: str, message: str = "") -> None:
        self.store = store
        self.operation = operation
        detail = f": {message}" if message else ""
        super().__init__(f"{store}.{operation} unavailable{detail}")


class LedgerRejected(CredentialServiceError):
    """The ledger refused the request outright.  Retrying will not help."""


class IssuanceFailed(CredentialServiceError):
    """Issuance could not complete; any uploaded document has been unpinned."""

    def __init__(self, message: str, credential_id: str | None = None) -> None:
        self.credential_id = credential_id
        super().__init__(message)


class VerificationUnavailable(CredentialServiceError):
    """The index could not be read, so no verdict can be computed."""


class RevocationFailed(CredentialServiceError):
    """The ledger revocation did not go through after all retries."""


class ConsistencyError(CredentialServiceError):
    """Ledger and index disagree about a credential."""


class AuthorizationError(CredentialServiceError):
    """The actor is not allowed to perform this operation."""


class CredentialNotFound(CredentialServiceError, LookupError):
    pass


class CredentialStateError(CredentialServiceError):
    """The requested status transition is not permitted."""


class DuplicateCredentialError(CredentialServiceError):
    """An index uniqueness constraint (id or idempotency key) was violated."""


class RateLimitExceeded(CredentialServiceError):
    def __init__(self, decision: RateLimitDecision) -> None:
        self.decision = decision
        super().__init__("rate limit exceeded")
