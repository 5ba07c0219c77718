"""
Credit Ledger Errors

Every failure the ledger can report carries a stable machine-readable code,
the HTTP status the API maps it to, and optional details (current balance,
expiry) so a client can decide whether to prompt for an upgrade or renewal.
"""

from typing import Any, Dict, Optional

from .config import ERROR_MESSAGES


class LedgerError(Exception):
    """Base class for all credit ledger errors."""

    code = "LEDGER_ERROR"
    http_status = 500

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or ERROR_MESSAGES.get(self.code, self.code)
        self.details = {k: v for k, v in details.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "code": self.code,
            "message": self.message,
            **self.details
        }


class Unauthenticated(LedgerError):
    code = "UNAUTHENTICATED"
    http_status = 401


class UnknownAccount(LedgerError):
    code = "UNKNOWN_ACCOUNT"
    http_status = 404


class SubscriptionExpired(LedgerError):
    code = "SUBSCRIPTION_EXPIRED"
    http_status = 403


class InsufficientCredit(LedgerError):
    code = "INSUFFICIENT_CREDIT"
    http_status = 402


class FeatureNotEntitled(LedgerError):
    code = "FEATURE_NOT_ENTITLED"
    http_status = 403


class ModelNotEntitled(LedgerError):
    code = "MODEL_NOT_ENTITLED"
    http_status = 403


class InvalidPlan(LedgerError):
    code = "INVALID_PLAN"
    http_status = 400


class DuplicateEvent(LedgerError):
    """Idempotency short-circuit. Acknowledged as success, never surfaced as a failure."""

    code = "DUPLICATE_EVENT"
    http_status = 200


class CreditSyncFailed(LedgerError):
    """Settlement could not be recorded after the side effect already happened."""

    code = "CREDIT_SYNC_FAILED"
    http_status = 500


class StoreUnavailable(LedgerError):
    """Transient store failure. Retryable; pre-action checks fail closed on it."""

    code = "STORE_UNAVAILABLE"
    http_status = 503


class InvalidSignature(LedgerError):
    code = "INVALID_SIGNATURE"
    http_status = 401


class AdminAuthRequired(LedgerError):
    code = "ADMIN_AUTH_REQUIRED"
    http_status = 401


class AdminNotConfigured(AdminAuthRequired):
    code = "ADMIN_NOT_CONFIGURED"
    http_status = 503


class EntryNotFound(LedgerError):
    code = "ENTRY_NOT_FOUND"
    http_status = 404


class UnsupportedOperation(LedgerError):
    code = "UNSUPPORTED_OPERATION"
    http_status = 400


class InvalidParameters(LedgerError):
    code = "INVALID_PARAMETERS"
    http_status = 400


class TaskNotFound(LedgerError):
    code = "TASK_NOT_FOUND"
    http_status = 404


class PendingOrderNotFound(LedgerError):
    code = "PENDING_ORDER_NOT_FOUND"
    http_status = 404


class ProviderError(LedgerError):
    code = "PROVIDER_ERROR"
    http_status = 502


class CredentialDecodeError(Exception):
    """Raised by identity resolution when a credential cannot be decoded."""
    pass
