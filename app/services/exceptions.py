"""Domain error taxonomy.

Every user-visible failure carries a stable ``ReasonCode`` so API clients can
branch on ``code`` instead of matching message text. ``app.errors`` renders
these as ``{code, message, details, request_id}``.
"""

from __future__ import annotations

import enum


class ReasonCode(str, enum.Enum):
    validation_error = "VALIDATION_ERROR"
    not_found = "NOT_FOUND"
    duplicate_name = "DUPLICATE_NAME"
    not_owner = "NOT_OWNER"
    store_unavailable = "STORE_UNAVAILABLE"
    payment_provider_error = "PAYMENT_PROVIDER_ERROR"
    invalid_signature = "INVALID_SIGNATURE"
    concurrency_conflict = "CONCURRENCY_CONFLICT"
    billing_due_unpaid = "BILLING_DUE_UNPAID"
    storage_limit_exceeded = "STORAGE_LIMIT_EXCEEDED"
    no_charge_due = "NO_CHARGE_DUE"
    invalid_token = "INVALID_TOKEN"
    # Reported on successful access checks.
    within_free_tier = "WITHIN_FREE_TIER"
    free_tier_exceeded = "FREE_TIER_EXCEEDED"
    payment_active = "PAYMENT_ACTIVE"


class ServiceError(Exception):
    status_code = 400
    code = ReasonCode.validation_error
    default_message = "Request failed"

    def __init__(self, message: str | None = None, *, code: ReasonCode | None = None, details=None):
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        self.details = details
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"code": self.code.value, "message": self.message, "details": self.details}


class ValidationError(ServiceError):
    status_code = 400
    code = ReasonCode.validation_error
    default_message = "Invalid request"


class NotFoundError(ServiceError):
    status_code = 404
    code = ReasonCode.not_found
    default_message = "Not found"


class ConflictError(ServiceError):
    """Duplicate-name conflict; ``details`` lists the conflicting names."""

    status_code = 409
    code = ReasonCode.duplicate_name
    default_message = "An item with this name already exists"


class OwnershipError(ServiceError):
    status_code = 403
    code = ReasonCode.not_owner
    default_message = "Record does not belong to the caller"


class StoreUnavailableError(ServiceError):
    status_code = 503
    code = ReasonCode.store_unavailable
    default_message = "Content store unavailable"


class PaymentProviderError(ServiceError):
    status_code = 502
    code = ReasonCode.payment_provider_error
    default_message = "Payment provider request failed"


class InvalidSignatureError(PaymentProviderError):
    status_code = 401
    code = ReasonCode.invalid_signature
    default_message = "Invalid webhook signature"


class ConcurrencyConflict(ServiceError):
    status_code = 409
    code = ReasonCode.concurrency_conflict
    default_message = "Resource is busy, retry the operation"


class BillingBlockedError(ServiceError):
    status_code = 402
    code = ReasonCode.billing_due_unpaid
    default_message = "Payment is due for storage above the free tier"


class StorageLimitError(ServiceError):
    status_code = 413
    code = ReasonCode.storage_limit_exceeded
    default_message = "Storage limit exceeded"


class IdentityError(ServiceError):
    status_code = 401
    code = ReasonCode.invalid_token
    default_message = "Invalid token"
