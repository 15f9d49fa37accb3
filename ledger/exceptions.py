"""
Business outcomes and failures raised by the ledger and billing services.

Each error carries the HTTP status the API answers with, a stable ``code``
and a detail dict with whatever the caller needs to act on it (amounts,
trial dates, current state).
"""


class LedgerError(Exception):
    status_code = 400
    code = "ledger_error"
    default_message = "Ledger operation failed."

    def __init__(self, message=None, **detail):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def as_dict(self):
        return {"error": self.message, "code": self.code, **self.detail}


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"
    default_message = "Insufficient balance."

    def __init__(self, required, available, currency, message=None):
        super().__init__(
            message or f"Insufficient {str(currency).lower()} balance.",
            required=required,
            available=available,
            currency=str(currency),
        )
        self.required = required
        self.available = available
        self.currency = currency


class AlreadyBilled(LedgerError):
    status_code = 409
    code = "already_billed"
    default_message = "This billing unit has already been charged."


class AlreadyJoined(AlreadyBilled):
    code = "already_joined"
    default_message = "User already joined this live party."


class InvalidStateTransition(LedgerError):
    status_code = 409
    code = "invalid_state_transition"
    default_message = "Transaction is not in a state that allows this change."


class SessionNotActive(LedgerError):
    code = "session_not_active"
    default_message = "Session is not accepting charges."


class UpgradeRequired(LedgerError):
    status_code = 402
    code = "upgrade_required"
    default_message = (
        "Trial period expired. Please upgrade to LIT+ to continue making calls."
    )


class PaymentContactMissing(LedgerError):
    code = "payment_contact_missing"
    default_message = "No payment processor contact on file for this user."


class StorageUnavailable(LedgerError):
    status_code = 503
    code = "storage_unavailable"
    default_message = "Ledger storage is temporarily unavailable. Please retry."


class IdempotencyConflict(LedgerError):
    status_code = 409
    code = "idempotency_conflict"
    default_message = "Idempotency key was already used for a different request."
