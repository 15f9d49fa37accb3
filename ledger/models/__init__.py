from ledger.models.wallet import Currency, Wallet
from ledger.models.transaction import Transaction
from ledger.models.session import (
    Battle,
    Call,
    LiveParty,
    LivePartyViewer,
    SessionStatus,
)
from ledger.models.profile import BillingProfile
from ledger.models.message import MessageAccess
from ledger.models.payment_event import PaymentEvent

__all__ = [
    "Currency",
    "Wallet",
    "Transaction",
    "SessionStatus",
    "Call",
    "LiveParty",
    "LivePartyViewer",
    "Battle",
    "BillingProfile",
    "MessageAccess",
    "PaymentEvent",
]
