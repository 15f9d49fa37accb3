from ledger.services.wallet import WalletStore
from ledger.services.ledger import TransactionLedger
from ledger.services.settlement import (
    DeferredExternalSettlement,
    ImmediateDebitSettlement,
    SettlementStrategy,
    strategy_for,
)
from ledger.services.calls import CallBilling
from ledger.services.liveparties import LivePartyBilling
from ledger.services.battles import BattleBilling
from ledger.services.payments import PaymentReconciler

__all__ = [
    "WalletStore",
    "TransactionLedger",
    "SettlementStrategy",
    "ImmediateDebitSettlement",
    "DeferredExternalSettlement",
    "strategy_for",
    "CallBilling",
    "LivePartyBilling",
    "BattleBilling",
    "PaymentReconciler",
]
