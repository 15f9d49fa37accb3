from ledger.views.wallet import ConvertCurrencyView, HostRevenueView, RetrieveWalletView
from ledger.views.transaction import TransactionListView, TransactionDetailView
from ledger.views.calls import (
    BillCallView,
    CheckCallBalanceView,
    CreateCallView,
    EndCallView,
    StartCallView,
)
from ledger.views.liveparties import (
    CreateLivePartyView,
    EndLivePartyView,
    LivePartyEntryView,
    LivePartyTipView,
    LivePartyViewerFeeView,
    StartLivePartyView,
)
from ledger.views.battles import (
    BattleTipView,
    CreateBattleView,
    EndBattleView,
    StartBattleView,
)
from ledger.views.payments import (
    MessageAccessView,
    PaymentWebhookView,
    SubscribeView,
    TopupView,
    UnlockMessageView,
)

__all__ = [
    "RetrieveWalletView",
    "ConvertCurrencyView",
    "HostRevenueView",
    "TransactionListView",
    "TransactionDetailView",
    "CreateCallView",
    "CheckCallBalanceView",
    "StartCallView",
    "EndCallView",
    "BillCallView",
    "CreateLivePartyView",
    "StartLivePartyView",
    "LivePartyEntryView",
    "LivePartyViewerFeeView",
    "LivePartyTipView",
    "EndLivePartyView",
    "CreateBattleView",
    "StartBattleView",
    "BattleTipView",
    "EndBattleView",
    "TopupView",
    "SubscribeView",
    "PaymentWebhookView",
    "UnlockMessageView",
    "MessageAccessView",
]
