from ledger.serializers.wallet import WalletSerializer
from ledger.serializers.transaction import TransactionSerializer
from ledger.serializers.session import (
    BattleSerializer,
    CallSerializer,
    LivePartySerializer,
    LivePartyViewerSerializer,
)
from ledger.serializers.message import MessageAccessSerializer
from ledger.serializers.billing import (
    CheckBalanceSerializer,
    ConvertSerializer,
    EndCallSerializer,
    HostRevenueSerializer,
    JoinLivePartySerializer,
    PaymentWebhookSerializer,
    SettleBattleSerializer,
    SubscribeSerializer,
    TipSerializer,
    TopupSerializer,
    UnlockMessageSerializer,
    ViewerFeeSerializer,
)

__all__ = [
    "WalletSerializer",
    "TransactionSerializer",
    "CallSerializer",
    "LivePartySerializer",
    "LivePartyViewerSerializer",
    "BattleSerializer",
    "MessageAccessSerializer",
    "CheckBalanceSerializer",
    "EndCallSerializer",
    "JoinLivePartySerializer",
    "ViewerFeeSerializer",
    "TipSerializer",
    "SettleBattleSerializer",
    "TopupSerializer",
    "SubscribeSerializer",
    "PaymentWebhookSerializer",
    "ConvertSerializer",
    "HostRevenueSerializer",
    "UnlockMessageSerializer",
]
