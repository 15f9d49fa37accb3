from django.urls import path

from ledger.views import (
    BattleTipView,
    BillCallView,
    CheckCallBalanceView,
    ConvertCurrencyView,
    CreateBattleView,
    CreateCallView,
    CreateLivePartyView,
    EndBattleView,
    EndCallView,
    EndLivePartyView,
    HostRevenueView,
    LivePartyEntryView,
    LivePartyTipView,
    LivePartyViewerFeeView,
    MessageAccessView,
    PaymentWebhookView,
    RetrieveWalletView,
    StartBattleView,
    StartCallView,
    StartLivePartyView,
    SubscribeView,
    TopupView,
    TransactionDetailView,
    TransactionListView,
    UnlockMessageView,
)

urlpatterns = [
    path("wallets/<str:user_id>/", RetrieveWalletView.as_view(), name="wallet-detail"),
    path(
        "wallets/<str:user_id>/transactions/",
        TransactionListView.as_view(),
        name="wallet-transactions",
    ),
    path(
        "wallets/<str:user_id>/transactions/<uuid:id>/",
        TransactionDetailView.as_view(),
        name="transaction-detail",
    ),
    path("wallets/<str:user_id>/convert", ConvertCurrencyView.as_view(), name="wallet-convert"),
    path("hosts/<str:host_id>/revenue", HostRevenueView.as_view(), name="host-revenue"),
    path("calls/", CreateCallView.as_view(), name="call-create"),
    path("calls/check-balance", CheckCallBalanceView.as_view(), name="call-check-balance"),
    path("calls/<int:pk>/start", StartCallView.as_view(), name="call-start"),
    path("calls/<int:pk>/end", EndCallView.as_view(), name="call-end"),
    path("calls/<int:pk>/bill", BillCallView.as_view(), name="call-bill"),
    path("liveparties/", CreateLivePartyView.as_view(), name="liveparty-create"),
    path("liveparties/<int:pk>/start", StartLivePartyView.as_view(), name="liveparty-start"),
    path("liveparties/<int:pk>/entry", LivePartyEntryView.as_view(), name="liveparty-entry"),
    path(
        "liveparties/<int:pk>/viewer-fee",
        LivePartyViewerFeeView.as_view(),
        name="liveparty-viewer-fee",
    ),
    path("liveparties/<int:pk>/tip", LivePartyTipView.as_view(), name="liveparty-tip"),
    path("liveparties/<int:pk>/end", EndLivePartyView.as_view(), name="liveparty-end"),
    path("battles/", CreateBattleView.as_view(), name="battle-create"),
    path("battles/<int:pk>/start", StartBattleView.as_view(), name="battle-start"),
    path("battles/<int:pk>/tip", BattleTipView.as_view(), name="battle-tip"),
    path("battles/<int:pk>/end", EndBattleView.as_view(), name="battle-end"),
    path("payments/topup", TopupView.as_view(), name="payment-topup"),
    path("payments/subscribe", SubscribeView.as_view(), name="payment-subscribe"),
    path("payments/webhook", PaymentWebhookView.as_view(), name="payment-webhook"),
    path("messages/unlock", UnlockMessageView.as_view(), name="message-unlock"),
    path(
        "messages/<str:message_id>/access/<str:user_id>",
        MessageAccessView.as_view(),
        name="message-access",
    ),
]
