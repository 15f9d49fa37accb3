import logging

from rest_framework import status
from rest_framework.generics import RetrieveAPIView
from rest_framework.response import Response

from ledger.serializers import (
    ConvertSerializer,
    HostRevenueSerializer,
    TransactionSerializer,
    WalletSerializer,
)
from ledger.services import TransactionLedger, WalletStore
from ledger.views.base import BillingAPIView

logger = logging.getLogger(__name__)


class RetrieveWalletView(RetrieveAPIView):
    """GET /wallets/<user_id>/ — Wallet balances, created empty on first access."""

    serializer_class = WalletSerializer

    def get_object(self):
        return WalletStore.get_or_create(self.kwargs["user_id"])


class ConvertCurrencyView(BillingAPIView):
    """
    POST /wallets/<user_id>/convert — Move value between USD and stars.

    Request body: {"direction": "usd_to_stars" | "stars_to_usd", "amount": <int>}
    ``amount`` is in the source currency (cents or stars).
    """

    def post(self, request, user_id, *args, **kwargs):
        serializer = ConvertSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        if data["direction"] == ConvertSerializer.USD_TO_STARS:
            convert = TransactionLedger.convert_usd_to_stars
        else:
            convert = TransactionLedger.convert_stars_to_usd
        debit, credit = convert(
            user_id, data["amount"], idempotency_key=self.idempotency_key(request)
        )
        return Response(
            {
                "debit": TransactionSerializer(debit).data,
                "credit": TransactionSerializer(credit).data,
                "wallet": WalletSerializer(WalletStore.get_or_create(user_id)).data,
            },
            status=status.HTTP_201_CREATED,
        )


class HostRevenueView(BillingAPIView):
    """GET /hosts/<host_id>/revenue — Completed earnings: tips, battle rewards, live parties."""

    def get(self, request, host_id, *args, **kwargs):
        serializer = HostRevenueSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        revenue = TransactionLedger.host_revenue(
            host_id,
            currency=data["currency"],
            since=data.get("since"),
            until=data.get("until"),
        )
        return Response(revenue, status=status.HTTP_200_OK)
