import logging

from rest_framework.generics import ListAPIView, RetrieveAPIView

from ledger.models import Transaction
from ledger.serializers import TransactionSerializer
from ledger.services import TransactionLedger

logger = logging.getLogger(__name__)


class TransactionListView(ListAPIView):
    """
    GET /wallets/<user_id>/transactions/ — List a user's transactions, newest first.

    Query params:
        - status: Filter by transaction status (pending, completed, failed, refunded, cancelled)
        - type: Filter by transaction type (call, battle_tip, wallet_topup, ...)
    """

    serializer_class = TransactionSerializer

    def get_queryset(self):
        tx_status = self.request.query_params.get("status")
        tx_type = self.request.query_params.get("type")
        return TransactionLedger.history(
            self.kwargs["user_id"],
            status=tx_status.lower() if tx_status else None,
            transaction_type=tx_type.lower() if tx_type else None,
        )


class TransactionDetailView(RetrieveAPIView):
    """GET /wallets/<user_id>/transactions/<id>/ — Retrieve a single transaction."""

    serializer_class = TransactionSerializer
    lookup_field = "id"

    def get_queryset(self):
        return Transaction.objects.filter(user_id=self.kwargs["user_id"])
