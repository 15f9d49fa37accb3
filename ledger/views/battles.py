import logging

from rest_framework import status
from rest_framework.generics import CreateAPIView
from rest_framework.response import Response

from ledger.serializers import (
    BattleSerializer,
    SettleBattleSerializer,
    TipSerializer,
    TransactionSerializer,
)
from ledger.services import BattleBilling
from ledger.views.base import BillingAPIView

logger = logging.getLogger(__name__)


class CreateBattleView(CreateAPIView):
    """POST /battles/ — Register a battle between two hosts."""

    serializer_class = BattleSerializer


class StartBattleView(BillingAPIView):
    """POST /battles/<id>/start"""

    def post(self, request, pk, *args, **kwargs):
        battle = BattleBilling.start(pk)
        return Response(BattleSerializer(battle).data, status=status.HTTP_200_OK)


class BattleTipView(BillingAPIView):
    """
    POST /battles/<id>/tip — Tip one of the two hosts in stars.

    Request body: {"user_id": "...", "host_id": "...", "amount": <int>}
    """

    def post(self, request, pk, *args, **kwargs):
        serializer = TipSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        tx = BattleBilling.tip(
            pk,
            host_id=data["host_id"],
            user_id=data["user_id"],
            amount=data["amount"],
            idempotency_key=self.idempotency_key(request),
        )
        return Response(TransactionSerializer(tx).data, status=status.HTTP_201_CREATED)


class EndBattleView(BillingAPIView):
    """
    POST /battles/<id>/end — Settle the battle and pay the winner.

    Request body: {"duration_seconds": <optional int>, "peak_viewers": <optional int>}
    """

    def post(self, request, pk, *args, **kwargs):
        serializer = SettleBattleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        battle = BattleBilling.settle(pk, **serializer.validated_data)
        return Response(BattleSerializer(battle).data, status=status.HTTP_200_OK)
