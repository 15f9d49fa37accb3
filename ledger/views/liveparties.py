import logging

from rest_framework import status
from rest_framework.generics import CreateAPIView
from rest_framework.response import Response

from ledger.serializers import (
    JoinLivePartySerializer,
    LivePartySerializer,
    LivePartyViewerSerializer,
    TipSerializer,
    TransactionSerializer,
    ViewerFeeSerializer,
)
from ledger.services import LivePartyBilling
from ledger.views.base import BillingAPIView

logger = logging.getLogger(__name__)


class CreateLivePartyView(CreateAPIView):
    """POST /liveparties/ — Register a live party and its fees."""

    serializer_class = LivePartySerializer


class StartLivePartyView(BillingAPIView):
    """POST /liveparties/<id>/start"""

    def post(self, request, pk, *args, **kwargs):
        party = LivePartyBilling.start(pk)
        return Response(LivePartySerializer(party).data, status=status.HTTP_200_OK)


class LivePartyEntryView(BillingAPIView):
    """
    POST /liveparties/<id>/entry — Admit a viewer, charging the entry fee.

    Request body: {"user_id": "...", "currency": <optional "STARS" | "USD">}
    """

    def post(self, request, pk, *args, **kwargs):
        serializer = JoinLivePartySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        viewer = LivePartyBilling.join(
            pk,
            serializer.validated_data["user_id"],
            currency=serializer.validated_data.get("currency"),
        )
        return Response(
            LivePartyViewerSerializer(viewer).data, status=status.HTTP_201_CREATED
        )


class LivePartyViewerFeeView(BillingAPIView):
    """
    POST /liveparties/<id>/viewer-fee — Bill minutes watched since the last report.

    Request body: {"user_id": "...", "minutes_watched": <number>}
    """

    def post(self, request, pk, *args, **kwargs):
        serializer = ViewerFeeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        viewer, tx = LivePartyBilling.bill_viewer_minutes(
            pk,
            serializer.validated_data["user_id"],
            serializer.validated_data["minutes_watched"],
        )
        return Response(
            {
                "viewer": LivePartyViewerSerializer(viewer).data,
                "transaction": TransactionSerializer(tx).data if tx else None,
            },
            status=status.HTTP_200_OK,
        )


class LivePartyTipView(BillingAPIView):
    """
    POST /liveparties/<id>/tip — Tip the host.

    Request body: {"user_id": "...", "host_id": "...", "amount": <int>}
    """

    def post(self, request, pk, *args, **kwargs):
        serializer = TipSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        tx = LivePartyBilling.tip(
            pk,
            host_id=data["host_id"],
            user_id=data["user_id"],
            amount=data["amount"],
            currency=data.get("currency"),
            idempotency_key=self.idempotency_key(request),
        )
        return Response(TransactionSerializer(tx).data, status=status.HTTP_201_CREATED)


class EndLivePartyView(BillingAPIView):
    """POST /liveparties/<id>/end — End the party and return its revenue."""

    def post(self, request, pk, *args, **kwargs):
        return Response(LivePartyBilling.end(pk), status=status.HTTP_200_OK)
