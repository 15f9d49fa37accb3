import logging

from rest_framework import status
from rest_framework.response import Response

from ledger.models import MessageAccess
from ledger.serializers import (
    MessageAccessSerializer,
    PaymentWebhookSerializer,
    SubscribeSerializer,
    TopupSerializer,
    TransactionSerializer,
    UnlockMessageSerializer,
)
from ledger.services import PaymentReconciler
from ledger.views.base import BillingAPIView

logger = logging.getLogger(__name__)


class TopupView(BillingAPIView):
    """
    POST /payments/topup — Buy stars with real money.

    Request body: {"user_id": "...", "amount_cents": <int>, "payment_contact_id": <optional>}
    The returned transaction stays pending until the processor confirms it.
    """

    def post(self, request, *args, **kwargs):
        serializer = TopupSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        tx = PaymentReconciler.start_topup(
            data["user_id"],
            data["amount_cents"],
            payment_contact_id=data.get("payment_contact_id"),
            idempotency_key=self.idempotency_key(request),
        )
        return Response(TransactionSerializer(tx).data, status=status.HTTP_201_CREATED)


class SubscribeView(BillingAPIView):
    """POST /payments/subscribe — Start a LIT+ subscription payment."""

    def post(self, request, *args, **kwargs):
        serializer = SubscribeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        tx = PaymentReconciler.start_subscription(
            data["user_id"],
            data["plan"],
            data["amount_cents"],
            payment_contact_id=data.get("payment_contact_id"),
            idempotency_key=self.idempotency_key(request),
        )
        return Response(TransactionSerializer(tx).data, status=status.HTTP_201_CREATED)


class PaymentWebhookView(BillingAPIView):
    """
    POST /payments/webhook — Payment processor delivery.

    Request body: {"delivery_id": "...", "payment_id": "...", "status": "...",
                   "transaction_id": <optional uuid>}
    """

    def post(self, request, *args, **kwargs):
        serializer = PaymentWebhookSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        transaction_id = data.get("transaction_id")
        tx = PaymentReconciler.handle_event(
            delivery_id=data["delivery_id"],
            payment_id=data["payment_id"],
            status=data["status"],
            transaction_id=str(transaction_id) if transaction_id else None,
            payload=request.data,
        )
        return Response(
            {
                "received": True,
                "transaction": TransactionSerializer(tx).data if tx else None,
            },
            status=status.HTTP_200_OK,
        )


class UnlockMessageView(BillingAPIView):
    """
    POST /messages/unlock — Pay for a locked chat message.

    Request body: {"user_id": "...", "chat_id": "...", "message_id": "...",
                   "price": <int>, "currency": <optional, default "USD">,
                   "sender_id": <optional>, "payment_contact_id": <optional>}
    A star price unlocks at once; a USD price unlocks when the processor
    confirms the returned transaction.
    """

    def post(self, request, *args, **kwargs):
        serializer = UnlockMessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        access = PaymentReconciler.start_message_unlock(
            data["user_id"],
            data["chat_id"],
            data["message_id"],
            data["price"],
            currency=data["currency"],
            sender_id=data["sender_id"],
            payment_contact_id=data.get("payment_contact_id"),
        )
        return Response(MessageAccessSerializer(access).data, status=status.HTTP_201_CREATED)


class MessageAccessView(BillingAPIView):
    """GET /messages/<message_id>/access/<user_id> — Whether the user unlocked the message."""

    def get(self, request, message_id, user_id, *args, **kwargs):
        access = MessageAccess.objects.select_related("transaction").get(
            message_id=message_id, user_id=user_id
        )
        return Response(MessageAccessSerializer(access).data, status=status.HTTP_200_OK)
