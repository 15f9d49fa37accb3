import logging

from rest_framework import status
from rest_framework.generics import CreateAPIView
from rest_framework.response import Response

from ledger.serializers import CallSerializer, CheckBalanceSerializer, EndCallSerializer
from ledger.services import CallBilling
from ledger.views.base import BillingAPIView

logger = logging.getLogger(__name__)


class CreateCallView(CreateAPIView):
    """POST /calls/ — Register a call to be billed."""

    serializer_class = CallSerializer


class CheckCallBalanceView(BillingAPIView):
    """
    POST /calls/check-balance — Can the caller afford a typical call?

    Request body: {"user_id": "...", "rate_per_minute": <optional int>}
    """

    def post(self, request, *args, **kwargs):
        serializer = CheckBalanceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = CallBilling.check_balance(
            serializer.validated_data["user_id"],
            serializer.validated_data.get("rate_per_minute"),
        )
        return Response(result, status=status.HTTP_200_OK)


class StartCallView(BillingAPIView):
    """POST /calls/<id>/start"""

    def post(self, request, pk, *args, **kwargs):
        call = CallBilling.start(pk)
        return Response(CallSerializer(call).data, status=status.HTTP_200_OK)


class EndCallView(BillingAPIView):
    """
    POST /calls/<id>/end — End the call and bill the caller.

    Request body: {"duration": <seconds>}
    """

    def post(self, request, pk, *args, **kwargs):
        serializer = EndCallSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        call = CallBilling.end_and_bill(pk, serializer.validated_data["duration"])
        return Response(CallSerializer(call).data, status=status.HTTP_200_OK)


class BillCallView(BillingAPIView):
    """POST /calls/<id>/bill — Bill an ended call (e.g. after a top-up)."""

    def post(self, request, pk, *args, **kwargs):
        call = CallBilling.bill(pk)
        return Response(CallSerializer(call).data, status=status.HTTP_200_OK)
