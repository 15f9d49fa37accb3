import logging

from django.core.exceptions import ObjectDoesNotExist
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from ledger.exceptions import LedgerError

logger = logging.getLogger(__name__)


class BillingAPIView(APIView):
    """
    APIView that answers ledger and billing failures with JSON bodies.

    - LedgerError -> its own status code and ``as_dict()`` body
    - ValueError -> 400
    - Model.DoesNotExist -> 404
    """

    def handle_exception(self, exc):
        if isinstance(exc, LedgerError):
            logger.info(
                "Billing request refused: path=%s code=%s detail=%s",
                self.request.path,
                exc.code,
                exc.detail,
            )
            return Response(exc.as_dict(), status=exc.status_code)
        if isinstance(exc, ObjectDoesNotExist):
            return Response(
                {"error": f"{self.not_found_label(exc)} not found.", "code": "not_found"},
                status=status.HTTP_404_NOT_FOUND,
            )
        if isinstance(exc, ValueError):
            return Response(
                {"error": str(exc), "code": "invalid_request"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        return super().handle_exception(exc)

    @staticmethod
    def not_found_label(exc):
        # "Call matching query does not exist." -> "Call"
        return str(exc).split(" matching query", 1)[0] or "Resource"

    @staticmethod
    def idempotency_key(request):
        return request.META.get("HTTP_IDEMPOTENCY_KEY")
