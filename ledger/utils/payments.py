import logging

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

# Configurable via Django settings with sensible defaults
PAYMENT_PROCESSOR_BASE_URL = getattr(
    settings, "PAYMENT_PROCESSOR_BASE_URL", "http://localhost:8010"
)
PAYMENT_PROCESSOR_API_KEY = getattr(settings, "PAYMENT_PROCESSOR_API_KEY", "")
PAYMENT_PROCESSOR_TIMEOUT = getattr(settings, "PAYMENT_PROCESSOR_TIMEOUT", 10)

# Processor status vocabulary -> transaction status.
STATUS_MAP = {
    "pending": "pending",
    "processing": "pending",
    "completed": "completed",
    "success": "completed",
    "paid": "completed",
    "failed": "failed",
    "error": "failed",
    "refunded": "refunded",
    "cancelled": "cancelled",
    "canceled": "cancelled",
}


def map_payment_status(status):
    return STATUS_MAP.get((status or "").lower(), "pending")


def _headers():
    headers = {"Accept": "application/json"}
    if PAYMENT_PROCESSOR_API_KEY:
        headers["Authorization"] = f"Bearer {PAYMENT_PROCESSOR_API_KEY}"
    return headers


def _failure(kind, exc, **context):
    logger.error(
        "Payment processor %s: context=%s error=%s", kind, context, str(exc)
    )
    return {
        "success": False,
        "retryable": True,
        "response": {"error": kind, "detail": str(exc)},
    }


def request_payment_order(
    contact_id: str, amount: int, currency: str, description: str, metadata: dict
) -> dict:
    """
    Open a payment order at the external payment processor.

    Handles both rejections (non-2xx responses) and network failures
    (connection errors, timeouts). Returns a structured result dict for
    consistent downstream handling.

    Args:
        contact_id: Processor-side contact of the paying user.
        amount: Amount in minor units (cents).
        currency: ISO currency code.
        description: Human readable line shown to the payer.
        metadata: Correlation data echoed back on webhooks; must carry the
            ledger ``transaction_id``.

    Returns:
        dict with keys:
            - success (bool): Whether the processor accepted the order.
            - retryable (bool): Whether a later attempt may succeed.
            - payment_id (str): Processor payment identifier, when accepted.
            - payment_url (str): Hosted payment page, when provided.
            - response (dict): The raw response data or error details.
    """
    try:
        response = requests.post(
            f"{PAYMENT_PROCESSOR_BASE_URL}/payments/orders",
            json={
                "contactId": contact_id,
                "amount": amount,
                "currency": currency,
                "description": description,
                "metadata": metadata,
            },
            headers=_headers(),
            timeout=PAYMENT_PROCESSOR_TIMEOUT,
        )
        response_data = response.json()
    except requests.exceptions.ConnectionError as exc:
        return _failure("connection_error", exc, contact=contact_id, amount=amount)
    except requests.exceptions.Timeout as exc:
        return _failure("timeout", exc, contact=contact_id, amount=amount)
    except requests.exceptions.RequestException as exc:
        return _failure("request_error", exc, contact=contact_id, amount=amount)
    except ValueError as exc:
        return _failure("invalid_response", exc, contact=contact_id, amount=amount)

    payment = response_data.get("payment") or {}
    if response.ok and payment.get("id"):
        logger.info(
            "Payment order created: contact=%s amount=%d currency=%s payment=%s",
            contact_id,
            amount,
            currency,
            payment["id"],
        )
        return {
            "success": True,
            "retryable": False,
            "payment_id": payment["id"],
            "payment_url": payment.get("paymentUrl", ""),
            "response": response_data,
        }

    logger.warning(
        "Payment order rejected: contact=%s amount=%d status=%d response=%s",
        contact_id,
        amount,
        response.status_code,
        response_data,
    )
    return {
        "success": False,
        "retryable": response.status_code >= 500,
        "response": response_data,
    }


def fetch_payment_status(payment_id: str) -> dict:
    """
    Look up a payment at the processor.

    Returns a dict with ``success`` and, when the lookup worked, the mapped
    ledger ``status`` alongside the raw processor ``response``.
    """
    try:
        response = requests.get(
            f"{PAYMENT_PROCESSOR_BASE_URL}/payments/{payment_id}",
            headers=_headers(),
            timeout=PAYMENT_PROCESSOR_TIMEOUT,
        )
        response.raise_for_status()
        response_data = response.json()
    except requests.exceptions.RequestException as exc:
        return _failure("lookup_error", exc, payment=payment_id)
    except ValueError as exc:
        return _failure("invalid_response", exc, payment=payment_id)

    payment = response_data.get("payment") or response_data
    return {
        "success": True,
        "status": map_payment_status(payment.get("status")),
        "response": response_data,
    }
