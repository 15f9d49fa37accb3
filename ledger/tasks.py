import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings

from ledger.exceptions import LedgerError
from ledger.models import Call, Transaction
from ledger.services import CallBilling, PaymentReconciler

logger = logging.getLogger(__name__)

PAYMENT_ORDER_MAX_RETRIES = 5
CALL_BILLING_MAX_RETRIES = getattr(settings, "CALL_BILLING_MAX_RETRIES", 3)


@shared_task(bind=True, acks_late=True, max_retries=PAYMENT_ORDER_MAX_RETRIES)
def request_payment_order(self, transaction_id: str):
    """
    Open a processor payment order for a pending real-money transaction.

    Uses acks_late=True so the task won't be acknowledged until it completes;
    a redelivered task is harmless because transactions that already carry
    a payment order are skipped.
    """
    final_attempt = self.request.retries >= self.max_retries
    try:
        tx = PaymentReconciler.request_order(transaction_id, final_attempt=final_attempt)
    except Transaction.DoesNotExist:
        logger.error("Transaction %s not found for payment order.", transaction_id)
        return {"transaction_id": transaction_id, "status": "not_found"}

    if tx.status == Transaction.Status.PENDING and not tx.external_payment_id:
        logger.info(
            "Retrying payment order tx=%s (attempt %d)",
            transaction_id,
            self.request.retries + 1,
        )
        raise self.retry(countdown=2**self.request.retries * 10)

    return {
        "transaction_id": transaction_id,
        "status": tx.status,
        "payment_id": tx.external_payment_id,
    }


@shared_task
def poll_pending_payments():
    """
    Periodic task: ask the processor about pending orders whose webhook has
    not arrived yet and apply whatever it reports.
    """
    pending_txs = Transaction.get_awaiting_confirmation()
    count = pending_txs.count()

    if count == 0:
        return {"polled": 0, "settled": 0}

    logger.info("Polling %d pending payment(s).", count)

    settled = 0
    for tx in pending_txs:
        try:
            if PaymentReconciler.poll(tx).status != Transaction.Status.PENDING:
                settled += 1
        except LedgerError as exc:
            logger.warning("Polling payment for tx=%s failed: %s", tx.id, exc.message)

    return {"polled": count, "settled": settled}


@shared_task
def expire_stale_pending_transactions():
    """
    Periodic task: cancel pending transactions that never obtained a payment
    order within PENDING_TRANSACTION_TTL_MINUTES.
    """
    ttl = timedelta(minutes=getattr(settings, "PENDING_TRANSACTION_TTL_MINUTES", 60))
    stale_txs = Transaction.get_stale_pending(older_than=ttl)
    count = stale_txs.count()

    if count == 0:
        return {"expired": 0}

    logger.info("Found %d stale pending transaction(s).", count)

    expired = 0
    for tx in stale_txs:
        try:
            PaymentReconciler.expire(tx)
            expired += 1
        except LedgerError as exc:
            logger.warning("Could not expire tx=%s: %s", tx.id, exc.message)

    return {"expired": expired}


@shared_task
def retry_unpaid_calls():
    """
    Periodic task: re-bill ended calls left unpaid for lack of funds.

    Calls are retried up to CALL_BILLING_MAX_RETRIES times.
    """
    unpaid_calls = Call.get_retryable_unpaid(max_retries=CALL_BILLING_MAX_RETRIES)
    count = unpaid_calls.count()

    if count == 0:
        return {"retried": 0, "paid": 0}

    logger.info("Found %d unpaid call(s) eligible for retry.", count)

    paid = 0
    for call in unpaid_calls:
        try:
            CallBilling.bill(call.pk)
            paid += 1
        except LedgerError as exc:
            logger.info("Call %s still unpaid: %s", call.pk, exc.message)

    return {"retried": count, "paid": paid}


@shared_task
def collect_clawbacks():
    """
    Periodic task: debit star clawbacks of refunded top-ups once the
    user's balance covers them.
    """
    clawbacks = Transaction.get_uncollected_clawbacks()
    count = clawbacks.count()

    if count == 0:
        return {"pending": 0, "collected": 0}

    logger.info("Found %d uncollected clawback(s).", count)

    collected = 0
    for clawback in clawbacks:
        try:
            if PaymentReconciler.collect_clawback(clawback).status == Transaction.Status.COMPLETED:
                collected += 1
        except LedgerError as exc:
            logger.warning("Could not collect clawback tx=%s: %s", clawback.id, exc.message)

    return {"pending": count, "collected": collected}
