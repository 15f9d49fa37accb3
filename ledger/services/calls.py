import logging

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from ledger.exceptions import (
    AlreadyBilled,
    InsufficientFunds,
    SessionNotActive,
    UpgradeRequired,
)
from ledger.metadata import CallCharge
from ledger.models import BillingProfile, Call, SessionStatus, Transaction
from ledger.services.settlement import is_settled_now, strategy_for
from ledger.services.wallet import WalletStore
from ledger.signals import announce
from ledger.utils import retry_on_storage_error

logger = logging.getLogger(__name__)

ESTIMATED_CALL_MINUTES = getattr(settings, "ESTIMATED_CALL_MINUTES", 30)


def calculate_call_cost(duration_seconds: int, rate_per_minute: int) -> int:
    """ceil(minutes * rate), computed in integers."""
    return (duration_seconds * rate_per_minute + 59) // 60


class CallBilling:
    """
    Bills one-to-one calls by the minute once they end.

    A call is billed exactly once: the call row is locked for the whole
    billing step and its payment status is checked under the lock. A
    caller's first short call inside the trial window is free; once the
    window has closed without a subscription, calls are refused with
    UpgradeRequired instead of being charged. Calls that cost nothing are
    closed as no-charge and leave the trial untouched.
    """

    @staticmethod
    def check_balance(user_id: str, rate_per_minute: int = None) -> dict:
        """Can the user afford a call of typical length at this rate?"""
        rate = rate_per_minute or getattr(settings, "DEFAULT_CALL_RATE_PER_MINUTE", 10)
        wallet = WalletStore.get_or_create(user_id)
        estimated_cost = rate * ESTIMATED_CALL_MINUTES
        return {
            "can_afford": wallet.stars >= estimated_cost,
            "balance": wallet.stars,
            "estimated_cost": estimated_cost,
            "rate_per_minute": rate,
        }

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def start(call_id) -> Call:
        updated = Call.objects.filter(pk=call_id, status=SessionStatus.INITIATED).update(
            **Call.stamped(status=SessionStatus.ACTIVE, started_at=timezone.now())
        )
        call = Call.objects.get(pk=call_id)
        if not updated and call.status != SessionStatus.ACTIVE:
            raise SessionNotActive(
                "Call can no longer be started.", call_id=call.pk, status=call.status
            )
        return call

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def end(call_id, duration_seconds: int) -> Call:
        """Move a call to ENDED and record its duration. Ending twice is a no-op."""
        if duration_seconds is None or duration_seconds < 0:
            raise ValueError("Call duration must be a non-negative number of seconds.")

        call = Call.objects.select_for_update().get(pk=call_id)
        if call.has_ended:
            logger.info("Call %s already ended; keeping duration=%s", call.pk, call.duration_seconds)
            return call

        call.status = SessionStatus.ENDED
        call.ended_at = timezone.now()
        call.duration_seconds = duration_seconds
        call.save(update_fields=["status", "ended_at", "duration_seconds", "updated_at"])
        logger.info("Call ended: call=%s duration=%d", call.pk, duration_seconds)
        return call

    @staticmethod
    def end_and_bill(call_id, duration_seconds: int) -> Call:
        CallBilling.end(call_id, duration_seconds)
        return CallBilling.bill(call_id)

    @staticmethod
    def bill(call_id) -> Call:
        """
        Charge the caller for an ended call.

        Returns:
            The updated Call, with payment_status one of free_trial,
            no_charge, paid (stars) or pending (awaiting the processor).

        Raises:
            SessionNotActive: The call has not ended yet.
            AlreadyBilled: The call was already charged or settled.
            UpgradeRequired: The caller's trial is over and they are not
                subscribed. Nothing is written.
            InsufficientFunds: The caller cannot pay. The call is marked
                unpaid so the retry task picks it up later.
        """
        try:
            return CallBilling._bill(call_id)
        except InsufficientFunds as exc:
            CallBilling._mark_unpaid(call_id, exc)
            raise

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def _bill(call_id):
        call = Call.objects.select_for_update().get(pk=call_id)

        if not call.has_ended:
            raise SessionNotActive(
                "Call must end before it is billed.", call_id=call.pk, status=call.status
            )
        if call.is_settled:
            raise AlreadyBilled(
                "Call already billed.",
                call_id=call.pk,
                payment_status=call.payment_status,
                transaction_id=str(call.transaction_id) if call.transaction_id else None,
            )

        duration = call.duration_seconds or 0
        profile, _ = BillingProfile.objects.get_or_create(user_id=call.caller_id)
        now = timezone.now()

        cost = calculate_call_cost(duration, call.rate_per_minute)
        if cost == 0:
            call.payment_status = Call.PaymentStatus.NO_CHARGE
            call.save(update_fields=["payment_status", "updated_at"])
            announce("call.no_charge", None, call)
            return call

        if profile.is_trial_call_eligible(duration, now):
            claimed = BillingProfile.objects.filter(
                pk=profile.pk, trial_call_used_at__isnull=True
            ).update(**BillingProfile.stamped(trial_call_used_at=now))
            if claimed:
                return CallBilling._settle_free_trial(call)

        if profile.trial_expired(now):
            raise UpgradeRequired(
                trial_ends_at=profile.trial_ends_at.isoformat(),
                upgrade_url="/upgrade",
            )

        tx = strategy_for(call.currency).settle(
            call.caller_id,
            Transaction.TransactionType.CALL,
            cost,
            CallCharge(
                call_id=str(call.pk),
                duration_seconds=duration,
                rate_per_minute=call.rate_per_minute,
                receiver_id=call.receiver_id,
            ),
            description=f"Call to {call.receiver_id} - {duration / 60:.1f} minutes",
            idempotency_key=f"call:{call.pk}:{call.billing_attempts}",
        )

        call.transaction = tx
        call.total_cost = cost
        call.payment_status = (
            Call.PaymentStatus.PAID if is_settled_now(tx) else Call.PaymentStatus.PENDING
        )
        call.save(update_fields=["transaction", "total_cost", "payment_status", "updated_at"])

        logger.info(
            "Call billed: call=%s caller=%s cost=%d currency=%s tx=%s payment_status=%s",
            call.pk,
            call.caller_id,
            cost,
            call.currency,
            tx.id,
            call.payment_status,
        )
        announce("call.billed", tx, call, cost=cost)
        return call

    @staticmethod
    def _settle_free_trial(call):
        call.payment_status = Call.PaymentStatus.FREE_TRIAL
        call.is_trial_call = True
        call.total_cost = 0
        call.save(update_fields=["payment_status", "is_trial_call", "total_cost", "updated_at"])
        logger.info("Call billed as free trial: call=%s caller=%s", call.pk, call.caller_id)
        announce("call.free_trial", None, call)
        return call

    @staticmethod
    def _mark_unpaid(call_id, exc):
        Call.objects.filter(
            pk=call_id,
            payment_status__in=[Call.PaymentStatus.UNBILLED, Call.PaymentStatus.UNPAID],
        ).update(
            **Call.stamped(
                payment_status=Call.PaymentStatus.UNPAID,
                billing_attempts=F("billing_attempts") + 1,
            )
        )
        logger.warning(
            "Call left unpaid: call=%s required=%s available=%s",
            call_id,
            exc.required,
            exc.available,
        )
        call = Call.objects.get(pk=call_id)
        announce("call.unpaid", None, call, required=exc.required, available=exc.available)

    @staticmethod
    def payment_confirmed(tx):
        Call.objects.filter(transaction=tx).update(
            **Call.stamped(payment_status=Call.PaymentStatus.PAID)
        )

    @staticmethod
    def payment_failed(tx):
        # A fresh attempt number lets a later re-bill open a new transaction.
        Call.objects.filter(transaction=tx).update(
            **Call.stamped(
                payment_status=Call.PaymentStatus.FAILED,
                transaction=None,
                billing_attempts=F("billing_attempts") + 1,
            )
        )
