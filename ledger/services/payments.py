import logging

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from ledger.exceptions import AlreadyBilled, InsufficientFunds
from ledger.metadata import Clawback, MessageUnlock, Subscription, WalletTopup, load_metadata
from ledger.models import BillingProfile, Currency, MessageAccess, PaymentEvent, Transaction
from ledger.services.calls import CallBilling
from ledger.services.ledger import TransactionLedger, star_conversion_rate
from ledger.services.liveparties import REVENUE_FIELDS, LivePartyBilling
from ledger.services.settlement import strategy_for
from ledger.signals import announce
from ledger.utils import (
    fetch_payment_status,
    map_payment_status,
    request_payment_order,
    retry_on_storage_error,
)

logger = logging.getLogger(__name__)

Status = Transaction.Status
TransactionType = Transaction.TransactionType


class PaymentReconciler:
    """
    Drives real-money (deferred) transactions against the payment processor.

    Flow:
    1. A reconciler opens a PENDING USD transaction through
       DeferredExternalSettlement, which queues ``request_order``.
    2. ``request_order`` asks the processor for a payment order and stores
       its id and hosted payment URL on the transaction.
    3. The processor reports the outcome (webhook or poll) through
       ``handle_event``, which completes/fails/refunds the transaction and
       applies the follow-ups for its type: call paid/failed, live party
       revenue, star credit for top-ups, LIT+ tier for subscriptions, message
       access for unlocks.
    """

    @staticmethod
    def start_topup(
        user_id: str,
        amount_cents: int,
        payment_contact_id: str = None,
        idempotency_key: str = None,
    ) -> Transaction:
        if amount_cents <= 0:
            raise ValueError("Top-up amount must be positive.")
        PaymentReconciler._remember_contact(user_id, payment_contact_id)
        stars = amount_cents * star_conversion_rate()
        return PaymentReconciler._start(
            user_id,
            TransactionType.WALLET_TOPUP,
            amount_cents,
            WalletTopup(stars=stars),
            f"Wallet top-up: {stars} stars",
            idempotency_key,
        )

    @staticmethod
    def start_subscription(
        user_id: str,
        plan: str,
        amount_cents: int,
        payment_contact_id: str = None,
        idempotency_key: str = None,
    ) -> Transaction:
        if amount_cents <= 0:
            raise ValueError("Subscription amount must be positive.")
        if not plan:
            raise ValueError("Subscription plan is required.")
        PaymentReconciler._remember_contact(user_id, payment_contact_id)
        return PaymentReconciler._start(
            user_id,
            TransactionType.SUBSCRIPTION,
            amount_cents,
            Subscription(plan=plan),
            f"LIT+ subscription: {plan}",
            idempotency_key,
        )

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def start_message_unlock(
        user_id: str,
        chat_id: str,
        message_id: str,
        price: int,
        currency: str = Currency.USD,
        sender_id: str = "",
        payment_contact_id: str = None,
    ) -> MessageAccess:
        """
        Charge ``user_id`` for access to a locked message.

        Star prices are debited at once and unlock the message immediately;
        USD prices open a processor order and unlock on confirmation. While
        a payment is pending the same transaction is returned; after a
        failed payment a new attempt gets a new charge.

        Raises:
            AlreadyBilled: The message is already unlocked for this user.
            InsufficientFunds: A star price exceeds the balance.
        """
        if price <= 0:
            raise ValueError("Unlock price must be positive.")
        if not chat_id or not message_id:
            raise ValueError("chat_id and message_id are required.")
        PaymentReconciler._remember_contact(user_id, payment_contact_id)

        try:
            with transaction.atomic():
                access, _ = MessageAccess.objects.get_or_create(
                    message_id=message_id,
                    user_id=user_id,
                    defaults={
                        "chat_id": chat_id,
                        "sender_id": sender_id,
                        "price": price,
                        "currency": currency,
                    },
                )
        except IntegrityError:
            access = MessageAccess.objects.get(message_id=message_id, user_id=user_id)
        access = MessageAccess.objects.select_for_update().get(pk=access.pk)

        if access.is_unlocked:
            raise AlreadyBilled(
                "Message already unlocked.",
                message_id=message_id,
                transaction_id=str(access.transaction_id),
            )
        if access.transaction is not None and access.transaction.status == Status.PENDING:
            return access

        tx = strategy_for(access.currency).settle(
            user_id,
            TransactionType.MESSAGE_UNLOCK,
            access.price,
            MessageUnlock(chat_id=access.chat_id, message_id=message_id, sender_id=access.sender_id),
            description=f"Unlock message {message_id}",
            idempotency_key=f"message-unlock:{message_id}:{user_id}:{access.payment_attempts}",
        )
        access.transaction = tx
        update_fields = ["transaction", "updated_at"]
        if tx.status == Status.COMPLETED:
            access.unlocked_at = timezone.now()
            update_fields.append("unlocked_at")
        access.save(update_fields=update_fields)

        logger.info(
            "Message unlock started: message=%s user=%s tx=%s status=%s",
            message_id,
            user_id,
            tx.id,
            tx.status,
        )
        if access.is_unlocked:
            announce("message.unlocked", tx, session=access)
        return access

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def _start(user_id, transaction_type, amount, metadata, description, idempotency_key):
        tx = strategy_for(Currency.USD).settle(
            user_id,
            transaction_type,
            amount,
            metadata,
            description=description,
            idempotency_key=idempotency_key,
        )
        logger.info(
            "Payment started: tx=%s user=%s type=%s amount=%d",
            tx.id,
            user_id,
            transaction_type,
            amount,
        )
        return tx

    @staticmethod
    @retry_on_storage_error
    def _remember_contact(user_id, payment_contact_id):
        if not payment_contact_id:
            return
        profile, _ = BillingProfile.objects.get_or_create(user_id=user_id)
        if profile.payment_contact_id != payment_contact_id:
            profile.payment_contact_id = payment_contact_id
            profile.save(update_fields=["payment_contact_id", "updated_at"])

    # ------------------------------------------------------------
    # Processor order
    # ------------------------------------------------------------

    @staticmethod
    @transaction.atomic
    def request_order(transaction_id, final_attempt: bool = True) -> Transaction:
        """
        Ask the processor for a payment order for a PENDING transaction.

        The transaction row is locked for the duration of the call so two
        workers never open two orders for it. Transactions that already
        have an order, or are no longer pending, are returned unchanged.

        If the processor call fails with a retryable error and this is not
        the final attempt, the transaction is left as is for the caller to
        retry. Otherwise the transaction is failed and its session updated.

        Raises:
            Transaction.DoesNotExist: If the transaction doesn't exist.
        """
        tx = Transaction.objects.select_for_update().get(pk=transaction_id)
        if tx.status != Status.PENDING or tx.external_payment_id:
            logger.info(
                "Payment order not needed: tx=%s status=%s payment=%s",
                tx.id,
                tx.status,
                tx.external_payment_id,
            )
            return tx

        profile = BillingProfile.objects.filter(user_id=tx.user_id).first()
        contact_id = profile.payment_contact_id if profile else ""
        if not contact_id:
            return PaymentReconciler._reject(tx, "payment_contact_missing")

        result = request_payment_order(
            contact_id=contact_id,
            amount=tx.amount,
            currency=tx.currency,
            description=tx.description,
            metadata={
                "transaction_id": str(tx.id),
                "transaction_type": tx.transaction_type,
                "user_id": tx.user_id,
            },
        )

        if result["success"]:
            tx.external_payment_id = result["payment_id"]
            tx.payment_url = result["payment_url"]
            tx.save(update_fields=["external_payment_id", "payment_url", "updated_at"])
            logger.info(
                "Payment order attached: tx=%s payment=%s", tx.id, tx.external_payment_id
            )
            return tx

        if result["retryable"] and not final_attempt:
            logger.warning(
                "Payment order failed, will retry: tx=%s response=%s",
                tx.id,
                result["response"],
            )
            return tx

        return PaymentReconciler._reject(
            tx, str(result["response"].get("error") or "payment_order_rejected")
        )

    @staticmethod
    def _reject(tx, reason):
        tx = TransactionLedger.fail(tx.id, reason=reason[:255])
        PaymentReconciler._on_failed(tx)
        logger.warning("Payment order abandoned: tx=%s reason=%s", tx.id, reason)
        return tx

    # ------------------------------------------------------------
    # Processor events
    # ------------------------------------------------------------

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def handle_event(
        delivery_id: str,
        payment_id: str,
        status: str,
        transaction_id: str = None,
        payload: dict = None,
    ):
        """
        Apply one processor delivery to the ledger.

        Deliveries are recorded by ``delivery_id``; a replayed delivery is
        ignored. Events that do not match the transaction's current state
        (e.g. a late "pending" after completion) are recorded but change
        nothing.

        Returns:
            The affected Transaction, or None if the delivery was a replay
            or matched no transaction.
        """
        if not delivery_id or not payment_id:
            raise ValueError("delivery_id and payment_id are required.")

        mapped = map_payment_status(status)
        try:
            with transaction.atomic():
                event = PaymentEvent.objects.create(
                    delivery_id=delivery_id,
                    payment_id=payment_id,
                    status=mapped,
                    payload=payload or {},
                )
        except IntegrityError:
            logger.info("Payment event replayed: delivery=%s payment=%s", delivery_id, payment_id)
            return None

        lookup = {"pk": transaction_id} if transaction_id else {"external_payment_id": payment_id}
        tx = Transaction.objects.select_for_update().filter(**lookup).first()
        if tx is None:
            logger.warning(
                "Payment event for unknown transaction: delivery=%s payment=%s tx=%s",
                delivery_id,
                payment_id,
                transaction_id,
            )
            return None

        event.transaction = tx
        event.save(update_fields=["transaction", "updated_at"])

        if mapped == Status.COMPLETED and tx.status == Status.PENDING:
            tx = TransactionLedger.complete(tx.id, external_payment_id=payment_id)
            PaymentReconciler._on_completed(tx)
        elif mapped == Status.FAILED and tx.status == Status.PENDING:
            tx = TransactionLedger.fail(tx.id, reason=f"processor reported {status}")
            PaymentReconciler._on_failed(tx)
        elif mapped == Status.CANCELLED and tx.status == Status.PENDING:
            tx = TransactionLedger.cancel(tx.id, reason=f"processor reported {status}")
            PaymentReconciler._on_failed(tx)
        elif mapped == Status.REFUNDED and tx.status == Status.COMPLETED:
            PaymentReconciler._on_refunded(tx)
            tx = TransactionLedger.refund(tx.id, reason=f"processor reported {status}")
        else:
            logger.info(
                "Payment event ignored: delivery=%s tx=%s tx_status=%s event_status=%s",
                delivery_id,
                tx.id,
                tx.status,
                mapped,
            )
        return tx

    @staticmethod
    def _on_completed(tx):
        if tx.transaction_type == TransactionType.CALL:
            CallBilling.payment_confirmed(tx)
        elif tx.transaction_type in REVENUE_FIELDS:
            LivePartyBilling.payment_confirmed(tx)
        elif tx.transaction_type == TransactionType.WALLET_TOPUP:
            topup = load_metadata(tx.transaction_type, tx.metadata)
            TransactionLedger.open_and_credit(
                tx.user_id,
                TransactionType.WALLET_TOPUP,
                topup.stars,
                Currency.STARS,
                WalletTopup(stars=topup.stars, payment_transaction_id=str(tx.id)),
                description=f"Wallet top-up: {topup.stars} stars",
                idempotency_key=f"topup:{tx.id}",
            )
        elif tx.transaction_type == TransactionType.SUBSCRIPTION:
            plan = load_metadata(tx.transaction_type, tx.metadata).plan
            BillingProfile.objects.get_or_create(user_id=tx.user_id)
            BillingProfile.objects.filter(user_id=tx.user_id).update(
                **BillingProfile.stamped(
                    tier=BillingProfile.Tier.LITPLUS, subscription_plan=plan
                )
            )
        elif tx.transaction_type == TransactionType.MESSAGE_UNLOCK:
            MessageAccess.objects.filter(transaction=tx, unlocked_at__isnull=True).update(
                **MessageAccess.stamped(unlocked_at=timezone.now())
            )
        logger.info("Payment completed: tx=%s type=%s", tx.id, tx.transaction_type)
        announce("payment.completed", tx)

    @staticmethod
    def _on_failed(tx):
        if tx.transaction_type == TransactionType.CALL:
            CallBilling.payment_failed(tx)
        elif tx.transaction_type in REVENUE_FIELDS:
            LivePartyBilling.payment_failed(tx)
        elif tx.transaction_type == TransactionType.MESSAGE_UNLOCK:
            MessageAccess.objects.filter(transaction=tx).update(
                **MessageAccess.stamped(
                    transaction=None, payment_attempts=F("payment_attempts") + 1
                )
            )
        logger.warning(
            "Payment failed: tx=%s type=%s status=%s reason=%s",
            tx.id,
            tx.transaction_type,
            tx.status,
            tx.failure_reason,
        )
        announce("payment.failed", tx)

    @staticmethod
    def _on_refunded(tx):
        if tx.transaction_type == TransactionType.WALLET_TOPUP:
            credit = Transaction.objects.filter(idempotency_key=f"topup:{tx.id}").first()
            if credit is not None and credit.status == Status.COMPLETED:
                PaymentReconciler._reverse_topup_credit(tx, credit)
        elif tx.transaction_type == TransactionType.SUBSCRIPTION:
            BillingProfile.objects.filter(user_id=tx.user_id).update(
                **BillingProfile.stamped(tier=BillingProfile.Tier.FREE)
            )
        elif tx.transaction_type == TransactionType.MESSAGE_UNLOCK:
            MessageAccess.objects.filter(transaction=tx).update(
                **MessageAccess.stamped(unlocked_at=None)
            )
        announce("payment.refunded", tx)

    @staticmethod
    def _reverse_topup_credit(tx, credit):
        """
        Take back the stars of a refunded top-up.

        Stars already spent cannot be debited; the debt is then recorded as
        a PENDING clawback that ``collect_clawbacks`` captures once the
        balance covers it. The processor refund is applied either way.
        """
        try:
            TransactionLedger.refund(credit.id, reason="top-up refunded")
            return
        except InsufficientFunds as exc:
            shortfall = exc

        clawback = TransactionLedger.open(
            tx.user_id,
            TransactionType.CLAWBACK,
            credit.amount,
            Currency.STARS,
            Clawback(source_transaction_id=str(credit.id), reason="top-up refunded"),
            description=f"Clawback of refunded top-up: {credit.amount} stars",
            idempotency_key=f"clawback:{credit.id}",
        )
        logger.warning(
            "Top-up refunded after stars were spent: tx=%s credit=%s clawback=%s "
            "required=%d available=%d",
            tx.id,
            credit.id,
            clawback.id,
            shortfall.required,
            shortfall.available,
        )
        announce("payment.clawback_queued", clawback, amount=credit.amount)

    @staticmethod
    def collect_clawback(clawback) -> Transaction:
        """Try to debit a pending clawback; it stays PENDING while unaffordable."""
        try:
            return TransactionLedger.capture(clawback.id)
        except InsufficientFunds:
            logger.info(
                "Clawback still uncovered: tx=%s user=%s amount=%d",
                clawback.id,
                clawback.user_id,
                clawback.amount,
            )
            return Transaction.objects.get(pk=clawback.id)

    # ------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------

    @staticmethod
    def poll(tx) -> Transaction:
        """Ask the processor for the status of an order and apply it."""
        result = fetch_payment_status(tx.external_payment_id)
        if not result["success"]:
            return tx
        status = result["status"]
        if status == Status.PENDING:
            return tx
        # One synthetic delivery per observed status keeps polls idempotent.
        return PaymentReconciler.handle_event(
            delivery_id=f"poll:{tx.external_payment_id}:{status}",
            payment_id=tx.external_payment_id,
            status=status,
            transaction_id=str(tx.id),
            payload=result["response"],
        ) or tx

    @staticmethod
    @transaction.atomic
    def expire(tx) -> Transaction:
        """Cancel a PENDING transaction that never got a processor order."""
        tx = TransactionLedger.cancel(tx.id, reason="expired without payment order")
        PaymentReconciler._on_failed(tx)
        logger.info(
            "Stale pending transaction expired: tx=%s age=%s",
            tx.id,
            timezone.now() - tx.created_at,
        )
        return tx
