import logging

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, Sum
from django.utils import timezone

from ledger.exceptions import IdempotencyConflict, InvalidStateTransition
from ledger.metadata import ChargeMetadata, CurrencyConversion
from ledger.models import Currency, LiveParty, Transaction
from ledger.services.wallet import WalletStore
from ledger.utils import storage_guard

logger = logging.getLogger(__name__)

Status = Transaction.Status
Direction = Transaction.Direction


def star_conversion_rate():
    """Stars per USD cent."""
    return getattr(settings, "STAR_CONVERSION_RATE", 1)


class TransactionLedger:
    """
    Durable record of intent and outcome for every balance-affecting event.

    Two shapes of charge exist:

    - pay now: ``open_and_debit`` / ``open_and_credit`` apply the wallet
      effect and write a COMPLETED transaction in one atomic unit. If the
      wallet refuses (insufficient funds) nothing is written.
    - pay later: ``open`` writes a PENDING transaction with no wallet effect;
      the payment processor later drives it to ``complete`` or ``fail``.

    Every operation accepting an ``idempotency_key`` returns the original
    transaction when the key was already used for the same user, amount
    and type, without a second wallet effect; any other reuse of the key
    raises IdempotencyConflict. The unique constraint on the key settles races between
    concurrent requests: the loser's savepoint (including its wallet
    mutation) is rolled back and the winner's transaction is returned.
    Returned transactions carry a ``replayed`` flag so callers can skip
    their own side effects on a replay.
    """

    # ------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------

    @staticmethod
    @storage_guard
    @transaction.atomic
    def open(
        user_id: str,
        transaction_type: str,
        amount: int,
        currency: str,
        metadata: ChargeMetadata,
        description: str = "",
        idempotency_key: str = None,
    ) -> Transaction:
        """Create a PENDING transaction. The wallet is not touched."""
        return TransactionLedger._record(
            user_id,
            transaction_type,
            amount,
            currency,
            metadata,
            description,
            idempotency_key,
            direction=Direction.DEBIT,
            wallet_effect=None,
        )

    @staticmethod
    @storage_guard
    @transaction.atomic
    def open_and_debit(
        user_id: str,
        transaction_type: str,
        amount: int,
        currency: str,
        metadata: ChargeMetadata,
        description: str = "",
        idempotency_key: str = None,
    ) -> Transaction:
        """
        Debit the wallet and record a COMPLETED transaction.

        Raises:
            InsufficientFunds: The balance does not cover amount; no
                transaction is created.
        """
        return TransactionLedger._record(
            user_id,
            transaction_type,
            amount,
            currency,
            metadata,
            description,
            idempotency_key,
            direction=Direction.DEBIT,
            wallet_effect=WalletStore.debit,
        )

    @staticmethod
    @storage_guard
    @transaction.atomic
    def open_and_credit(
        user_id: str,
        transaction_type: str,
        amount: int,
        currency: str,
        metadata: ChargeMetadata,
        description: str = "",
        idempotency_key: str = None,
    ) -> Transaction:
        """Credit the wallet and record a COMPLETED credit transaction."""
        return TransactionLedger._record(
            user_id,
            transaction_type,
            amount,
            currency,
            metadata,
            description,
            idempotency_key,
            direction=Direction.CREDIT,
            wallet_effect=WalletStore.credit,
        )

    @staticmethod
    def _record(
        user_id,
        transaction_type,
        amount,
        currency,
        metadata,
        description,
        idempotency_key,
        direction,
        wallet_effect,
    ):
        if amount <= 0:
            raise ValueError("Transaction amount must be positive.")
        if metadata.transaction_type != transaction_type:
            raise ValueError(
                f"{type(metadata).__name__} metadata cannot describe a "
                f"{transaction_type} transaction."
            )

        existing = TransactionLedger._replayed(
            idempotency_key, user_id, amount, transaction_type
        )
        if existing:
            return existing

        wallet = WalletStore.get_or_create(user_id)
        tx = Transaction(
            wallet=wallet,
            user_id=user_id,
            transaction_type=transaction_type,
            direction=direction,
            amount=amount,
            currency=currency,
            description=description[:255],
            metadata=metadata.to_dict(),
            session_id=str(metadata.session_id),
            beneficiary_id=str(metadata.beneficiary_id),
            idempotency_key=idempotency_key,
        )
        tx.replayed = False
        if wallet_effect is not None:
            tx.status = Status.COMPLETED
            tx.completed_at = timezone.now()
            tx.wallet_applied = True

        try:
            with transaction.atomic():
                if wallet_effect is not None:
                    wallet_effect(user_id, amount, currency)
                tx.save(force_insert=True)
        except IntegrityError:
            # Lost a race on the idempotency key; our wallet effect was
            # rolled back with the savepoint.
            existing = TransactionLedger._replayed(
                idempotency_key, user_id, amount, transaction_type
            )
            if existing is None:
                raise
            return existing

        logger.info(
            "Transaction recorded: tx=%s user=%s type=%s direction=%s amount=%d "
            "currency=%s status=%s idempotency_key=%s",
            tx.id,
            user_id,
            transaction_type,
            direction,
            amount,
            currency,
            tx.status,
            idempotency_key,
        )
        return tx

    @staticmethod
    def _replayed(idempotency_key, user_id, amount, transaction_type):
        if not idempotency_key:
            return None

        existing = Transaction.objects.filter(idempotency_key=idempotency_key).first()
        if existing is None:
            return None

        if (
            existing.user_id != user_id
            or existing.amount != amount
            or existing.transaction_type != transaction_type
        ):
            logger.warning(
                "Idempotency conflict: key=%s existing_tx=%s existing_amount=%d "
                "new_amount=%d existing_user=%s new_user=%s",
                idempotency_key,
                existing.id,
                existing.amount,
                amount,
                existing.user_id,
                user_id,
            )
            raise IdempotencyConflict(idempotency_key=idempotency_key)

        logger.info(
            "Idempotent replay: key=%s tx=%s status=%s",
            idempotency_key,
            existing.id,
            existing.status,
        )
        existing.replayed = True
        return existing

    # ------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------

    @staticmethod
    def convert_usd_to_stars(user_id: str, usd_cents: int, idempotency_key: str = None):
        """Move ``usd_cents`` of the secondary balance into stars."""
        stars = usd_cents * star_conversion_rate()
        return TransactionLedger._convert(
            user_id, Currency.USD, usd_cents, Currency.STARS, stars, idempotency_key
        )

    @staticmethod
    def convert_stars_to_usd(user_id: str, stars: int, idempotency_key: str = None):
        """
        Move stars into the secondary balance.

        Only whole cents are converted: the stars debited are
        ``cents * rate``, any remainder stays in the wallet.
        """
        rate = star_conversion_rate()
        usd_cents = stars // rate
        if usd_cents <= 0:
            raise ValueError(f"At least {rate} stars are needed to convert to USD.")
        return TransactionLedger._convert(
            user_id, Currency.STARS, usd_cents * rate, Currency.USD, usd_cents, idempotency_key
        )

    @staticmethod
    @storage_guard
    @transaction.atomic
    def _convert(user_id, from_currency, source_amount, to_currency, converted_amount, idempotency_key):
        """
        Debit one balance and credit the other as a pair of CONVERSION
        transactions. Both legs commit together or not at all.

        Returns:
            (debit, credit) transactions.
        """
        if source_amount <= 0:
            raise ValueError("Conversion amount must be positive.")

        details = dict(
            from_currency=from_currency,
            to_currency=to_currency,
            source_amount=source_amount,
            converted_amount=converted_amount,
        )
        debit = TransactionLedger.open_and_debit(
            user_id,
            Transaction.TransactionType.CONVERSION,
            source_amount,
            from_currency,
            CurrencyConversion(**details),
            description=f"Convert {source_amount} {from_currency} to {to_currency}",
            idempotency_key=f"{idempotency_key}:debit" if idempotency_key else None,
        )
        credit = TransactionLedger.open_and_credit(
            user_id,
            Transaction.TransactionType.CONVERSION,
            converted_amount,
            to_currency,
            CurrencyConversion(debit_transaction_id=str(debit.id), **details),
            description=f"Converted {source_amount} {from_currency} to {converted_amount} {to_currency}",
            idempotency_key=f"{idempotency_key}:credit" if idempotency_key else None,
        )
        logger.info(
            "Currency converted: user=%s %d %s -> %d %s",
            user_id,
            source_amount,
            from_currency,
            converted_amount,
            to_currency,
        )
        return debit, credit

    # ------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------

    @staticmethod
    @storage_guard
    @transaction.atomic
    def complete(transaction_id, external_payment_id: str = None) -> Transaction:
        """
        Mark a PENDING transaction COMPLETED.

        Used when the payment processor confirms a deferred charge; the
        wallet is not touched.
        """
        fields = {"completed_at": timezone.now()}
        if external_payment_id:
            fields["external_payment_id"] = external_payment_id
        return TransactionLedger._transition(
            transaction_id, Status.COMPLETED, **fields
        )

    @staticmethod
    @storage_guard
    @transaction.atomic
    def fail(transaction_id, reason: str = "") -> Transaction:
        """Mark a PENDING transaction FAILED, reversing any wallet effect."""
        tx = TransactionLedger._transition(
            transaction_id, Status.FAILED, failure_reason=reason
        )
        return TransactionLedger._compensate(tx)

    @staticmethod
    @storage_guard
    @transaction.atomic
    def cancel(transaction_id, reason: str = "") -> Transaction:
        """Mark a PENDING transaction CANCELLED, reversing any wallet effect."""
        tx = TransactionLedger._transition(
            transaction_id, Status.CANCELLED, failure_reason=reason
        )
        return TransactionLedger._compensate(tx)

    @staticmethod
    @storage_guard
    @transaction.atomic
    def refund(transaction_id, reason: str = "") -> Transaction:
        """
        Mark a COMPLETED transaction REFUNDED, reversing its wallet effect.

        Refunding a credit debits the user again and fails with
        InsufficientFunds if the credited amount is no longer available.
        """
        tx = TransactionLedger._transition(
            transaction_id, Status.REFUNDED, failure_reason=reason
        )
        return TransactionLedger._compensate(tx)

    @staticmethod
    @storage_guard
    @transaction.atomic
    def capture(transaction_id) -> Transaction:
        """
        Debit the wallet for a PENDING star debit and mark it COMPLETED.

        Raises:
            InsufficientFunds: The balance still does not cover the amount;
                the transaction stays PENDING.
        """
        tx = Transaction.objects.get(pk=transaction_id)
        if tx.direction != Direction.DEBIT or tx.currency != Currency.STARS:
            raise ValueError("Only pending star debits can be captured.")

        WalletStore.debit(tx.user_id, tx.amount, tx.currency)
        return TransactionLedger._transition(
            tx.id, Status.COMPLETED, completed_at=timezone.now(), wallet_applied=True
        )

    @staticmethod
    def _transition(transaction_id, target, **fields):
        tx = Transaction.objects.get(pk=transaction_id)
        source = tx.status

        updated = 0
        if Transaction.can_transition(source, target):
            updated = Transaction.objects.filter(pk=tx.pk, status=source).update(
                **Transaction.stamped(status=target, **fields)
            )
        tx.refresh_from_db()

        if not updated:
            logger.error(
                "Invalid transaction transition: tx=%s status=%s requested=%s",
                tx.id,
                tx.status,
                target,
            )
            raise InvalidStateTransition(
                f"Cannot move transaction from {tx.status} to {target}.",
                transaction_id=str(tx.id),
                status=tx.status,
                requested=str(target),
            )

        logger.info("Transaction %s: %s -> %s", tx.id, source, target)
        return tx

    @staticmethod
    def _compensate(tx):
        # Clearing the flag conditionally guarantees a single reversal.
        released = Transaction.objects.filter(pk=tx.pk, wallet_applied=True).update(
            **Transaction.stamped(wallet_applied=False)
        )
        if not released:
            return tx

        if tx.direction == Direction.DEBIT:
            WalletStore.credit(tx.user_id, tx.amount, tx.currency)
        else:
            WalletStore.debit(tx.user_id, tx.amount, tx.currency)

        logger.warning(
            "Compensated wallet effect: tx=%s user=%s direction=%s amount=%d "
            "currency=%s status=%s",
            tx.id,
            tx.user_id,
            tx.direction,
            tx.amount,
            tx.currency,
            tx.status,
        )
        tx.refresh_from_db()
        return tx

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    @staticmethod
    def get(transaction_id) -> Transaction:
        return Transaction.objects.get(pk=transaction_id)

    @staticmethod
    def history(user_id: str, status: str = None, transaction_type: str = None):
        queryset = Transaction.objects.filter(user_id=user_id)
        if status:
            queryset = queryset.filter(status=status)
        if transaction_type:
            queryset = queryset.filter(transaction_type=transaction_type)
        return queryset

    @staticmethod
    def completed_totals(session_id: str, transaction_type: str) -> dict:
        """Sum of COMPLETED amounts per beneficiary for one session."""
        rows = (
            Transaction.objects.filter(
                session_id=session_id,
                transaction_type=transaction_type,
                status=Status.COMPLETED,
            )
            .order_by()
            .values("beneficiary_id")
            .annotate(total=Sum("amount"))
        )
        return {row["beneficiary_id"]: row["total"] for row in rows}

    @staticmethod
    def host_revenue(host_id: str, currency: str = Currency.STARS, since=None, until=None) -> dict:
        """
        Completed earnings of a host in one currency.

        Tips count once, from the tip transactions themselves; live party
        revenue covers entry and viewer fees of parties the host ran.
        """
        completed = Transaction.objects.filter(status=Status.COMPLETED, currency=currency)
        if since:
            completed = completed.filter(created_at__gte=since)
        if until:
            completed = completed.filter(created_at__lte=until)

        tips = completed.filter(
            transaction_type__in=[
                Transaction.TransactionType.BATTLE_TIP,
                Transaction.TransactionType.LIVEPARTY_TIP,
            ],
            beneficiary_id=host_id,
        ).aggregate(total=Sum("amount"))
        rewards = completed.filter(
            transaction_type=Transaction.TransactionType.BATTLE_REWARD,
            direction=Direction.CREDIT,
            user_id=host_id,
        ).aggregate(total=Sum("amount"), wins=Count("id"))
        party_ids = [
            str(pk) for pk in LiveParty.objects.filter(host_id=host_id).values_list("pk", flat=True)
        ]
        parties = completed.filter(
            transaction_type__in=[
                Transaction.TransactionType.LIVEPARTY_ENTRY,
                Transaction.TransactionType.LIVEPARTY_VIEWER,
            ],
            session_id__in=party_ids,
        ).aggregate(total=Sum("amount"))

        total_tips = tips["total"] or 0
        battle_rewards = rewards["total"] or 0
        liveparty_revenue = parties["total"] or 0
        return {
            "host_id": host_id,
            "currency": currency,
            "total_tips": total_tips,
            "battle_rewards": battle_rewards,
            "battle_wins": rewards["wins"],
            "liveparty_revenue": liveparty_revenue,
            "total_revenue": total_tips + battle_rewards + liveparty_revenue,
        }
