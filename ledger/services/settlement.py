import logging

from django.db import transaction

from ledger.exceptions import PaymentContactMissing
from ledger.models import BillingProfile, Currency, Transaction
from ledger.services.ledger import TransactionLedger

logger = logging.getLogger(__name__)


class SettlementStrategy:
    """
    How a charge in a given currency gets paid.

    Reconcilers compute what is owed and hand it to the strategy for the
    charge's currency; the ledger state machine stays the same for both.
    """

    currency = None

    def settle(
        self,
        user_id,
        transaction_type,
        amount,
        metadata,
        description="",
        idempotency_key=None,
    ) -> Transaction:
        raise NotImplementedError


class ImmediateDebitSettlement(SettlementStrategy):
    """Stars: debit now, transaction is COMPLETED on return."""

    currency = Currency.STARS

    def settle(
        self,
        user_id,
        transaction_type,
        amount,
        metadata,
        description="",
        idempotency_key=None,
    ):
        return TransactionLedger.open_and_debit(
            user_id,
            transaction_type,
            amount,
            self.currency,
            metadata,
            description=description,
            idempotency_key=idempotency_key,
        )


class DeferredExternalSettlement(SettlementStrategy):
    """
    Real money: open a PENDING transaction and ask the payment processor
    for an order once the surrounding database transaction has committed.
    The processor's confirmation later completes or fails it.
    """

    currency = Currency.USD

    def settle(
        self,
        user_id,
        transaction_type,
        amount,
        metadata,
        description="",
        idempotency_key=None,
    ):
        profile, _ = BillingProfile.objects.get_or_create(user_id=user_id)
        if not profile.payment_contact_id:
            raise PaymentContactMissing(user_id=user_id)

        tx = TransactionLedger.open(
            user_id,
            transaction_type,
            amount,
            self.currency,
            metadata,
            description=description,
            idempotency_key=idempotency_key,
        )

        if tx.status == Transaction.Status.PENDING and not tx.external_payment_id:
            from ledger.tasks import request_payment_order

            transaction.on_commit(lambda: request_payment_order.delay(str(tx.id)))
            logger.info(
                "Deferred settlement opened: tx=%s user=%s amount=%d",
                tx.id,
                user_id,
                amount,
            )
        return tx


STRATEGIES = {
    Currency.STARS: ImmediateDebitSettlement(),
    Currency.USD: DeferredExternalSettlement(),
}


def strategy_for(currency) -> SettlementStrategy:
    try:
        return STRATEGIES[Currency(currency)]
    except ValueError:
        raise ValueError(f"Unsupported currency: {currency}")


def is_settled_now(tx) -> bool:
    return tx.status == Transaction.Status.COMPLETED
