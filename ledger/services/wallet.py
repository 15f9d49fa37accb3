import logging

from django.db import transaction
from django.db.models import F

from ledger.exceptions import InsufficientFunds
from ledger.models import Wallet
from ledger.utils import storage_guard

logger = logging.getLogger(__name__)


class WalletStore:
    """
    Authoritative per-user balances.

    Every mutation is a single conditional UPDATE built from F() expressions,
    so concurrent debits on the same wallet are linearised by the database:
    a debit only applies while ``balance >= amount`` at write time, and no
    read-then-write window exists. Only TransactionLedger calls debit/credit;
    a wallet effect without a matching transaction is never written.
    """

    @staticmethod
    @storage_guard
    def get_or_create(user_id: str) -> Wallet:
        """Return the user's wallet, creating an empty one on first use."""
        wallet, created = Wallet.objects.get_or_create(user_id=user_id)
        if created:
            logger.info("Wallet created: user=%s", user_id)
        return wallet

    @staticmethod
    @storage_guard
    @transaction.atomic
    def debit(user_id: str, amount: int, currency: str) -> Wallet:
        """
        Remove ``amount`` from the user's balance in ``currency``.

        Raises:
            ValueError: If amount is not positive or the currency is unknown.
            InsufficientFunds: If the balance is lower than amount. The
                wallet is left untouched.
        """
        if amount <= 0:
            raise ValueError("Debit amount must be positive.")

        balance_field, spent_field, _ = Wallet.fields_for(currency)
        wallet = WalletStore.get_or_create(user_id)

        updated = Wallet.objects.filter(
            pk=wallet.pk, **{f"{balance_field}__gte": amount}
        ).update(
            **Wallet.stamped(
                **{
                    balance_field: F(balance_field) - amount,
                    spent_field: F(spent_field) + amount,
                }
            )
        )
        wallet.refresh_from_db()

        if not updated:
            available = getattr(wallet, balance_field)
            logger.warning(
                "Debit rejected (insufficient funds): user=%s currency=%s "
                "required=%d available=%d",
                user_id,
                currency,
                amount,
                available,
            )
            raise InsufficientFunds(
                required=amount, available=available, currency=currency
            )

        logger.info(
            "Wallet debited: user=%s currency=%s amount=%d new_balance=%d",
            user_id,
            currency,
            amount,
            getattr(wallet, balance_field),
        )
        return wallet

    @staticmethod
    @storage_guard
    @transaction.atomic
    def credit(user_id: str, amount: int, currency: str) -> Wallet:
        """Add ``amount`` to the user's balance in ``currency``."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive.")

        balance_field, _, earned_field = Wallet.fields_for(currency)
        wallet = WalletStore.get_or_create(user_id)

        Wallet.objects.filter(pk=wallet.pk).update(
            **Wallet.stamped(
                **{
                    balance_field: F(balance_field) + amount,
                    earned_field: F(earned_field) + amount,
                }
            )
        )
        wallet.refresh_from_db()

        logger.info(
            "Wallet credited: user=%s currency=%s amount=%d new_balance=%d",
            user_id,
            currency,
            amount,
            getattr(wallet, balance_field),
        )
        return wallet
