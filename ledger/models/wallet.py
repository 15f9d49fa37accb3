from django.db import models

from ledger.models.base import BaseModel


class Currency(models.TextChoices):
    STARS = "STARS", "Stars"
    USD = "USD", "US dollar (cents)"


class Wallet(BaseModel):
    """
    A user's balances: in-app stars and a secondary real-money balance.

    Amounts are integers in the smallest unit (stars, cents). Both balances
    are guarded by check constraints so no write can commit a negative value.
    Concurrency safety is handled in WalletStore with conditional F()
    updates; nothing else writes these columns.
    """

    user_id = models.CharField(max_length=128, unique=True)
    stars = models.BigIntegerField(default=0)
    secondary_balance = models.BigIntegerField(default=0)
    total_earned = models.BigIntegerField(default=0)
    total_spent = models.BigIntegerField(default=0)
    total_secondary_earned = models.BigIntegerField(default=0)
    total_secondary_spent = models.BigIntegerField(default=0)
    is_active = models.BooleanField(default=True)

    class Meta(BaseModel.Meta):
        constraints = [
            models.CheckConstraint(
                condition=models.Q(stars__gte=0), name="wallet_stars_non_negative"
            ),
            models.CheckConstraint(
                condition=models.Q(secondary_balance__gte=0),
                name="wallet_secondary_non_negative",
            ),
        ]

    def __str__(self):
        return (
            f"Wallet {self.user_id} "
            f"(stars={self.stars}, secondary={self.secondary_balance})"
        )

    # Column names touched by a debit / credit, per currency.
    BALANCE_FIELDS = {
        Currency.STARS: ("stars", "total_spent", "total_earned"),
        Currency.USD: (
            "secondary_balance",
            "total_secondary_spent",
            "total_secondary_earned",
        ),
    }

    @classmethod
    def fields_for(cls, currency):
        try:
            return cls.BALANCE_FIELDS[Currency(currency)]
        except ValueError:
            raise ValueError(f"Unsupported currency: {currency}")

    def balance_of(self, currency):
        return getattr(self, self.fields_for(currency)[0])
