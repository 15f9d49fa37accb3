from django.db import models

from ledger.models.base import BaseModel
from ledger.models.transaction import Transaction
from ledger.models.wallet import Currency


class MessageAccess(BaseModel):
    """
    A user's paid access to one locked chat message.

    Messages live in the chat service; the ledger only keeps who paid for
    which message. ``unlocked_at`` is set once the payment completes.
    """

    chat_id = models.CharField(max_length=128)
    message_id = models.CharField(max_length=128)
    user_id = models.CharField(max_length=128, db_index=True)
    sender_id = models.CharField(max_length=128, blank=True)
    price = models.PositiveBigIntegerField()
    currency = models.CharField(
        max_length=5, choices=Currency.choices, default=Currency.USD
    )
    payment_attempts = models.PositiveIntegerField(default=0)
    transaction = models.OneToOneField(
        Transaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="message_access",
    )
    unlocked_at = models.DateTimeField(null=True, blank=True)

    class Meta(BaseModel.Meta):
        verbose_name_plural = "message access"
        constraints = [
            models.UniqueConstraint(
                fields=["message_id", "user_id"], name="unique_message_access"
            ),
        ]

    def __str__(self):
        state = "unlocked" if self.unlocked_at else "locked"
        return f"Message {self.message_id} for {self.user_id} ({state})"

    @property
    def is_unlocked(self):
        return self.unlocked_at is not None
