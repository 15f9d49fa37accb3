from django.db import models

from ledger.models.base import BaseModel


class PaymentEvent(BaseModel):
    """
    One delivery from the payment processor (webhook or poll result).

    ``delivery_id`` is unique so a replayed delivery is recognised and
    ignored instead of settling the same transaction twice.
    """

    delivery_id = models.CharField(max_length=255, unique=True)
    payment_id = models.CharField(max_length=128, db_index=True)
    status = models.CharField(max_length=32)
    transaction = models.ForeignKey(
        "ledger.Transaction",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payment_events",
    )
    payload = models.JSONField(default=dict, blank=True)

    def __str__(self):
        return f"PaymentEvent {self.delivery_id} | {self.payment_id} | {self.status}"
