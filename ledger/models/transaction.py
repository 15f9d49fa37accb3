import uuid

from django.db import models
from django.utils import timezone

from ledger.models.base import BaseModel
from ledger.models.wallet import Currency, Wallet


class Transaction(BaseModel):
    """
    Records every balance-affecting event and its outcome.

    Star charges are written already COMPLETED together with the wallet
    debit. Real-money charges are created PENDING and wait for the payment
    processor to confirm or reject them. ``wallet_applied`` tells whether a
    wallet effect is currently attached, so closing or refunding the
    transaction knows whether a compensating wallet operation is due.
    """

    class TransactionType(models.TextChoices):
        CALL = "call", "Call"
        BATTLE_TIP = "battle_tip", "Battle tip"
        BATTLE_REWARD = "battle_reward", "Battle reward"
        LIVEPARTY_ENTRY = "liveparty_entry", "LiveParty entry fee"
        LIVEPARTY_TIP = "liveparty_tip", "LiveParty tip"
        LIVEPARTY_VIEWER = "liveparty_viewer", "LiveParty viewer fee"
        WALLET_TOPUP = "wallet_topup", "Wallet top-up"
        SUBSCRIPTION = "subscription", "Subscription"
        MESSAGE_UNLOCK = "message_unlock", "Message unlock"
        CONVERSION = "conversion", "Currency conversion"
        CLAWBACK = "clawback", "Clawback"
        OTHER = "other", "Other"

    class Direction(models.TextChoices):
        DEBIT = "debit", "Debit"
        CREDIT = "credit", "Credit"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        REFUNDED = "refunded", "Refunded"
        CANCELLED = "cancelled", "Cancelled"

    ALLOWED_TRANSITIONS = {
        Status.PENDING: (Status.COMPLETED, Status.FAILED, Status.CANCELLED),
        Status.COMPLETED: (Status.REFUNDED,),
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        related_name="transactions",
    )
    user_id = models.CharField(max_length=128, db_index=True)
    transaction_type = models.CharField(
        max_length=20,
        choices=TransactionType.choices,
    )
    direction = models.CharField(
        max_length=6,
        choices=Direction.choices,
        default=Direction.DEBIT,
    )
    amount = models.BigIntegerField()
    currency = models.CharField(max_length=5, choices=Currency.choices)
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PENDING,
    )
    description = models.CharField(max_length=255, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    session_id = models.CharField(
        max_length=64,
        blank=True,
        db_index=True,
        help_text="Billable session (call, battle, liveparty) this charge belongs to.",
    )
    beneficiary_id = models.CharField(
        max_length=128,
        blank=True,
        help_text="User receiving value from this charge, e.g. the tipped host.",
    )
    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
        editable=False,
    )
    external_payment_id = models.CharField(max_length=128, blank=True, db_index=True)
    payment_url = models.URLField(max_length=500, blank=True)
    wallet_applied = models.BooleanField(default=False)
    failure_reason = models.TextField(blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta(BaseModel.Meta):
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0), name="transaction_amount_positive"
            ),
        ]
        indexes = [
            models.Index(
                fields=["session_id", "transaction_type", "status"],
                name="idx_session_type_status",
            ),
            models.Index(fields=["user_id", "status"], name="idx_user_status"),
            models.Index(fields=["status", "created_at"], name="idx_status_created"),
        ]

    def __str__(self):
        return (
            f"Transaction {self.id} | {self.transaction_type} | "
            f"{self.amount} {self.currency} | {self.status}"
        )

    @classmethod
    def can_transition(cls, current, target):
        return target in cls.ALLOWED_TRANSITIONS.get(current, ())

    @classmethod
    def get_stale_pending(cls, older_than):
        """Pending real-money transactions never handed to the payment processor."""
        return cls.objects.filter(
            status=cls.Status.PENDING,
            currency=Currency.USD,
            external_payment_id="",
            created_at__lte=timezone.now() - older_than,
        )

    @classmethod
    def get_awaiting_confirmation(cls):
        """Pending transactions with an open order at the payment processor."""
        return cls.objects.filter(status=cls.Status.PENDING).exclude(
            external_payment_id=""
        )

    @classmethod
    def get_uncollected_clawbacks(cls):
        """Star debits owed back to the ledger that the balance could not cover yet."""
        return cls.objects.filter(
            status=cls.Status.PENDING,
            transaction_type=cls.TransactionType.CLAWBACK,
        )
