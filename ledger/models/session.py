from django.conf import settings
from django.db import models

from ledger.models.base import BaseModel
from ledger.models.transaction import Transaction
from ledger.models.wallet import Currency


class SessionStatus(models.TextChoices):
    INITIATED = "initiated", "Initiated"
    ACTIVE = "active", "Active"
    ENDED = "ended", "Ended"


class BillableSession(BaseModel):
    """
    Local record of a call / live party / battle owned by the signaling
    service. The ledger only tracks what it needs to bill: lifecycle state,
    rates and accumulated usage.
    """

    status = models.CharField(
        max_length=10,
        choices=SessionStatus.choices,
        default=SessionStatus.INITIATED,
    )
    started_at = models.DateTimeField(null=True, blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)
    duration_seconds = models.PositiveIntegerField(null=True, blank=True)

    class Meta(BaseModel.Meta):
        abstract = True

    @property
    def is_live(self):
        return self.status == SessionStatus.ACTIVE

    @property
    def has_ended(self):
        return self.status == SessionStatus.ENDED


def default_call_rate():
    return getattr(settings, "DEFAULT_CALL_RATE_PER_MINUTE", 10)


class Call(BillableSession):
    class PaymentStatus(models.TextChoices):
        UNBILLED = "unbilled", "Unbilled"
        PENDING = "pending", "Pending payment"
        PAID = "paid", "Paid"
        FREE_TRIAL = "free_trial", "Free trial"
        NO_CHARGE = "no_charge", "No charge"
        UNPAID = "unpaid", "Unpaid (insufficient funds)"
        FAILED = "failed", "Payment failed"

    caller_id = models.CharField(max_length=128, db_index=True)
    receiver_id = models.CharField(max_length=128)
    rate_per_minute = models.PositiveIntegerField(default=default_call_rate)
    currency = models.CharField(
        max_length=5, choices=Currency.choices, default=Currency.STARS
    )
    payment_status = models.CharField(
        max_length=10,
        choices=PaymentStatus.choices,
        default=PaymentStatus.UNBILLED,
    )
    is_trial_call = models.BooleanField(default=False)
    total_cost = models.PositiveBigIntegerField(default=0)
    billing_attempts = models.PositiveIntegerField(default=0)
    transaction = models.OneToOneField(
        Transaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="call",
    )

    def __str__(self):
        return f"Call {self.pk} {self.caller_id}->{self.receiver_id} | {self.status}"

    @property
    def is_settled(self):
        return self.payment_status in (
            self.PaymentStatus.PAID,
            self.PaymentStatus.FREE_TRIAL,
            self.PaymentStatus.NO_CHARGE,
            self.PaymentStatus.PENDING,
        )

    @classmethod
    def get_retryable_unpaid(cls, max_retries=3):
        return cls.objects.filter(
            status=SessionStatus.ENDED,
            payment_status=cls.PaymentStatus.UNPAID,
            billing_attempts__lt=max_retries,
        )


class LiveParty(BillableSession):
    host_id = models.CharField(max_length=128, db_index=True)
    title = models.CharField(max_length=200, blank=True)
    entry_fee = models.PositiveBigIntegerField(default=0)
    entry_fee_currency = models.CharField(
        max_length=5, choices=Currency.choices, default=Currency.STARS
    )
    viewer_fee_per_minute = models.PositiveBigIntegerField(default=0)
    viewer_fee_currency = models.CharField(
        max_length=5, choices=Currency.choices, default=Currency.STARS
    )
    total_entry_revenue = models.PositiveBigIntegerField(default=0)
    total_viewer_revenue = models.PositiveBigIntegerField(default=0)
    total_tips = models.PositiveBigIntegerField(default=0)

    class Meta(BillableSession.Meta):
        verbose_name_plural = "live parties"

    def __str__(self):
        return f"LiveParty {self.pk} host={self.host_id} | {self.status}"

    @property
    def accepts_entry(self):
        return self.status in (SessionStatus.INITIATED, SessionStatus.ACTIVE)


class LivePartyViewer(BaseModel):
    """
    A user who joined a live party, with the minutes already billed.

    ``is_admitted`` is cleared when the entry payment fails; the user has to
    pay again to watch. ``unpaid_minutes`` holds minutes whose viewer-fee
    payment failed; they are added to the next viewer-fee charge.
    """

    party = models.ForeignKey(
        LiveParty, on_delete=models.PROTECT, related_name="viewers"
    )
    user_id = models.CharField(max_length=128)
    is_admitted = models.BooleanField(default=True)
    billed_minutes = models.PositiveIntegerField(default=0)
    unpaid_minutes = models.PositiveIntegerField(default=0)
    failed_fee_charges = models.PositiveIntegerField(default=0)
    entry_transaction = models.OneToOneField(
        Transaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="liveparty_admission",
    )

    class Meta(BaseModel.Meta):
        constraints = [
            models.UniqueConstraint(
                fields=["party", "user_id"], name="unique_liveparty_viewer"
            ),
        ]

    def __str__(self):
        return f"Viewer {self.user_id} of party {self.party_id} ({self.billed_minutes} min)"


class Battle(BillableSession):
    host1_id = models.CharField(max_length=128)
    host2_id = models.CharField(max_length=128)
    host1_tips = models.PositiveBigIntegerField(default=0)
    host2_tips = models.PositiveBigIntegerField(default=0)
    total_tips = models.PositiveBigIntegerField(default=0)
    peak_viewers = models.PositiveIntegerField(default=0)
    winner_id = models.CharField(max_length=128, null=True, blank=True)
    reward_amount = models.PositiveBigIntegerField(default=0)
    reward_transaction = models.OneToOneField(
        Transaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="battle_reward",
    )

    def __str__(self):
        return f"Battle {self.pk} {self.host1_id} vs {self.host2_id} | {self.status}"

    def tip_field_for(self, host_id):
        """Name of the denormalised counter for ``host_id``."""
        if host_id == self.host1_id:
            return "host1_tips"
        if host_id == self.host2_id:
            return "host2_tips"
        raise ValueError(f"Host {host_id} is not part of battle {self.pk}.")
