from datetime import timedelta

from django.conf import settings
from django.db import models
from django.utils import timezone

from ledger.models.base import BaseModel


def default_trial_end():
    return timezone.now() + timedelta(days=getattr(settings, "TRIAL_DURATION_DAYS", 3))


class BillingProfile(BaseModel):
    """
    Per-user billing attributes: subscription tier, the call trial window and
    the contact used by the external payment processor.

    The trial window opens when the profile is first created. During it a
    user gets exactly one free call of at most TRIAL_MAX_CALL_SECONDS.
    """

    class Tier(models.TextChoices):
        FREE = "free", "Free"
        LITPLUS = "litplus", "LIT+"

    user_id = models.CharField(max_length=128, unique=True)
    tier = models.CharField(max_length=10, choices=Tier.choices, default=Tier.FREE)
    trial_ends_at = models.DateTimeField(null=True, blank=True, default=default_trial_end)
    trial_call_used_at = models.DateTimeField(null=True, blank=True)
    payment_contact_id = models.CharField(max_length=128, blank=True)
    subscription_plan = models.CharField(max_length=64, blank=True)

    def __str__(self):
        return f"BillingProfile {self.user_id} ({self.tier})"

    @property
    def is_subscribed(self):
        return self.tier == self.Tier.LITPLUS

    def trial_expired(self, now=None):
        if self.is_subscribed or self.trial_ends_at is None:
            return False
        return (now or timezone.now()) >= self.trial_ends_at

    def is_trial_call_eligible(self, duration_seconds, now=None):
        if self.is_subscribed or self.trial_call_used_at is not None:
            return False
        if self.trial_ends_at is None or self.trial_expired(now):
            return False
        return duration_seconds <= getattr(settings, "TRIAL_MAX_CALL_SECONDS", 60)
