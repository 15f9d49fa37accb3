from django.contrib import admin

from ledger.models import (
    Battle,
    BillingProfile,
    Call,
    LiveParty,
    LivePartyViewer,
    MessageAccess,
    PaymentEvent,
    Transaction,
    Wallet,
)


class ReadOnlyAdminMixin:
    """
    Mixin that makes an admin model completely read-only.
    Balances and transactions only change through the billing services,
    so the admin is for browsing and support lookups.
    """

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Wallet)
class WalletAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("user_id", "stars", "secondary_balance", "total_spent", "total_earned", "is_active")
    list_filter = ("is_active",)
    search_fields = ("user_id",)


@admin.register(Transaction)
class TransactionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "user_id",
        "transaction_type",
        "direction",
        "amount",
        "currency",
        "status",
        "session_id",
        "created_at",
    )
    list_filter = ("transaction_type", "status", "currency", "direction")
    search_fields = ("id", "user_id", "session_id", "external_payment_id", "idempotency_key")
    readonly_fields = ("idempotency_key",)


@admin.register(Call)
class CallAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "caller_id",
        "receiver_id",
        "status",
        "duration_seconds",
        "payment_status",
        "total_cost",
        "billing_attempts",
    )
    list_filter = ("status", "payment_status", "is_trial_call")
    search_fields = ("caller_id", "receiver_id")


class LivePartyViewerInline(admin.TabularInline):
    model = LivePartyViewer
    extra = 0
    can_delete = False
    readonly_fields = (
        "user_id",
        "is_admitted",
        "billed_minutes",
        "unpaid_minutes",
        "entry_transaction",
        "created_at",
    )

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(LiveParty)
class LivePartyAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "host_id",
        "title",
        "status",
        "entry_fee",
        "viewer_fee_per_minute",
        "total_entry_revenue",
        "total_viewer_revenue",
        "total_tips",
    )
    list_filter = ("status",)
    search_fields = ("host_id", "title")
    inlines = [LivePartyViewerInline]


@admin.register(Battle)
class BattleAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "host1_id",
        "host2_id",
        "status",
        "host1_tips",
        "host2_tips",
        "winner_id",
        "reward_amount",
    )
    list_filter = ("status",)
    search_fields = ("host1_id", "host2_id", "winner_id")


@admin.register(BillingProfile)
class BillingProfileAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("user_id", "tier", "trial_ends_at", "trial_call_used_at", "subscription_plan")
    list_filter = ("tier",)
    search_fields = ("user_id", "payment_contact_id")


@admin.register(PaymentEvent)
class PaymentEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("delivery_id", "payment_id", "status", "transaction", "created_at")
    list_filter = ("status",)
    search_fields = ("delivery_id", "payment_id")


@admin.register(MessageAccess)
class MessageAccessAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("message_id", "user_id", "price", "currency", "unlocked_at", "payment_attempts")
    list_filter = ("currency",)
    search_fields = ("message_id", "chat_id", "user_id")
