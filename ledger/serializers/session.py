from rest_framework import serializers

from ledger.models import Battle, Call, LiveParty, LivePartyViewer
from ledger.serializers.transaction import TransactionSerializer

SESSION_READ_ONLY = (
    "id",
    "status",
    "started_at",
    "ended_at",
    "duration_seconds",
    "created_at",
    "updated_at",
)


class CallSerializer(serializers.ModelSerializer):
    transaction = TransactionSerializer(read_only=True)

    class Meta:
        model = Call
        fields = SESSION_READ_ONLY + (
            "caller_id",
            "receiver_id",
            "rate_per_minute",
            "currency",
            "payment_status",
            "is_trial_call",
            "total_cost",
            "billing_attempts",
            "transaction",
        )
        read_only_fields = SESSION_READ_ONLY + (
            "payment_status",
            "is_trial_call",
            "total_cost",
            "billing_attempts",
        )

    def validate(self, attrs):
        if attrs.get("caller_id") == attrs.get("receiver_id"):
            raise serializers.ValidationError("A user cannot call themselves.")
        return attrs


class LivePartySerializer(serializers.ModelSerializer):
    class Meta:
        model = LiveParty
        fields = SESSION_READ_ONLY + (
            "host_id",
            "title",
            "entry_fee",
            "entry_fee_currency",
            "viewer_fee_per_minute",
            "viewer_fee_currency",
            "total_entry_revenue",
            "total_viewer_revenue",
            "total_tips",
        )
        read_only_fields = SESSION_READ_ONLY + (
            "total_entry_revenue",
            "total_viewer_revenue",
            "total_tips",
        )


class LivePartyViewerSerializer(serializers.ModelSerializer):
    entry_transaction = TransactionSerializer(read_only=True)

    class Meta:
        model = LivePartyViewer
        fields = (
            "party",
            "user_id",
            "is_admitted",
            "billed_minutes",
            "unpaid_minutes",
            "entry_transaction",
            "created_at",
        )
        read_only_fields = fields


class BattleSerializer(serializers.ModelSerializer):
    reward_transaction = TransactionSerializer(read_only=True)

    class Meta:
        model = Battle
        fields = SESSION_READ_ONLY + (
            "host1_id",
            "host2_id",
            "host1_tips",
            "host2_tips",
            "total_tips",
            "peak_viewers",
            "winner_id",
            "reward_amount",
            "reward_transaction",
        )
        read_only_fields = SESSION_READ_ONLY + (
            "host1_tips",
            "host2_tips",
            "total_tips",
            "peak_viewers",
            "winner_id",
            "reward_amount",
        )

    def validate(self, attrs):
        if attrs.get("host1_id") == attrs.get("host2_id"):
            raise serializers.ValidationError("A battle needs two different hosts.")
        return attrs
