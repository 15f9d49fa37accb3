from rest_framework import serializers

from ledger.models import Transaction


class TransactionSerializer(serializers.ModelSerializer):
    """Read-only serializer for transaction responses."""

    class Meta:
        model = Transaction
        fields = (
            "id",
            "user_id",
            "transaction_type",
            "direction",
            "amount",
            "currency",
            "status",
            "description",
            "metadata",
            "session_id",
            "beneficiary_id",
            "external_payment_id",
            "payment_url",
            "failure_reason",
            "completed_at",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields
