from rest_framework import serializers

from ledger.models import MessageAccess
from ledger.serializers.transaction import TransactionSerializer


class MessageAccessSerializer(serializers.ModelSerializer):
    transaction = TransactionSerializer(read_only=True)
    is_unlocked = serializers.BooleanField(read_only=True)

    class Meta:
        model = MessageAccess
        fields = (
            "chat_id",
            "message_id",
            "user_id",
            "sender_id",
            "price",
            "currency",
            "payment_attempts",
            "is_unlocked",
            "unlocked_at",
            "transaction",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields
