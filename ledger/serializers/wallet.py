from rest_framework import serializers

from ledger.models import Wallet


class WalletSerializer(serializers.ModelSerializer):
    class Meta:
        model = Wallet
        fields = (
            "user_id",
            "stars",
            "secondary_balance",
            "total_earned",
            "total_spent",
            "total_secondary_earned",
            "total_secondary_spent",
            "is_active",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields
