"""Request bodies for the billing endpoints."""

from rest_framework import serializers

from ledger.models import Currency


class CheckBalanceSerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=128)
    rate_per_minute = serializers.IntegerField(min_value=1, required=False)


class EndCallSerializer(serializers.Serializer):
    duration = serializers.IntegerField(min_value=0)


class JoinLivePartySerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=128)
    currency = serializers.ChoiceField(choices=Currency.choices, required=False)


class ViewerFeeSerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=128)
    minutes_watched = serializers.FloatField(min_value=0)


class TipSerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=128)
    host_id = serializers.CharField(max_length=128)
    amount = serializers.IntegerField(min_value=1)
    currency = serializers.ChoiceField(choices=Currency.choices, required=False)


class SettleBattleSerializer(serializers.Serializer):
    duration_seconds = serializers.IntegerField(min_value=0, required=False)
    peak_viewers = serializers.IntegerField(min_value=0, required=False)


class TopupSerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=128)
    amount_cents = serializers.IntegerField(min_value=1)
    payment_contact_id = serializers.CharField(max_length=128, required=False)


class SubscribeSerializer(TopupSerializer):
    plan = serializers.CharField(max_length=64)


class PaymentWebhookSerializer(serializers.Serializer):
    delivery_id = serializers.CharField(max_length=255)
    payment_id = serializers.CharField(max_length=128)
    status = serializers.CharField(max_length=32)
    transaction_id = serializers.UUIDField(required=False)


class ConvertSerializer(serializers.Serializer):
    USD_TO_STARS = "usd_to_stars"
    STARS_TO_USD = "stars_to_usd"

    direction = serializers.ChoiceField(choices=[USD_TO_STARS, STARS_TO_USD])
    amount = serializers.IntegerField(min_value=1)


class HostRevenueSerializer(serializers.Serializer):
    currency = serializers.ChoiceField(choices=Currency.choices, default=Currency.STARS)
    since = serializers.DateTimeField(required=False)
    until = serializers.DateTimeField(required=False)

    def validate(self, attrs):
        if attrs.get("since") and attrs.get("until") and attrs["since"] > attrs["until"]:
            raise serializers.ValidationError("since must not be after until.")
        return attrs


class UnlockMessageSerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=128)
    chat_id = serializers.CharField(max_length=128)
    message_id = serializers.CharField(max_length=128)
    price = serializers.IntegerField(min_value=1)
    currency = serializers.ChoiceField(choices=Currency.choices, default=Currency.USD)
    sender_id = serializers.CharField(max_length=128, required=False, default="")
    payment_contact_id = serializers.CharField(max_length=128, required=False)
