import io
import threading
import uuid
from datetime import timedelta
from unittest.mock import MagicMock, patch

import requests
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import IntegrityError, OperationalError, connection, transaction
from django.test import TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.utils import timezone
from rest_framework.test import APIClient

from ledger.exceptions import (
    AlreadyBilled,
    AlreadyJoined,
    IdempotencyConflict,
    InsufficientFunds,
    InvalidStateTransition,
    PaymentContactMissing,
    SessionNotActive,
    StorageUnavailable,
    UpgradeRequired,
)
from ledger.metadata import BattleTip, CallCharge, Clawback, Other, WalletTopup, load_metadata
from ledger.models import (
    Battle,
    BillingProfile,
    Call,
    Currency,
    LiveParty,
    LivePartyViewer,
    MessageAccess,
    PaymentEvent,
    SessionStatus,
    Transaction,
    Wallet,
)
from ledger.services import (
    BattleBilling,
    CallBilling,
    LivePartyBilling,
    PaymentReconciler,
    TransactionLedger,
    WalletStore,
)
from ledger.services.calls import calculate_call_cost
from ledger.signals import billing_outcome
from ledger.utils import retry_on_storage_error, storage_guard
from ledger.utils.payments import request_payment_order as processor_request_order

TransactionType = Transaction.TransactionType
Status = Transaction.Status


def fund(user_id, stars):
    """Seed a wallet with stars through the ledger."""
    TransactionLedger.open_and_credit(
        user_id, TransactionType.OTHER, stars, Currency.STARS, Other(note="seed")
    )


def stars_of(user_id):
    return Wallet.objects.get(user_id=user_id).stars


def trial_used(user_id):
    """A caller whose free trial call is already spent."""
    return BillingProfile.objects.create(user_id=user_id, trial_call_used_at=timezone.now())


def ended_call(duration, rate=10, currency=Currency.STARS, caller="caller-1"):
    return Call.objects.create(
        caller_id=caller,
        receiver_id="host-1",
        rate_per_minute=rate,
        currency=currency,
        status=SessionStatus.ENDED,
        duration_seconds=duration,
    )


ORDER_OK = {
    "success": True,
    "retryable": False,
    "payment_id": "pay_123",
    "payment_url": "https://pay.example.com/pay_123",
    "response": {"payment": {"id": "pay_123"}},
}


# ============================================================
# Model Tests
# ============================================================


class WalletModelTest(TestCase):
    def test_create_wallet(self):
        wallet = Wallet.objects.create(user_id="u-1")
        self.assertEqual(wallet.stars, 0)
        self.assertEqual(wallet.secondary_balance, 0)
        self.assertTrue(wallet.is_active)
        self.assertIsNotNone(wallet.created_at)

    def test_wallet_str(self):
        wallet = Wallet.objects.create(user_id="u-1")
        self.assertIn("u-1", str(wallet))

    def test_fields_for_currency(self):
        self.assertEqual(Wallet.fields_for(Currency.STARS)[0], "stars")
        self.assertEqual(Wallet.fields_for("USD")[0], "secondary_balance")
        with self.assertRaises(ValueError):
            Wallet.fields_for("EUR")

    def test_negative_balance_rejected_by_database(self):
        wallet = Wallet.objects.create(user_id="u-1")
        with self.assertRaises(IntegrityError), transaction.atomic():
            Wallet.objects.filter(pk=wallet.pk).update(stars=-1)


class TransactionModelTest(TestCase):
    def setUp(self):
        self.wallet = Wallet.objects.create(user_id="u-1")

    def _pending(self, **fields):
        return Transaction.objects.create(
            wallet=self.wallet,
            user_id="u-1",
            transaction_type=TransactionType.WALLET_TOPUP,
            amount=500,
            currency=Currency.USD,
            **fields,
        )

    def test_allowed_transitions(self):
        self.assertTrue(Transaction.can_transition(Status.PENDING, Status.COMPLETED))
        self.assertTrue(Transaction.can_transition(Status.COMPLETED, Status.REFUNDED))
        self.assertFalse(Transaction.can_transition(Status.COMPLETED, Status.PENDING))
        self.assertFalse(Transaction.can_transition(Status.FAILED, Status.COMPLETED))

    def test_amount_must_be_positive(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            Transaction.objects.create(
                wallet=self.wallet,
                user_id="u-1",
                transaction_type=TransactionType.OTHER,
                amount=0,
                currency=Currency.STARS,
            )

    def test_get_stale_pending(self):
        stale = self._pending()
        Transaction.objects.filter(pk=stale.pk).update(
            created_at=timezone.now() - timedelta(hours=2)
        )
        self._pending()  # fresh
        ordered = self._pending(external_payment_id="pay_1")
        Transaction.objects.filter(pk=ordered.pk).update(
            created_at=timezone.now() - timedelta(hours=2)
        )

        stale_ids = list(
            Transaction.get_stale_pending(timedelta(hours=1)).values_list("id", flat=True)
        )
        self.assertEqual(stale_ids, [stale.id])

    def test_get_awaiting_confirmation(self):
        self._pending()
        ordered = self._pending(external_payment_id="pay_1")
        self.assertEqual(list(Transaction.get_awaiting_confirmation()), [ordered])


class BillingProfileModelTest(TestCase):
    def test_trial_window_opens_on_creation(self):
        profile = BillingProfile.objects.create(user_id="u-1")
        self.assertEqual(profile.tier, BillingProfile.Tier.FREE)
        self.assertFalse(profile.trial_expired())
        self.assertGreater(profile.trial_ends_at, timezone.now() + timedelta(days=2))

    def test_trial_call_eligibility(self):
        profile = BillingProfile.objects.create(user_id="u-1")
        self.assertTrue(profile.is_trial_call_eligible(60))
        self.assertFalse(profile.is_trial_call_eligible(61))

        profile.trial_call_used_at = timezone.now()
        self.assertFalse(profile.is_trial_call_eligible(30))

    def test_expired_trial(self):
        profile = BillingProfile.objects.create(
            user_id="u-1", trial_ends_at=timezone.now() - timedelta(minutes=1)
        )
        self.assertTrue(profile.trial_expired())
        self.assertFalse(profile.is_trial_call_eligible(30))

        profile.tier = BillingProfile.Tier.LITPLUS
        self.assertFalse(profile.trial_expired())


class MetadataTest(TestCase):
    def test_session_and_beneficiary_lifted(self):
        meta = CallCharge(call_id="7", duration_seconds=90, rate_per_minute=10, receiver_id="host-1")
        self.assertEqual(meta.session_id, "7")
        self.assertEqual(meta.beneficiary_id, "host-1")
        self.assertEqual(meta.transaction_type, TransactionType.CALL)
        self.assertNotIn("transaction_type", meta.to_dict())

    def test_load_metadata_ignores_unknown_keys(self):
        meta = load_metadata("battle_tip", {"battle_id": "3", "host_id": "h", "legacy": 1})
        self.assertEqual(meta, BattleTip(battle_id="3", host_id="h"))


# ============================================================
# Wallet Store Tests
# ============================================================


class WalletStoreTest(TestCase):
    def test_get_or_create(self):
        wallet = WalletStore.get_or_create("u-1")
        self.assertEqual(wallet.stars, 0)
        self.assertEqual(WalletStore.get_or_create("u-1").pk, wallet.pk)

    def test_credit_and_debit(self):
        WalletStore.credit("u-1", 100, Currency.STARS)
        wallet = WalletStore.debit("u-1", 40, Currency.STARS)

        self.assertEqual(wallet.stars, 60)
        self.assertEqual(wallet.total_earned, 100)
        self.assertEqual(wallet.total_spent, 40)

    def test_debit_insufficient_funds(self):
        WalletStore.credit("u-1", 50, Currency.STARS)

        with self.assertRaises(InsufficientFunds) as ctx:
            WalletStore.debit("u-1", 60, Currency.STARS)

        self.assertEqual(ctx.exception.required, 60)
        self.assertEqual(ctx.exception.available, 50)
        self.assertEqual(stars_of("u-1"), 50)

    def test_debit_exact_balance(self):
        WalletStore.credit("u-1", 50, Currency.STARS)
        wallet = WalletStore.debit("u-1", 50, Currency.STARS)
        self.assertEqual(wallet.stars, 0)

    def test_non_positive_amount_raises(self):
        with self.assertRaises(ValueError):
            WalletStore.debit("u-1", 0, Currency.STARS)
        with self.assertRaises(ValueError):
            WalletStore.credit("u-1", -5, Currency.STARS)

    def test_secondary_balance_is_separate(self):
        WalletStore.credit("u-1", 300, Currency.USD)
        wallet = WalletStore.debit("u-1", 100, Currency.USD)

        self.assertEqual(wallet.secondary_balance, 200)
        self.assertEqual(wallet.total_secondary_spent, 100)
        self.assertEqual(wallet.stars, 0)


class ConcurrentDebitTest(TransactionTestCase):
    @skipUnlessDBFeature("has_select_for_update")
    def test_concurrent_debits_never_overdraw(self):
        fund("u-1", 100)
        outcomes = []

        def charge():
            try:
                TransactionLedger.open_and_debit(
                    "u-1", TransactionType.OTHER, 60, Currency.STARS, Other(note="race")
                )
                outcomes.append("ok")
            except InsufficientFunds:
                outcomes.append("insufficient")
            finally:
                connection.close()

        threads = [threading.Thread(target=charge) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sorted(outcomes), ["insufficient", "ok"])
        self.assertEqual(stars_of("u-1"), 40)


class StaleBalanceDebitTest(TestCase):
    """Two debits that both read the wallet before either one writes."""

    def test_second_debit_checks_balance_at_write_time(self):
        fund("u-1", 100)
        read_by_both = Wallet.objects.get(user_id="u-1")

        with patch.object(WalletStore, "get_or_create", return_value=read_by_both):
            TransactionLedger.open_and_debit(
                "u-1", TransactionType.OTHER, 60, Currency.STARS, Other(note="first")
            )
            self.assertEqual(read_by_both.stars, 40)
            read_by_both.stars = 100

            with self.assertRaises(InsufficientFunds) as ctx:
                TransactionLedger.open_and_debit(
                    "u-1", TransactionType.OTHER, 60, Currency.STARS, Other(note="second")
                )

        self.assertEqual(ctx.exception.available, 40)
        self.assertEqual(stars_of("u-1"), 40)
        self.assertEqual(
            Transaction.objects.filter(direction=Transaction.Direction.DEBIT).count(), 1
        )

    def test_balance_never_goes_negative_under_interleaved_debits(self):
        fund("u-1", 100)
        snapshots = [Wallet.objects.get(user_id="u-1") for _ in range(3)]
        outcomes = []

        for snapshot in snapshots:
            with patch.object(WalletStore, "get_or_create", return_value=snapshot):
                try:
                    TransactionLedger.open_and_debit(
                        "u-1", TransactionType.OTHER, 40, Currency.STARS, Other()
                    )
                    outcomes.append("ok")
                except InsufficientFunds:
                    outcomes.append("insufficient")

        self.assertEqual(outcomes, ["ok", "ok", "insufficient"])
        self.assertEqual(stars_of("u-1"), 20)


# ============================================================
# Transaction Ledger Tests
# ============================================================


class TransactionLedgerTest(TestCase):
    def setUp(self):
        fund("u-1", 100)

    def _debit(self, amount, key=None):
        return TransactionLedger.open_and_debit(
            "u-1", TransactionType.OTHER, amount, Currency.STARS, Other(), idempotency_key=key
        )

    def test_open_and_debit(self):
        tx = self._debit(30)

        self.assertEqual(tx.status, Status.COMPLETED)
        self.assertEqual(tx.direction, Transaction.Direction.DEBIT)
        self.assertTrue(tx.wallet_applied)
        self.assertIsNotNone(tx.completed_at)
        self.assertEqual(stars_of("u-1"), 70)

    def test_insufficient_funds_writes_nothing(self):
        before = Transaction.objects.count()

        with self.assertRaises(InsufficientFunds):
            self._debit(101)

        self.assertEqual(Transaction.objects.count(), before)
        self.assertEqual(stars_of("u-1"), 100)

    def test_idempotent_replay(self):
        tx1 = self._debit(30, key="order-1")
        tx2 = self._debit(30, key="order-1")

        self.assertEqual(tx1.id, tx2.id)
        self.assertFalse(tx1.replayed)
        self.assertTrue(tx2.replayed)
        self.assertEqual(stars_of("u-1"), 70)
        self.assertEqual(Transaction.objects.filter(idempotency_key="order-1").count(), 1)

    def test_reused_key_with_different_amount_conflicts(self):
        self._debit(30, key="order-1")

        with self.assertRaises(IdempotencyConflict) as ctx:
            self._debit(50, key="order-1")

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.detail["idempotency_key"], "order-1")
        self.assertEqual(stars_of("u-1"), 70)

    def test_reused_key_by_other_user_conflicts(self):
        self._debit(30, key="order-1")
        fund("u-2", 100)

        with self.assertRaises(IdempotencyConflict):
            TransactionLedger.open_and_debit(
                "u-2", TransactionType.OTHER, 30, Currency.STARS, Other(), idempotency_key="order-1"
            )

        self.assertEqual(stars_of("u-2"), 100)
        self.assertFalse(Transaction.objects.filter(user_id="u-2", direction="debit").exists())

    def test_metadata_must_match_type(self):
        with self.assertRaises(ValueError):
            TransactionLedger.open_and_debit(
                "u-1", TransactionType.CALL, 10, Currency.STARS, Other()
            )

    def test_open_pending_does_not_touch_wallet(self):
        tx = TransactionLedger.open(
            "u-1", TransactionType.WALLET_TOPUP, 500, Currency.USD, WalletTopup(stars=500)
        )
        self.assertEqual(tx.status, Status.PENDING)
        self.assertFalse(tx.wallet_applied)
        self.assertEqual(stars_of("u-1"), 100)

    def test_complete_pending(self):
        tx = TransactionLedger.open(
            "u-1", TransactionType.WALLET_TOPUP, 500, Currency.USD, WalletTopup(stars=500)
        )
        tx = TransactionLedger.complete(tx.id, external_payment_id="pay_9")

        self.assertEqual(tx.status, Status.COMPLETED)
        self.assertEqual(tx.external_payment_id, "pay_9")
        self.assertIsNotNone(tx.completed_at)

    def test_completed_is_final_for_complete(self):
        tx = self._debit(10)
        with self.assertRaises(InvalidStateTransition):
            TransactionLedger.complete(tx.id)

    def test_fail_and_cancel_pending(self):
        meta = WalletTopup(stars=500)
        tx1 = TransactionLedger.open("u-1", TransactionType.WALLET_TOPUP, 500, Currency.USD, meta)
        tx2 = TransactionLedger.open("u-1", TransactionType.WALLET_TOPUP, 500, Currency.USD, meta)

        self.assertEqual(TransactionLedger.fail(tx1.id, "declined").status, Status.FAILED)
        self.assertEqual(TransactionLedger.cancel(tx2.id, "expired").status, Status.CANCELLED)
        with self.assertRaises(InvalidStateTransition):
            TransactionLedger.complete(tx1.id)

    def test_refund_debit_returns_stars(self):
        tx = self._debit(30)
        refunded = TransactionLedger.refund(tx.id, "support")

        self.assertEqual(refunded.status, Status.REFUNDED)
        self.assertFalse(refunded.wallet_applied)
        self.assertEqual(stars_of("u-1"), 100)

        with self.assertRaises(InvalidStateTransition):
            TransactionLedger.refund(tx.id)
        self.assertEqual(stars_of("u-1"), 100)

    def test_refund_credit_needs_the_stars(self):
        credit = Transaction.objects.get(user_id="u-1", direction=Transaction.Direction.CREDIT)
        self._debit(80)

        with self.assertRaises(InsufficientFunds):
            TransactionLedger.refund(credit.id)

        credit.refresh_from_db()
        self.assertEqual(credit.status, Status.COMPLETED)
        self.assertEqual(stars_of("u-1"), 20)

    def test_transitions_follow_allowed_table(self):
        tx = self._debit(30)

        with patch.dict(Transaction.ALLOWED_TRANSITIONS, {Status.COMPLETED: ()}):
            with self.assertRaises(InvalidStateTransition):
                TransactionLedger.refund(tx.id)

        tx.refresh_from_db()
        self.assertEqual(tx.status, Status.COMPLETED)
        self.assertEqual(stars_of("u-1"), 70)
        self.assertEqual(TransactionLedger.refund(tx.id).status, Status.REFUNDED)

    def test_closed_transactions_cannot_be_cancelled(self):
        tx = self._debit(30)
        failed = TransactionLedger.open(
            "u-1", TransactionType.WALLET_TOPUP, 500, Currency.USD, WalletTopup(stars=500)
        )
        TransactionLedger.fail(failed.id)

        with self.assertRaises(InvalidStateTransition):
            TransactionLedger.cancel(tx.id)
        with self.assertRaises(InvalidStateTransition):
            TransactionLedger.refund(failed.id)
        self.assertEqual(stars_of("u-1"), 70)

    def test_capture_pending_star_debit(self):
        tx = TransactionLedger.open(
            "u-1", TransactionType.CLAWBACK, 80, Currency.STARS,
            Clawback(source_transaction_id="credit-1"),
        )
        self.assertEqual(stars_of("u-1"), 100)

        captured = TransactionLedger.capture(tx.id)

        self.assertEqual(captured.status, Status.COMPLETED)
        self.assertTrue(captured.wallet_applied)
        self.assertEqual(stars_of("u-1"), 20)

    def test_capture_without_funds_stays_pending(self):
        tx = TransactionLedger.open(
            "u-1", TransactionType.CLAWBACK, 150, Currency.STARS,
            Clawback(source_transaction_id="credit-1"),
        )

        with self.assertRaises(InsufficientFunds):
            TransactionLedger.capture(tx.id)

        tx.refresh_from_db()
        self.assertEqual(tx.status, Status.PENDING)
        self.assertFalse(tx.wallet_applied)
        self.assertEqual(stars_of("u-1"), 100)

    def test_missing_transaction(self):
        with self.assertRaises(Transaction.DoesNotExist):
            TransactionLedger.fail(uuid.uuid4())

    def test_history_filters(self):
        self._debit(10)
        TransactionLedger.open(
            "u-1", TransactionType.WALLET_TOPUP, 500, Currency.USD, WalletTopup(stars=500)
        )

        self.assertEqual(TransactionLedger.history("u-1").count(), 3)
        self.assertEqual(TransactionLedger.history("u-1", status="pending").count(), 1)
        self.assertEqual(
            TransactionLedger.history("u-1", transaction_type="other").count(), 2
        )

    def test_completed_totals(self):
        fund("fan", 100)
        for host, amount in (("a", 10), ("b", 5), ("a", 7)):
            TransactionLedger.open_and_debit(
                "fan", TransactionType.BATTLE_TIP, amount, Currency.STARS,
                BattleTip(battle_id="42", host_id=host),
            )
        self.assertEqual(
            TransactionLedger.completed_totals("42", TransactionType.BATTLE_TIP),
            {"a": 17, "b": 5},
        )


class CurrencyConversionTest(TestCase):
    def setUp(self):
        TransactionLedger.open_and_credit(
            "u-1", TransactionType.OTHER, 500, Currency.USD, Other(note="seed")
        )
        fund("u-1", 100)

    def test_usd_to_stars(self):
        debit, credit = TransactionLedger.convert_usd_to_stars("u-1", 300)

        wallet = Wallet.objects.get(user_id="u-1")
        self.assertEqual(wallet.secondary_balance, 200)
        self.assertEqual(wallet.stars, 400)
        self.assertEqual((debit.currency, debit.amount), (Currency.USD, 300))
        self.assertEqual(debit.transaction_type, TransactionType.CONVERSION)
        self.assertEqual(credit.direction, Transaction.Direction.CREDIT)
        self.assertEqual((credit.currency, credit.amount), (Currency.STARS, 300))
        self.assertEqual(credit.metadata["debit_transaction_id"], str(debit.id))

    @override_settings(STAR_CONVERSION_RATE=3)
    def test_stars_to_usd_converts_whole_cents(self):
        debit, credit = TransactionLedger.convert_stars_to_usd("u-1", 100)

        self.assertEqual(debit.amount, 99)
        self.assertEqual(credit.amount, 33)
        wallet = Wallet.objects.get(user_id="u-1")
        self.assertEqual(wallet.stars, 1)
        self.assertEqual(wallet.secondary_balance, 533)

    @override_settings(STAR_CONVERSION_RATE=3)
    def test_too_few_stars_for_a_cent(self):
        with self.assertRaises(ValueError):
            TransactionLedger.convert_stars_to_usd("u-1", 2)
        self.assertEqual(stars_of("u-1"), 100)

    def test_insufficient_balance_converts_nothing(self):
        with self.assertRaises(InsufficientFunds):
            TransactionLedger.convert_usd_to_stars("u-1", 501)

        wallet = Wallet.objects.get(user_id="u-1")
        self.assertEqual((wallet.secondary_balance, wallet.stars), (500, 100))
        self.assertFalse(
            Transaction.objects.filter(transaction_type=TransactionType.CONVERSION).exists()
        )

    def test_conversion_replay_applies_once(self):
        TransactionLedger.convert_usd_to_stars("u-1", 100, idempotency_key="conv-1")
        debit, credit = TransactionLedger.convert_usd_to_stars("u-1", 100, idempotency_key="conv-1")

        self.assertTrue(debit.replayed)
        self.assertTrue(credit.replayed)
        wallet = Wallet.objects.get(user_id="u-1")
        self.assertEqual((wallet.secondary_balance, wallet.stars), (400, 200))


class HostRevenueTest(TestCase):
    def setUp(self):
        fund("fan-1", 1000)
        party = LiveParty.objects.create(
            host_id="host-1",
            entry_fee=50,
            viewer_fee_per_minute=10,
            status=SessionStatus.ACTIVE,
            started_at=timezone.now(),
        )
        LivePartyBilling.join(party.pk, "fan-1")
        LivePartyBilling.bill_viewer_minutes(party.pk, "fan-1", 2)
        LivePartyBilling.tip(party.pk, "host-1", "fan-1", 30)

        battle = Battle.objects.create(
            host1_id="host-1", host2_id="host-2", status=SessionStatus.ACTIVE
        )
        BattleBilling.tip(battle.pk, "host-1", "fan-1", 100)
        BattleBilling.settle(battle.pk)

    def test_revenue_breakdown(self):
        revenue = TransactionLedger.host_revenue("host-1")

        self.assertEqual(revenue["total_tips"], 130)
        self.assertEqual(revenue["battle_rewards"], 50)
        self.assertEqual(revenue["battle_wins"], 1)
        self.assertEqual(revenue["liveparty_revenue"], 70)
        self.assertEqual(revenue["total_revenue"], 250)

    def test_other_host_and_date_range(self):
        self.assertEqual(TransactionLedger.host_revenue("host-2")["total_revenue"], 0)
        later = TransactionLedger.host_revenue(
            "host-1", since=timezone.now() + timedelta(hours=1)
        )
        self.assertEqual(later["total_revenue"], 0)
        self.assertEqual(later["battle_wins"], 0)

    def test_refunded_tip_is_not_revenue(self):
        tip = Transaction.objects.get(transaction_type=TransactionType.LIVEPARTY_TIP)
        TransactionLedger.refund(tip.id)

        self.assertEqual(TransactionLedger.host_revenue("host-1")["total_tips"], 100)


# ============================================================
# Call Billing Tests
# ============================================================


class CallBillingTest(TestCase):
    def test_call_cost_rounds_up_to_started_minute(self):
        self.assertEqual(calculate_call_cost(0, 10), 0)
        self.assertEqual(calculate_call_cost(1, 10), 1)
        self.assertEqual(calculate_call_cost(45, 10), 8)
        self.assertEqual(calculate_call_cost(60, 10), 10)
        self.assertEqual(calculate_call_cost(61, 10), 11)

    def test_first_short_call_is_free(self):
        call = CallBilling.bill(ended_call(45).pk)

        self.assertEqual(call.payment_status, Call.PaymentStatus.FREE_TRIAL)
        self.assertTrue(call.is_trial_call)
        self.assertEqual(call.total_cost, 0)
        self.assertIsNone(call.transaction)
        self.assertIsNotNone(
            BillingProfile.objects.get(user_id="caller-1").trial_call_used_at
        )

    def test_second_short_call_is_billed(self):
        fund("caller-1", 100)
        CallBilling.bill(ended_call(45).pk)

        call = CallBilling.bill(ended_call(45).pk)

        self.assertEqual(call.payment_status, Call.PaymentStatus.PAID)
        self.assertFalse(call.is_trial_call)
        self.assertEqual(call.total_cost, 8)
        self.assertEqual(stars_of("caller-1"), 92)

    def test_long_call_is_billed_and_keeps_trial(self):
        fund("caller-1", 100)
        call = CallBilling.bill(ended_call(61).pk)

        self.assertEqual(call.payment_status, Call.PaymentStatus.PAID)
        self.assertEqual(call.total_cost, 11)
        self.assertEqual(call.transaction.amount, 11)
        self.assertEqual(call.transaction.beneficiary_id, "host-1")
        self.assertIsNone(BillingProfile.objects.get(user_id="caller-1").trial_call_used_at)

    def test_zero_duration_is_no_charge(self):
        trial_used("caller-1")
        call = CallBilling.bill(ended_call(0).pk)
        self.assertEqual(call.payment_status, Call.PaymentStatus.NO_CHARGE)
        self.assertFalse(Transaction.objects.filter(transaction_type="call").exists())

    def test_zero_duration_keeps_trial_available(self):
        call = CallBilling.bill(ended_call(0).pk)

        self.assertEqual(call.payment_status, Call.PaymentStatus.NO_CHARGE)
        self.assertFalse(call.is_trial_call)
        self.assertIsNone(BillingProfile.objects.get(user_id="caller-1").trial_call_used_at)

        call = CallBilling.bill(ended_call(45).pk)
        self.assertEqual(call.payment_status, Call.PaymentStatus.FREE_TRIAL)

    def test_expired_trial_requires_upgrade(self):
        fund("caller-1", 100)
        BillingProfile.objects.create(
            user_id="caller-1", trial_ends_at=timezone.now() - timedelta(days=1)
        )
        call = ended_call(120)

        with self.assertRaises(UpgradeRequired) as ctx:
            CallBilling.bill(call.pk)

        self.assertEqual(ctx.exception.status_code, 402)
        self.assertIn("trial_ends_at", ctx.exception.detail)
        call.refresh_from_db()
        self.assertEqual(call.payment_status, Call.PaymentStatus.UNBILLED)
        self.assertEqual(stars_of("caller-1"), 100)

    def test_subscriber_with_expired_trial_is_billed(self):
        fund("caller-1", 100)
        BillingProfile.objects.create(
            user_id="caller-1",
            tier=BillingProfile.Tier.LITPLUS,
            trial_ends_at=timezone.now() - timedelta(days=1),
        )
        call = CallBilling.bill(ended_call(120).pk)
        self.assertEqual(call.payment_status, Call.PaymentStatus.PAID)
        self.assertEqual(stars_of("caller-1"), 80)

    def test_bill_twice_raises(self):
        fund("caller-1", 100)
        trial_used("caller-1")
        call = ended_call(120)
        CallBilling.bill(call.pk)

        with self.assertRaises(AlreadyBilled):
            CallBilling.bill(call.pk)
        self.assertEqual(stars_of("caller-1"), 80)

    def test_bill_before_end_raises(self):
        call = Call.objects.create(caller_id="caller-1", receiver_id="host-1")
        with self.assertRaises(SessionNotActive):
            CallBilling.bill(call.pk)

    def test_insufficient_funds_marks_call_unpaid(self):
        fund("caller-1", 5)
        trial_used("caller-1")
        call = ended_call(120)

        with self.assertRaises(InsufficientFunds) as ctx:
            CallBilling.bill(call.pk)

        self.assertEqual(ctx.exception.required, 20)
        self.assertEqual(ctx.exception.available, 5)
        call.refresh_from_db()
        self.assertEqual(call.payment_status, Call.PaymentStatus.UNPAID)
        self.assertEqual(call.billing_attempts, 1)
        self.assertEqual(stars_of("caller-1"), 5)

    def test_unpaid_call_can_be_billed_after_topup(self):
        fund("caller-1", 5)
        trial_used("caller-1")
        call = ended_call(120)
        with self.assertRaises(InsufficientFunds):
            CallBilling.bill(call.pk)

        fund("caller-1", 50)
        call = CallBilling.bill(call.pk)

        self.assertEqual(call.payment_status, Call.PaymentStatus.PAID)
        self.assertEqual(stars_of("caller-1"), 35)

    def test_end_records_duration_once(self):
        call = Call.objects.create(caller_id="caller-1", receiver_id="host-1")
        CallBilling.start(call.pk)

        ended = CallBilling.end(call.pk, 90)
        again = CallBilling.end(call.pk, 300)

        self.assertEqual(ended.status, SessionStatus.ENDED)
        self.assertEqual(again.duration_seconds, 90)

    def test_end_rejects_negative_duration(self):
        call = Call.objects.create(caller_id="caller-1", receiver_id="host-1")
        with self.assertRaises(ValueError):
            CallBilling.end(call.pk, -1)

    def test_start_ended_call_raises(self):
        with self.assertRaises(SessionNotActive):
            CallBilling.start(ended_call(10).pk)

    def test_end_and_bill(self):
        fund("caller-1", 100)
        trial_used("caller-1")
        call = Call.objects.create(caller_id="caller-1", receiver_id="host-1", rate_per_minute=20)

        call = CallBilling.end_and_bill(call.pk, 90)

        self.assertEqual(call.total_cost, 30)
        self.assertEqual(stars_of("caller-1"), 70)

    def test_usd_call_waits_for_processor(self):
        BillingProfile.objects.create(
            user_id="caller-1", payment_contact_id="contact-1", trial_call_used_at=timezone.now()
        )
        call = CallBilling.bill(ended_call(120, rate=50, currency=Currency.USD).pk)

        self.assertEqual(call.payment_status, Call.PaymentStatus.PENDING)
        self.assertEqual(call.transaction.status, Status.PENDING)
        self.assertEqual(call.transaction.amount, 100)
        self.assertEqual(WalletStore.get_or_create("caller-1").secondary_balance, 0)

    def test_usd_call_without_contact(self):
        trial_used("caller-1")
        with self.assertRaises(PaymentContactMissing):
            CallBilling.bill(ended_call(120, currency=Currency.USD).pk)

    def test_check_balance(self):
        fund("caller-1", 300)

        result = CallBilling.check_balance("caller-1", 10)
        self.assertTrue(result["can_afford"])
        self.assertEqual(result["estimated_cost"], 300)

        self.assertFalse(CallBilling.check_balance("caller-1", 11)["can_afford"])


# ============================================================
# Live Party Billing Tests
# ============================================================


class LivePartyBillingTest(TestCase):
    def setUp(self):
        self.party = LiveParty.objects.create(
            host_id="host-1",
            title="Friday night",
            entry_fee=50,
            viewer_fee_per_minute=10,
            status=SessionStatus.ACTIVE,
            started_at=timezone.now(),
        )
        fund("viewer-1", 1000)

    def test_join_charges_entry_fee(self):
        viewer = LivePartyBilling.join(self.party.pk, "viewer-1")

        self.assertEqual(viewer.entry_transaction.amount, 50)
        self.assertEqual(viewer.entry_transaction.beneficiary_id, "host-1")
        self.assertEqual(stars_of("viewer-1"), 950)
        self.party.refresh_from_db()
        self.assertEqual(self.party.total_entry_revenue, 50)

    def test_join_twice_raises_without_charging(self):
        LivePartyBilling.join(self.party.pk, "viewer-1")

        with self.assertRaises(AlreadyJoined) as ctx:
            LivePartyBilling.join(self.party.pk, "viewer-1")

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(stars_of("viewer-1"), 950)

    def test_join_without_funds_is_not_admitted(self):
        fund("viewer-2", 10)
        with self.assertRaises(InsufficientFunds):
            LivePartyBilling.join(self.party.pk, "viewer-2")

        self.assertFalse(
            LivePartyViewer.objects.filter(party=self.party, user_id="viewer-2").exists()
        )

    def test_join_free_party(self):
        party = LiveParty.objects.create(host_id="host-1")
        viewer = LivePartyBilling.join(party.pk, "viewer-1")
        self.assertIsNone(viewer.entry_transaction)
        self.assertEqual(stars_of("viewer-1"), 1000)

    def test_viewer_minutes_billed_once(self):
        LivePartyBilling.join(self.party.pk, "viewer-1")

        charges = [
            LivePartyBilling.bill_viewer_minutes(self.party.pk, "viewer-1", minutes)[1]
            for minutes in (1, 2, 2, 3)
        ]

        self.assertIsNone(charges[2])
        self.assertEqual([tx.metadata["to_minute"] for tx in charges if tx], [1, 2, 3])
        viewer = LivePartyViewer.objects.get(party=self.party, user_id="viewer-1")
        self.assertEqual(viewer.billed_minutes, 3)
        self.assertEqual(stars_of("viewer-1"), 1000 - 50 - 30)
        self.party.refresh_from_db()
        self.assertEqual(self.party.total_viewer_revenue, 30)

    def test_partial_minutes_are_not_billed(self):
        LivePartyBilling.join(self.party.pk, "viewer-1")

        viewer, tx = LivePartyBilling.bill_viewer_minutes(self.party.pk, "viewer-1", 2.7)

        self.assertEqual(viewer.billed_minutes, 2)
        self.assertEqual(tx.amount, 20)

    def test_concurrent_report_already_billed(self):
        LivePartyBilling.join(self.party.pk, "viewer-1")
        stale = LivePartyViewer.objects.get(party=self.party, user_id="viewer-1")
        LivePartyViewer.objects.filter(pk=stale.pk).update(billed_minutes=2)

        with patch.object(LivePartyViewer.objects, "get", return_value=stale):
            with self.assertRaises(AlreadyBilled):
                LivePartyBilling.bill_viewer_minutes(self.party.pk, "viewer-1", 2)

        self.assertFalse(
            Transaction.objects.filter(transaction_type=TransactionType.LIVEPARTY_VIEWER).exists()
        )

    def test_viewer_fee_requires_join(self):
        with self.assertRaises(LivePartyViewer.DoesNotExist):
            LivePartyBilling.bill_viewer_minutes(self.party.pk, "viewer-1", 5)

    def test_viewer_fee_requires_live_party(self):
        party = LiveParty.objects.create(host_id="host-1", viewer_fee_per_minute=10)
        with self.assertRaises(SessionNotActive):
            LivePartyBilling.bill_viewer_minutes(party.pk, "viewer-1", 5)

    def test_viewer_fee_disabled(self):
        party = LiveParty.objects.create(host_id="host-1", status=SessionStatus.ACTIVE)
        LivePartyBilling.join(party.pk, "viewer-1")
        with self.assertRaises(ValueError):
            LivePartyBilling.bill_viewer_minutes(party.pk, "viewer-1", 5)

    def test_tip_host(self):
        tx = LivePartyBilling.tip(self.party.pk, "host-1", "viewer-1", 25)

        self.assertEqual(tx.transaction_type, TransactionType.LIVEPARTY_TIP)
        self.assertEqual(stars_of("viewer-1"), 975)
        self.party.refresh_from_db()
        self.assertEqual(self.party.total_tips, 25)

    def test_tip_is_in_stars_when_viewer_fee_is_usd(self):
        party = LiveParty.objects.create(
            host_id="host-1",
            viewer_fee_per_minute=10,
            viewer_fee_currency=Currency.USD,
            status=SessionStatus.ACTIVE,
        )

        tx = LivePartyBilling.tip(party.pk, "host-1", "viewer-1", 25)

        self.assertEqual(tx.currency, Currency.STARS)
        self.assertEqual(tx.status, Status.COMPLETED)
        self.assertEqual(stars_of("viewer-1"), 975)

    def test_tip_wrong_host(self):
        with self.assertRaises(ValueError):
            LivePartyBilling.tip(self.party.pk, "someone-else", "viewer-1", 25)
        self.assertEqual(stars_of("viewer-1"), 1000)

    def test_end_returns_revenue_summary(self):
        LivePartyBilling.join(self.party.pk, "viewer-1")
        LivePartyBilling.bill_viewer_minutes(self.party.pk, "viewer-1", 4)
        LivePartyBilling.tip(self.party.pk, "host-1", "viewer-1", 5)

        summary = LivePartyBilling.end(self.party.pk)

        self.assertEqual(summary["status"], SessionStatus.ENDED)
        self.assertEqual(summary["viewer_count"], 1)
        self.assertEqual(summary["total_entry_revenue"], 50)
        self.assertEqual(summary["total_viewer_revenue"], 40)
        self.assertEqual(summary["total_tips"], 5)
        self.assertEqual(summary["total_revenue"], 95)
        self.assertEqual(LivePartyBilling.end(self.party.pk), summary)

    def test_ended_party_refuses_charges(self):
        LivePartyBilling.end(self.party.pk)

        with self.assertRaises(SessionNotActive):
            LivePartyBilling.join(self.party.pk, "viewer-1")
        with self.assertRaises(SessionNotActive):
            LivePartyBilling.tip(self.party.pk, "host-1", "viewer-1", 5)


# ============================================================
# Battle Billing Tests
# ============================================================


class BattleBillingTest(TestCase):
    def setUp(self):
        self.battle = Battle.objects.create(
            host1_id="host-a",
            host2_id="host-b",
            status=SessionStatus.ACTIVE,
            started_at=timezone.now(),
        )
        fund("fan-1", 1000)
        fund("fan-2", 1000)

    def test_winner_gets_half_of_all_tips(self):
        BattleBilling.tip(self.battle.pk, "host-a", "fan-1", 500)
        BattleBilling.tip(self.battle.pk, "host-b", "fan-2", 300)

        battle = BattleBilling.settle(self.battle.pk, peak_viewers=12)

        self.assertEqual(battle.status, SessionStatus.ENDED)
        self.assertEqual(battle.winner_id, "host-a")
        self.assertEqual(battle.reward_amount, 400)
        self.assertEqual(battle.peak_viewers, 12)
        self.assertEqual(battle.reward_transaction.direction, Transaction.Direction.CREDIT)
        self.assertEqual(stars_of("host-a"), 400)
        self.assertFalse(Wallet.objects.filter(user_id="host-b", stars__gt=0).exists())

    def test_tie_has_no_winner(self):
        BattleBilling.tip(self.battle.pk, "host-a", "fan-1", 200)
        BattleBilling.tip(self.battle.pk, "host-b", "fan-2", 200)

        battle = BattleBilling.settle(self.battle.pk)

        self.assertIsNone(battle.winner_id)
        self.assertEqual(battle.reward_amount, 0)
        self.assertIsNone(battle.reward_transaction)
        self.assertFalse(
            Transaction.objects.filter(transaction_type=TransactionType.BATTLE_REWARD).exists()
        )

    def test_reward_rounds_down(self):
        BattleBilling.tip(self.battle.pk, "host-b", "fan-1", 333)
        battle = BattleBilling.settle(self.battle.pk)
        self.assertEqual(battle.winner_id, "host-b")
        self.assertEqual(battle.reward_amount, 166)

    def test_tip_updates_host_counters(self):
        BattleBilling.tip(self.battle.pk, "host-a", "fan-1", 30)
        BattleBilling.tip(self.battle.pk, "host-a", "fan-2", 20)

        self.battle.refresh_from_db()
        self.assertEqual(self.battle.host1_tips, 50)
        self.assertEqual(self.battle.host2_tips, 0)
        self.assertEqual(self.battle.total_tips, 50)

    def test_tip_replay_counts_once(self):
        BattleBilling.tip(self.battle.pk, "host-a", "fan-1", 30, idempotency_key="tip-1")
        BattleBilling.tip(self.battle.pk, "host-a", "fan-1", 30, idempotency_key="tip-1")

        self.battle.refresh_from_db()
        self.assertEqual(self.battle.host1_tips, 30)
        self.assertEqual(stars_of("fan-1"), 970)

    def test_tip_unknown_host(self):
        with self.assertRaises(ValueError):
            BattleBilling.tip(self.battle.pk, "host-z", "fan-1", 30)
        self.assertEqual(stars_of("fan-1"), 1000)

    def test_tip_requires_active_battle(self):
        battle = Battle.objects.create(host1_id="host-a", host2_id="host-b")
        with self.assertRaises(SessionNotActive):
            BattleBilling.tip(battle.pk, "host-a", "fan-1", 30)

    def test_settle_twice_raises(self):
        BattleBilling.tip(self.battle.pk, "host-a", "fan-1", 100)
        BattleBilling.settle(self.battle.pk)

        with self.assertRaises(AlreadyBilled):
            BattleBilling.settle(self.battle.pk)
        with self.assertRaises(SessionNotActive):
            BattleBilling.tip(self.battle.pk, "host-a", "fan-1", 10)
        self.assertEqual(stars_of("host-a"), 50)

    def test_winner_decided_from_ledger(self):
        BattleBilling.tip(self.battle.pk, "host-a", "fan-1", 100)
        Battle.objects.filter(pk=self.battle.pk).update(host2_tips=9999)

        battle = BattleBilling.settle(self.battle.pk)

        self.assertEqual(battle.winner_id, "host-a")
        self.assertEqual(battle.host2_tips, 0)

    def test_start(self):
        battle = Battle.objects.create(host1_id="host-a", host2_id="host-b")
        battle = BattleBilling.start(battle.pk)
        self.assertEqual(battle.status, SessionStatus.ACTIVE)
        self.assertIsNotNone(battle.started_at)


# ============================================================
# Payment Reconciler Tests
# ============================================================


class PaymentReconcilerTest(TestCase):
    def setUp(self):
        BillingProfile.objects.create(user_id="u-1", payment_contact_id="contact-1")

    def _event(self, tx, status, delivery=None):
        return PaymentReconciler.handle_event(
            delivery_id=delivery or f"evt-{uuid.uuid4()}",
            payment_id="pay_123",
            status=status,
            transaction_id=str(tx.id),
        )

    @patch("ledger.services.payments.request_payment_order")
    def test_topup_requests_payment_order_after_commit(self, mock_order):
        mock_order.return_value = ORDER_OK

        with self.captureOnCommitCallbacks(execute=True):
            tx = PaymentReconciler.start_topup("u-1", 500)

        tx.refresh_from_db()
        self.assertEqual(tx.status, Status.PENDING)
        self.assertEqual(tx.currency, Currency.USD)
        self.assertEqual(tx.metadata["stars"], 500)
        self.assertEqual(tx.external_payment_id, "pay_123")
        self.assertEqual(tx.payment_url, "https://pay.example.com/pay_123")
        mock_order.assert_called_once()
        self.assertEqual(mock_order.call_args.kwargs["contact_id"], "contact-1")

    def test_topup_needs_payment_contact(self):
        with self.assertRaises(PaymentContactMissing):
            PaymentReconciler.start_topup("u-2", 500)

    def test_topup_stores_given_contact(self):
        tx = PaymentReconciler.start_topup("u-2", 500, payment_contact_id="contact-2")
        self.assertEqual(tx.status, Status.PENDING)
        self.assertEqual(
            BillingProfile.objects.get(user_id="u-2").payment_contact_id, "contact-2"
        )

    def test_completed_topup_credits_stars_once(self):
        tx = PaymentReconciler.start_topup("u-1", 500)

        completed = self._event(tx, "paid", delivery="evt-1")
        replay = self._event(tx, "paid", delivery="evt-1")
        self._event(tx, "completed", delivery="evt-2")

        self.assertEqual(completed.status, Status.COMPLETED)
        self.assertIsNone(replay)
        self.assertEqual(stars_of("u-1"), 500)
        self.assertEqual(PaymentEvent.objects.filter(transaction=tx).count(), 2)

    def test_failed_topup_credits_nothing(self):
        tx = PaymentReconciler.start_topup("u-1", 500)

        failed = self._event(tx, "failed")

        self.assertEqual(failed.status, Status.FAILED)
        self.assertEqual(WalletStore.get_or_create("u-1").stars, 0)

    def test_refunded_topup_takes_stars_back(self):
        tx = PaymentReconciler.start_topup("u-1", 500)
        self._event(tx, "success")

        refunded = self._event(tx, "refunded")

        self.assertEqual(refunded.status, Status.REFUNDED)
        self.assertEqual(stars_of("u-1"), 0)

    def test_subscription_upgrades_tier(self):
        tx = PaymentReconciler.start_subscription("u-1", "monthly", 999)
        self._event(tx, "completed")

        profile = BillingProfile.objects.get(user_id="u-1")
        self.assertEqual(profile.tier, BillingProfile.Tier.LITPLUS)
        self.assertEqual(profile.subscription_plan, "monthly")

    def test_usd_call_paid_on_confirmation(self):
        BillingProfile.objects.filter(user_id="u-1").update(trial_call_used_at=timezone.now())
        call = CallBilling.bill(ended_call(120, currency=Currency.USD, caller="u-1").pk)

        self._event(call.transaction, "completed")

        call.refresh_from_db()
        self.assertEqual(call.payment_status, Call.PaymentStatus.PAID)

    def test_usd_call_failure_allows_rebilling(self):
        BillingProfile.objects.filter(user_id="u-1").update(trial_call_used_at=timezone.now())
        call = CallBilling.bill(ended_call(120, currency=Currency.USD, caller="u-1").pk)
        first_tx = call.transaction

        self._event(first_tx, "failed")
        call.refresh_from_db()
        self.assertEqual(call.payment_status, Call.PaymentStatus.FAILED)
        self.assertIsNone(call.transaction)

        call = CallBilling.bill(call.pk)
        self.assertEqual(call.payment_status, Call.PaymentStatus.PENDING)
        self.assertNotEqual(call.transaction.id, first_tx.id)

    def test_usd_entry_revenue_booked_on_confirmation(self):
        party = LiveParty.objects.create(
            host_id="host-1",
            entry_fee=300,
            entry_fee_currency=Currency.USD,
            status=SessionStatus.ACTIVE,
        )
        viewer = LivePartyBilling.join(party.pk, "u-1")
        party.refresh_from_db()
        self.assertEqual(party.total_entry_revenue, 0)

        self._event(viewer.entry_transaction, "completed")

        party.refresh_from_db()
        self.assertEqual(party.total_entry_revenue, 300)

    def _usd_party(self, **fields):
        return LiveParty.objects.create(
            host_id="host-1", status=SessionStatus.ACTIVE, started_at=timezone.now(), **fields
        )

    def test_failed_entry_payment_revokes_admission(self):
        party = self._usd_party(entry_fee=300, entry_fee_currency=Currency.USD)
        first_tx = LivePartyBilling.join(party.pk, "u-1").entry_transaction

        self._event(first_tx, "failed")

        viewer = LivePartyViewer.objects.get(party=party, user_id="u-1")
        self.assertFalse(viewer.is_admitted)
        party.refresh_from_db()
        self.assertEqual(party.total_entry_revenue, 0)
        self.assertEqual(LivePartyBilling.summary(party)["viewer_count"], 0)

        viewer = LivePartyBilling.join(party.pk, "u-1")
        self.assertTrue(viewer.is_admitted)
        self.assertNotEqual(viewer.entry_transaction.id, first_tx.id)
        self.assertEqual(viewer.entry_transaction.status, Status.PENDING)
        with self.assertRaises(AlreadyJoined):
            LivePartyBilling.join(party.pk, "u-1")

        self._event(viewer.entry_transaction, "completed")
        party.refresh_from_db()
        self.assertEqual(party.total_entry_revenue, 300)

    def test_expired_entry_payment_revokes_admission(self):
        party = self._usd_party(entry_fee=300, entry_fee_currency=Currency.USD)
        viewer = LivePartyBilling.join(party.pk, "u-1")

        PaymentReconciler.expire(viewer.entry_transaction)

        viewer.refresh_from_db()
        self.assertFalse(viewer.is_admitted)
        self.assertEqual(
            Transaction.objects.get(pk=viewer.entry_transaction_id).status, Status.CANCELLED
        )

    def test_failed_viewer_fee_is_charged_with_next_report(self):
        party = self._usd_party(viewer_fee_per_minute=10, viewer_fee_currency=Currency.USD)
        LivePartyBilling.join(party.pk, "u-1")
        _, first = LivePartyBilling.bill_viewer_minutes(party.pk, "u-1", 3)

        self._event(first, "failed")

        viewer = LivePartyViewer.objects.get(party=party, user_id="u-1")
        self.assertEqual(viewer.billed_minutes, 3)
        self.assertEqual(viewer.unpaid_minutes, 3)

        viewer, retry = LivePartyBilling.bill_viewer_minutes(party.pk, "u-1", 3)
        self.assertEqual(retry.amount, 30)
        self.assertEqual(retry.metadata["arrears_minutes"], 3)
        self.assertEqual(viewer.unpaid_minutes, 0)
        self.assertNotEqual(retry.id, first.id)

        _, later = LivePartyBilling.bill_viewer_minutes(party.pk, "u-1", 5)
        self.assertEqual(later.amount, 20)

        self._event(retry, "completed")
        self._event(later, "completed")
        party.refresh_from_db()
        self.assertEqual(party.total_viewer_revenue, 50)

    def test_refund_after_stars_spent_queues_clawback(self):
        tx = PaymentReconciler.start_topup("u-1", 500)
        self._event(tx, "completed")
        TransactionLedger.open_and_debit(
            "u-1", TransactionType.OTHER, 400, Currency.STARS, Other(note="spent")
        )

        refunded = self._event(tx, "refunded", delivery="evt-refund")

        self.assertEqual(refunded.status, Status.REFUNDED)
        self.assertTrue(
            PaymentEvent.objects.filter(delivery_id="evt-refund", transaction=tx).exists()
        )
        credit = Transaction.objects.get(idempotency_key=f"topup:{tx.id}")
        self.assertEqual(credit.status, Status.COMPLETED)
        clawback = Transaction.objects.get(idempotency_key=f"clawback:{credit.id}")
        self.assertEqual(clawback.status, Status.PENDING)
        self.assertEqual(clawback.amount, 500)
        self.assertEqual(clawback.currency, Currency.STARS)
        self.assertEqual(stars_of("u-1"), 100)

        self.assertEqual(PaymentReconciler.collect_clawback(clawback).status, Status.PENDING)
        fund("u-1", 400)
        self.assertEqual(PaymentReconciler.collect_clawback(clawback).status, Status.COMPLETED)
        self.assertEqual(stars_of("u-1"), 0)

    def test_star_message_unlock_is_immediate(self):
        fund("u-1", 100)

        access = PaymentReconciler.start_message_unlock(
            "u-1", "chat-1", "msg-1", 30, currency=Currency.STARS, sender_id="host-1"
        )

        self.assertTrue(access.is_unlocked)
        self.assertEqual(access.transaction.transaction_type, TransactionType.MESSAGE_UNLOCK)
        self.assertEqual(access.transaction.beneficiary_id, "host-1")
        self.assertEqual(stars_of("u-1"), 70)
        with self.assertRaises(AlreadyBilled):
            PaymentReconciler.start_message_unlock(
                "u-1", "chat-1", "msg-1", 30, currency=Currency.STARS
            )
        self.assertEqual(stars_of("u-1"), 70)

    def test_usd_message_unlock_waits_for_processor(self):
        access = PaymentReconciler.start_message_unlock("u-1", "chat-1", "msg-1", 199)
        self.assertFalse(access.is_unlocked)
        self.assertEqual(access.transaction.status, Status.PENDING)
        again = PaymentReconciler.start_message_unlock("u-1", "chat-1", "msg-1", 199)
        self.assertEqual(again.transaction_id, access.transaction_id)

        self._event(access.transaction, "completed")

        access.refresh_from_db()
        self.assertTrue(access.is_unlocked)

    def test_failed_message_unlock_can_be_paid_again(self):
        access = PaymentReconciler.start_message_unlock("u-1", "chat-1", "msg-1", 199)
        first_tx = access.transaction

        self._event(first_tx, "failed")

        access.refresh_from_db()
        self.assertFalse(access.is_unlocked)
        self.assertIsNone(access.transaction)
        self.assertEqual(access.payment_attempts, 1)

        access = PaymentReconciler.start_message_unlock("u-1", "chat-1", "msg-1", 199)
        self.assertNotEqual(access.transaction.id, first_tx.id)
        self.assertEqual(access.transaction.status, Status.PENDING)

    def test_message_unlock_without_funds_creates_nothing(self):
        with self.assertRaises(InsufficientFunds):
            PaymentReconciler.start_message_unlock(
                "u-1", "chat-1", "msg-1", 30, currency=Currency.STARS
            )
        self.assertFalse(MessageAccess.objects.exists())

    def test_unknown_payment_is_recorded(self):
        result = PaymentReconciler.handle_event("evt-x", "pay_unknown", "paid")
        self.assertIsNone(result)
        self.assertTrue(PaymentEvent.objects.filter(delivery_id="evt-x").exists())

    @patch("ledger.services.payments.request_payment_order")
    def test_retryable_order_failure_keeps_pending(self, mock_order):
        mock_order.return_value = {
            "success": False,
            "retryable": True,
            "response": {"error": "timeout"},
        }
        tx = PaymentReconciler.start_topup("u-1", 500)

        self.assertEqual(
            PaymentReconciler.request_order(tx.id, final_attempt=False).status, Status.PENDING
        )
        failed = PaymentReconciler.request_order(tx.id, final_attempt=True)
        self.assertEqual(failed.status, Status.FAILED)
        self.assertEqual(failed.failure_reason, "timeout")

    @patch("ledger.services.payments.request_payment_order")
    def test_order_not_requested_twice(self, mock_order):
        mock_order.return_value = ORDER_OK
        tx = PaymentReconciler.start_topup("u-1", 500)

        PaymentReconciler.request_order(tx.id)
        PaymentReconciler.request_order(tx.id)

        mock_order.assert_called_once()


# ============================================================
# Payment Processor Client Tests
# ============================================================


class PaymentProcessorClientTest(TestCase):
    @patch("ledger.utils.payments.requests.post")
    def test_order_accepted(self, mock_post):
        mock_post.return_value = MagicMock(
            ok=True,
            status_code=201,
            json=MagicMock(return_value={"payment": {"id": "pay_1", "paymentUrl": "https://p/1"}}),
        )

        result = processor_request_order("contact-1", 500, "USD", "Top-up", {"transaction_id": "t"})

        self.assertTrue(result["success"])
        self.assertEqual(result["payment_id"], "pay_1")
        self.assertEqual(result["payment_url"], "https://p/1")

    @patch("ledger.utils.payments.requests.post")
    def test_order_rejected(self, mock_post):
        mock_post.return_value = MagicMock(
            ok=False, status_code=422, json=MagicMock(return_value={"error": "bad contact"})
        )

        result = processor_request_order("contact-1", 500, "USD", "Top-up", {})

        self.assertFalse(result["success"])
        self.assertFalse(result["retryable"])

    @patch("ledger.utils.payments.requests.post")
    def test_network_error_is_retryable(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")

        result = processor_request_order("contact-1", 500, "USD", "Top-up", {})

        self.assertFalse(result["success"])
        self.assertTrue(result["retryable"])
        self.assertEqual(result["response"]["error"], "connection_error")


# ============================================================
# Celery Task Tests (with mocked processor)
# ============================================================


class CeleryTaskTest(TransactionTestCase):
    def setUp(self):
        BillingProfile.objects.create(user_id="u-1", payment_contact_id="contact-1")

    @patch("ledger.services.payments.request_payment_order")
    def test_request_payment_order_task(self, mock_order):
        mock_order.return_value = ORDER_OK
        tx = PaymentReconciler.start_topup("u-1", 500)

        from ledger.tasks import request_payment_order

        result = request_payment_order.apply(args=[str(tx.id)])

        self.assertEqual(result.get()["payment_id"], "pay_123")
        tx.refresh_from_db()
        self.assertEqual(tx.external_payment_id, "pay_123")

    def test_request_payment_order_missing_transaction(self):
        from ledger.tasks import request_payment_order

        result = request_payment_order.apply(args=[str(uuid.uuid4())])
        self.assertEqual(result.get()["status"], "not_found")

    @patch("ledger.services.payments.fetch_payment_status")
    @patch("ledger.services.payments.request_payment_order")
    def test_poll_pending_payments(self, mock_order, mock_status):
        mock_order.return_value = ORDER_OK
        mock_status.return_value = {"success": True, "status": "completed", "response": {}}
        tx = PaymentReconciler.start_topup("u-1", 500)

        from ledger.tasks import poll_pending_payments

        self.assertEqual(poll_pending_payments.apply().get(), {"polled": 1, "settled": 1})
        tx.refresh_from_db()
        self.assertEqual(tx.status, Status.COMPLETED)
        self.assertEqual(stars_of("u-1"), 500)

    def test_expire_stale_pending_transactions(self):
        tx = TransactionLedger.open(
            "u-1", TransactionType.WALLET_TOPUP, 500, Currency.USD, WalletTopup(stars=500)
        )
        Transaction.objects.filter(pk=tx.pk).update(
            created_at=timezone.now() - timedelta(hours=3)
        )

        from ledger.tasks import expire_stale_pending_transactions

        self.assertEqual(expire_stale_pending_transactions.apply().get()["expired"], 1)
        tx.refresh_from_db()
        self.assertEqual(tx.status, Status.CANCELLED)

    def test_retry_unpaid_calls(self):
        trial_used("caller-1")
        call = ended_call(120)
        with self.assertRaises(InsufficientFunds):
            CallBilling.bill(call.pk)
        fund("caller-1", 100)

        from ledger.tasks import retry_unpaid_calls

        self.assertEqual(retry_unpaid_calls.apply().get(), {"retried": 1, "paid": 1})
        call.refresh_from_db()
        self.assertEqual(call.payment_status, Call.PaymentStatus.PAID)

    def test_collect_clawbacks(self):
        fund("u-1", 100)
        clawback = TransactionLedger.open(
            "u-1", TransactionType.CLAWBACK, 300, Currency.STARS,
            Clawback(source_transaction_id="credit-1", reason="top-up refunded"),
        )
        Transaction.objects.filter(pk=clawback.pk).update(
            created_at=timezone.now() - timedelta(hours=3)
        )

        from ledger.tasks import collect_clawbacks, expire_stale_pending_transactions

        self.assertEqual(collect_clawbacks.apply().get(), {"pending": 1, "collected": 0})
        self.assertEqual(expire_stale_pending_transactions.apply().get()["expired"], 0)

        fund("u-1", 250)
        self.assertEqual(collect_clawbacks.apply().get(), {"pending": 1, "collected": 1})
        clawback.refresh_from_db()
        self.assertEqual(clawback.status, Status.COMPLETED)
        self.assertEqual(stars_of("u-1"), 50)
        self.assertEqual(collect_clawbacks.apply().get(), {"pending": 0, "collected": 0})


# ============================================================
# Storage Retry Tests
# ============================================================


class StorageRetryTest(TestCase):
    def test_storage_guard_translates_database_errors(self):
        @storage_guard
        def broken():
            raise OperationalError("connection refused")

        with self.assertRaises(StorageUnavailable) as ctx:
            broken()
        self.assertEqual(ctx.exception.status_code, 503)

    def test_retries_then_succeeds(self):
        calls = []

        @retry_on_storage_error
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("server closed the connection")
            return "ok"

        self.assertEqual(flaky(), "ok")
        self.assertEqual(len(calls), 3)

    def test_gives_up_after_configured_attempts(self):
        calls = []

        @retry_on_storage_error
        def down():
            calls.append(1)
            raise OperationalError("down")

        with self.assertRaises(StorageUnavailable):
            down()
        self.assertEqual(len(calls), 3)


# ============================================================
# Signal Tests
# ============================================================


class BillingOutcomeSignalTest(TestCase):
    def test_outcome_sent_after_commit(self):
        received = []

        def receiver(sender, event, transaction, session, detail, **kwargs):
            received.append((event, session.pk, detail))

        billing_outcome.connect(receiver)
        self.addCleanup(billing_outcome.disconnect, receiver)

        battle = Battle.objects.create(
            host1_id="host-a", host2_id="host-b", status=SessionStatus.ACTIVE
        )
        fund("fan-1", 100)
        with self.captureOnCommitCallbacks(execute=True):
            BattleBilling.tip(battle.pk, "host-a", "fan-1", 10)
            self.assertEqual(received, [])

        self.assertEqual(received, [("battle.tip", battle.pk, {"host_id": "host-a"})])


# ============================================================
# API Tests
# ============================================================


class WalletAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()

    def test_retrieve_wallet_creates_it(self):
        response = self.client.get("/wallets/u-1/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["user_id"], "u-1")
        self.assertEqual(response.data["stars"], 0)

    def test_retrieve_wallet_balance(self):
        fund("u-1", 250)
        response = self.client.get("/wallets/u-1/")
        self.assertEqual(response.data["stars"], 250)
        self.assertEqual(response.data["total_earned"], 250)


class TransactionAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        fund("u-1", 100)
        TransactionLedger.open_and_debit(
            "u-1", TransactionType.OTHER, 10, Currency.STARS, Other()
        )
        TransactionLedger.open(
            "u-1", TransactionType.WALLET_TOPUP, 500, Currency.USD, WalletTopup(stars=500)
        )

    def test_list_transactions(self):
        response = self.client.get("/wallets/u-1/transactions/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 3)

    def test_filter_by_status(self):
        response = self.client.get("/wallets/u-1/transactions/?status=PENDING")
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["transaction_type"], "wallet_topup")

    def test_filter_by_type(self):
        response = self.client.get("/wallets/u-1/transactions/?type=other")
        self.assertEqual(len(response.data), 2)

    def test_transaction_detail(self):
        tx = Transaction.objects.filter(user_id="u-1").first()
        response = self.client.get(f"/wallets/u-1/transactions/{tx.id}/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["id"], str(tx.id))

    def test_transaction_of_other_user(self):
        tx = Transaction.objects.filter(user_id="u-1").first()
        response = self.client.get(f"/wallets/u-2/transactions/{tx.id}/")
        self.assertEqual(response.status_code, 404)


class CallAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        trial_used("caller-1")

    def _create_call(self, **extra):
        response = self.client.post(
            "/calls/",
            {"caller_id": "caller-1", "receiver_id": "host-1", "rate_per_minute": 10, **extra},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        return response.data["id"]

    def test_call_flow(self):
        fund("caller-1", 100)
        call_id = self._create_call()

        response = self.client.post(f"/calls/{call_id}/start", format="json")
        self.assertEqual(response.data["status"], "active")

        response = self.client.post(f"/calls/{call_id}/end", {"duration": 90}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["payment_status"], "paid")
        self.assertEqual(response.data["total_cost"], 15)
        self.assertEqual(response.data["transaction"]["amount"], 15)
        self.assertEqual(stars_of("caller-1"), 85)

        response = self.client.post(f"/calls/{call_id}/bill", format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "already_billed")

    def test_cannot_call_self(self):
        response = self.client.post(
            "/calls/", {"caller_id": "caller-1", "receiver_id": "caller-1"}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_insufficient_funds(self):
        fund("caller-1", 5)
        call_id = self._create_call()

        response = self.client.post(f"/calls/{call_id}/end", {"duration": 120}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "insufficient_funds")
        self.assertEqual(response.data["required"], 20)
        self.assertEqual(response.data["available"], 5)

    def test_upgrade_required(self):
        BillingProfile.objects.filter(user_id="caller-1").update(
            trial_ends_at=timezone.now() - timedelta(days=1)
        )
        call_id = self._create_call()

        response = self.client.post(f"/calls/{call_id}/end", {"duration": 120}, format="json")

        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.data["upgrade_url"], "/upgrade")

    def test_end_missing_duration(self):
        call_id = self._create_call()
        response = self.client.post(f"/calls/{call_id}/end", {}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_bill_unknown_call(self):
        response = self.client.post("/calls/999999/bill", format="json")
        self.assertEqual(response.status_code, 404)

    def test_check_balance(self):
        fund("caller-1", 500)
        response = self.client.post(
            "/calls/check-balance", {"user_id": "caller-1"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["can_afford"])
        self.assertEqual(response.data["balance"], 500)

    @patch("ledger.views.calls.CallBilling.bill")
    def test_storage_unavailable(self, mock_bill):
        mock_bill.side_effect = StorageUnavailable()
        call_id = self._create_call()

        response = self.client.post(f"/calls/{call_id}/bill", format="json")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["code"], "storage_unavailable")


class LivePartyAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        fund("viewer-1", 1000)
        response = self.client.post(
            "/liveparties/",
            {"host_id": "host-1", "title": "Friday", "entry_fee": 50, "viewer_fee_per_minute": 5},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.party_id = response.data["id"]

    def test_party_flow(self):
        self.client.post(f"/liveparties/{self.party_id}/start", format="json")

        response = self.client.post(
            f"/liveparties/{self.party_id}/entry", {"user_id": "viewer-1"}, format="json"
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["entry_transaction"]["amount"], 50)

        response = self.client.post(
            f"/liveparties/{self.party_id}/entry", {"user_id": "viewer-1"}, format="json"
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "already_joined")

        response = self.client.post(
            f"/liveparties/{self.party_id}/viewer-fee",
            {"user_id": "viewer-1", "minutes_watched": 3},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["viewer"]["billed_minutes"], 3)
        self.assertEqual(response.data["transaction"]["amount"], 15)

        response = self.client.post(
            f"/liveparties/{self.party_id}/viewer-fee",
            {"user_id": "viewer-1", "minutes_watched": 3},
            format="json",
        )
        self.assertIsNone(response.data["transaction"])

        response = self.client.post(
            f"/liveparties/{self.party_id}/tip",
            {"user_id": "viewer-1", "host_id": "host-1", "amount": 10},
            format="json",
        )
        self.assertEqual(response.status_code, 201)

        response = self.client.post(f"/liveparties/{self.party_id}/end", format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["total_revenue"], 75)
        self.assertEqual(stars_of("viewer-1"), 925)

    def test_viewer_fee_before_start(self):
        response = self.client.post(
            f"/liveparties/{self.party_id}/viewer-fee",
            {"user_id": "viewer-1", "minutes_watched": 3},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "session_not_active")


class BattleAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        fund("fan-1", 1000)
        fund("fan-2", 1000)

    def test_battle_flow(self):
        response = self.client.post(
            "/battles/", {"host1_id": "host-a", "host2_id": "host-b"}, format="json"
        )
        self.assertEqual(response.status_code, 201)
        battle_id = response.data["id"]

        self.client.post(f"/battles/{battle_id}/start", format="json")
        for fan, host, amount in (("fan-1", "host-a", 500), ("fan-2", "host-b", 300)):
            response = self.client.post(
                f"/battles/{battle_id}/tip",
                {"user_id": fan, "host_id": host, "amount": amount},
                format="json",
            )
            self.assertEqual(response.status_code, 201)

        response = self.client.post(f"/battles/{battle_id}/end", {"peak_viewers": 40}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["winner_id"], "host-a")
        self.assertEqual(response.data["reward_amount"], 400)
        self.assertEqual(response.data["reward_transaction"]["amount"], 400)

        response = self.client.post(f"/battles/{battle_id}/end", format="json")
        self.assertEqual(response.status_code, 409)

    def test_same_host_twice(self):
        response = self.client.post(
            "/battles/", {"host1_id": "host-a", "host2_id": "host-a"}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_tip_with_idempotency_key(self):
        battle = Battle.objects.create(
            host1_id="host-a", host2_id="host-b", status=SessionStatus.ACTIVE
        )
        payload = {"user_id": "fan-1", "host_id": "host-b", "amount": 25}

        response1 = self.client.post(
            f"/battles/{battle.pk}/tip", payload, format="json", HTTP_IDEMPOTENCY_KEY="tip-9"
        )
        response2 = self.client.post(
            f"/battles/{battle.pk}/tip", payload, format="json", HTTP_IDEMPOTENCY_KEY="tip-9"
        )

        self.assertEqual(response1.data["id"], response2.data["id"])
        self.assertEqual(stars_of("fan-1"), 975)

    def test_tip_key_reused_by_other_user(self):
        battle = Battle.objects.create(
            host1_id="host-a", host2_id="host-b", status=SessionStatus.ACTIVE
        )
        self.client.post(
            f"/battles/{battle.pk}/tip",
            {"user_id": "fan-1", "host_id": "host-b", "amount": 25},
            format="json",
            HTTP_IDEMPOTENCY_KEY="tip-9",
        )

        response = self.client.post(
            f"/battles/{battle.pk}/tip",
            {"user_id": "fan-2", "host_id": "host-b", "amount": 25},
            format="json",
            HTTP_IDEMPOTENCY_KEY="tip-9",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "idempotency_conflict")
        self.assertNotIn("id", response.data)
        self.assertEqual(stars_of("fan-2"), 1000)
        battle.refresh_from_db()
        self.assertEqual(battle.host2_tips, 25)


class PaymentAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()

    def test_topup_and_webhook(self):
        response = self.client.post(
            "/payments/topup",
            {"user_id": "u-1", "amount_cents": 500, "payment_contact_id": "contact-1"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["status"], "pending")
        tx_id = response.data["id"]

        response = self.client.post(
            "/payments/webhook",
            {"delivery_id": "evt-1", "payment_id": "pay_1", "status": "PAID", "transaction_id": tx_id},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["transaction"]["status"], "completed")
        self.assertEqual(stars_of("u-1"), 500)

    def test_topup_without_contact(self):
        response = self.client.post(
            "/payments/topup", {"user_id": "u-1", "amount_cents": 500}, format="json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "payment_contact_missing")

    def test_subscribe(self):
        response = self.client.post(
            "/payments/subscribe",
            {"user_id": "u-1", "amount_cents": 999, "plan": "monthly", "payment_contact_id": "c"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["transaction_type"], "subscription")

    def test_webhook_missing_fields(self):
        response = self.client.post("/payments/webhook", {"status": "paid"}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_unlock_message_with_stars(self):
        fund("u-1", 100)
        payload = {
            "user_id": "u-1",
            "chat_id": "chat-1",
            "message_id": "msg-1",
            "price": 40,
            "currency": "STARS",
            "sender_id": "host-1",
        }

        response = self.client.post("/messages/unlock", payload, format="json")
        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.data["is_unlocked"])
        self.assertEqual(response.data["transaction"]["amount"], 40)

        response = self.client.post("/messages/unlock", payload, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(stars_of("u-1"), 60)

        response = self.client.get("/messages/msg-1/access/u-1")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["is_unlocked"])

    def test_unlock_message_with_usd(self):
        response = self.client.post(
            "/messages/unlock",
            {
                "user_id": "u-1",
                "chat_id": "chat-1",
                "message_id": "msg-1",
                "price": 199,
                "payment_contact_id": "contact-1",
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertFalse(response.data["is_unlocked"])
        self.assertEqual(response.data["transaction"]["status"], "pending")
        self.assertEqual(response.data["currency"], "USD")

    def test_message_access_unknown(self):
        response = self.client.get("/messages/msg-1/access/u-1")
        self.assertEqual(response.status_code, 404)


class WalletConversionAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        TransactionLedger.open_and_credit(
            "u-1", TransactionType.OTHER, 500, Currency.USD, Other(note="seed")
        )

    def test_convert_usd_to_stars(self):
        response = self.client.post(
            "/wallets/u-1/convert", {"direction": "usd_to_stars", "amount": 200}, format="json"
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["debit"]["currency"], "USD")
        self.assertEqual(response.data["credit"]["amount"], 200)
        self.assertEqual(response.data["wallet"]["stars"], 200)
        self.assertEqual(response.data["wallet"]["secondary_balance"], 300)

    def test_convert_more_than_balance(self):
        response = self.client.post(
            "/wallets/u-1/convert", {"direction": "stars_to_usd", "amount": 10}, format="json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "insufficient_funds")

    def test_convert_unknown_direction(self):
        response = self.client.post(
            "/wallets/u-1/convert", {"direction": "sideways", "amount": 10}, format="json"
        )
        self.assertEqual(response.status_code, 400)


class HostRevenueAPITest(TestCase):
    def test_host_revenue(self):
        fund("fan-1", 100)
        battle = Battle.objects.create(
            host1_id="host-a", host2_id="host-b", status=SessionStatus.ACTIVE
        )
        BattleBilling.tip(battle.pk, "host-a", "fan-1", 40)

        response = APIClient().get("/hosts/host-a/revenue")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["total_tips"], 40)
        self.assertEqual(response.data["currency"], "STARS")

    def test_invalid_range(self):
        response = APIClient().get(
            "/hosts/host-a/revenue",
            {"since": "2026-02-01T00:00:00Z", "until": "2026-01-01T00:00:00Z"},
        )
        self.assertEqual(response.status_code, 400)


# ============================================================
# Middleware Tests
# ============================================================


class BillingRequestLoggingMiddlewareTest(TestCase):
    def test_request_and_response_logged(self):
        client = APIClient()
        with self.assertLogs("ledger.middleware", level="INFO") as logs:
            client.get("/wallets/u-1/", HTTP_X_USER_ID="u-1", HTTP_IDEMPOTENCY_KEY="k-1")

        output = "\n".join(logs.output)
        self.assertIn("method=GET path=/wallets/u-1/ user=u-1 idempotency_key=k-1", output)
        self.assertIn("status=200", output)


# ============================================================
# Management Command Tests
# ============================================================


class WaitForDbCommandTest(TestCase):
    @patch("ledger.management.commands.wait_for_db.time.sleep")
    def test_retries_until_database_available(self, mock_sleep):
        out = io.StringIO()
        with patch(
            "ledger.management.commands.wait_for_db.connections"
        ) as mock_connections:
            mock_connections.__getitem__.return_value.ensure_connection.side_effect = [
                OperationalError("down"),
                None,
            ]
            call_command("wait_for_db", "--interval", "0.5", stdout=out)

        mock_sleep.assert_called_once_with(0.5)
        self.assertIn("Database available!", out.getvalue())

    @patch("ledger.management.commands.wait_for_db.time.sleep")
    def test_gives_up_after_timeout(self, mock_sleep):
        with patch(
            "ledger.management.commands.wait_for_db.time.monotonic", side_effect=[0, 5]
        ), patch("ledger.management.commands.wait_for_db.connections") as mock_connections:
            mock_connections.__getitem__.return_value.ensure_connection.side_effect = (
                OperationalError("down")
            )
            with self.assertRaises(CommandError):
                call_command("wait_for_db", "--timeout", "1", stdout=io.StringIO())

        mock_sleep.assert_not_called()
