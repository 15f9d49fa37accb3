import logging

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from ledger.exceptions import AlreadyBilled, SessionNotActive
from ledger.metadata import BattleReward, BattleTip
from ledger.models import Battle, Currency, SessionStatus, Transaction
from ledger.services.ledger import TransactionLedger
from ledger.signals import announce
from ledger.utils import retry_on_storage_error

logger = logging.getLogger(__name__)

TransactionType = Transaction.TransactionType


def battle_reward_percent():
    return getattr(settings, "BATTLE_REWARD_PERCENT", 50)


class BattleBilling:
    """
    Tips between two competing hosts and the winner's reward.

    The per-host counters on Battle are a fast running tally; the winner is
    decided from the COMPLETED battle_tip transactions in the ledger, which
    are authoritative.
    """

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def start(battle_id) -> Battle:
        updated = Battle.objects.filter(pk=battle_id, status=SessionStatus.INITIATED).update(
            **Battle.stamped(status=SessionStatus.ACTIVE, started_at=timezone.now())
        )
        battle = Battle.objects.get(pk=battle_id)
        if not updated and battle.status != SessionStatus.ACTIVE:
            raise SessionNotActive(
                "Battle can no longer be started.", battle_id=battle.pk, status=battle.status
            )
        logger.info("Battle started: battle=%s %s vs %s", battle.pk, battle.host1_id, battle.host2_id)
        return battle

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def tip(
        battle_id, host_id: str, user_id: str, amount: int, idempotency_key: str = None
    ) -> Transaction:
        """
        Debit ``amount`` stars from the tipper in favour of one host.

        Raises:
            SessionNotActive: The battle is not active (or ended meanwhile).
            ValueError: host_id is not one of the two hosts.
            InsufficientFunds: The tipper cannot pay.
        """
        battle = Battle.objects.get(pk=battle_id)
        if not battle.is_live:
            raise SessionNotActive(
                "Battle is not active.", battle_id=battle.pk, status=battle.status
            )
        field = battle.tip_field_for(host_id)

        tx = TransactionLedger.open_and_debit(
            user_id,
            TransactionType.BATTLE_TIP,
            amount,
            Currency.STARS,
            BattleTip(battle_id=str(battle.pk), host_id=host_id),
            description=f"Battle tip to {host_id}",
            idempotency_key=idempotency_key,
        )
        if tx.replayed:
            return tx

        # Refuses the tip (and rolls back the debit) if settlement won the race.
        updated = Battle.objects.filter(pk=battle.pk, status=SessionStatus.ACTIVE).update(
            **Battle.stamped(
                **{field: F(field) + amount, "total_tips": F("total_tips") + amount}
            )
        )
        if not updated:
            raise SessionNotActive("Battle has ended.", battle_id=battle.pk)

        logger.info(
            "Battle tip: battle=%s host=%s tipper=%s amount=%d tx=%s",
            battle.pk,
            host_id,
            user_id,
            amount,
            tx.id,
        )
        announce("battle.tip", tx, battle, host_id=host_id)
        return tx

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def settle(battle_id, duration_seconds: int = None, peak_viewers: int = None) -> Battle:
        """
        End the battle, pick the winner and pay the reward.

        The host with strictly more tipped stars wins
        ``total * BATTLE_REWARD_PERCENT // 100`` stars. A tie has no winner
        and pays no reward.

        Raises:
            AlreadyBilled: The battle was already settled.
        """
        battle = Battle.objects.select_for_update().get(pk=battle_id)
        if battle.has_ended:
            raise AlreadyBilled(
                "Battle already settled.", battle_id=battle.pk, winner_id=battle.winner_id
            )

        totals = TransactionLedger.completed_totals(str(battle.pk), TransactionType.BATTLE_TIP)
        host1_tips = totals.get(battle.host1_id, 0)
        host2_tips = totals.get(battle.host2_id, 0)
        total = host1_tips + host2_tips

        if host1_tips > host2_tips:
            winner_id, winner_tips = battle.host1_id, host1_tips
        elif host2_tips > host1_tips:
            winner_id, winner_tips = battle.host2_id, host2_tips
        else:
            winner_id, winner_tips = None, 0

        now = timezone.now()
        battle.status = SessionStatus.ENDED
        battle.ended_at = now
        if duration_seconds is not None:
            battle.duration_seconds = duration_seconds
        elif battle.started_at:
            battle.duration_seconds = int((now - battle.started_at).total_seconds())
        if peak_viewers is not None:
            battle.peak_viewers = max(battle.peak_viewers, peak_viewers)
        battle.host1_tips = host1_tips
        battle.host2_tips = host2_tips
        battle.total_tips = total
        battle.winner_id = winner_id

        reward = total * battle_reward_percent() // 100 if winner_id else 0
        if reward > 0:
            battle.reward_amount = reward
            battle.reward_transaction = TransactionLedger.open_and_credit(
                winner_id,
                TransactionType.BATTLE_REWARD,
                reward,
                Currency.STARS,
                BattleReward(
                    battle_id=str(battle.pk),
                    total_tips=total,
                    host1_tips=host1_tips,
                    host2_tips=host2_tips,
                ),
                description=f"Battle reward - won with {winner_tips} stars",
                idempotency_key=f"battle-reward:{battle.pk}",
            )

        battle.save()
        logger.info(
            "Battle settled: battle=%s winner=%s host1_tips=%d host2_tips=%d reward=%d",
            battle.pk,
            winner_id,
            host1_tips,
            host2_tips,
            reward,
        )
        announce(
            "battle.settled",
            battle.reward_transaction,
            battle,
            winner_id=winner_id,
            reward=reward,
        )
        return battle
