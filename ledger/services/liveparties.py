import logging
import math

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from ledger.exceptions import AlreadyBilled, AlreadyJoined, SessionNotActive
from ledger.metadata import LivePartyEntry, LivePartyTip, LivePartyViewerFee, load_metadata
from ledger.models import Currency, LiveParty, LivePartyViewer, SessionStatus, Transaction
from ledger.services.settlement import is_settled_now, strategy_for
from ledger.signals import announce
from ledger.utils import retry_on_storage_error

logger = logging.getLogger(__name__)

TransactionType = Transaction.TransactionType

REVENUE_FIELDS = {
    TransactionType.LIVEPARTY_ENTRY: "total_entry_revenue",
    TransactionType.LIVEPARTY_VIEWER: "total_viewer_revenue",
    TransactionType.LIVEPARTY_TIP: "total_tips",
}


class LivePartyBilling:
    """
    Entry fees, per-minute viewer fees and tips for live parties.

    Viewer fees are billed incrementally from progress reports: each report
    charges only the whole minutes not yet billed, and the billed-minutes
    counter moves in the same atomic unit as the charge, so repeated or
    concurrent reports never bill a minute twice.
    """

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def start(party_id) -> LiveParty:
        updated = LiveParty.objects.filter(
            pk=party_id, status=SessionStatus.INITIATED
        ).update(**LiveParty.stamped(status=SessionStatus.ACTIVE, started_at=timezone.now()))
        party = LiveParty.objects.get(pk=party_id)
        if not updated and party.status != SessionStatus.ACTIVE:
            raise SessionNotActive(
                "Live party can no longer be started.", liveparty_id=party.pk, status=party.status
            )
        logger.info("Live party started: party=%s host=%s", party.pk, party.host_id)
        return party

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def join(party_id, user_id: str, currency: str = None) -> LivePartyViewer:
        """
        Admit a user to a live party, charging the entry fee if there is one.

        Raises:
            SessionNotActive: The party has ended.
            AlreadyJoined: The user was already admitted; nothing is charged.
                A viewer whose entry payment failed may join again and is
                charged again.
            InsufficientFunds: The user cannot pay; the user is not admitted.
        """
        party = LiveParty.objects.get(pk=party_id)
        if not party.accepts_entry:
            raise SessionNotActive(
                "Live party is not accepting viewers.", liveparty_id=party.pk, status=party.status
            )

        viewer = LivePartyViewer.objects.filter(party=party, user_id=user_id).first()
        if viewer is None:
            try:
                with transaction.atomic():
                    viewer = LivePartyViewer.objects.create(party=party, user_id=user_id)
            except IntegrityError:
                raise AlreadyJoined(liveparty_id=party.pk, user_id=user_id)
        else:
            readmitted = LivePartyViewer.objects.filter(
                pk=viewer.pk, is_admitted=False
            ).update(**LivePartyViewer.stamped(is_admitted=True))
            if not readmitted:
                raise AlreadyJoined(liveparty_id=party.pk, user_id=user_id)
            viewer.is_admitted = True

        if party.entry_fee > 0:
            # A failed entry payment leaves its key behind; each retry needs a new one.
            previous = Transaction.objects.filter(
                session_id=str(party.pk),
                user_id=user_id,
                transaction_type=TransactionType.LIVEPARTY_ENTRY,
            ).count()
            idempotency_key = f"liveparty-entry:{party.pk}:{user_id}"
            if previous:
                idempotency_key = f"{idempotency_key}:{previous}"
            tx = strategy_for(currency or party.entry_fee_currency).settle(
                user_id,
                TransactionType.LIVEPARTY_ENTRY,
                party.entry_fee,
                LivePartyEntry(
                    liveparty_id=str(party.pk),
                    entry_fee=party.entry_fee,
                    host_id=party.host_id,
                ),
                description=f"Entry to live party: {party.title or party.pk}",
                idempotency_key=idempotency_key,
            )
            viewer.entry_transaction = tx
            viewer.save(update_fields=["entry_transaction", "updated_at"])
            if is_settled_now(tx):
                LivePartyBilling._add_revenue(party.pk, tx)
            announce("liveparty.entry", tx, party, user_id=user_id)

        logger.info(
            "Viewer joined live party: party=%s user=%s entry_fee=%d",
            party.pk,
            user_id,
            party.entry_fee,
        )
        return viewer

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def bill_viewer_minutes(party_id, user_id: str, minutes_watched):
        """
        Charge the viewer fee for whole minutes watched since the last report,
        plus any minutes whose earlier viewer-fee payment failed.

        Returns:
            (viewer, transaction) where transaction is None when there was
            nothing new to bill.

        Raises:
            SessionNotActive: The party is not live.
            ValueError: The party has no viewer fee or minutes_watched is negative.
            LivePartyViewer.DoesNotExist: The user is not admitted to the party.
            AlreadyBilled: A concurrent report already billed these minutes.
        """
        party = LiveParty.objects.get(pk=party_id)
        if not party.is_live:
            raise SessionNotActive(
                "Live party is not live.", liveparty_id=party.pk, status=party.status
            )
        if party.viewer_fee_per_minute <= 0:
            raise ValueError("Live party has no per-minute viewer fee.")
        if minutes_watched is None or minutes_watched < 0:
            raise ValueError("minutes_watched must be a non-negative number.")

        viewer = LivePartyViewer.objects.get(party=party, user_id=user_id, is_admitted=True)
        billed = viewer.billed_minutes
        arrears = viewer.unpaid_minutes
        watched = max(math.floor(minutes_watched), billed)
        minutes = watched - billed + arrears
        if minutes <= 0:
            return viewer, None

        updated = LivePartyViewer.objects.filter(
            pk=viewer.pk, billed_minutes=billed, unpaid_minutes=arrears
        ).update(**LivePartyViewer.stamped(billed_minutes=watched, unpaid_minutes=0))
        if not updated:
            raise AlreadyBilled(
                "These minutes were billed by a concurrent report.",
                liveparty_id=party.pk,
                user_id=user_id,
            )

        idempotency_key = f"liveparty-viewer:{party.pk}:{user_id}:{billed}-{watched}"
        if arrears:
            idempotency_key = f"{idempotency_key}:arrears{viewer.failed_fee_charges}"
        tx = strategy_for(party.viewer_fee_currency).settle(
            user_id,
            TransactionType.LIVEPARTY_VIEWER,
            minutes * party.viewer_fee_per_minute,
            LivePartyViewerFee(
                liveparty_id=str(party.pk),
                from_minute=billed,
                to_minute=watched,
                rate_per_minute=party.viewer_fee_per_minute,
                arrears_minutes=arrears,
            ),
            description=f"Live party viewing - {minutes} minute(s)",
            idempotency_key=idempotency_key,
        )
        if is_settled_now(tx) and not tx.replayed:
            LivePartyBilling._add_revenue(party.pk, tx)

        logger.info(
            "Viewer minutes billed: party=%s user=%s minutes=%d-%d amount=%d tx=%s",
            party.pk,
            user_id,
            billed,
            watched,
            tx.amount,
            tx.id,
        )
        viewer.refresh_from_db()
        return viewer, tx

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def tip(
        party_id,
        host_id: str,
        user_id: str,
        amount: int,
        currency: str = None,
        idempotency_key: str = None,
    ) -> Transaction:
        party = LiveParty.objects.get(pk=party_id)
        if party.has_ended:
            raise SessionNotActive(
                "Live party has ended.", liveparty_id=party.pk, status=party.status
            )
        if host_id != party.host_id:
            raise ValueError(f"User {host_id} is not the host of live party {party.pk}.")

        tx = strategy_for(currency or Currency.STARS).settle(
            user_id,
            TransactionType.LIVEPARTY_TIP,
            amount,
            LivePartyTip(liveparty_id=str(party.pk), host_id=host_id),
            description=f"Live party tip to {host_id}",
            idempotency_key=idempotency_key,
        )
        if is_settled_now(tx) and not tx.replayed:
            LivePartyBilling._add_revenue(party.pk, tx)
            announce("liveparty.tip", tx, party, host_id=host_id)
        return tx

    @staticmethod
    @retry_on_storage_error
    @transaction.atomic
    def end(party_id) -> dict:
        """End the party (idempotent) and return its revenue summary."""
        party = LiveParty.objects.select_for_update().get(pk=party_id)
        if not party.has_ended:
            now = timezone.now()
            party.status = SessionStatus.ENDED
            party.ended_at = now
            if party.started_at:
                party.duration_seconds = int((now - party.started_at).total_seconds())
            party.save(update_fields=["status", "ended_at", "duration_seconds", "updated_at"])
            logger.info("Live party ended: party=%s", party.pk)
            announce("liveparty.ended", None, party)
        return LivePartyBilling.summary(party)

    @staticmethod
    def summary(party) -> dict:
        return {
            "liveparty_id": party.pk,
            "status": party.status,
            "duration_seconds": party.duration_seconds,
            "viewer_count": party.viewers.filter(is_admitted=True).count(),
            "total_entry_revenue": party.total_entry_revenue,
            "total_viewer_revenue": party.total_viewer_revenue,
            "total_tips": party.total_tips,
            "total_revenue": (
                party.total_entry_revenue + party.total_viewer_revenue + party.total_tips
            ),
        }

    @staticmethod
    def payment_confirmed(tx):
        """Book revenue for a deferred charge the processor just confirmed."""
        if tx.transaction_type in REVENUE_FIELDS and tx.session_id:
            LivePartyBilling._add_revenue(tx.session_id, tx)

    @staticmethod
    def _add_revenue(party_id, tx):
        field = REVENUE_FIELDS[tx.transaction_type]
        LiveParty.objects.filter(pk=party_id).update(
            **LiveParty.stamped(**{field: F(field) + tx.amount})
        )

    @staticmethod
    def payment_failed(tx):
        """
        Undo what a deferred live party charge granted once it failed.

        A failed entry fee revokes admission. Minutes of a failed viewer fee
        become arrears, charged again with the next report.
        """
        if tx.transaction_type == TransactionType.LIVEPARTY_ENTRY:
            LivePartyViewer.objects.filter(entry_transaction=tx).update(
                **LivePartyViewer.stamped(is_admitted=False)
            )
            logger.warning(
                "Live party admission revoked: party=%s user=%s tx=%s",
                tx.session_id,
                tx.user_id,
                tx.id,
            )
        elif tx.transaction_type == TransactionType.LIVEPARTY_VIEWER:
            fee = load_metadata(tx.transaction_type, tx.metadata)
            LivePartyViewer.objects.filter(party_id=tx.session_id, user_id=tx.user_id).update(
                **LivePartyViewer.stamped(
                    unpaid_minutes=F("unpaid_minutes") + fee.minutes,
                    failed_fee_charges=F("failed_fee_charges") + 1,
                )
            )
            logger.warning(
                "Viewer fee unpaid, minutes carried forward: party=%s user=%s minutes=%d tx=%s",
                tx.session_id,
                tx.user_id,
                fee.minutes,
                tx.id,
            )
