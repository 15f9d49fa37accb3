"""
Notification seam for billing outcomes.

Chat/push layers connect to ``billing_outcome`` to tell users what happened
(e.g. a system message after a call was charged). Receivers only observe;
they never get a handle that can mutate wallets. The signal fires after
the database transaction commits, so rolled-back charges are never announced.
"""

import logging

from django.db import transaction
from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# Sent with: event (str), transaction (Transaction | None), session (model | None), detail (dict)
billing_outcome = Signal()


def announce(event, transaction_record=None, session=None, **detail):
    def send():
        billing_outcome.send(
            sender=type(session) if session is not None else None,
            event=event,
            transaction=transaction_record,
            session=session,
            detail=detail,
        )

    transaction.on_commit(send)


@receiver(billing_outcome)
def log_billing_outcome(sender, event, transaction, session, detail, **kwargs):
    logger.info(
        "Billing outcome: event=%s tx=%s session=%s detail=%s",
        event,
        getattr(transaction, "id", None),
        session,
        detail,
    )
