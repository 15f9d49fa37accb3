import functools
import logging
import time

from django.conf import settings
from django.db import InterfaceError, OperationalError

from ledger.exceptions import StorageUnavailable

logger = logging.getLogger(__name__)


def storage_guard(func):
    """Translate database connectivity errors into StorageUnavailable."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (OperationalError, InterfaceError) as exc:
            logger.warning("Ledger storage error in %s: %s", func.__qualname__, exc)
            raise StorageUnavailable(detail=str(exc)) from exc

    return wrapper


def retry_on_storage_error(func):
    """
    Retry a billing operation while storage is unavailable.

    Must wrap the outermost atomic block: each attempt starts a fresh
    database transaction. Delays double per attempt, starting at
    LEDGER_STORAGE_RETRY_DELAY seconds.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        attempts = max(1, getattr(settings, "LEDGER_STORAGE_RETRIES", 3))
        delay = getattr(settings, "LEDGER_STORAGE_RETRY_DELAY", 0.1)
        for attempt in range(1, attempts + 1):
            try:
                return storage_guard(func)(*args, **kwargs)
            except StorageUnavailable:
                if attempt == attempts:
                    logger.error(
                        "Giving up on %s after %d attempt(s).",
                        func.__qualname__,
                        attempt,
                    )
                    raise
                logger.info(
                    "Retrying %s in %.2fs (attempt %d/%d).",
                    func.__qualname__,
                    delay * 2 ** (attempt - 1),
                    attempt,
                    attempts,
                )
                if delay:
                    time.sleep(delay * 2 ** (attempt - 1))

    return wrapper
