from ledger.utils.payments import (
    fetch_payment_status,
    map_payment_status,
    request_payment_order,
)
from ledger.utils.retry import retry_on_storage_error, storage_guard

__all__ = [
    "fetch_payment_status",
    "map_payment_status",
    "request_payment_order",
    "retry_on_storage_error",
    "storage_guard",
]
