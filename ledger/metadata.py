"""
Typed metadata carried by each transaction type.

Every transaction stores a JSON ``metadata`` bag; these dataclasses fix what
goes into it per type so a call charge can never carry battle fields and the
other way round. ``session_id`` and ``beneficiary_id`` are lifted onto
indexed columns by the ledger.
"""

from dataclasses import asdict, dataclass, fields
from typing import ClassVar, Optional

from ledger.models import Transaction

TransactionType = Transaction.TransactionType


@dataclass(frozen=True)
class ChargeMetadata:
    transaction_type: ClassVar[str] = TransactionType.OTHER

    @property
    def session_id(self) -> str:
        return ""

    @property
    def beneficiary_id(self) -> str:
        return ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CallCharge(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.CALL

    call_id: str
    duration_seconds: int
    rate_per_minute: int
    receiver_id: str = ""

    @property
    def session_id(self) -> str:
        return self.call_id

    @property
    def beneficiary_id(self) -> str:
        return self.receiver_id


@dataclass(frozen=True)
class BattleTip(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.BATTLE_TIP

    battle_id: str
    host_id: str

    @property
    def session_id(self) -> str:
        return self.battle_id

    @property
    def beneficiary_id(self) -> str:
        return self.host_id


@dataclass(frozen=True)
class BattleReward(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.BATTLE_REWARD

    battle_id: str
    total_tips: int
    host1_tips: int
    host2_tips: int

    @property
    def session_id(self) -> str:
        return self.battle_id


@dataclass(frozen=True)
class LivePartyEntry(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.LIVEPARTY_ENTRY

    liveparty_id: str
    entry_fee: int
    host_id: str = ""

    @property
    def session_id(self) -> str:
        return self.liveparty_id

    @property
    def beneficiary_id(self) -> str:
        return self.host_id


@dataclass(frozen=True)
class LivePartyTip(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.LIVEPARTY_TIP

    liveparty_id: str
    host_id: str

    @property
    def session_id(self) -> str:
        return self.liveparty_id

    @property
    def beneficiary_id(self) -> str:
        return self.host_id


@dataclass(frozen=True)
class LivePartyViewerFee(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.LIVEPARTY_VIEWER

    liveparty_id: str
    from_minute: int
    to_minute: int
    rate_per_minute: int
    arrears_minutes: int = 0

    @property
    def minutes(self) -> int:
        return self.to_minute - self.from_minute + self.arrears_minutes

    @property
    def session_id(self) -> str:
        return self.liveparty_id


@dataclass(frozen=True)
class WalletTopup(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.WALLET_TOPUP

    stars: int
    payment_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class Subscription(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.SUBSCRIPTION

    plan: str


@dataclass(frozen=True)
class MessageUnlock(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.MESSAGE_UNLOCK

    chat_id: str
    message_id: str
    sender_id: str = ""

    @property
    def session_id(self) -> str:
        return self.chat_id

    @property
    def beneficiary_id(self) -> str:
        return self.sender_id


@dataclass(frozen=True)
class CurrencyConversion(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.CONVERSION

    from_currency: str
    to_currency: str
    source_amount: int
    converted_amount: int
    debit_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class Clawback(ChargeMetadata):
    transaction_type: ClassVar[str] = TransactionType.CLAWBACK

    source_transaction_id: str
    reason: str = ""


@dataclass(frozen=True)
class Other(ChargeMetadata):
    note: str = ""


METADATA_TYPES = {
    cls.transaction_type: cls
    for cls in (
        CallCharge,
        BattleTip,
        BattleReward,
        LivePartyEntry,
        LivePartyTip,
        LivePartyViewerFee,
        WalletTopup,
        Subscription,
        MessageUnlock,
        CurrencyConversion,
        Clawback,
        Other,
    )
}


def load_metadata(transaction_type, data):
    """Rebuild the metadata variant stored on a transaction."""
    cls = METADATA_TYPES[transaction_type]
    names = {f.name for f in fields(cls)}
    return cls(**{key: value for key, value in (data or {}).items() if key in names})
