"""Settlement models and the embedded reconciliation value object."""

from dataclasses import dataclass, field
from enum import StrEnum


class SettlementStatus(StrEnum):
    PREPARED = "PREPARED"
    PENDING = "PENDING"
    SETTLED = "SETTLED"
    NOT_SETTLED = "NOT_SETTLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SettlementStatus.SETTLED, SettlementStatus.NOT_SETTLED)


class SettleType(StrEnum):
    NP_NP = "NP-NP"
    NIL = "NIL"
    MISC = "MISC"


class SideStatus(StrEnum):
    """Per-side status reported by the counterparty in on_settle."""

    PENDING = "PENDING"
    SETTLED = "SETTLED"
    NOT_SETTLED = "NOT_SETTLED"

    @classmethod
    def parse(cls, raw: str | None) -> "SideStatus | None":
        if not raw:
            return None
        return cls(raw.strip().upper().replace("-", "_"))


class ReconStatus(StrEnum):
    SENT_PENDING = "SENT_PENDING"
    SENT_ACCEPTED = "SENT_ACCEPTED"
    SENT_REJECTED = "SENT_REJECTED"
    RECEIVED_PENDING = "RECEIVED_PENDING"
    RECEIVED_ACCEPTED = "RECEIVED_ACCEPTED"
    RECEIVED_REJECTED = "RECEIVED_REJECTED"
    INACTIVE = "INACTIVE"


@dataclass(frozen=True)
class ReconAmounts:
    amount: float
    commission: float
    withholding_amount: float
    tcs: float
    tds: float

    def to_dict(self) -> dict[str, float]:
        return {
            "amount": self.amount,
            "commission": self.commission,
            "withholding_amount": self.withholding_amount,
            "tcs": self.tcs,
            "tds": self.tds,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "ReconAmounts | None":
        if not data:
            return None
        return cls(
            amount=float(data.get("amount", 0.0)),
            commission=float(data.get("commission", 0.0)),
            withholding_amount=float(data.get("withholding_amount", 0.0)),
            tcs=float(data.get("tcs", 0.0)),
            tds=float(data.get("tds", 0.0)),
        )


@dataclass(frozen=True)
class ExchangeContext:
    """Protocol identifiers binding a batch of orders to one exchange."""

    transaction_id: str
    message_id: str
    bap_id: str = ""
    bap_uri: str = ""
    bpp_id: str = ""
    bpp_uri: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "transaction_id": self.transaction_id,
            "message_id": self.message_id,
            "bap_id": self.bap_id,
            "bap_uri": self.bap_uri,
            "bpp_id": self.bpp_id,
            "bpp_uri": self.bpp_uri,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "ExchangeContext | None":
        if not data or not data.get("transaction_id"):
            return None
        return cls(
            transaction_id=data["transaction_id"],
            message_id=data.get("message_id", ""),
            bap_id=data.get("bap_id", ""),
            bap_uri=data.get("bap_uri", ""),
            bpp_id=data.get("bpp_id", ""),
            bpp_uri=data.get("bpp_uri", ""),
        )


@dataclass(frozen=True)
class ReconciliationInfo:
    recon_status: ReconStatus | None = None
    recon_data: ReconAmounts | None = None
    on_recon_data: ReconAmounts | None = None
    context: ExchangeContext | None = None
    settlement_ref: str | None = None
    error: dict | None = None
    due_date: str | None = None


@dataclass(frozen=True)
class Settlement:
    settlement_id: str
    participant_id: str
    order_id: str
    collector_id: str
    receiver_id: str
    provider_id: str
    total_order_value: float
    commission: float
    tcs: float
    tds: float
    withholding_amount: float
    inter_np_settlement: float
    collector_settlement: float
    status: SettlementStatus = SettlementStatus.PREPARED
    self_status: SideStatus | None = None
    provider_status: SideStatus | None = None
    settlement_reference: str | None = None
    self_settlement_reference: str | None = None
    provider_settlement_reference: str | None = None
    error: str | None = None
    due_date: str | None = None
    context: ExchangeContext | None = None
    recon: ReconciliationInfo = field(default_factory=ReconciliationInfo)

    @property
    def counterparty_pair(self) -> tuple[str, str]:
        return (self.collector_id, self.receiver_id)
