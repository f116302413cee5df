"""Protocol message models: context block and typed inbound requests."""

from dataclasses import dataclass, field
from enum import StrEnum

from rsf.models.settlement import ExchangeContext


class Action(StrEnum):
    SETTLE = "settle"
    ON_SETTLE = "on_settle"
    RECON = "recon"
    ON_RECON = "on_recon"


class Direction(StrEnum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


@dataclass(frozen=True)
class Context:
    domain: str
    version: str
    action: Action
    bap_id: str
    bap_uri: str
    bpp_id: str
    bpp_uri: str
    transaction_id: str
    message_id: str
    timestamp: str
    ttl: str = "P1D"
    country: str = "IND"
    city: str = "*"

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "location": {
                "country": {"code": self.country},
                "city": {"code": self.city},
            },
            "version": self.version,
            "action": self.action.value,
            "bap_id": self.bap_id,
            "bap_uri": self.bap_uri,
            "bpp_id": self.bpp_id,
            "bpp_uri": self.bpp_uri,
            "transaction_id": self.transaction_id,
            "message_id": self.message_id,
            "timestamp": self.timestamp,
            "ttl": self.ttl,
        }

    def exchange(self) -> ExchangeContext:
        return ExchangeContext(
            transaction_id=self.transaction_id,
            message_id=self.message_id,
            bap_id=self.bap_id,
            bap_uri=self.bap_uri,
            bpp_id=self.bpp_id,
            bpp_uri=self.bpp_uri,
        )


# --- Inbound requests (already shape-validated by the boundary) ---


@dataclass(frozen=True)
class ReconOrder:
    """One order of an inbound recon. Amounts stay raw until validated."""

    order_id: str
    settlement_id: str | None
    amount: str | None
    commission: str | None
    withholding_amount: str | None
    tcs: str | None
    tds: str | None


@dataclass(frozen=True)
class InboundRecon:
    context: Context
    orders: list[ReconOrder]
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class OnReconOrder:
    order_id: str
    accord: bool
    amount: str | None = None
    commission: str | None = None
    withholding_amount: str | None = None
    tcs: str | None = None
    tds: str | None = None
    due_date: str | None = None


@dataclass(frozen=True)
class InboundOnRecon:
    context: Context
    orders: list[OnReconOrder] = field(default_factory=list)
    error: dict | None = None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SideReport:
    status: str | None = None
    settlement_reference: str | None = None


@dataclass(frozen=True)
class OnSettleOrder:
    order_id: str
    inter_participant: SideReport | None = None
    self_side: SideReport | None = None
    provider: SideReport | None = None


@dataclass(frozen=True)
class InboundOnSettle:
    context: Context
    orders: list[OnSettleOrder]
    raw: dict = field(default_factory=dict)


# --- Operator requests for outbound triggers ---


@dataclass(frozen=True)
class ReconRequest:
    """Ask the counterparty to reconcile one order, optionally with our own figures."""

    order_id: str
    amount: float | None = None
    commission: float | None = None
    withholding_amount: float | None = None
    tcs: float | None = None
    tds: float | None = None


@dataclass(frozen=True)
class OnReconReply:
    order_id: str
    accord: bool
    amount: float | None = None
    commission: float | None = None
    withholding_amount: float | None = None
    tcs: float | None = None
    tds: float | None = None
    due_date: str | None = None


@dataclass(frozen=True)
class MiscFiling:
    """A settle filing that is not tied to orders: a provider payout, a self amount, or both."""

    provider_id: str | None = None
    provider_amount: float | None = None
    self_amount: float | None = None
