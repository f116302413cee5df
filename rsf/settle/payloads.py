"""`settle` message builders for order settlements and order-less filings.

NP-NP settles a batch of prepared orders. NIL declares there is nothing to
settle for the period, and MISC files provider or self amounts that are not
tied to any order.
"""

import logging
import math

from rsf.config.schema import RsfConfig
from rsf.errors import PreconditionError, ValidationError
from rsf.models.common import money_str
from rsf.models.outcome import ErrorCode
from rsf.models.participant import ParticipantProfile
from rsf.models.protocol import Action, Context, MiscFiling
from rsf.models.settlement import Settlement, SettleType

logger = logging.getLogger(__name__)


def settle_context(
    config: RsfConfig,
    profile: ParticipantProfile,
    transaction_id: str,
    message_id: str,
    timestamp: str,
) -> Context:
    """Settle messages go from the participant to the settlement agency."""
    net = config.network
    return Context(
        domain=net.domain,
        version=net.version,
        action=Action.SETTLE,
        bap_id=profile.subscriber_id,
        bap_uri=profile.subscriber_url,
        bpp_id=config.agency.agency_id,
        bpp_uri=config.agency.agency_url,
        transaction_id=transaction_id,
        message_id=message_id,
        timestamp=timestamp,
        ttl=net.ttl,
        country=net.country,
        city=net.city,
    )


def build_settle_payload(
    config: RsfConfig,
    profile: ParticipantProfile,
    settlements: list[Settlement],
    context: Context,
    settlement_batch_id: str,
) -> dict:
    """One NP-NP settlement covering every order of a counterparty group."""
    currency = config.network.currency
    first = settlements[0]
    orders = []
    for s in settlements:
        provider = profile.provider(s.provider_id)
        if provider is None:
            raise PreconditionError(
                ErrorCode.PROVIDER_NOT_FOUND,
                f"No bank details for provider {s.provider_id}",
                s.order_id,
            )
        orders.append({
            "id": s.order_id,
            "inter_participant": {
                "amount": {"currency": currency, "value": money_str(s.inter_np_settlement)},
            },
            "collector": {
                "amount": {"currency": currency, "value": money_str(s.commission)},
            },
            "provider": {
                "id": s.provider_id,
                "name": provider.bank_name,
                "bank_details": {
                    "account_no": provider.account_number,
                    "ifsc_code": provider.ifsc_code,
                },
                "amount": {"currency": currency, "value": money_str(s.total_order_value)},
            },
            "self": {
                "amount": {"currency": currency, "value": money_str(s.withholding_amount)},
            },
        })
    return {
        "context": context.to_dict(),
        "message": {
            "collector_app_id": first.collector_id,
            "receiver_app_id": first.receiver_id,
            "settlement": {
                "type": SettleType.NP_NP.value,
                "id": settlement_batch_id,
                "orders": orders,
            },
        },
    }


def build_nil_payload(
    profile: ParticipantProfile, context: Context, settlement_batch_id: str
) -> dict:
    return {
        "context": context.to_dict(),
        "message": {
            "collector_app_id": profile.subscriber_id,
            "settlement": {"type": SettleType.NIL.value, "id": settlement_batch_id},
        },
    }


def build_misc_payload(
    config: RsfConfig,
    profile: ParticipantProfile,
    filing: MiscFiling,
    context: Context,
    settlement_batch_id: str,
) -> dict:
    """A MISC filing carries whichever of the provider and self amounts is positive.

    Raises ValidationError when neither is.
    """
    currency = config.network.currency
    provider_valid = _positive(filing.provider_amount)
    self_valid = _positive(filing.self_amount)
    if not provider_valid and not self_valid:
        raise ValidationError(
            ErrorCode.INVALID_AMOUNT, "Both provider and self amounts are zero or missing"
        )

    entry: dict = {}
    if provider_valid:
        if not filing.provider_id:
            raise ValidationError(
                ErrorCode.MISSING_FIELD, "provider_id is required with a provider amount"
            )
        provider = profile.provider(filing.provider_id)
        if provider is None:
            raise PreconditionError(
                ErrorCode.PROVIDER_NOT_FOUND, f"No bank details for provider {filing.provider_id}"
            )
        entry["provider"] = {
            "id": provider.provider_id,
            "name": provider.bank_name,
            "bank_details": {
                "account_no": provider.account_number,
                "ifsc_code": provider.ifsc_code,
            },
            "amount": {"currency": currency, "value": money_str(filing.provider_amount)},
        }
    if self_valid:
        entry["self"] = {"amount": {"currency": currency, "value": money_str(filing.self_amount)}}
    logger.info("Built MISC filing with %s", ", ".join(sorted(entry)))

    return {
        "context": context.to_dict(),
        "message": {
            "collector_app_id": profile.subscriber_id,
            "settlement": {
                "type": SettleType.MISC.value,
                "id": settlement_batch_id,
                "orders": [entry],
            },
        },
    }


def _positive(amount: float | None) -> bool:
    return amount is not None and math.isfinite(amount) and amount > 0
