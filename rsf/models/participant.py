"""Participant profile: the read-only configuration of one network participant."""

from dataclasses import dataclass, field

from rsf.models.common import Role


@dataclass(frozen=True)
class ProviderDetails:
    provider_id: str
    account_number: str
    ifsc_code: str
    bank_name: str


@dataclass(frozen=True)
class ParticipantProfile:
    participant_id: str
    role: Role
    subscriber_id: str
    subscriber_url: str
    domain: str
    np_tcs: float = 0.0  # percent
    np_tds: float = 0.0  # percent
    msn: bool = False
    provider_details: list[ProviderDetails] = field(default_factory=list)
    counterparties: list[str] = field(default_factory=list)

    def provider(self, provider_id: str) -> ProviderDetails | None:
        for p in self.provider_details:
            if p.provider_id == provider_id:
                return p
        return None

    def allows(self, counterparty_id: str) -> bool:
        """Empty allowlist means every counterparty is accepted."""
        return not self.counterparties or counterparty_id in self.counterparties
