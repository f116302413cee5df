"""Pydantic v2 configuration schema with strict validation."""

from pydantic import BaseModel, Field


class NetworkConfig(BaseModel):
    model_config = {"extra": "forbid"}

    domain: str = "ONDC:NTS10"
    version: str = "2.0.0"
    ttl: str = "P1D"
    country: str = "IND"
    city: str = "*"
    currency: str = "INR"
    # Orders in this domain carry the item-tax adjustment in the calculator
    special_domain: str = "ONDC:RET11"


class SigningConfig(BaseModel):
    model_config = {"extra": "forbid"}

    subscriber_id: str = ""
    unique_key_id: str = ""
    private_key: str = ""  # base64 Ed25519 seed or seed+public key
    signature_ttl_seconds: int = Field(default=300, ge=1)


class AgencyConfig(BaseModel):
    model_config = {"extra": "forbid"}

    agency_id: str = ""
    agency_url: str = ""
    public_key: str = ""


class CounterpartyKey(BaseModel):
    model_config = {"extra": "forbid"}

    subscriber_id: str
    unique_key_id: str = ""
    public_key: str


class GatewayConfig(BaseModel):
    model_config = {"extra": "forbid"}

    timeout_seconds: float = Field(default=30.0, gt=0.0)
    verify_inbound_signatures: bool = True


class StorageConfig(BaseModel):
    model_config = {"extra": "forbid"}

    db_path: str = "data/rsf.db"
    # False selects sequential commits journaled in batch_audit
    atomic_batches: bool = True


class RsfConfig(BaseModel):
    model_config = {"extra": "forbid"}

    network: NetworkConfig = NetworkConfig()
    signing: SigningConfig = SigningConfig()
    agency: AgencyConfig = AgencyConfig()
    gateway: GatewayConfig = GatewayConfig()
    storage: StorageConfig = StorageConfig()
    counterparty_keys: list[CounterpartyKey] = []

    def public_key_for(self, subscriber_id: str) -> str | None:
        if self.agency.agency_id and subscriber_id == self.agency.agency_id:
            return self.agency.public_key or None
        for key in self.counterparty_keys:
            if key.subscriber_id == subscriber_id:
                return key.public_key
        return None
