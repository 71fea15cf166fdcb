"""Pydantic models for Hasura query results."""

from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


def validate_quantity(v: Union[str, int]) -> str:
    """Normalise a ledger quantity to a non-negative decimal integer string."""
    if isinstance(v, bool):
        raise ValueError(f"Invalid quantity: {v!r}")
    if isinstance(v, int):
        v = str(v)
    if not isinstance(v, str) or not v.isdigit() or not v.isascii():
        raise ValueError(f"Invalid quantity: {v!r}")
    return v


# Hasura Int_comparison_exp, e.g. {"_lt": 5}
IntComparisonExp = Dict[str, int]


class Asset(BaseModel):
    """Native asset row as exposed by the assets and tokens tables."""

    asset_id: str = Field(alias="assetId")
    asset_name: Optional[str] = Field(None, alias="assetName")
    policy_id: Optional[str] = Field(None, alias="policyId")
    description: Optional[str] = None
    fingerprint: Optional[str] = None
    logo: Optional[str] = None
    metadata_hash: Optional[str] = Field(None, alias="metadataHash")
    metadata_fetch_attempts: Optional[int] = Field(None, alias="metadataFetchAttempts")
    name: Optional[str] = None
    ticker: Optional[str] = None
    url: Optional[str] = None

    class Config:
        populate_by_name = True


class Token(BaseModel):
    """Quantity of one native asset held in a transaction output."""

    asset: Asset
    quantity: str

    class Config:
        populate_by_name = True

    @field_validator("quantity", mode="before")
    @classmethod
    def validate_token_quantity(cls, v):
        return validate_quantity(v)


class TransactionOutput(BaseModel):
    """Unspent output with its lovelace value and native tokens."""

    value: str
    tokens: List[Token] = Field(default_factory=list)

    class Config:
        populate_by_name = True

    @field_validator("value", mode="before")
    @classmethod
    def validate_value(cls, v):
        return validate_quantity(v)


class AssetBalance(BaseModel):
    """Total quantity of one asset across a set of outputs."""

    asset: Asset
    quantity: str

    class Config:
        populate_by_name = True

    @field_validator("quantity", mode="before")
    @classmethod
    def validate_balance_quantity(cls, v):
        return validate_quantity(v)


class PaymentAddressSummary(BaseModel):
    """Per-asset balances of an address and its UTXO count."""

    asset_balances: List[AssetBalance] = Field(alias="assetBalances")
    utxos_count: int = Field(alias="utxosCount")

    class Config:
        populate_by_name = True


class ProtocolVersion(BaseModel):
    major: int
    minor: int = 0


class SyncMeta(BaseModel):
    """Progress of cardano-db-sync relative to the node tip."""

    initialized: bool
    sync_percentage: float = Field(alias="syncPercentage")

    class Config:
        populate_by_name = True


class InsertAssetsResult(BaseModel):
    returning: List[Asset]
    affected_rows: int
