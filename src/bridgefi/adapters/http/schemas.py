# src/bridgefi/adapters/http/schemas.py
"""
HTTP Request Schemas

Pydantic models for the JSON bodies of the public API. Field names follow
the API's camelCase; the wallet-app names (``ngnAmount``, ``usdcAmount``,
``txHash``) and the generic names (``fiatAmount``, ``stableAmount``,
``chainTxHash``) are both accepted.

Amounts are taken as given (number or string) and validated by the
application layer, so a bad amount gets the same error from every entry point.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class OnrampInitiateRequest(_Body):
    fiat_amount: Any = Field(validation_alias=AliasChoices("fiatAmount", "ngnAmount"))
    user_address: str = Field(validation_alias=AliasChoices("userAddress", "ownerAddress"))


class OnrampVerifyRequest(_Body):
    reference: str = Field(min_length=1)
    quote_data: Optional[Dict[str, Any]] = Field(default=None, validation_alias=AliasChoices("quoteData"))


class OfframpInitiateRequest(_Body):
    stable_amount: Any = Field(validation_alias=AliasChoices("stableAmount", "usdcAmount"))
    bank_account: str = Field(validation_alias=AliasChoices("bankAccount"))
    bank_code: str = Field(validation_alias=AliasChoices("bankCode"))
    account_name: str = Field(validation_alias=AliasChoices("accountName"))

    @field_validator("bank_account", "bank_code", "account_name", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Any:
        # Bank codes and account numbers often arrive as JSON numbers
        return str(v) if isinstance(v, int) else v


class OfframpExecuteRequest(_Body):
    quote_id: str = Field(min_length=1, validation_alias=AliasChoices("quoteId"))
    chain_tx_hash: str = Field(min_length=1, validation_alias=AliasChoices("chainTxHash", "txHash"))
    quote_data: Optional[Dict[str, Any]] = Field(default=None, validation_alias=AliasChoices("quoteData"))


class RefundRequest(_Body):
    user_address: str = Field(validation_alias=AliasChoices("userAddress", "ownerAddress"))
    stable_amount: Any = Field(validation_alias=AliasChoices("stableAmount", "usdcAmount"))
    chain_tx_hash: Optional[str] = Field(default=None, validation_alias=AliasChoices("chainTxHash", "txHash"))
    reason: Optional[str] = None
