"""Transaction contracts for eth_signTransaction.

TransactionRequest is the schema-checked form of the first parameter of an
eth_signTransaction call. Field names follow the Ethereum JSON-RPC
convention (camelCase); quantities may be hex strings, decimal strings or
JSON integers.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from signerproxy.signing.base import Signature

MAX_UINT256 = 2**256 - 1

LEGACY_TX = 0
ACCESS_LIST_TX = 1
DYNAMIC_FEE_TX = 2
SUPPORTED_TX_TYPES = (LEGACY_TX, ACCESS_LIST_TX, DYNAMIC_FEE_TX)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HEX_RE = re.compile(r"^0x([0-9a-fA-F]{2})*$")
_STORAGE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def parse_quantity(value: Any, name: str = "quantity") -> int:
    """Parse a JSON quantity: 0x-hex string, decimal string or integer."""
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a quantity, not a boolean")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith("0x"):
                number = int(text, 16)
            elif text.isascii() and text.isdigit():
                number = int(text)
            else:
                raise ValueError
        except ValueError:
            raise ValueError(f"{name} is not a valid quantity: {value!r}")
    else:
        raise ValueError(f"{name} must be a hex string or integer")
    if not 0 <= number <= MAX_UINT256:
        raise ValueError(f"{name} out of range")
    return number


def validate_address(value: Any) -> str:
    if not isinstance(value, str) or not _ADDRESS_RE.match(value):
        raise ValueError(f"invalid address: {value!r}")
    return value


class AccessListEntry(BaseModel):
    """One EIP-2930 access list item."""

    model_config = ConfigDict(populate_by_name=True)

    address: str
    storage_keys: list[str] = Field(default_factory=list, alias="storageKeys")

    @field_validator("address", mode="before")
    @classmethod
    def _check_address(cls, value):
        return validate_address(value)

    @field_validator("storage_keys")
    @classmethod
    def _check_storage_keys(cls, value: list[str]) -> list[str]:
        for key in value:
            if not _STORAGE_KEY_RE.match(key):
                raise ValueError(f"invalid storage key: {key!r}")
        return value


class TransactionRequest(BaseModel):
    """Semantic transaction fields supplied by the caller.

    Fields the caller leaves out (nonce, chain id, gas parameters) are
    filled by the signing pipeline before the signing hash is computed.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    from_address: Optional[str] = Field(None, alias="from", description="Expected sender")
    to: str = Field(..., description="Recipient address")
    value: int = Field(default=0, description="Value in wei")
    nonce: Optional[int] = Field(None, description="Sender nonce")
    chain_id: Optional[int] = Field(None, alias="chainId", description="EIP-155 chain id")
    gas: Optional[int] = Field(None, description="Gas limit")
    gas_price: Optional[int] = Field(None, alias="gasPrice", description="Legacy gas price")
    max_fee_per_gas: Optional[int] = Field(None, alias="maxFeePerGas", description="EIP-1559 max fee")
    max_priority_fee_per_gas: Optional[int] = Field(
        None, alias="maxPriorityFeePerGas", description="EIP-1559 priority fee"
    )
    data: bytes = Field(default=b"", description="Call data")
    access_list: Optional[list[AccessListEntry]] = Field(None, alias="accessList")
    tx_type: Optional[int] = Field(None, alias="type", description="Envelope type (0, 1, 2)")

    @model_validator(mode="before")
    @classmethod
    def _merge_aliases(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            raise ValueError("transaction must be a JSON object")
        values = dict(values)
        if "input" in values:
            data = values.pop("input")
            if values.get("data") not in (None, data):
                raise ValueError("both input and data are set and differ")
            values["data"] = data
        if "gasLimit" in values:
            gas_limit = values.pop("gasLimit")
            if values.get("gas") is None:
                values["gas"] = gas_limit
        return values

    @field_validator("from_address", "to", mode="before")
    @classmethod
    def _check_addresses(cls, value):
        if value is None:
            return value
        return validate_address(value)

    @field_validator(
        "value",
        "nonce",
        "chain_id",
        "gas",
        "gas_price",
        "max_fee_per_gas",
        "max_priority_fee_per_gas",
        "tx_type",
        mode="before",
    )
    @classmethod
    def _check_quantity(cls, value, info):
        if value is None:
            return value
        return parse_quantity(value, info.field_name)

    @field_validator("data", mode="before")
    @classmethod
    def _check_data(cls, value):
        if value is None:
            return b""
        if not isinstance(value, str) or not _HEX_RE.match(value):
            raise ValueError("data must be a 0x-prefixed hex string")
        return bytes.fromhex(value[2:])

    @model_validator(mode="after")
    def _select_type(self) -> "TransactionRequest":
        has_fee_market = self.max_fee_per_gas is not None or self.max_priority_fee_per_gas is not None

        tx_type = self.tx_type
        if tx_type is None:
            if has_fee_market:
                tx_type = DYNAMIC_FEE_TX
            elif self.gas_price is not None and self.access_list is not None:
                tx_type = ACCESS_LIST_TX
            elif self.gas_price is not None:
                tx_type = LEGACY_TX
            else:
                tx_type = DYNAMIC_FEE_TX

        if tx_type not in SUPPORTED_TX_TYPES:
            raise ValueError(f"unsupported transaction type: {tx_type}")
        if tx_type != DYNAMIC_FEE_TX and has_fee_market:
            raise ValueError("maxFeePerGas/maxPriorityFeePerGas require a type 2 transaction")
        if tx_type == DYNAMIC_FEE_TX and self.gas_price is not None:
            raise ValueError("gasPrice cannot be used with a type 2 transaction")
        if tx_type == LEGACY_TX and self.access_list:
            raise ValueError("legacy transactions cannot carry an access list")

        self.tx_type = tx_type
        return self

    @property
    def missing_fields(self) -> list[str]:
        """Fields that must be filled before signing."""
        required = ["nonce", "chain_id", "gas"]
        if self.tx_type == DYNAMIC_FEE_TX:
            required += ["max_fee_per_gas", "max_priority_fee_per_gas"]
        else:
            required.append("gas_price")
        return [name for name in required if getattr(self, name) is None]


@dataclass(frozen=True)
class SignedTransactionEnvelope:
    """A fully defaulted transaction bundled with its signature."""

    transaction: TransactionRequest
    signature: Signature
