"""Transaction build/sign/encode pipeline.

Four independently testable stages:
1. parse: untyped params -> TransactionRequest (InvalidParams on bad input)
2. apply_defaults: fill nonce, chain id and gas fields
3. sign: signing hash -> backend signature -> SignedTransactionEnvelope
4. encode: envelope -> 0x-prefixed typed transaction bytes

Encoding follows the canonical Ethereum formats: EIP-155 legacy
transactions, EIP-2930 (type 1) and EIP-1559 (type 2) envelopes.
"""

import logging
from typing import Any, Optional

import rlp
from pydantic import ValidationError

from signerproxy.contracts.transactions import (
    ACCESS_LIST_TX,
    DYNAMIC_FEE_TX,
    LEGACY_TX,
    SignedTransactionEnvelope,
    TransactionRequest,
)
from signerproxy.errors import GatewayError, InvalidParams, SigningFailed
from signerproxy.services.defaults import DefaultsSource
from signerproxy.signing.base import KeySigner
from signerproxy.signing.secp256k1 import keccak256

logger = logging.getLogger(__name__)


def _rlp_int(i: int) -> bytes:
    if i == 0:
        return b""
    return int(i).to_bytes((int(i).bit_length() + 7) // 8, "big")


def _address_bytes(address: str) -> bytes:
    return bytes.fromhex(address[2:])


def _access_list(tx: TransactionRequest) -> list:
    return [
        [_address_bytes(entry.address), [bytes.fromhex(key[2:]) for key in entry.storage_keys]]
        for entry in tx.access_list or []
    ]


def _unsigned_fields(tx: TransactionRequest) -> list:
    """RLP fields of a typed transaction, without the signature."""
    common = [
        _rlp_int(tx.gas),
        _address_bytes(tx.to),
        _rlp_int(tx.value),
        tx.data,
    ]
    if tx.tx_type == LEGACY_TX:
        return [_rlp_int(tx.nonce), _rlp_int(tx.gas_price)] + common
    if tx.tx_type == ACCESS_LIST_TX:
        return [_rlp_int(tx.chain_id), _rlp_int(tx.nonce), _rlp_int(tx.gas_price)] + common + [
            _access_list(tx)
        ]
    return [
        _rlp_int(tx.chain_id),
        _rlp_int(tx.nonce),
        _rlp_int(tx.max_priority_fee_per_gas),
        _rlp_int(tx.max_fee_per_gas),
    ] + common + [_access_list(tx)]


def signing_payload(tx: TransactionRequest) -> bytes:
    """The bytes whose keccak256 hash is signed."""
    fields = _unsigned_fields(tx)
    if tx.tx_type == LEGACY_TX:
        # EIP-155 replay protection
        return rlp.encode(fields + [_rlp_int(tx.chain_id), b"", b""])
    return bytes([tx.tx_type]) + rlp.encode(fields)


def signing_hash(tx: TransactionRequest) -> bytes:
    return keccak256(signing_payload(tx))


def serialize(envelope: SignedTransactionEnvelope) -> bytes:
    """Canonical wire bytes of a signed transaction."""
    tx = envelope.transaction
    sig = envelope.signature
    fields = _unsigned_fields(tx)
    if tx.tx_type == LEGACY_TX:
        v = sig.recovery_id + 35 + 2 * tx.chain_id
        return rlp.encode(fields + [_rlp_int(v), _rlp_int(sig.r), _rlp_int(sig.s)])
    signed = fields + [_rlp_int(sig.recovery_id), _rlp_int(sig.r), _rlp_int(sig.s)]
    return bytes([tx.tx_type]) + rlp.encode(signed)


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


class TransactionEncoder:
    """Turns eth_signTransaction params into a signed raw transaction."""

    def __init__(self, defaults: DefaultsSource):
        self.defaults = defaults

    def parse(self, params: Optional[Any]) -> TransactionRequest:
        """Validate the first parameter as a transaction object.

        Raises:
            InvalidParams: If params is empty/absent or fails the schema
        """
        if params is None or params == [] or params == {}:
            raise InvalidParams("params is empty")
        if not isinstance(params, list):
            raise InvalidParams("params must be an array")

        try:
            return TransactionRequest.model_validate(params[0])
        except ValidationError as e:
            raise InvalidParams(f"invalid transaction: {_describe(e)}")

    @staticmethod
    def _check_sender(tx: TransactionRequest, signer: KeySigner) -> None:
        if tx.from_address is not None and tx.from_address.lower() != signer.address.lower():
            raise InvalidParams(
                f"from address {tx.from_address} does not match key address {signer.address}"
            )

    async def apply_defaults(self, tx: TransactionRequest, signer: KeySigner) -> TransactionRequest:
        """Fill fields the caller did not supply."""
        self._check_sender(tx, signer)
        tx = await self.defaults.apply(tx, signer.address)
        missing = tx.missing_fields
        if missing:
            raise InvalidParams(f"missing transaction fields: {', '.join(missing)}")
        return tx

    async def sign(self, tx: TransactionRequest, signer: KeySigner) -> SignedTransactionEnvelope:
        """Sign the canonical signing hash with the backend key.

        Raises:
            InvalidParams: If `from` names a different account than the key
            SigningFailed: If the backend rejects or faults
        """
        self._check_sender(tx, signer)
        missing = tx.missing_fields
        if missing:
            raise InvalidParams(f"missing transaction fields: {', '.join(missing)}")

        digest = signing_hash(tx)
        try:
            signature = await signer.sign_digest(digest)
        except GatewayError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected signing failure for key {signer.key_id}")
            raise SigningFailed(f"signing failed: {e}")

        logger.info(f"Signed type {tx.tx_type} transaction with key {signer.key_id} (nonce {tx.nonce})")
        return SignedTransactionEnvelope(transaction=tx, signature=signature)

    def encode(self, envelope: SignedTransactionEnvelope) -> str:
        """Render the envelope as a lowercase 0x-prefixed hex string."""
        return "0x" + serialize(envelope).hex()

    async def sign_transaction(self, params: Optional[Any], signer: KeySigner) -> str:
        """Run all four stages."""
        tx = self.parse(params)
        tx = await self.apply_defaults(tx, signer)
        envelope = await self.sign(tx, signer)
        return self.encode(envelope)
