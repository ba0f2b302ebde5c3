"""Sources for transaction fields the caller did not supply."""

import logging
from abc import ABC, abstractmethod
from typing import Any

from signerproxy.contracts.transactions import (
    DYNAMIC_FEE_TX,
    TransactionRequest,
    parse_quantity,
)
from signerproxy.errors import InvalidParams, UpstreamUnavailable
from signerproxy.services.upstream import UpstreamProxy

logger = logging.getLogger(__name__)


class DefaultsSource(ABC):
    """Fills network-required fields of a transaction."""

    @abstractmethod
    async def apply(self, tx: TransactionRequest, sender: str) -> TransactionRequest:
        pass


class NodeDefaults(DefaultsSource):
    """Queries the upstream node for every missing field.

    For a fixed node state the filled values are deterministic. The
    default max fee is twice the latest base fee plus the priority fee.
    """

    def __init__(self, upstream: UpstreamProxy):
        self.upstream = upstream

    async def _quantity(self, method: str, params: list) -> int:
        result = await self.upstream.call(method, params)
        try:
            return parse_quantity(result, method)
        except ValueError as e:
            raise UpstreamUnavailable(f"upstream node returned an invalid quantity: {e}")

    async def apply(self, tx: TransactionRequest, sender: str) -> TransactionRequest:
        updates: dict[str, Any] = {}

        if tx.chain_id is None:
            updates["chain_id"] = await self._quantity("eth_chainId", [])

        if tx.nonce is None:
            updates["nonce"] = await self._quantity("eth_getTransactionCount", [sender, "pending"])

        if tx.gas is None:
            call = {
                "from": sender,
                "to": tx.to,
                "value": hex(tx.value),
                "data": "0x" + tx.data.hex(),
            }
            updates["gas"] = await self._quantity("eth_estimateGas", [call])

        if tx.tx_type == DYNAMIC_FEE_TX:
            priority_fee = tx.max_priority_fee_per_gas
            if priority_fee is None:
                priority_fee = await self._quantity("eth_maxPriorityFeePerGas", [])
                updates["max_priority_fee_per_gas"] = priority_fee
            if tx.max_fee_per_gas is None:
                block = await self.upstream.call("eth_getBlockByNumber", ["latest", False])
                if not isinstance(block, dict) or block.get("baseFeePerGas") is None:
                    raise UpstreamUnavailable("upstream node did not report a base fee")
                try:
                    base_fee = parse_quantity(block["baseFeePerGas"], "baseFeePerGas")
                except ValueError as e:
                    raise UpstreamUnavailable(f"upstream node returned an invalid quantity: {e}")
                updates["max_fee_per_gas"] = 2 * base_fee + priority_fee
        elif tx.gas_price is None:
            updates["gas_price"] = await self._quantity("eth_gasPrice", [])

        if updates:
            logger.debug(f"Filled {sorted(updates)} from upstream node")
        return tx.model_copy(update=updates)


class StaticDefaults(DefaultsSource):
    """Fills only what can be known without a node.

    The chain id comes from configuration and fee fields default to zero;
    a missing nonce or gas limit is the caller's error.
    """

    def __init__(self, chain_id: int):
        self.chain_id = chain_id

    async def apply(self, tx: TransactionRequest, sender: str) -> TransactionRequest:
        for name, label in (("nonce", "nonce"), ("gas", "gas")):
            if getattr(tx, name) is None:
                raise InvalidParams(f"missing {label} (node defaults are disabled)")

        updates: dict[str, Any] = {}
        if tx.chain_id is None:
            updates["chain_id"] = self.chain_id
        if tx.tx_type == DYNAMIC_FEE_TX:
            if tx.max_priority_fee_per_gas is None:
                updates["max_priority_fee_per_gas"] = 0
            if tx.max_fee_per_gas is None:
                updates["max_fee_per_gas"] = 0
        elif tx.gas_price is None:
            updates["gas_price"] = 0
        return tx.model_copy(update=updates)
