"""Wire contracts for the signing gateway."""

from signerproxy.contracts.jsonrpc import (
    AddressResponse,
    JsonRpcReply,
    JsonRpcRequest,
    RawReply,
)
from signerproxy.contracts.transactions import (
    SignedTransactionEnvelope,
    TransactionRequest,
)

__all__ = [
    "AddressResponse",
    "JsonRpcReply",
    "JsonRpcRequest",
    "RawReply",
    "SignedTransactionEnvelope",
    "TransactionRequest",
]
