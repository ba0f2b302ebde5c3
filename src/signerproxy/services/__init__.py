"""Request-handling services: dispatch, transaction pipeline, upstream proxy."""

from signerproxy.services.defaults import DefaultsSource, NodeDefaults, StaticDefaults
from signerproxy.services.dispatcher import Dispatcher
from signerproxy.services.transaction_encoder import TransactionEncoder
from signerproxy.services.upstream import UpstreamProxy

__all__ = [
    "DefaultsSource",
    "Dispatcher",
    "NodeDefaults",
    "StaticDefaults",
    "TransactionEncoder",
    "UpstreamProxy",
]
