"""Remote-key signing backends.

Provides signer providers that keep keys outside the process:
- YubiHsmProvider: YubiHSM 2 over USB or yubihsm-connector
- KMSProvider: AWS KMS-backed signing
- LocalProvider: in-memory keys for development
"""

from signerproxy.signing.base import (
    KeyId,
    KeySigner,
    Signature,
    SignerProvider,
    SignerType,
)
from signerproxy.signing.cache import SignerCache
from signerproxy.signing.factory import create_provider
from signerproxy.signing.local import LocalProvider

__all__ = [
    "KeyId",
    "KeySigner",
    "Signature",
    "SignerProvider",
    "SignerType",
    "SignerCache",
    "LocalProvider",
    "create_provider",
]
