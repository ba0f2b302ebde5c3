"""Base interfaces for remote-key signing.

Signing flow:
1. Provider resolves a key identifier into a KeySigner (slow, may fail)
2. KeySigner reports the account address it controls
3. KeySigner signs a 32-byte digest inside the backend
4. Caller applies the signature to the transaction envelope

Private keys never leave the backend; only signatures come back.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Union

from signerproxy.errors import InvalidParams

logger = logging.getLogger(__name__)

KeyId = Union[int, str]


class SignerType(str, Enum):
    """Type of signing backend."""
    YUBIHSM = "yubihsm"       # YubiHSM 2 over USB or yubihsm-connector
    KMS = "aws-kms"           # AWS KMS
    LOCAL = "local"           # Private key in memory (development)


@dataclass(frozen=True)
class Signature:
    """Recoverable secp256k1 signature.

    Attributes:
        r: R component
        s: S component (low-s normalised)
        recovery_id: 0 or 1, the y-parity of the ephemeral point
    """
    r: int
    s: int
    recovery_id: int


class KeySigner(ABC):
    """Capability to sign with exactly one backend key."""

    def __init__(self, key_id: KeyId, address: str):
        self.key_id = key_id
        self.address = address

    @abstractmethod
    async def sign_digest(self, digest: bytes) -> Signature:
        """Sign a 32-byte digest.

        Raises:
            SigningFailed: If the backend rejects or faults
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(key_id={self.key_id!r}, address={self.address})"


class SignerProvider(ABC):
    """Backend connector able to resolve key identifiers into signers.

    Implementations should NEVER expose raw private keys.
    """

    # Whether the underlying transport only supports one session at a time
    exclusive_transport = False

    def __init__(self, signer_type: SignerType):
        self.signer_type = signer_type

    @abstractmethod
    async def resolve(self, key_id: KeyId) -> KeySigner:
        """Establish a signer bound to key_id.

        Raises:
            BackendConnectError: If the backend cannot resolve the key
        """
        pass

    def parse_key_id(self, raw: str) -> KeyId:
        """Parse a key identifier from a request path segment.

        The default accepts 16-bit object ids, as used by HSM backends.

        Raises:
            InvalidParams: If the segment is not a valid key id
        """
        raw = (raw or "").strip()
        if not (raw.isascii() and raw.isdigit()):
            raise InvalidParams(f"invalid key id: {raw!r}")
        key_id = int(raw)
        if key_id > 0xFFFF:
            raise InvalidParams(f"key id out of range: {key_id}")
        return key_id

    async def close(self) -> None:
        """Release backend resources."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.signer_type.value})"
