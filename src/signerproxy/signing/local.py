"""Local signing backend.

Uses in-memory private keys for signing. Suitable for:
- Development against a local chain
- Tests and integration runs without hardware

WARNING: Private keys are stored in memory. Use the YubiHSM or KMS
backends for anything holding real funds.
"""

import logging
from typing import Optional

from eth_keys import keys

from signerproxy.errors import KeyNotFoundError, SigningFailed
from signerproxy.signing.base import (
    KeyId,
    KeySigner,
    Signature,
    SignerProvider,
    SignerType,
)
from signerproxy.signing.secp256k1 import recoverable_signature

logger = logging.getLogger(__name__)

# Well-known development keys, never fund these on a public network.
MOCK_KEYS: dict[int, bytes] = {
    1: bytes.fromhex("25b1759e8eabc06b7d097550dffd7d8c92407fb818c5e9e33b81ef92d4afa2b7"),
    2: bytes.fromhex("5bcaa0de81a26da01ba9e347e8093f2463a3f8e35626914c4984cae19b38288c"),
}


class LocalKeySigner(KeySigner):
    """Signer backed by an in-memory private key."""

    def __init__(self, key_id: KeyId, private_key: keys.PrivateKey):
        super().__init__(key_id, private_key.public_key.to_checksum_address())
        self._private_key = private_key

    async def sign_digest(self, digest: bytes) -> Signature:
        try:
            signature = self._private_key.sign_msg_hash(digest)
            return recoverable_signature(digest, signature.r, signature.s, self.address)
        except Exception as e:
            logger.error(f"Local signing failed for key {self.key_id}: {e}")
            raise SigningFailed(f"local signing failed: {e}")


class LocalProvider(SignerProvider):
    """Local signing backend using in-memory private keys.

    Keys are addressed by 16-bit ids, like HSM object ids, so the
    gateway behaves the same against a development setup.
    """

    def __init__(self, private_keys: Optional[dict[int, bytes]] = None, mock_keys: bool = False):
        super().__init__(SignerType.LOCAL)
        self._keys: dict[int, bytes] = {}
        if mock_keys:
            self._keys.update(MOCK_KEYS)
            logger.info(f"Loaded {len(MOCK_KEYS)} development mock keys")
        if private_keys:
            self._keys.update(private_keys)
            logger.info(f"Loaded {len(private_keys)} local keys")

    async def resolve(self, key_id: KeyId) -> KeySigner:
        private_key = self._keys.get(key_id)
        if private_key is None:
            raise KeyNotFoundError(f"no local key with id {key_id}")
        return LocalKeySigner(key_id, keys.PrivateKey(private_key))

    def add_key(self, key_id: int, private_key_hex: str):
        """Add a private key dynamically (for testing).

        Args:
            key_id: Key identifier
            private_key_hex: Private key as hex string
        """
        self._keys[key_id] = bytes.fromhex(private_key_hex.replace("0x", ""))
