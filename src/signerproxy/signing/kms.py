"""AWS KMS signing backend.

Uses AWS Key Management Service for secure key storage and signing.
KMS keys never leave AWS - signing happens in the cloud.

Setup:
1. Create an asymmetric key in AWS KMS (ECC_SECG_P256K1, SIGN_VERIFY)
2. Configure AWS credentials (IAM role, access keys, etc.)
3. Address the key by id, ARN or alias in the request path

Reference:
- https://docs.aws.amazon.com/kms/latest/developerguide/symm-asymm-concepts.html
"""

import asyncio
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from signerproxy.errors import (
    BackendConnectError,
    InvalidParams,
    KeyNotFoundError,
    SigningFailed,
)
from signerproxy.signing.base import (
    KeyId,
    KeySigner,
    Signature,
    SignerProvider,
    SignerType,
)
from signerproxy.signing.secp256k1 import der_public_key_to_address, signature_from_der

logger = logging.getLogger(__name__)

SECP256K1_KEY_SPEC = "ECC_SECG_P256K1"


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


class KMSKeySigner(KeySigner):
    """Signer bound to one KMS key."""

    def __init__(self, client, key_id: str, address: str):
        super().__init__(key_id, address)
        self._client = client

    async def sign_digest(self, digest: bytes) -> Signature:
        """Sign message hash using AWS KMS."""
        loop = asyncio.get_event_loop()
        try:
            response = await loop.run_in_executor(
                None,
                lambda: self._client.sign(
                    KeyId=self.key_id,
                    Message=digest,
                    MessageType="DIGEST",
                    SigningAlgorithm="ECDSA_SHA_256",
                ),
            )
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == "AccessDeniedException":
                raise SigningFailed("Access denied to KMS key. Check IAM permissions.")
            logger.error(f"KMS signing error for {self.key_id}: {e}")
            raise SigningFailed(f"KMS signing failed: {error_code}")
        except BotoCoreError as e:
            logger.error(f"KMS signing failed for {self.key_id}: {e}")
            raise SigningFailed(f"KMS signing failed: {e}")

        try:
            return signature_from_der(digest, response["Signature"], self.address)
        except (KeyError, ValueError) as e:
            raise SigningFailed(f"KMS returned an unusable signature: {e}")


class KMSProvider(SignerProvider):
    """AWS KMS signing backend.

    Keys are identified by:
    - AWS KMS Key ID (e.g., "1234abcd-12ab-34cd-56ef-1234567890ab")
    - AWS KMS Key ARN
    - AWS KMS Key Alias (e.g., "alias/my-signing-key")

    The boto3 client is thread-safe, so resolves for different keys may
    run concurrently.
    """

    def __init__(self, region: Optional[str] = None, client=None):
        """Initialize KMS provider.

        Args:
            region: AWS region (defaults to the SDK's own resolution)
            client: Pre-built KMS client
        """
        super().__init__(SignerType.KMS)
        self.region = region
        if client is None:
            client = boto3.client("kms", region_name=region) if region else boto3.client("kms")
        self._client = client

    def parse_key_id(self, raw: str) -> KeyId:
        key_id = (raw or "").strip()
        if not key_id:
            raise InvalidParams("key id is required")
        return key_id

    async def resolve(self, key_id: KeyId) -> KeySigner:
        """Fetch the public key of key_id and derive its address."""
        loop = asyncio.get_event_loop()
        try:
            response = await loop.run_in_executor(
                None,
                lambda: self._client.get_public_key(KeyId=key_id),
            )
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == "NotFoundException":
                raise KeyNotFoundError(f"KMS key not found: {key_id}")
            if error_code == "AccessDeniedException":
                raise BackendConnectError(f"Access denied to KMS key {key_id}. Check IAM permissions.")
            logger.error(f"KMS resolve error for {key_id}: {e}")
            raise BackendConnectError(f"KMS resolve failed: {error_code}")
        except BotoCoreError as e:
            logger.error(f"KMS unreachable while resolving {key_id}: {e}")
            raise BackendConnectError(f"KMS unreachable: {e}")

        key_spec = response.get("KeySpec") or response.get("CustomerMasterKeySpec")
        if key_spec != SECP256K1_KEY_SPEC:
            raise BackendConnectError(f"KMS key {key_id} is {key_spec}, expected {SECP256K1_KEY_SPEC}")

        try:
            address = der_public_key_to_address(response["PublicKey"])
        except (KeyError, ValueError) as e:
            raise BackendConnectError(f"Cannot parse KMS public key for {key_id}: {e}")

        logger.info(f"Resolved KMS key {key_id} -> {address}")
        return KMSKeySigner(self._client, key_id, address)
