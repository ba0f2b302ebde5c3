"""secp256k1 helpers shared by all signing backends."""

from Crypto.Hash import keccak
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_der_public_key,
)
from eth_keys import keys

from signerproxy.signing.base import Signature

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N = SECP256K1_N // 2


def keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def public_key_to_address(public_key: ec.EllipticCurvePublicKey) -> str:
    """Derive the EIP-55 checksummed address of a secp256k1 public key."""
    if not isinstance(public_key.curve, ec.SECP256K1):
        raise ValueError(f"Key is not secp256k1 (curve: {public_key.curve.name})")
    raw = public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    # Drop the 0x04 uncompressed-point prefix
    return keys.PublicKey(raw[1:]).to_checksum_address()


def der_public_key_to_address(der_key: bytes) -> str:
    """Derive the address from a DER SubjectPublicKeyInfo blob."""
    public_key = load_der_public_key(der_key)
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise ValueError("Public key is not an elliptic curve key")
    return public_key_to_address(public_key)


def normalize_s(r: int, s: int) -> tuple[int, int]:
    """Validate r and s and fold s into the lower half of the curve order."""
    if not 0 < r < SECP256K1_N:
        raise ValueError("invalid r")
    if not 0 < s < SECP256K1_N:
        raise ValueError("invalid s")
    if s > SECP256K1_HALF_N:
        s = SECP256K1_N - s
    return r, s


def find_recovery_id(digest: bytes, r: int, s: int, expected_address: str) -> int:
    expected = expected_address.lower()
    for recovery_id in (0, 1):
        sig = keys.Signature(vrs=(recovery_id, r, s))
        public_key = sig.recover_public_key_from_msg_hash(digest)
        if public_key.to_checksum_address().lower() == expected:
            return recovery_id
    raise ValueError("could not determine recovery id (address mismatch)")


def recoverable_signature(digest: bytes, r: int, s: int, address: str) -> Signature:
    """Turn a raw (r, s) pair into a low-s signature with its recovery id."""
    r, s = normalize_s(r, s)
    return Signature(r=r, s=s, recovery_id=find_recovery_id(digest, r, s, address))


def signature_from_der(digest: bytes, der_signature: bytes, address: str) -> Signature:
    """Decode a DER ECDSA signature as returned by HSMs and KMS."""
    r, s = decode_dss_signature(der_signature)
    return recoverable_signature(digest, int(r), int(s), address)
