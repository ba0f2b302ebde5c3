"""YubiHSM 2 signing backend.

Talks to a YubiHSM 2 through its PKCS#11 module (yubihsm_pkcs11), either
directly over USB or through a running yubihsm-connector over HTTP. Keys
are EC_K256 asymmetric objects addressed by their 16-bit object id, which
the module exposes as the 2-byte big-endian CKA_ID. Keys never leave the
device.

Setup:
1. Install yubihsm-shell (provides yubihsm_pkcs11.so)
2. Generate an EC_K256 key with the sign-ecdsa capability
3. USB mode: set YUBIHSM_DEVICE_SERIAL_ID
   HTTP mode: set YUBIHSM_HTTP_ADDRESS and YUBIHSM_HTTP_PORT
4. Set YUBIHSM_AUTH_KEY_ID and YUBIHSM_PASSWORD

The device handles one command at a time, so every device operation is
serialized behind a single lock and the provider reports an exclusive
transport to the signer cache.

Reference:
- https://developers.yubico.com/YubiHSM2/Component_Reference/PKCS_11/
"""

import asyncio
import logging
import os
import struct
import tempfile
import threading
from typing import Optional

import pkcs11
from cryptography.hazmat.primitives.asymmetric import ec
from pkcs11 import Attribute, KeyType, Mechanism, ObjectClass
from pkcs11.exceptions import NoSuchKey, PinIncorrect, PKCS11Error

from signerproxy.errors import BackendConnectError, KeyNotFoundError, SigningFailed
from signerproxy.signing.base import (
    KeyId,
    KeySigner,
    Signature,
    SignerProvider,
    SignerType,
)
from signerproxy.signing.secp256k1 import public_key_to_address, recoverable_signature

logger = logging.getLogger(__name__)

DEFAULT_PKCS11_LIB = "yubihsm_pkcs11.so"

# Read by yubihsm_pkcs11 when the module is initialized
PKCS11_CONF_ENV = "YUBIHSM_PKCS11_CONF"


def _object_id(key_id: int) -> bytes:
    return struct.pack("!H", key_id)


def _decode_ec_point(ec_point: bytes) -> bytes:
    """Strip the DER OCTET STRING wrapper some modules put on EC_POINT."""
    if len(ec_point) == 67 and ec_point[0:2] == b"\x04\x41":
        return ec_point[2:]
    return ec_point


class YubiHsmKeySigner(KeySigner):
    """Signer bound to one asymmetric key object on the device."""

    def __init__(self, provider: "YubiHsmProvider", key_id: int, address: str):
        super().__init__(key_id, address)
        self._provider = provider

    async def sign_digest(self, digest: bytes) -> Signature:
        loop = asyncio.get_event_loop()
        try:
            raw_signature = await loop.run_in_executor(
                None,
                lambda: self._provider.sign_ecdsa(self.key_id, digest),
            )
        except (PKCS11Error, OSError) as e:
            logger.error(f"YubiHSM signing failed for key {self.key_id}: {e!r}")
            raise SigningFailed(f"YubiHSM signing failed: {e.__class__.__name__}")

        # CKM_ECDSA returns r || s
        if len(raw_signature) != 64:
            raise SigningFailed(f"YubiHSM returned a {len(raw_signature)}-byte signature")
        r = int.from_bytes(raw_signature[:32], "big")
        s = int.from_bytes(raw_signature[32:], "big")
        try:
            return recoverable_signature(digest, r, s, self.address)
        except ValueError as e:
            raise SigningFailed(f"YubiHSM returned an unusable signature: {e}")


class YubiHsmProvider(SignerProvider):
    """YubiHSM 2 signing backend over USB or HTTP.

    The PKCS#11 module is loaded lazily on first use. One logged-in session
    is kept open and reopened after a device or session failure.
    """

    exclusive_transport = True

    def __init__(
        self,
        auth_key_id: int,
        password: str,
        mode: str = "usb",
        serial: Optional[str] = None,
        http_address: Optional[str] = None,
        http_port: Optional[int] = None,
        usb_timeout_ms: int = 30_000,
        http_timeout_ms: int = 5_000,
        pkcs11_lib: str = DEFAULT_PKCS11_LIB,
        pkcs11_conf: Optional[str] = None,
        lib=None,
    ):
        """Initialize YubiHSM provider.

        Args:
            auth_key_id: Authentication key object id
            password: Password the authentication key was derived from
            mode: "usb" or "http"
            serial: Device serial number (USB mode)
            http_address: yubihsm-connector host (HTTP mode)
            http_port: yubihsm-connector port (HTTP mode)
            usb_timeout_ms: USB connect timeout
            http_timeout_ms: Connector connect timeout
            pkcs11_lib: Path to yubihsm_pkcs11.so
            pkcs11_conf: Existing module config file (generated if absent)
            lib: Already loaded PKCS#11 library
        """
        super().__init__(SignerType.YUBIHSM)
        self.mode = mode.lower()
        self.serial = serial
        self.http_address = http_address
        self.http_port = http_port
        self.usb_timeout_ms = usb_timeout_ms
        self.http_timeout_ms = http_timeout_ms
        self.pkcs11_lib = pkcs11_lib
        self.pkcs11_conf = pkcs11_conf

        self._auth_key_id = auth_key_id
        self._password = password
        self._lib = lib
        self._session = None
        self._generated_conf: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def connector_url(self) -> str:
        if self.mode == "usb":
            return f"yhusb://serial={self.serial}"
        return f"http://{self.http_address}:{self.http_port}"

    def _write_conf(self) -> str:
        timeout_ms = self.usb_timeout_ms if self.mode == "usb" else self.http_timeout_ms
        # The module takes the connect timeout in whole seconds
        timeout = max(1, timeout_ms // 1000)
        handle, path = tempfile.mkstemp(prefix="yubihsm_pkcs11_", suffix=".conf")
        with os.fdopen(handle, "w") as f:
            f.write(f"connector = {self.connector_url}\n")
            f.write(f"timeout = {timeout}\n")
        self._generated_conf = path
        return path

    def _load_lib(self):
        if self._lib is not None:
            return self._lib

        conf = self.pkcs11_conf or self._write_conf()
        os.environ[PKCS11_CONF_ENV] = conf
        logger.info(f"Loading {self.pkcs11_lib} (connector {self.connector_url})")
        self._lib = pkcs11.lib(self.pkcs11_lib)
        return self._lib

    def _open_session(self):
        if self._session is not None:
            return self._session

        token = self._load_lib().get_token()
        # yubihsm_pkcs11 PIN: 4 hex digits of the auth key id, then the password
        pin = f"{self._auth_key_id:04x}{self._password}"
        self._session = token.open(user_pin=pin)
        logger.info(f"Opened YubiHSM session with auth key {self._auth_key_id}")
        return self._session

    def _drop_session(self) -> None:
        if self._session is not None:
            try:
                self._session.close()
            except PKCS11Error as e:
                logger.debug(f"Ignoring error while closing YubiHSM session: {e!r}")
            self._session = None

    def _run(self, operation):
        """Run operation(session) on the shared session."""
        with self._lock:
            session = self._open_session()
            try:
                return operation(session)
            except NoSuchKey:
                raise
            except PKCS11Error:
                # Session may be gone (device unplugged, idle timeout)
                self._drop_session()
                raise

    def read_public_key(self, key_id: int) -> ec.EllipticCurvePublicKey:
        def operation(session):
            key = session.get_key(
                object_class=ObjectClass.PUBLIC_KEY,
                key_type=KeyType.EC,
                id=_object_id(key_id),
            )
            return _decode_ec_point(key[Attribute.EC_POINT])

        point = self._run(operation)
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), point)

    def sign_ecdsa(self, key_id: int, digest: bytes) -> bytes:
        """Sign a raw 32-byte digest, returning r || s."""

        def operation(session):
            key = session.get_key(
                object_class=ObjectClass.PRIVATE_KEY,
                key_type=KeyType.EC,
                id=_object_id(key_id),
            )
            return key.sign(digest, mechanism=Mechanism.ECDSA)

        return self._run(operation)

    async def resolve(self, key_id: KeyId) -> KeySigner:
        loop = asyncio.get_event_loop()
        try:
            public_key = await loop.run_in_executor(None, lambda: self.read_public_key(key_id))
        except NoSuchKey:
            raise KeyNotFoundError(f"YubiHSM key not found: {key_id}")
        except PinIncorrect:
            raise BackendConnectError("YubiHSM authentication rejected")
        except PKCS11Error as e:
            logger.error(f"YubiHSM resolve failed for key {key_id}: {e!r}")
            raise BackendConnectError(f"YubiHSM unreachable: {e.__class__.__name__}")
        except OSError as e:
            # Module missing or USB device busy
            logger.error(f"YubiHSM device error: {e}")
            raise BackendConnectError(f"YubiHSM device error: {e}")
        except ValueError as e:
            raise BackendConnectError(f"YubiHSM key {key_id} is not a secp256k1 key: {e}")

        address = public_key_to_address(public_key)
        logger.info(f"Resolved YubiHSM key {key_id} -> {address}")
        return YubiHsmKeySigner(self, key_id, address)

    async def close(self) -> None:
        """Close the session and remove the generated module config."""
        with self._lock:
            self._drop_session()
            if self._generated_conf is not None:
                try:
                    os.remove(self._generated_conf)
                except OSError:
                    pass
                self._generated_conf = None
