"""Signer provider factory.

Creates the signing backend selected by SIGNER_BACKEND. Backend SDKs are
imported only for the backend in use.
"""

import logging

from signerproxy.config import Settings
from signerproxy.errors import ConfigError
from signerproxy.signing.base import SignerProvider, SignerType

logger = logging.getLogger(__name__)


def get_signer_type(settings: Settings) -> SignerType:
    """Map SIGNER_BACKEND onto a SignerType.

    Raises:
        ConfigError: If the backend name is unknown
    """
    try:
        return SignerType(settings.backend)
    except ValueError:
        raise ConfigError(f"Unsupported SIGNER_BACKEND: {settings.signer_backend}")


def create_provider(settings: Settings) -> SignerProvider:
    """Build the configured provider.

    Raises:
        ConfigError: If the configuration is incomplete or the backend's
            SDK is not installed
    """
    settings.check()
    signer_type = get_signer_type(settings)
    logger.info(f"Initializing {signer_type.value} signer provider")

    try:
        if signer_type == SignerType.YUBIHSM:
            from signerproxy.signing.hsm import YubiHsmProvider
            return YubiHsmProvider(
                auth_key_id=settings.yubihsm_auth_key_id,
                password=settings.yubihsm_password,
                mode=settings.yubihsm_mode,
                serial=settings.yubihsm_device_serial_id,
                http_address=settings.yubihsm_http_address,
                http_port=settings.yubihsm_http_port,
                usb_timeout_ms=settings.yubihsm_usb_timeout_ms,
                http_timeout_ms=settings.yubihsm_http_timeout_ms,
                pkcs11_lib=settings.yubihsm_pkcs11_lib,
                pkcs11_conf=settings.yubihsm_pkcs11_conf,
            )

        if signer_type == SignerType.KMS:
            from signerproxy.signing.kms import KMSProvider
            return KMSProvider(region=settings.aws_region)

    except ImportError as e:
        raise ConfigError(f"{signer_type.value} backend is unavailable: {e}")

    from signerproxy.signing.local import LocalProvider
    return LocalProvider(
        private_keys=settings.parse_local_keys(),
        mock_keys=settings.local_mock_keys,
    )
