"""Application configuration using pydantic-settings.

Selects the signing backend (YubiHSM over USB or HTTP, AWS KMS, or local
development keys) and the upstream node that unsupported methods go to.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from signerproxy.errors import ConfigError

BACKENDS = ("yubihsm", "aws-kms", "local")
YUBIHSM_MODES = ("usb", "http")
CACHE_MODES = ("auto", "serial", "per_key")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Upstream node
    # ======================
    rpc_url: str = Field(default="", description="Upstream JSON-RPC node URL")
    upstream_timeout_secs: float = Field(default=10.0, description="Upstream HTTP timeout")

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=3000, description="API server port")
    request_timeout_secs: float = Field(
        default=30.0, description="Upper bound on local method handling"
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Log level when not in debug mode")

    # ======================
    # Signing backend
    # ======================
    signer_backend: str = Field(
        default="yubihsm", description="Signing backend: yubihsm, aws-kms, local"
    )
    signer_cache_mode: str = Field(
        default="auto",
        description="Resolve locking: serial (one global lock), per_key, or auto",
    )

    # ======================
    # Transaction defaults
    # ======================
    fill_defaults_from_node: bool = Field(
        default=True, description="Query the upstream node for missing tx fields"
    )
    chain_id: Optional[int] = Field(
        default=None, description="Chain id used when not querying the node"
    )

    # ======================
    # YubiHSM
    # ======================
    yubihsm_mode: str = Field(default="usb", description="Connection mode (usb or http)")
    yubihsm_device_serial_id: Optional[str] = Field(
        default=None, description="YubiHSM device serial ID (USB mode)"
    )
    yubihsm_http_address: Optional[str] = Field(
        default=None, description="yubihsm-connector address (HTTP mode)"
    )
    yubihsm_http_port: Optional[int] = Field(
        default=None, description="yubihsm-connector port (HTTP mode)"
    )
    yubihsm_auth_key_id: Optional[int] = Field(default=None, description="YubiHSM auth key ID")
    yubihsm_password: Optional[str] = Field(default=None, description="YubiHSM auth key password")
    yubihsm_usb_timeout_ms: int = Field(default=30_000, description="USB timeout")
    yubihsm_http_timeout_ms: int = Field(default=5_000, description="HTTP connector timeout")
    yubihsm_pkcs11_lib: str = Field(
        default="yubihsm_pkcs11.so", description="Path to the YubiHSM PKCS#11 module"
    )
    yubihsm_pkcs11_conf: Optional[str] = Field(
        default=None, description="Existing yubihsm_pkcs11.conf (generated when unset)"
    )

    # ======================
    # AWS KMS
    # ======================
    aws_region: Optional[str] = Field(default=None, description="AWS region for KMS")

    # ======================
    # Local keys (development)
    # ======================
    local_private_keys: str = Field(
        default="", description="Comma-separated <key_id>:<hex private key> pairs"
    )
    local_mock_keys: bool = Field(
        default=False, description="Preload the well-known development keys"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def backend(self) -> str:
        return self.signer_backend.strip().lower()

    def parse_local_keys(self) -> dict[int, bytes]:
        """Parse LOCAL_PRIVATE_KEYS into a key id -> private key mapping."""
        keys: dict[int, bytes] = {}
        for entry in self.local_private_keys.split(","):
            entry = entry.strip()
            if not entry:
                continue
            key_id, sep, key_hex = entry.partition(":")
            if not sep:
                raise ConfigError(f"Invalid local key entry (expected id:hex): {key_id!r}")
            try:
                private_key = bytes.fromhex(key_hex.strip().removeprefix("0x"))
                keys[int(key_id)] = private_key
            except ValueError:
                raise ConfigError(f"Invalid local key entry for id {key_id!r}")
            if len(private_key) != 32:
                raise ConfigError(f"Local key {key_id} must be 32 bytes")
        return keys

    def check(self) -> None:
        """Validate that the selected backend has everything it needs.

        Raises:
            ConfigError: If the configuration cannot be served
        """
        if not self.rpc_url.strip():
            raise ConfigError("RPC_URL must be set")

        if self.backend not in BACKENDS:
            raise ConfigError(f"Unsupported SIGNER_BACKEND: {self.signer_backend}")

        if self.signer_cache_mode not in CACHE_MODES:
            raise ConfigError(f"Unsupported SIGNER_CACHE_MODE: {self.signer_cache_mode}")

        if not self.fill_defaults_from_node and self.chain_id is None:
            raise ConfigError("CHAIN_ID is required when FILL_DEFAULTS_FROM_NODE is disabled")

        if self.backend == "yubihsm":
            mode = self.yubihsm_mode.lower()
            if mode not in YUBIHSM_MODES:
                raise ConfigError(f"Unsupported YUBIHSM_MODE: {self.yubihsm_mode}")
            if mode == "usb" and not self.yubihsm_device_serial_id:
                raise ConfigError("USB mode requires YUBIHSM_DEVICE_SERIAL_ID")
            if mode == "usb" and not self.yubihsm_device_serial_id.strip().isdigit():
                raise ConfigError("YUBIHSM_DEVICE_SERIAL_ID must be numeric")
            if mode == "http" and (not self.yubihsm_http_address or not self.yubihsm_http_port):
                raise ConfigError("HTTP mode requires YUBIHSM_HTTP_ADDRESS and YUBIHSM_HTTP_PORT")
            if self.yubihsm_auth_key_id is None or not self.yubihsm_password:
                raise ConfigError("YUBIHSM_AUTH_KEY_ID and YUBIHSM_PASSWORD must be set")

        if self.backend == "local":
            if not self.parse_local_keys() and not self.local_mock_keys:
                raise ConfigError("Local backend requires LOCAL_PRIVATE_KEYS or LOCAL_MOCK_KEYS")
            if self.local_mock_keys and self.is_production:
                raise ConfigError("LOCAL_MOCK_KEYS must not be enabled in production")

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        data = {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "rpc_url": self._redact_url(self.rpc_url),
            "signer_backend": self.backend,
            "signer_cache_mode": self.signer_cache_mode,
            "fill_defaults_from_node": self.fill_defaults_from_node,
            "chain_id": self.chain_id,
        }
        if self.backend == "yubihsm":
            data["yubihsm"] = {
                "mode": self.yubihsm_mode,
                "device_serial_id": self.yubihsm_device_serial_id or "(not set)",
                "http_address": self.yubihsm_http_address or "(not set)",
                "http_port": self.yubihsm_http_port,
                "auth_key_id": self.yubihsm_auth_key_id,
                "password": "***" if self.yubihsm_password else "(not set)",
                "pkcs11_lib": self.yubihsm_pkcs11_lib,
            }
        elif self.backend == "aws-kms":
            data["aws_kms"] = {"region": self.aws_region or "(sdk default)"}
        elif self.backend == "local":
            data["local"] = {
                "private_keys": "***" if self.local_private_keys else "(not set)",
                "mock_keys": self.local_mock_keys,
            }
        return data

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials embedded in a URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
