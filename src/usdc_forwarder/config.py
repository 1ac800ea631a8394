"""Application configuration using pydantic-settings.

Values come from environment variables or a .env file. The signing key and
contract address are required; everything else has a working default for
the Sepolia test networks.
"""

import re
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from usdc_forwarder.networks import NetworkProfile, get_networks

PRIVATE_KEY_PATTERN = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


class ConfigurationError(Exception):
    """Raised when required configuration is missing or malformed."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid configuration: " + "; ".join(errors))


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Credentials / Contract
    # ======================
    private_key: str = Field(default="", description="Hex private key used to sign forwards")
    contract_address: str = Field(
        default="", description="Escrow address (identical on every network)"
    )

    # ======================
    # Networks
    # ======================
    enabled_networks: str = Field(
        default="arbitrumSepolia,optimismSepolia,baseSepolia",
        description="Comma-separated network profile keys to watch",
    )
    arbitrum_sepolia_rpc: Optional[str] = Field(default=None, description="Arbitrum Sepolia RPC URL")
    optimism_sepolia_rpc: Optional[str] = Field(default=None, description="Optimism Sepolia RPC URL")
    base_sepolia_rpc: Optional[str] = Field(default=None, description="Base Sepolia RPC URL")

    # ======================
    # Polling
    # ======================
    polling_interval: float = Field(default=10.0, description="Seconds between cycles per network")
    status_interval: float = Field(default=60.0, description="Seconds between status reports/sweeps")
    initial_jitter: float = Field(default=5.0, description="Max random delay before first cycle")
    lookback_blocks: int = Field(default=100, description="Blocks rescanned behind head at startup")
    max_blocks_per_scan: int = Field(default=2000, description="Upper bound of one eth_getLogs range")
    confirmation_blocks: int = Field(default=0, description="Blocks to stay behind head")

    # ======================
    # Transactions
    # ======================
    gas_margin_percent: int = Field(default=20, description="Safety margin added to gas estimates")
    fallback_gas_limit: int = Field(default=150000, description="Gas limit when estimation fails")
    set_token_gas_limit: int = Field(default=100000, description="Gas limit for setUSDCAddress")
    configure_token_on_startup: bool = Field(
        default=True, description="Call setUSDCAddress on startup if not yet configured"
    )
    rpc_timeout: float = Field(default=30.0, description="HTTP timeout per RPC request")
    receipt_timeout: float = Field(default=120.0, description="Seconds to wait for a receipt")
    receipt_poll_interval: float = Field(default=2.0, description="Seconds between receipt polls")
    sweep_lock_timeout: float = Field(
        default=30.0, description="Seconds a sweep waits for an in-flight forward before skipping"
    )

    # ======================
    # Durable State
    # ======================
    persist_state: bool = Field(
        default=True, description="Persist processed deposits and cursors across restarts"
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/forwarder.db",
        description="Database connection URL",
    )

    # ======================
    # Status API
    # ======================
    api_enabled: bool = Field(default=False, description="Serve the HTTP status API")
    api_host: str = Field(default="127.0.0.1", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")

    @property
    def network_keys(self) -> list[str]:
        """Parse enabled network keys into a list."""
        return [key.strip() for key in self.enabled_networks.split(",") if key.strip()]

    @property
    def rpc_overrides(self) -> dict[str, str]:
        overrides = {
            "arbitrumSepolia": self.arbitrum_sepolia_rpc,
            "optimismSepolia": self.optimism_sepolia_rpc,
            "baseSepolia": self.base_sepolia_rpc,
        }
        return {key: url for key, url in overrides.items() if url}

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_network_profiles(self) -> dict[str, NetworkProfile]:
        """Resolve enabled network profiles with RPC overrides applied."""
        return get_networks(self.network_keys, self.rpc_overrides)

    def validate_required(self) -> None:
        """Check required values are present and well-formed.

        Raises:
            ConfigurationError: Listing every problem found
        """
        errors = []

        if not self.private_key:
            errors.append("PRIVATE_KEY is not set")
        elif not PRIVATE_KEY_PATTERN.match(self.private_key):
            errors.append("PRIVATE_KEY must be a 32-byte hex string")

        if not self.contract_address:
            errors.append("CONTRACT_ADDRESS is not set")
        elif not Web3.is_address(self.contract_address):
            errors.append("CONTRACT_ADDRESS is not a valid address")

        if not self.network_keys:
            errors.append("ENABLED_NETWORKS is empty")
        else:
            try:
                self.get_network_profiles()
            except KeyError as e:
                errors.append(str(e.args[0]))

        if self.polling_interval <= 0:
            errors.append("POLLING_INTERVAL must be positive")
        if self.status_interval <= 0:
            errors.append("STATUS_INTERVAL must be positive")
        if self.lookback_blocks < 0:
            errors.append("LOOKBACK_BLOCKS cannot be negative")
        if self.max_blocks_per_scan <= 0:
            errors.append("MAX_BLOCKS_PER_SCAN must be positive")
        if self.gas_margin_percent < 0:
            errors.append("GAS_MARGIN_PERCENT cannot be negative")

        if errors:
            raise ConfigurationError(errors)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        networks = {}
        try:
            for key, profile in self.get_network_profiles().items():
                networks[key] = {
                    "name": profile.name,
                    "chain_id": profile.chain_id,
                    "rpc": profile.rpc_url,
                    "usdc": profile.usdc_address,
                }
        except KeyError:
            networks = {"error": f"invalid ENABLED_NETWORKS: {self.enabled_networks}"}

        return {
            "environment": self.environment,
            "debug": self.debug,
            "private_key": "***" if self.private_key else "(not set)",
            "contract_address": self.contract_address or "(not set)",
            "networks": networks,
            "polling": {
                "interval": self.polling_interval,
                "status_interval": self.status_interval,
                "lookback_blocks": self.lookback_blocks,
                "max_blocks_per_scan": self.max_blocks_per_scan,
                "confirmation_blocks": self.confirmation_blocks,
            },
            "gas": {
                "margin_percent": self.gas_margin_percent,
                "fallback_limit": self.fallback_gas_limit,
            },
            "persist_state": self.persist_state,
            "database_url": self._redact_url(self.database_url),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
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
