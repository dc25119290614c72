"""
Configuration management for the bridge coordinator.

All settings can be overridden via environment variables or a `.env` file.
The supported-network table is read-only once loaded.
"""

from functools import lru_cache
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ChainError


class NetworkConfig(BaseModel):
    """One entry of the supported-network table."""

    chain_id: str = Field(..., description="Opaque chain identifier")
    name: str = Field("", description="Display name")
    rpc_url: str = Field("", description="JSON-RPC endpoint")
    bridge_address: str = Field("", description="Bridge contract on this chain")
    block_explorer: str = Field("", description="Block explorer base URL")
    lz_chain_id: int = Field(..., ge=0, lt=2**16, description="Relay endpoint id of this chain")
    native_symbol: str = Field("ETH", description="Native currency symbol")

    def explorer_tx_url(self, tx_hash: str) -> Optional[str]:
        """Link to a transaction on the block explorer, if one is configured."""
        if not self.block_explorer:
            return None
        return f"{self.block_explorer.rstrip('/')}/tx/{tx_hash}"


DEFAULT_NETWORKS = [
    NetworkConfig(
        chain_id="11155111",
        name="Sepolia",
        block_explorer="https://sepolia.etherscan.io",
        lz_chain_id=10161,
        native_symbol="ETH",
    ),
    NetworkConfig(
        chain_id="80002",
        name="Amoy",
        block_explorer="https://amoy.polygonscan.com",
        lz_chain_id=10109,
        native_symbol="MATIC",
    ),
]


class NetworkTable:
    """Ordered, read-only lookup of supported networks by chain id."""

    def __init__(self, networks: list[NetworkConfig]):
        self._networks = list(networks)
        self._by_id = {n.chain_id: n for n in self._networks}
        if len(self._by_id) != len(self._networks):
            raise ValueError("duplicate chain_id in network table")

    def __iter__(self) -> Iterator[NetworkConfig]:
        return iter(self._networks)

    def __len__(self) -> int:
        return len(self._networks)

    def __contains__(self, chain_id: object) -> bool:
        return chain_id in self._by_id

    @property
    def chain_ids(self) -> list[str]:
        return [n.chain_id for n in self._networks]

    def get(self, chain_id: str) -> NetworkConfig:
        """Get a network, failing with ChainError if it is not supported."""
        network = self._by_id.get(chain_id)
        if network is None:
            raise ChainError(
                f"Unsupported network: {chain_id}",
                details={"chain_id": chain_id, "supported": self.chain_ids},
            )
        return network


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Networks (JSON list in NETWORKS)
    networks: list[NetworkConfig] = Field(default_factory=lambda: list(DEFAULT_NETWORKS))
    private_key: Optional[str] = Field(
        default=None,
        description="Source-chain signer key; submission is disabled without it",
    )

    # Price oracle
    oracle_url: str = "https://rpc-testnet-dora-2.supra.com"
    oracle_chain_type: str = "evm"
    oracle_max_attempts: int = Field(default=3, ge=1)
    oracle_base_delay_seconds: float = Field(default=1.0, ge=0)
    oracle_max_delay_seconds: float = Field(default=10.0, ge=0)
    oracle_timeout_seconds: float = Field(default=30.0, gt=0)
    oracle_transport_retries: int = Field(default=2, ge=0)
    default_pair_indexes: list[int] = Field(default_factory=lambda: [0])  # ETH/USD

    # Bridge
    default_gas_limit: int = 200_000
    token_decimals: int = 18

    # Monitor
    min_confirmations: int = Field(default=1, ge=1)
    confirmation_timeout_seconds: float = Field(default=600.0, gt=0)
    delivery_timeout_seconds: float = Field(default=600.0, gt=0)
    sweep_interval_seconds: float = Field(default=3600.0, gt=0)
    max_record_age_seconds: float = Field(default=86400.0, gt=0)
    log_poll_interval_seconds: float = Field(default=2.0, gt=0)

    # Database
    database_url: str = "sqlite:///./bridge_coordinator.db"

    # API server
    host: str = "127.0.0.1"
    port: int = 8000
    api_token: Optional[str] = Field(
        default=None,
        description="Required via X-API-Key on mutating endpoints when set",
    )
    allowed_origins: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    def network_table(self) -> NetworkTable:
        return NetworkTable(self.networks)


def load_settings(env_path: Optional[Path] = None) -> Settings:
    """Load settings, optionally from a specific .env file."""
    return Settings(_env_file=env_path) if env_path else Settings()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
