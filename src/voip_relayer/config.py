"""Application configuration using pydantic-settings.

Variable names follow the relayer's deployment environment, so an existing
`.env` file keeps working unchanged.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Admin identities
    # ======================
    solana_admin_private_key: str = Field(
        default="", description="Base58 encoded Solana admin keypair"
    )
    ethereum_admin_address: str = Field(default="", description="Ethereum admin address")
    ethereum_admin_private_key: str = Field(
        default="", description="Hex encoded Ethereum admin private key"
    )

    # ======================
    # Chain RPC Endpoints
    # ======================
    solana_rpc_endpoint: str = Field(
        default="https://api.mainnet-beta.solana.com", description="Solana RPC URL"
    )
    ethereum_wss_rpc_endpoint: str = Field(
        default="", description="Ethereum websocket RPC URL (log subscription)"
    )
    ethereum_http_rpc_endpoint: str = Field(
        default="", description="Ethereum HTTP RPC URL (contract calls)"
    )

    # ======================
    # Contracts and programs
    # ======================
    eth_bridge_contract_address: str = Field(
        default="", description="Ethereum VOIP bridge contract address"
    )
    sol_voip_token_mint: str = Field(default="", description="Solana VOIP token mint")
    sol_migration_program_id: str = Field(
        default="", description="Solana VOIP migration program ID"
    )

    # ======================
    # Relayer tuning
    # ======================
    max_concurrent_settlements: int = Field(
        default=20, description="Maximum settlements in flight at once"
    )
    eth_confirmations: int = Field(
        default=1, description="Confirmations required for the Ethereum burn"
    )
    solana_commitment: str = Field(
        default="confirmed", description="Commitment level for Solana transactions"
    )
    eth_nonce_lock_timeout: float = Field(
        default=60.0, description="Seconds to wait for the admin nonce lock before a burn fails"
    )

    # ======================
    # Restart policy
    # ======================
    restart_base_delay: float = Field(
        default=1.0, description="First restart delay in seconds (0 = immediate)"
    )
    restart_max_delay: float = Field(default=60.0, description="Restart delay ceiling")
    restart_jitter: float = Field(default=0.5, description="Random jitter added to delays")
    restart_breaker_threshold: int = Field(
        default=10, description="Consecutive failures before the breaker opens (0 = off)"
    )
    restart_breaker_cooldown: float = Field(
        default=300.0, description="Seconds to pause while the breaker is open"
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/relayer.db",
        description="Settlement ledger connection URL",
    )
    ledger_enabled: bool = Field(
        default=True, description="Persist cursor and settlement records"
    )
    database_busy_timeout: float = Field(
        default=30.0, description="Seconds a SQLite writer waits on a locked database"
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def missing_required(self) -> list[str]:
        """Names of required variables that are not set."""
        required = {
            "SOLANA_ADMIN_PRIVATE_KEY": self.solana_admin_private_key,
            "ETHEREUM_ADMIN_ADDRESS": self.ethereum_admin_address,
            "ETHEREUM_ADMIN_PRIVATE_KEY": self.ethereum_admin_private_key,
            "SOLANA_RPC_ENDPOINT": self.solana_rpc_endpoint,
            "ETHEREUM_WSS_RPC_ENDPOINT": self.ethereum_wss_rpc_endpoint,
            "ETHEREUM_HTTP_RPC_ENDPOINT": self.ethereum_http_rpc_endpoint,
            "ETH_BRIDGE_CONTRACT_ADDRESS": self.eth_bridge_contract_address,
            "SOL_VOIP_TOKEN_MINT": self.sol_voip_token_mint,
            "SOL_MIGRATION_PROGRAM_ID": self.sol_migration_program_id,
        }
        return [name for name, value in required.items() if not value]

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "ethereum": {
                "admin_address": self.ethereum_admin_address or "(not set)",
                "admin_private_key": "***" if self.ethereum_admin_private_key else "(not set)",
                "wss_rpc": self._redact_url(self.ethereum_wss_rpc_endpoint),
                "http_rpc": self._redact_url(self.ethereum_http_rpc_endpoint),
                "bridge_contract": self.eth_bridge_contract_address or "(not set)",
                "confirmations": self.eth_confirmations,
            },
            "solana": {
                "admin_private_key": "***" if self.solana_admin_private_key else "(not set)",
                "rpc": self._redact_url(self.solana_rpc_endpoint),
                "migration_program": self.sol_migration_program_id or "(not set)",
                "token_mint": self.sol_voip_token_mint or "(not set)",
                "commitment": self.solana_commitment,
            },
            "relayer": {
                "max_concurrent_settlements": self.max_concurrent_settlements,
                "restart_base_delay": self.restart_base_delay,
                "restart_max_delay": self.restart_max_delay,
                "breaker_threshold": self.restart_breaker_threshold,
            },
            "database_url": self._redact_url(self.database_url) if self.ledger_enabled else "(disabled)",
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials and API keys embedded in a URL."""
        if not url:
            return "(not set)"
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        # Infura/Alchemy style keys live in the last path segment
        if "://" in url:
            proto, rest = url.split("://", 1)
            host, _, path = rest.partition("/")
            if path and len(path.rsplit("/", 1)[-1]) >= 24:
                return f"{proto}://{host}/***"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
