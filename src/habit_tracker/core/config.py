"""Application configuration using Pydantic BaseSettings."""

import logging
from pathlib import Path
from typing import Optional

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Server Configuration
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=3000, alias="PORT")
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")

    # Bitcoin Core RPC
    # Cookie auth takes precedence over user/password when the file exists
    bitcoin_rpc_url: str = Field(default="http://127.0.0.1:48332", alias="BITCOIN_RPC_URL")
    bitcoin_rpc_user: str = Field(default="", alias="BITCOIN_RPC_USER")
    bitcoin_rpc_password: str = Field(default="", alias="BITCOIN_RPC_PASSWORD")
    bitcoin_rpc_cookie_file: str = Field(
        default=str(Path.home() / ".bitcoin" / "testnet4" / ".cookie"),
        alias="BITCOIN_RPC_COOKIE_FILE",
    )
    bitcoin_wallet: str = Field(default="test", alias="BITCOIN_WALLET")
    bitcoin_rpc_timeout_seconds: float = Field(default=30.0, alias="BITCOIN_RPC_TIMEOUT_SECONDS")

    # Optional chain override (regtest, testnet4, main...); queried from the node when unset
    network: Optional[str] = Field(default=None, alias="NETWORK")

    # Charms prover
    charms_bin: str = Field(default="charms", alias="CHARMS_BIN")
    prover_url: str = Field(default="http://localhost:17784", alias="PROVER_URL")
    prover_timeout_seconds: float = Field(default=300.0, alias="PROVER_TIMEOUT_SECONDS")
    contract_wasm_path: str = Field(
        default="contracts/habit-tracker.wasm", alias="CONTRACT_WASM_PATH"
    )
    contract_vk_path: str = Field(default="contracts/habit-tracker.vk", alias="CONTRACT_VK_PATH")

    # Transition rules
    fee_rate: float = Field(default=2.0, gt=0, alias="FEE_RATE")
    min_update_interval_seconds: int = Field(
        default=5, ge=0, alias="MIN_UPDATE_INTERVAL_SECONDS"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def wallet_rpc_url(self) -> str:
        """RPC endpoint scoped to the configured wallet."""
        base = self.bitcoin_rpc_url.rstrip("/")
        if not self.bitcoin_wallet:
            return base
        return f"{base}/wallet/{self.bitcoin_wallet}"

    def rpc_auth(self) -> Optional[tuple[str, str]]:
        """Resolve RPC basic-auth credentials (cookie file first, then user/password)."""
        cookie = Path(self.bitcoin_rpc_cookie_file).expanduser()
        if cookie.is_file():
            user, _, password = cookie.read_text().strip().partition(":")
            return user, password
        if self.bitcoin_rpc_user:
            return self.bitcoin_rpc_user, self.bitcoin_rpc_password
        return None

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with a clear error message when the node cannot be
        authenticated against. Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        if self.rpc_auth() is None:
            raise ValueError(
                "CRITICAL: Missing Bitcoin RPC credentials.\n\n"
                "  - Set BITCOIN_RPC_USER and BITCOIN_RPC_PASSWORD, or\n"
                "  - Point BITCOIN_RPC_COOKIE_FILE at the node's .cookie file\n\n"
                "The application cannot reach the ledger without them."
            )

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.app_env == "production":
        # JSON output for production (log aggregation)
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
    else:
        # Console output for development (human-readable)
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
