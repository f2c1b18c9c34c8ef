"""
Configuration management for the Agent Vault.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ETHER = 10**18


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        extra="ignore",
        env_ignore_empty=True,
    )

    # Application
    app_name: str = "Agent Vault"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", env="ENVIRONMENT")

    # Redis Configuration
    redis_host: str = Field(default="localhost", env="REDIS_HOST")
    redis_port: int = Field(default=6379, env="REDIS_PORT")
    redis_db: int = Field(default=0, env="REDIS_DB")

    # Deployment
    deployer_label: str = Field(default="deployer", env="DEPLOYER_LABEL")
    executor_label: str = Field(default="executor", env="EXECUTOR_LABEL")
    fee_collector_label: str = Field(default="fee-collector", env="FEE_COLLECTOR_LABEL")
    executor_address: Optional[str] = Field(default=None, env="EXECUTOR_ADDRESS")
    fee_collector_address: Optional[str] = Field(default=None, env="FEE_COLLECTOR_ADDRESS")
    protocol_fee_bps: int = Field(default=50, env="PROTOCOL_FEE_BPS")  # 0.5% on every opened position
    venue_liquidity_wei: int = Field(default=10 * ETHER, env="VENUE_LIQUIDITY_WEI")
    venue_seed_funding_wei: int = Field(default=2 * ETHER, env="VENUE_SEED_FUNDING_WEI")
    deployer_funding_wei: int = Field(default=100 * ETHER, env="DEPLOYER_FUNDING_WEI")
    faucet_max_wei: int = Field(default=10 * ETHER, env="FAUCET_MAX_WEI")

    # Request signing; operator accounts are bound to these keys when set
    deployer_private_key: Optional[str] = Field(default=None, env="DEPLOYER_PRIVATE_KEY")
    executor_private_key: Optional[str] = Field(default=None, env="EXECUTOR_PRIVATE_KEY")
    signature_max_age_seconds: int = Field(default=300, env="SIGNATURE_MAX_AGE_SECONDS")

    # Risk Configuration
    accounting_day_seconds: int = Field(default=86_400, env="ACCOUNTING_DAY_SECONDS")
    min_trade_size_wei: int = Field(default=ETHER // 1000, env="MIN_TRADE_SIZE_WEI")  # 0.001 ETH
    max_trade_size_wei: int = Field(default=ETHER, env="MAX_TRADE_SIZE_WEI")  # 1 ETH
    min_daily_loss_limit_wei: int = Field(default=ETHER // 100, env="MIN_DAILY_LOSS_LIMIT_WEI")  # 0.01 ETH
    max_daily_loss_limit_wei: int = Field(default=5 * ETHER, env="MAX_DAILY_LOSS_LIMIT_WEI")  # 5 ETH
    default_max_open_positions: int = Field(default=5, env="DEFAULT_MAX_OPEN_POSITIONS")

    # Markets registered at deployment; `key` is hashed into the on-chain market id
    default_markets: List[Dict[str, str]] = Field(
        default_factory=lambda: [
            {
                "key": "NIGERIA_ELECTION_2027",
                "name": "Nigerian Presidential Election 2027",
                "region": "Nigeria",
            },
            {
                "key": "SA_POLICY_CHANGE",
                "name": "South Africa Mining Policy Change 2026",
                "region": "South Africa",
            },
            {
                "key": "KENYA_SHILLING_Q2_2026",
                "name": "Kenya Shilling above 150/USD by Q2 2026",
                "region": "Kenya",
            },
            {
                "key": "GHANA_ELECTION_2028",
                "name": "Ghana General Election 2028",
                "region": "Ghana",
            },
        ],
        env="DEFAULT_MARKETS",
    )

    # Off-chain mirror
    mirror_redis_enabled: bool = Field(default=False, env="MIRROR_REDIS_ENABLED")
    mirror_key_prefix: str = Field(default="mirror", env="MIRROR_KEY_PREFIX")
    mirror_ttl_seconds: Optional[int] = Field(default=None, env="MIRROR_TTL_SECONDS")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_file: str = Field(default="logs/agent_vault.log", env="LOG_FILE")
    log_redis_enabled: bool = Field(default=False, env="LOG_REDIS_ENABLED")
    log_redis_list_key: str = Field(default="logs:recent", env="LOG_REDIS_LIST_KEY")
    log_redis_max_entries: int = Field(default=1000, env="LOG_REDIS_MAX_ENTRIES")

    @model_validator(mode="after")
    def _check_risk_defaults(self) -> "Settings":
        """Reject inverted constraint pairs and out-of-range fees at startup."""
        if self.min_trade_size_wei > self.max_trade_size_wei:
            raise ValueError("min_trade_size_wei must not exceed max_trade_size_wei")
        if self.min_daily_loss_limit_wei > self.max_daily_loss_limit_wei:
            raise ValueError("min_daily_loss_limit_wei must not exceed max_daily_loss_limit_wei")
        if not 0 <= self.protocol_fee_bps <= 10_000:
            raise ValueError("protocol_fee_bps must be within [0, 10000]")
        if self.accounting_day_seconds <= 0:
            raise ValueError("accounting_day_seconds must be positive")
        return self

    @property
    def redis_url(self) -> str:
        """Construct Redis URL."""
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


# Global settings instance
settings = Settings()
