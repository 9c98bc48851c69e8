"""Configuration data models."""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional


@dataclass
class GatewayConfig:
    """Interactive Brokers desktop gateway configuration."""
    enabled: bool = True
    connect_timeout_sec: float = 20.0
    download_timeout_sec: float = 15.0
    contract_details_timeout_sec: float = 5.0
    flush_interval_sec: float = 60.0
    market_data_type: int = 3  # 3 = delayed (free)


@dataclass
class SchwabConfig:
    """Charles Schwab OAuth/REST configuration."""
    enabled: bool = True
    api_base: str = "https://api.schwabapi.com"
    request_timeout_sec: float = 30.0


@dataclass
class TokenConfig:
    """OAuth token lifecycle configuration."""
    grace_period_sec: int = 300
    sweep_interval_sec: int = 20 * 60
    sweep_lookahead_sec: int = 25 * 60
    access_token_lifetime_sec: int = 30 * 60
    refresh_token_lifetime_days: int = 7


@dataclass
class QuotesConfig:
    """Quote and FX rate cache configuration."""
    soft_ttl_sec: int = 5 * 60
    hard_ttl_sec: int = 15 * 60
    max_cache_size: int = 500


@dataclass
class RefreshConfig:
    """Scheduled refresh configuration."""
    interval_sec: int = 30 * 60
    user_ids: List[int] = field(default_factory=list)


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    json: bool = True
    dir: str = "./logs"
    console: bool = False
    timezone: str = "local"  # Timezone for log timestamps (e.g., "Europe/Dublin", "UTC", or "local")


@dataclass
class DatabasePoolConfig:
    """Connection pool sizing."""
    min_connections: int = 2
    max_connections: int = 10


@dataclass
class DatabaseConfig:
    """PostgreSQL connection configuration."""
    host: str = "localhost"
    port: int = 5432
    database: str = "investtrack"
    user: str = "investtrack"
    password: str = ""
    pool: DatabasePoolConfig = field(default_factory=DatabasePoolConfig)

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


@dataclass
class AppConfig:
    """Complete application configuration."""
    gateway: GatewayConfig
    schwab: SchwabConfig
    tokens: TokenConfig
    quotes: QuotesConfig
    refresh: RefreshConfig
    logging: LoggingConfig
    database: DatabaseConfig
    raw: Dict[str, Any] = field(default_factory=dict)
    base_currency: Optional[str] = None
