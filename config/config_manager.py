"""
Configuration manager with environment-based loading.

Supports:
- Base configuration (base.yaml)
- Environment-specific overrides (dev.yaml, prod.yaml)
- Secrets loading (secrets.yaml - gitignored)
"""

from __future__ import annotations
from pathlib import Path
from typing import Dict, Any
import yaml
import logging

from .models import (
    AppConfig,
    GatewayConfig,
    SchwabConfig,
    TokenConfig,
    QuotesConfig,
    RefreshConfig,
    LoggingConfig,
    DatabaseConfig,
    DatabasePoolConfig,
)


logger = logging.getLogger(__name__)


class ConfigManager:
    """
    Configuration manager with environment support.

    Loads configuration in this order:
    1. base.yaml (default config)
    2. {env}.yaml (environment-specific, e.g., dev.yaml)
    3. secrets.yaml (if exists, gitignored)

    Later configs override earlier ones.
    """

    def __init__(self, config_dir: str | Path = "config", env: str = "dev"):
        """
        Initialize config manager.

        Args:
            config_dir: Directory containing config files.
            env: Environment name (dev, prod, etc).
        """
        self.config_dir = Path(config_dir)
        self.env = env
        self.config: Dict[str, Any] = {}

    def load(self) -> AppConfig:
        """
        Load configuration from YAML files.

        Returns:
            AppConfig object.

        Raises:
            FileNotFoundError: If base config not found.
            ValueError: If config is invalid.
        """
        base_path = self.config_dir / "base.yaml"
        if not base_path.exists():
            raise FileNotFoundError(f"Base config not found: {base_path}")

        self.config = self._load_yaml(base_path)
        logger.info(f"Loaded base config from {base_path}")

        env_path = self.config_dir / f"{self.env}.yaml"
        if env_path.exists():
            env_config = self._load_yaml(env_path)
            self.config = self._merge_dicts(self.config, env_config)
            logger.info(f"Loaded {self.env} config from {env_path}")

        secrets_path = self.config_dir / "secrets.yaml"
        if secrets_path.exists():
            secrets = self._load_yaml(secrets_path)
            self.config = self._merge_dicts(self.config, secrets)
            logger.info("Loaded secrets")

        return self.parse(self.config)

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """Load YAML file."""
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}

    def _merge_dicts(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dicts (override wins)."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_dicts(result[key], value)
            else:
                result[key] = value
        return result

    @staticmethod
    def parse(raw: Dict[str, Any]) -> AppConfig:
        """Parse raw dict into AppConfig."""
        try:
            integrations_raw = raw.get("integrations", {})
            gateway_raw = integrations_raw.get("ibkr", {})
            gateway = GatewayConfig(
                enabled=gateway_raw.get("enabled", True),
                connect_timeout_sec=gateway_raw.get("connect_timeout_sec", 20.0),
                download_timeout_sec=gateway_raw.get("download_timeout_sec", 15.0),
                contract_details_timeout_sec=gateway_raw.get("contract_details_timeout_sec", 5.0),
                flush_interval_sec=gateway_raw.get("flush_interval_sec", 60.0),
                market_data_type=gateway_raw.get("market_data_type", 3),
            )

            schwab_raw = integrations_raw.get("schwab", {})
            schwab = SchwabConfig(
                enabled=schwab_raw.get("enabled", True),
                api_base=schwab_raw.get("api_base", "https://api.schwabapi.com"),
                request_timeout_sec=schwab_raw.get("request_timeout_sec", 30.0),
            )

            tokens_raw = raw.get("tokens", {})
            tokens = TokenConfig(
                grace_period_sec=tokens_raw.get("grace_period_sec", 300),
                sweep_interval_sec=tokens_raw.get("sweep_interval_sec", 20 * 60),
                sweep_lookahead_sec=tokens_raw.get("sweep_lookahead_sec", 25 * 60),
                access_token_lifetime_sec=tokens_raw.get("access_token_lifetime_sec", 30 * 60),
                refresh_token_lifetime_days=tokens_raw.get("refresh_token_lifetime_days", 7),
            )

            quotes_raw = raw.get("quotes", {})
            quotes = QuotesConfig(
                soft_ttl_sec=quotes_raw.get("soft_ttl_sec", 5 * 60),
                hard_ttl_sec=quotes_raw.get("hard_ttl_sec", 15 * 60),
                max_cache_size=quotes_raw.get("max_cache_size", 500),
            )
            if quotes.hard_ttl_sec < quotes.soft_ttl_sec:
                raise ValueError("quotes.hard_ttl_sec must be >= quotes.soft_ttl_sec")

            refresh_raw = raw.get("refresh", {})
            refresh = RefreshConfig(
                interval_sec=refresh_raw.get("interval_sec", 30 * 60),
                user_ids=list(refresh_raw.get("user_ids", [])),
            )

            logging_raw = raw.get("logging", {})
            logging_config = LoggingConfig(
                level=logging_raw.get("level", "INFO"),
                json=logging_raw.get("json", True),
                dir=logging_raw.get("dir", "./logs"),
                console=logging_raw.get("console", False),
                timezone=logging_raw.get("timezone", "local"),
            )

            db_raw = raw.get("database", {})
            pool_raw = db_raw.get("pool", {})
            database = DatabaseConfig(
                host=db_raw.get("host", "localhost"),
                port=db_raw.get("port", 5432),
                database=db_raw.get("database", "investtrack"),
                user=db_raw.get("user", "investtrack"),
                password=db_raw.get("password", ""),
                pool=DatabasePoolConfig(
                    min_connections=pool_raw.get("min_connections", 2),
                    max_connections=pool_raw.get("max_connections", 10),
                ),
            )

            return AppConfig(
                gateway=gateway,
                schwab=schwab,
                tokens=tokens,
                quotes=quotes,
                refresh=refresh,
                logging=logging_config,
                database=database,
                raw=raw,
                base_currency=raw.get("base_currency"),
            )

        except Exception as e:
            raise ValueError(f"Failed to parse config: {e}")
