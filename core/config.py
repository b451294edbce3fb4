"""Configuration loader -- reads config.yaml + .env, validates with Pydantic.

Resolves ${ENV_VAR} references in YAML values from environment variables.
Fails fast with clear errors if the config is invalid.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import time
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from core.duration import duration_seconds

logger = logging.getLogger(__name__)

# Default home directory for all state files
DEFAULT_HOME = Path.home() / ".finsight"


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} references in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{(\w+)\}")
        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                logger.warning("Environment variable %s not set", var_name)
                return match.group(0)  # leave unresolved
            return env_value
        return pattern.sub(replacer, value)
    elif isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Instrument lists
# ---------------------------------------------------------------------------

class EquityInstrument(BaseModel):
    symbol: str
    display_name: str
    kind: Literal["index", "stock"] = "stock"
    baseline: float = Field(gt=0)
    volatility: float = Field(default=1.0, ge=0)  # percent
    finnhub_symbol: str | None = None


class ForexInstrument(BaseModel):
    symbol: str  # upstream ticker, e.g. USDINR=X
    pair: str    # display pair, e.g. USD/INR
    baseline: float = Field(gt=0)
    volatility: float = Field(default=0.3, ge=0)


class CryptoInstrument(BaseModel):
    id: str      # CoinGecko coin id, e.g. bitcoin
    symbol: str  # ticker shown to users, e.g. BTC
    display_name: str
    baseline: float = Field(gt=0)
    volatility: float = Field(default=3.0, ge=0)


def _default_equities() -> list[EquityInstrument]:
    rows = [
        ("^NSEI", "NIFTY 50", "index", 24500, 0.8, "NIFTY_50"),
        ("^BSESN", "SENSEX", "index", 80000, 0.8, "BSE_SENSEX"),
        ("RELIANCE.NS", "RELIANCE", "stock", 2800, 1.2, None),
        ("TCS.NS", "TCS", "stock", 4200, 1.0, None),
        ("HDFCBANK.NS", "HDFC BANK", "stock", 1650, 1.1, None),
        ("INFY.NS", "INFOSYS", "stock", 1800, 1.3, None),
        ("ICICIBANK.NS", "ICICI BANK", "stock", 1200, 1.4, None),
        ("HINDUNILVR.NS", "HUL", "stock", 2300, 0.9, None),
        ("ITC.NS", "ITC", "stock", 460, 1.5, None),
        ("KOTAKBANK.NS", "KOTAK", "stock", 1750, 1.3, None),
    ]
    return [
        EquityInstrument(
            symbol=symbol,
            display_name=name,
            kind=kind,
            baseline=baseline,
            volatility=vol,
            finnhub_symbol=finnhub,
        )
        for symbol, name, kind, baseline, vol, finnhub in rows
    ]


def _default_forex() -> list[ForexInstrument]:
    return [
        ForexInstrument(symbol="USDINR=X", pair="USD/INR", baseline=84.25),
        ForexInstrument(symbol="EURINR=X", pair="EUR/INR", baseline=91.75),
        ForexInstrument(symbol="GBPINR=X", pair="GBP/INR", baseline=103.45),
        ForexInstrument(symbol="JPYINR=X", pair="JPY/INR", baseline=0.56),
    ]


def _default_crypto() -> list[CryptoInstrument]:
    return [
        CryptoInstrument(id="bitcoin", symbol="BTC", display_name="Bitcoin", baseline=3500000),
        CryptoInstrument(
            id="ethereum", symbol="ETH", display_name="Ethereum", baseline=220000, volatility=4.0,
        ),
    ]


# ---------------------------------------------------------------------------
# Config models (Pydantic)
# ---------------------------------------------------------------------------

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8321


class ProviderConfig(BaseModel):
    enabled: bool = True
    api_key: str = ""
    # Provider-specific extra settings (e.g. base_url overrides)
    extra: dict = Field(default_factory=dict)


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delay: str = "1s"

    @property
    def base_delay_seconds(self) -> float:
        return duration_seconds(self.base_delay)


# Providers known out of the box; YAML entries are merged over these
DEFAULT_PROVIDERS: dict[str, dict] = {
    "finnhub": {"api_key": "${FINNHUB_API_KEY}"},
    "yahoo_finance": {},
    "coingecko": {},
}


class MarketDataConfig(BaseModel):
    equities: list[EquityInstrument] = Field(default_factory=_default_equities)
    forex: list[ForexInstrument] = Field(default_factory=_default_forex)
    crypto: list[CryptoInstrument] = Field(default_factory=_default_crypto)
    quote_currency: str = "inr"
    providers: dict[str, ProviderConfig] = Field(default_factory=lambda: {
        name: ProviderConfig(**entry) for name, entry in DEFAULT_PROVIDERS.items()
    })
    request_timeout: str = "10s"
    default_rate_limit: str = "2000ms"
    # Keyed by upstream: finnhub, yahoo_finance:query1, yahoo_finance:query2,
    # yahoo_forex:query1, yahoo_forex:query2, coingecko
    rate_limits: dict[str, str] = Field(default_factory=dict)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    fallback_threshold: int = Field(default=3, ge=1)
    recovery_probe_cycles: int | None = None

    @field_validator("equities", "forex", "crypto")
    @classmethod
    def _unique_symbols(cls, value: list) -> list:
        seen: set[str] = set()
        for item in value:
            if item.symbol in seen:
                raise ValueError(f"Duplicate symbol in instrument list: {item.symbol}")
            seen.add(item.symbol)
        return value

    @field_validator("providers", mode="before")
    @classmethod
    def _merge_default_providers(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        merged: dict[str, Any] = {name: dict(entry) for name, entry in DEFAULT_PROVIDERS.items()}
        for name, entry in value.items():
            if entry is None:
                continue
            if isinstance(entry, dict) and isinstance(merged.get(name), dict):
                merged[name] = {**merged[name], **entry}
            else:
                merged[name] = entry
        return merged

    def provider(self, name: str) -> ProviderConfig:
        return self.providers.get(name) or ProviderConfig(enabled=False)


class TradingHoursConfig(BaseModel):
    timezone: str = "Asia/Kolkata"
    open: time = time(9, 15)
    close: time = time(15, 30)
    pre_open: time | None = time(9, 0)
    post_close: time | None = time(16, 0)
    trading_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])


class SchedulerConfig(BaseModel):
    open_interval: str = "30s"
    closed_interval: str = "5m"
    trading_hours: TradingHoursConfig = Field(default_factory=TradingHoursConfig)


class CacheConfig(BaseModel):
    backend: Literal["file", "memory"] = "file"
    max_age: str = "1h"


class ServiceConfig(BaseModel):
    # Keep one in-process subscriber so polling runs even with no SSE clients.
    keep_warm: bool = True


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AppConfig(BaseModel):
    """Top-level application configuration."""

    home_dir: str = str(DEFAULT_HOME)
    server: ServerConfig = Field(default_factory=ServerConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def home_path(self) -> Path:
        """Resolved home directory as a Path."""
        return Path(self.home_dir).expanduser()


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    env_path: str | Path | None = None,
) -> AppConfig:
    """Load configuration from YAML + .env files.

    1. Load .env into environment variables
    2. Load config.yaml and resolve ${ENV_VAR} references
    3. Validate against Pydantic models
    4. Create home directory if needed
    """
    # Determine paths
    home = Path(os.environ.get("FINSIGHT_HOME", str(DEFAULT_HOME))).expanduser()

    if env_path is None:
        env_path = home / ".env"
    if config_path is None:
        config_path = home / "config.yaml"

    env_path = Path(env_path)
    config_path = Path(config_path)

    # Load .env
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from %s", env_path)
    else:
        logger.debug("No .env file at %s", env_path)

    # Load config.yaml
    raw_config: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw_config = yaml.safe_load(f) or {}
        logger.info("Loaded config from %s", config_path)
    else:
        logger.warning("No config file at %s, using defaults", config_path)

    # Resolve ${ENV_VAR} references
    resolved = _resolve_env_vars(raw_config)

    # Override home_dir if set via env
    if "FINSIGHT_HOME" in os.environ:
        resolved["home_dir"] = os.environ["FINSIGHT_HOME"]

    # Validate
    config = AppConfig(**resolved)

    # Default provider keys carry ${...} placeholders of their own
    for provider in config.market_data.providers.values():
        provider.api_key = _resolve_env_vars(provider.api_key)

    config.home_path.mkdir(parents=True, exist_ok=True)

    return config


def api_key_or_none(provider: ProviderConfig) -> str | None:
    """Return the provider key, or None if empty or an unresolved ${VAR}."""
    key = (provider.api_key or "").strip()
    if not key or key.startswith("${"):
        return None
    return key
