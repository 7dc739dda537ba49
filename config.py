"""
Configuration loaded from environment variables. Fail-fast on invalid values.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class ConfigError(Exception):
    """Raised when required credentials are missing."""
    pass


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Kalshi credentials (RSA-signed REST v2)
    kalshi_api_key_id: str = ""
    kalshi_private_key_path: str = ""
    # Inline PEM alternative to the key file (line breaks may be collapsed)
    kalshi_private_key_pem: str = ""
    kalshi_host: str = "https://api.elections.kalshi.com/trade-api/v2"
    kalshi_demo: bool = False
    # 15-minute BTC up/down series
    kalshi_series_ticker: str = "KXBTC15M"

    # Polymarket credentials
    private_key: str = Field(default="", description="Polygon wallet private key (hex)")
    polymarket_profile_address: str = Field(default="", description="Polymarket proxy address")
    signature_type: int = Field(default=2, ge=0, le=2)
    polymarket_credential_path: str = ""

    # Polymarket endpoints
    clob_host: str = "https://clob.polymarket.com"
    gamma_host: str = "https://gamma-api.polymarket.com"
    chain_id: int = 137  # Polygon mainnet
    polymarket_tick_size: str = Field(default="0.01", pattern=r"^0\.0*1$")
    polymarket_neg_risk: bool = False
    # Exchange rejects orders below this notional ($)
    polymarket_min_usd: float = Field(default=1.0, gt=0)

    # Monitor
    monitor_interval_ms: int = Field(default=200, ge=10)
    monitor_ticker: str = ""  # pin a Kalshi ticker; empty = auto-discover
    monitor_restart_on_rollover: bool = True
    polymarket_asset: str = "btc"

    # Cross-venue arbitrage: enter when sum of opposite asks is in [low, high)
    arb_sum_low: float = Field(default=0.75, ge=0.0, le=2.0)
    arb_sum_high: float = Field(default=0.92, gt=0.0, le=2.0)
    arb_price_buffer: float = Field(default=0.02, ge=0.0, le=0.2)
    arb_size: float = Field(default=5.0, gt=0)
    arb_kalshi_min: int = Field(default=5, ge=1)
    arb_poly_min: int = Field(default=5, ge=1)
    arb_dry_run: bool = False

    # Follow-confidence: Kalshi at 1.00 -> buy same side on Polymarket
    poly_buy_min: float = Field(default=0.80, ge=0.0, le=1.0)
    poly_sell_below: float = Field(default=0.70, ge=0.0, le=1.0)
    poly_sell_range_buffer: float = Field(default=0.15, ge=0.0, le=1.0)
    follow_size: int = Field(default=5, ge=1)
    poly_buy_limit_buffer: float = Field(default=0.01, ge=0.0, le=0.2)
    follow_dry_run: bool = False

    # Order-family dry runs (log intended order, never transmit)
    kalshi_dry_run: bool = False
    polymarket_dry_run: bool = False

    # Startup balance gate
    min_balance_usd: float = Field(default=5.0, ge=0)
    halt_on_low_balance: bool = True

    # Paths
    logs_dir: str = "logs"
    holdings_path: str = "data/token-holding.json"

    log_level: str = "INFO"


def polymarket_configured(cfg: Config) -> bool:
    """Trading on Polymarket needs both the signer key and the proxy address."""
    return bool(cfg.private_key and cfg.polymarket_profile_address)


def missing_credentials(cfg: Config) -> list[str]:
    """Return human-readable names of missing credential settings."""
    missing: list[str] = []
    if not cfg.kalshi_api_key_id.strip():
        missing.append("KALSHI_API_KEY_ID")
    if not cfg.kalshi_private_key_path.strip() and not cfg.kalshi_private_key_pem.strip():
        missing.append("KALSHI_PRIVATE_KEY_PATH or KALSHI_PRIVATE_KEY_PEM")
    if cfg.private_key.strip() and not cfg.polymarket_profile_address.strip():
        missing.append("POLYMARKET_PROFILE_ADDRESS (required when PRIVATE_KEY is set)")
    return missing


def validate_credentials(cfg: Config) -> None:
    """Raise ConfigError listing every missing credential."""
    missing = missing_credentials(cfg)
    if missing:
        raise ConfigError(
            "Missing required environment variable(s):\n  - "
            + "\n  - ".join(missing)
            + "\n\nSet them in .env and try again."
        )


def load_config() -> Config:
    """Load and validate config from environment. Raises on invalid values."""
    return Config()
