"""Bot configuration."""

import logging
from datetime import timedelta
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)
load_dotenv()

# Bybit kline interval codes that map to a fixed bar length
_INTERVAL_SECONDS = {
    "1": 60,
    "3": 180,
    "5": 300,
    "15": 900,
    "30": 1800,
    "60": 3600,
    "120": 7200,
    "240": 14400,
    "360": 21600,
    "720": 43200,
    "D": 86400,
}


def interval_seconds(code: str) -> int:
    """Bar length in seconds for a Bybit kline interval code."""
    return _INTERVAL_SECONDS[code]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # API
    bybit_api_key: str = Field(default="", alias="BYBIT_API_KEY")
    bybit_api_secret: str = Field(default="", alias="BYBIT_API_SECRET")
    bybit_testnet: bool = Field(default=False, alias="BYBIT_TESTNET")
    api_timeout_seconds: float = 10.0
    api_recv_window: int = 5000

    # Telegram
    telegram_bot_token: str = Field(default="", alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str = Field(default="", alias="TELEGRAM_CHAT_ID")

    # Mode
    trading_mode: Literal["live", "signals"] = Field(default="live", alias="TRADING_MODE")

    # Instrument
    symbol: str = Field(default="SOLUSDT", alias="SYMBOL")
    candle_interval: str = Field(default="60", alias="CANDLE_INTERVAL")
    history_size: int = 6
    initial_history_limit: int = 3

    # Sizing
    trade_size_usd: float = Field(default=5000.0, alias="TRADE_SIZE_USD")
    leverage: int = 25

    # Stops/TPs (price points, not percent)
    take_profit_points: float = 3.0
    stop_loss_points: float = 3.0          # Buffer beyond the signal/confirming extreme
    order_price_offset: float = 0.05       # Limit price placed past market so it fills

    # Trailing
    trailing_activation_points: float = 1.0
    trailing_distance: float = 0.5
    trailing_interval_seconds: float = 10.0
    trailing_alert_cooldown_seconds: float = 300.0
    trailing_alert_min_move: float = 0.5

    # Signal detection
    volume_threshold: float = Field(default=600000.0, alias="VOLUME_THRESHOLD")
    danger_volume_threshold: float = Field(default=1500000.0, alias="DANGER_VOLUME_THRESHOLD")
    signal_max_age_hours: float = 2.0
    signal_alert_cooldown_seconds: float = 60.0

    # Order execution checks (seconds after placement, all below the trailing interval)
    execution_check_delays: list[float] = Field(default_factory=lambda: [1.0, 3.0, 5.0, 8.0])
    # Consecutive "order not found" answers before the position itself is checked
    order_missing_max_checks: int = 3

    # Reconciliation
    adoption_tolerance_points: float = 0.5
    trailing_inference_tolerance: float = 0.25

    # Market data
    ws_reconnect_delay_seconds: float = 5.0
    ws_ping_interval_seconds: float = 20.0
    rest_check_interval_seconds: float = 300.0

    @field_validator("candle_interval")
    @classmethod
    def _known_interval(cls, value: str) -> str:
        if value not in _INTERVAL_SECONDS:
            raise ValueError(f"unsupported candle interval: {value}")
        return value

    @property
    def interval_seconds(self) -> int:
        return _INTERVAL_SECONDS[self.candle_interval]

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.interval_seconds)

    @property
    def signal_max_age(self) -> timedelta:
        return timedelta(hours=self.signal_max_age_hours)

    @property
    def is_live(self) -> bool:
        return self.trading_mode == "live"

    @property
    def is_configured(self) -> bool:
        return bool(self.bybit_api_key and self.bybit_api_secret)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


settings = Settings()
