"""Engine configuration."""

import logging
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.instruments import INSTRUMENTS

logger = logging.getLogger(__name__)
load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # API
    okx_api_key: str = Field(default="", alias="OKX_API_KEY")
    okx_secret_key: str = Field(default="", alias="OKX_SECRET_KEY")
    okx_passphrase: str = Field(default="", alias="OKX_PASSPHRASE")
    deepseek_api_key: str = Field(default="", alias="DEEPSEEK_API_KEY")
    llm_url: str = Field(default="https://api.deepseek.com/chat/completions", alias="LLM_URL")
    llm_model: str = "deepseek-chat"
    news_url: str = "https://min-api.cryptocompare.com/data/v2/news/?lang=EN&sortOrder=latest&limit=5"

    # Mode
    trading_mode: Literal["paper", "live"] = Field(default="paper", alias="TRADING_MODE")
    paper_start_balance: float = Field(default=1000.0, alias="PAPER_START_BALANCE")
    data_dir: str = Field(default="data", alias="DATA_DIR")
    logs_dir: str = Field(default="logs", alias="LOGS_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Sizing (runtime defaults, editable through RuntimeConfig)
    allocation_pct: float = 0.05              # 5% of total equity as margin per entry
    leverage: float = 20.0
    available_margin_ratio: float = 0.95      # keep 5% of available equity as buffer
    enabled_instruments: str = Field(default=",".join(INSTRUMENTS), alias="ENABLED_COINS")

    # Indicators
    ema_fast_period: int = 15
    ema_slow_period: int = 60
    min_candles: int = 100
    slow_timeframe: str = "1H"
    fast_timeframe: str = "3m"
    candle_count: int = 300

    # Entry
    cross_tolerance: int = 5                  # candles back from the latest closed one
    momentum_volume_mult: float = 1.5
    momentum_volume_lookback: int = 5
    max_margin_loss: float = 0.10             # stop never risks more than 10% of margin

    # Fees
    taker_fee_rate: float = 0.0005
    break_even_buffer: float = 0.0012

    # Profit stages (net ROI on margin)
    stage1_roi: float = 0.05
    stage2_roi: float = 0.08
    stage3_roi: float = 0.12
    stage1_fraction: float = 0.30
    stage2_fraction: float = 0.30
    stage3_fraction: float = 0.20
    trail_offset_roi: float = 0.05
    trail_floor_roi: float = 0.02

    # Cadence
    loop_interval_seconds: float = 5.0
    idle_decision_interval: float = 180.0
    active_decision_interval: float = 60.0
    sweep_interval_seconds: float = 30.0
    history_limit: int = 1000
    event_limit: int = 200

    # Execution
    margin_reject_code: str = "51008"
    retry_max: int = 2
    retry_shrink_factor: float = 0.8
    exit_ladder_enabled: bool = False

    # Web
    web_host: str = Field(default="0.0.0.0", alias="WEB_HOST")
    web_port: int = Field(default=3000, alias="PORT")

    @property
    def instrument_list(self) -> list[str]:
        return [c.strip() for c in self.enabled_instruments.split(",") if c.strip()]

    @property
    def is_paper(self) -> bool:
        return self.trading_mode == "paper"

    @property
    def is_configured(self) -> bool:
        return bool(self.okx_api_key and self.okx_secret_key and self.okx_passphrase)

    @property
    def stage_thresholds(self) -> tuple[float, float, float]:
        return (self.stage1_roi, self.stage2_roi, self.stage3_roi)

    @property
    def stage_fractions(self) -> tuple[float, float, float]:
        return (self.stage1_fraction, self.stage2_fraction, self.stage3_fraction)


class RuntimeConfig(BaseModel):
    """Operator-editable settings, changed through the web API."""
    allocation_pct: float = Field(default=0.05, gt=0, le=1)
    leverage: float = Field(default=20.0, ge=1, le=125)
    enabled_instruments: list[str] = Field(default_factory=lambda: list(INSTRUMENTS))

    @field_validator("enabled_instruments")
    @classmethod
    def _known_instruments(cls, value: list[str]) -> list[str]:
        unknown = [coin for coin in value if coin not in INSTRUMENTS]
        if unknown:
            raise ValueError(f"unknown instruments: {', '.join(unknown)}")
        return value

    @classmethod
    def from_settings(cls, s: "Settings") -> "RuntimeConfig":
        return cls(
            allocation_pct=s.allocation_pct,
            leverage=s.leverage,
            enabled_instruments=[c for c in s.instrument_list if c in INSTRUMENTS],
        )


settings = Settings()
