from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    symbol: str = Field(default="BTCUSDT")
    interval: str = Field(default="5")
    testnet: bool = Field(default=False)
    category: str = Field(default="linear")

    websocket_base_url: str = Field(default="wss://stream.bybit.com/v5/public/linear")
    websocket_testnet_url: str = Field(default="wss://stream-testnet.bybit.com/v5/public/linear")
    rest_base_url: str = Field(default="https://api.bybit.com")
    rest_testnet_url: str = Field(default="https://api-testnet.bybit.com")

    ping_interval_seconds: float = Field(default=20.0, gt=0)
    pong_timeout_seconds: float = Field(default=10.0, gt=0)
    reconnect_base_seconds: float = Field(default=1.0, gt=0)
    reconnect_max_seconds: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=10, ge=0)

    orderbook_depth: int = Field(default=50, ge=1)
    orderbook_view_depth: int = Field(default=50, ge=1)
    orderbook_gap_detection: bool = Field(default=True)

    max_candles: int = Field(default=100, ge=1)
    candle_view_limit: int = Field(default=50, ge=1)
    backfill_on_start: bool = Field(default=True)
    backfill_limit: int = Field(default=200, ge=1, le=1000)

    big_trade_min_value: float = Field(default=50_000.0, ge=0)
    whale_threshold: float = Field(default=500_000.0, ge=0)
    block_trade_threshold: float = Field(default=1_000_000.0, ge=0)
    max_trades: int = Field(default=100, ge=1)
    max_liquidations: int = Field(default=100, ge=1)

    rest_timeout_seconds: int = Field(default=20, ge=1)
    rest_max_retries: int = Field(default=5, ge=1)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="BMS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def stream_url(self) -> str:
        return self.websocket_testnet_url if self.testnet else self.websocket_base_url

    @property
    def rest_url(self) -> str:
        return self.rest_testnet_url if self.testnet else self.rest_base_url
