"""Configuration settings for the Binance feeder, validated with Pydantic."""

import os
import re
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, List, Optional

import yaml
from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..timeframes import INTERVAL_DURATIONS

REST_BASE_URL = "https://api.binance.com"
REST_TESTNET_URL = "https://testnet.binance.vision"
WS_BASE_URL = "wss://stream.binance.com:9443/stream"
WS_TESTNET_URL = "wss://testnet.binance.vision/stream"

STREAM_TYPES = ("kline", "trade", "depth")

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)\s*$")


def parse_duration(value: str) -> timedelta:
    """Parse a short duration string such as ``500ms``, ``5s``, ``2m`` or ``1h``."""
    match = _DURATION_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration format: {value}")

    amount, unit = float(match.group(1)), match.group(2)
    if unit == "ms":
        return timedelta(milliseconds=amount)
    if unit == "s":
        return timedelta(seconds=amount)
    if unit == "m":
        return timedelta(minutes=amount)
    return timedelta(hours=amount)


def _validate_interval(value: str) -> str:
    if value not in INTERVAL_DURATIONS:
        raise ValueError(f"invalid interval: {value}")
    return value


Interval = Annotated[str, AfterValidator(_validate_interval)]


class BinanceConfig(BaseModel):
    """Binance API configuration."""
    api_key: Optional[str] = Field(default=None, description="API key (unused by public endpoints)")
    secret_key: Optional[str] = Field(default=None, description="API secret (unused by public endpoints)")
    testnet: bool = Field(default=False, description="Use the Binance spot testnet")
    rest_base_url: Optional[str] = Field(default=None, description="REST base URL override")
    ws_base_url: Optional[str] = Field(default=None, description="Combined stream base URL override")
    # Binance allows 1200/min per IP; stay well under it
    rate_limit_requests_per_minute: int = Field(default=1000, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    def resolved_rest_url(self) -> str:
        if self.rest_base_url:
            return self.rest_base_url.rstrip("/")
        return REST_TESTNET_URL if self.testnet else REST_BASE_URL

    def resolved_ws_url(self) -> str:
        if self.ws_base_url:
            return self.ws_base_url.rstrip("/")
        return WS_TESTNET_URL if self.testnet else WS_BASE_URL


class BackfillConfig(BaseModel):
    """Historical kline backfill configuration."""
    enabled: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    batch_size: int = Field(default=1000, ge=1, le=1000)
    parallelism: int = Field(default=5, ge=1)
    interval: Interval = "1m"
    batch_delay_seconds: float = Field(default=0.1, ge=0)

    @field_validator("enabled", mode="before")
    @classmethod
    def coerce_enabled(cls, v: Any) -> Any:
        # Plugin configs have been seen with "yes"/"1" strings here
        if isinstance(v, str):
            return v.strip().lower() in ("true", "yes", "1", "on")
        return v

    @field_validator("start_time", "end_time")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def check_range(self) -> "BackfillConfig":
        if not self.enabled:
            return self
        if self.start_time is None:
            raise ValueError("backfill start_time is required when enabled")
        if self.end_time is None:
            self.end_time = datetime.now(timezone.utc)
        if self.start_time >= self.end_time:
            raise ValueError("backfill start_time must be before end_time")
        return self


class RealtimeConfig(BaseModel):
    """Realtime websocket configuration."""
    enabled: bool = False
    stream_types: List[str] = Field(default_factory=lambda: ["kline"])
    update_freq: Interval = "1m"
    buffer_size: int = Field(default=1000, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retry_delay: str = "5s"
    reconnect: bool = False
    flush_on_shutdown: bool = False
    keepalive_interval_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="before")
    @classmethod
    def accept_single_stream_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and "stream_type" in data and "stream_types" not in data:
            data = dict(data)
            data["stream_types"] = [data.pop("stream_type")]
        return data

    @field_validator("stream_types")
    @classmethod
    def validate_stream_types(cls, v: List[str]) -> List[str]:
        normalized = []
        for stream_type in v:
            stream_type = stream_type.strip().lower()
            if stream_type not in STREAM_TYPES:
                raise ValueError(f"invalid stream_type: {stream_type}")
            if stream_type not in normalized:
                normalized.append(stream_type)
        return normalized

    @field_validator("retry_delay")
    @classmethod
    def validate_retry_delay(cls, v: str) -> str:
        parse_duration(v)
        return v

    @property
    def retry_delay_seconds(self) -> float:
        return parse_duration(self.retry_delay).total_seconds()


class StorageConfig(BaseModel):
    """Sink storage backend."""
    backend: str = Field(default="memory", description="memory or jsonl")
    directory: str = Field(default="./data", description="Base directory for the jsonl backend")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in ("memory", "jsonl"):
            raise ValueError("Storage backend must be 'memory' or 'jsonl'")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stdout", description="stdout, stderr or a file path")


class HealthConfig(BaseModel):
    """Health check server configuration."""
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8080


class FeederConfig(BaseSettings):
    """Main feeder configuration."""

    service_name: str = "binance-feeder"
    binance: BinanceConfig = Field(default_factory=BinanceConfig)
    symbols: List[str] = Field(default_factory=list, description="Explicit symbols to ingest")
    exclude_symbols: List[str] = Field(default_factory=list, description="Symbols to skip")
    timeframe: Interval = Field(default="1m", description="Base timeframe")
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    model_config = SettingsConfigDict(
        env_prefix="FEEDER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("symbols", "exclude_symbols")
    @classmethod
    def strip_symbols(cls, v: List[str]) -> List[str]:
        return [s.strip() for s in v if s and s.strip()]


def load_config(config_file: str) -> FeederConfig:
    """Load configuration from a YAML file."""

    with open(config_file, "r") as f:
        config_data = yaml.safe_load(f) or {}

    config_data = _substitute_env_vars(config_data)

    return FeederConfig(**config_data)


def _substitute_env_vars(data):
    """Recursively substitute ``${NAME}`` / ``${NAME:default}`` values."""
    if isinstance(data, dict):
        return {key: _substitute_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_spec = data[2:-1]

        if ":" in env_spec:
            env_name, default_value = env_spec.split(":", 1)
        else:
            env_name, default_value = env_spec, None

        return os.getenv(env_name, default_value)
    else:
        return data
