from .settings import (
    BackfillConfig,
    BinanceConfig,
    FeederConfig,
    HealthConfig,
    LoggingConfig,
    RealtimeConfig,
    StorageConfig,
    load_config,
)

__all__ = [
    "BackfillConfig",
    "BinanceConfig",
    "FeederConfig",
    "HealthConfig",
    "LoggingConfig",
    "RealtimeConfig",
    "StorageConfig",
    "load_config",
]
