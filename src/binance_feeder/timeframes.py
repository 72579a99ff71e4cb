"""Binance interval codes, their durations and storage timeframe labels."""

from datetime import timedelta
from typing import Dict

from .exceptions import InvalidTimeframeError

INTERVAL_DURATIONS: Dict[str, timedelta] = {
    "1m": timedelta(minutes=1),
    "3m": timedelta(minutes=3),
    "5m": timedelta(minutes=5),
    "15m": timedelta(minutes=15),
    "30m": timedelta(minutes=30),
    "1h": timedelta(hours=1),
    "2h": timedelta(hours=2),
    "4h": timedelta(hours=4),
    "6h": timedelta(hours=6),
    "8h": timedelta(hours=8),
    "12h": timedelta(hours=12),
    "1d": timedelta(days=1),
    "3d": timedelta(days=3),
    "1w": timedelta(weeks=1),
    # Calendar months vary; 30 days is only used for window sizing
    "1M": timedelta(days=30),
}

TIMEFRAME_LABELS: Dict[str, str] = {
    "1m": "1Min",
    "3m": "3Min",
    "5m": "5Min",
    "15m": "15Min",
    "30m": "30Min",
    "1h": "1H",
    "2h": "2H",
    "4h": "4H",
    "6h": "6H",
    "8h": "8H",
    "12h": "12H",
    "1d": "1D",
    "3d": "3D",
    "1w": "1W",
    "1M": "1M",
}

VALID_TIMEFRAMES = frozenset(TIMEFRAME_LABELS.values())


def interval_duration(interval: str) -> timedelta:
    """Return the duration of one bar for a Binance interval code."""
    try:
        return INTERVAL_DURATIONS[interval]
    except KeyError:
        raise InvalidTimeframeError(f"Unsupported interval: {interval}") from None


def interval_millis(interval: str) -> int:
    return int(interval_duration(interval).total_seconds() * 1000)


def to_timeframe(interval: str) -> str:
    """
    Map a Binance interval code to a storage timeframe label.

    Labels that are already canonical pass through unchanged. Anything else
    raises InvalidTimeframeError so callers can reject it before writing.
    """
    if interval in TIMEFRAME_LABELS:
        return TIMEFRAME_LABELS[interval]
    if interval in VALID_TIMEFRAMES:
        return interval
    raise InvalidTimeframeError(f"invalid timeframe {interval} after conversion")
