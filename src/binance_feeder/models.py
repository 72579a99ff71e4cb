"""Normalized market data records and wire-format decoders.

Binance delivers numeric fields as JSON numbers on some endpoints and as
numeric strings on others (REST klines use strings for prices, websocket
payloads use strings almost everywhere). Every decoder here goes through
``parse_float``/``parse_int`` so that both encodings land on the same value
and a single malformed field degrades to zero instead of failing a batch.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

KLINE_FIELD_COUNT = 11

PriceLevel = Tuple[float, float]


@dataclass(frozen=True)
class Bar:
    """OHLCV bar. Times are epoch milliseconds."""
    open_time: int = 0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    volume: float = 0.0
    close_time: int = 0
    quote_volume: float = 0.0
    trade_count: int = 0
    taker_buy_base: float = 0.0
    taker_buy_quote: float = 0.0


@dataclass(frozen=True)
class Trade:
    """Single exchange trade."""
    id: int
    price: float
    quantity: float
    quote_quantity: float
    timestamp_ms: int
    is_buyer_maker: bool


@dataclass(frozen=True)
class DepthSnapshot:
    """Order book snapshot; bids and asks keep exchange ordering."""
    last_update_id: int
    bids: Tuple[PriceLevel, ...] = ()
    asks: Tuple[PriceLevel, ...] = ()


@dataclass(frozen=True)
class SymbolInfo:
    """Catalog metadata for a symbol discovered via exchangeInfo."""
    symbol: str
    status: str
    base_asset: str = ""
    quote_asset: str = ""
    is_spot_trading_allowed: bool = False
    is_margin_trading_allowed: bool = False

    @property
    def is_tradable(self) -> bool:
        return self.status == "TRADING" and self.is_spot_trading_allowed


@dataclass(frozen=True)
class TimeRange:
    """Half-open millisecond range [start_ms, end_ms)."""
    start_ms: int
    end_ms: int

    @classmethod
    def from_datetimes(cls, start: datetime, end: datetime) -> "TimeRange":
        return cls(start_ms=to_millis(start), end_ms=to_millis(end))


@dataclass(frozen=True)
class BatchWindow:
    """One backfill REST call: bars in [start_time, end_time) for a symbol."""
    symbol: str
    start_time: int
    end_time: int
    cadence: str


def to_millis(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds; naive values are treated as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def parse_float(value: Any) -> float:
    """Decode a numeric wire value given as a number or a numeric string."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def parse_int(value: Any) -> int:
    """Decode an integral wire value given as a number or a numeric string."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value):
            return int(value)
        return 0
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return parse_int(parse_float(value))
    return 0


def decode_kline_row(row: Any) -> Bar:
    """
    Decode one REST kline row.

    Rows shorter than the 11 documented positional fields (or rows that are
    not arrays at all) come back as a zero-valued placeholder Bar so the rest
    of the batch still decodes.
    """
    if not isinstance(row, (list, tuple)) or len(row) < KLINE_FIELD_COUNT:
        logger.debug(f"Short kline row, using placeholder: {row!r}")
        return Bar()

    return Bar(
        open_time=parse_int(row[0]),
        open=parse_float(row[1]),
        high=parse_float(row[2]),
        low=parse_float(row[3]),
        close=parse_float(row[4]),
        volume=parse_float(row[5]),
        close_time=parse_int(row[6]),
        quote_volume=parse_float(row[7]),
        trade_count=parse_int(row[8]),
        taker_buy_base=parse_float(row[9]),
        taker_buy_quote=parse_float(row[10]),
    )


def decode_klines(rows: Any) -> List[Bar]:
    if not isinstance(rows, list):
        logger.warning(f"Unexpected klines payload type: {type(rows).__name__}")
        return []
    return [decode_kline_row(row) for row in rows]


def decode_stream_kline(kline: Dict[str, Any]) -> Bar:
    """Decode the ``k`` object of a websocket kline event."""
    return Bar(
        open_time=parse_int(kline.get("t")),
        open=parse_float(kline.get("o")),
        high=parse_float(kline.get("h")),
        low=parse_float(kline.get("l")),
        close=parse_float(kline.get("c")),
        volume=parse_float(kline.get("v")),
        close_time=parse_int(kline.get("T")),
        quote_volume=parse_float(kline.get("q")),
        trade_count=parse_int(kline.get("n")),
        taker_buy_base=parse_float(kline.get("V")),
        taker_buy_quote=parse_float(kline.get("Q")),
    )


def decode_rest_trade(data: Dict[str, Any]) -> Trade:
    return Trade(
        id=parse_int(data.get("id")),
        price=parse_float(data.get("price")),
        quantity=parse_float(data.get("qty")),
        quote_quantity=parse_float(data.get("quoteQty")),
        timestamp_ms=parse_int(data.get("time")),
        is_buyer_maker=bool(data.get("isBuyerMaker", False)),
    )


def decode_stream_trade(data: Dict[str, Any]) -> Trade:
    price = parse_float(data.get("p"))
    quantity = parse_float(data.get("q"))
    quote_quantity = parse_float(data.get("Q")) if "Q" in data else price * quantity
    return Trade(
        id=parse_int(data.get("t")),
        price=price,
        quantity=quantity,
        quote_quantity=quote_quantity,
        timestamp_ms=parse_int(data.get("T")),
        is_buyer_maker=bool(data.get("m", False)),
    )


def decode_levels(levels: Optional[Sequence[Any]]) -> Tuple[PriceLevel, ...]:
    """Convert ``[[price, qty], ...]`` into float pairs, dropping malformed levels."""
    if not levels:
        return ()

    decoded = []
    for level in levels:
        if isinstance(level, (list, tuple)) and len(level) >= 2:
            decoded.append((parse_float(level[0]), parse_float(level[1])))
    return tuple(decoded)


def decode_depth(data: Dict[str, Any]) -> DepthSnapshot:
    """
    Decode a depth payload.

    REST snapshots and partial-book stream events use
    ``lastUpdateId``/``bids``/``asks``; diff-depth stream events use
    ``u``/``b``/``a``. Both are accepted.
    """
    last_update_id = data.get("lastUpdateId", data.get("u"))
    bids = data.get("bids", data.get("b"))
    asks = data.get("asks", data.get("a"))
    return DepthSnapshot(
        last_update_id=parse_int(last_update_id),
        bids=decode_levels(bids),
        asks=decode_levels(asks),
    )


def decode_symbol_info(data: Dict[str, Any]) -> SymbolInfo:
    return SymbolInfo(
        symbol=str(data.get("symbol", "")),
        status=str(data.get("status", "")),
        base_asset=str(data.get("baseAsset", "")),
        quote_asset=str(data.get("quoteAsset", "")),
        is_spot_trading_allowed=bool(data.get("isSpotTradingAllowed", False)),
        is_margin_trading_allowed=bool(data.get("isMarginTradingAllowed", False)),
    )
