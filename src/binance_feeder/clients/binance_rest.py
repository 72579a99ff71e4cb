"""Binance REST API client for klines, trades, depth and exchange metadata."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from ..config.settings import BinanceConfig
from ..exceptions import BinanceAPIError
from ..models import (
    Bar,
    DepthSnapshot,
    SymbolInfo,
    Trade,
    decode_depth,
    decode_klines,
    decode_rest_trade,
    decode_symbol_info,
    parse_int,
)

logger = logging.getLogger(__name__)

# Request weights from the Binance docs. Not enforced: the limiter spaces
# every call evenly and the interval is chosen with margin instead.
WEIGHT_KLINES = 1
WEIGHT_TRADES = 5
WEIGHT_DEPTH = 5
WEIGHT_EXCHANGE_INFO = 10
WEIGHT_SERVER_TIME = 1

MAX_KLINES_LIMIT = 1000
MAX_TRADES_LIMIT = 1000
MAX_DEPTH_LIMIT = 5000


class RateLimiter:
    """Enforces a minimum spacing between consecutive API requests."""

    def __init__(self, interval: float):
        self.interval = interval
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    @classmethod
    def per_minute(cls, requests_per_minute: int) -> "RateLimiter":
        return cls(60.0 / requests_per_minute)

    async def acquire(self):
        """Wait until ``interval`` has passed since the previous acquire returned."""
        async with self._lock:
            # Measured after taking the lock so queued callers only wait out
            # what is left of the interval
            if self._last_call is not None:
                remaining = self.interval - (time.monotonic() - self._last_call)
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last_call = time.monotonic()


class BinanceRESTClient:
    """Binance spot REST API client. Every request passes through the rate limiter."""

    def __init__(self, config: BinanceConfig, rate_limiter: Optional[RateLimiter] = None):
        self.config = config
        self.base_url = config.resolved_rest_url()
        self.session: Optional[aiohttp.ClientSession] = None
        self.rate_limiter = rate_limiter or RateLimiter.per_minute(
            config.rate_limit_requests_per_minute
        )

        self.endpoints = {
            'klines': '/api/v3/klines',
            'trades': '/api/v3/trades',
            'depth': '/api/v3/depth',
            'exchangeInfo': '/api/v3/exchangeInfo',
            'time': '/api/v3/time',
        }

        self.stats = {
            'requests': 0,
            'errors': 0,
            'last_request_time': None,
        }

    async def __aenter__(self):
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            connector=aiohttp.TCPConnector(limit=100, limit_per_host=30)
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    @property
    def websocket_url(self) -> str:
        """Combined-stream base address for realtime subscriptions."""
        return self.config.resolved_ws_url()

    async def _make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Make a rate-limited GET request and return the decoded JSON body."""
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")

        url = f"{self.base_url}{endpoint}"

        await self.rate_limiter.acquire()

        self.stats['requests'] += 1
        self.stats['last_request_time'] = time.time()

        try:
            async with self.session.get(url, params=params) as response:
                body = await response.text()
                if not 200 <= response.status < 300:
                    raise BinanceAPIError(response.status, body, url)
                return json.loads(body)
        except Exception:
            self.stats['errors'] += 1
            raise

    async def get_klines(
        self,
        symbol: str,
        interval: str = '1m',
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: int = MAX_KLINES_LIMIT
    ) -> List[Bar]:
        """Get kline/candlestick bars; times are epoch milliseconds."""
        params: Dict[str, Any] = {
            'symbol': symbol.upper(),
            'interval': interval,
        }

        if start_time is not None:
            params['startTime'] = start_time
        if end_time is not None:
            params['endTime'] = end_time
        if limit > 0:
            params['limit'] = min(limit, MAX_KLINES_LIMIT)

        logger.debug(f"Fetching klines for {symbol}: {params}")

        data = await self._make_request(self.endpoints['klines'], params)
        return decode_klines(data)

    async def get_recent_trades(self, symbol: str, limit: int = 500) -> List[Trade]:
        """Get the most recent trades for a symbol."""
        params: Dict[str, Any] = {'symbol': symbol.upper()}
        if limit > 0:
            params['limit'] = min(limit, MAX_TRADES_LIMIT)

        data = await self._make_request(self.endpoints['trades'], params)
        if not isinstance(data, list):
            return []
        return [decode_rest_trade(item) for item in data if isinstance(item, dict)]

    async def get_depth(self, symbol: str, limit: int = 100) -> DepthSnapshot:
        """Get an order book depth snapshot."""
        params: Dict[str, Any] = {'symbol': symbol.upper()}
        if limit > 0:
            params['limit'] = min(limit, MAX_DEPTH_LIMIT)

        data = await self._make_request(self.endpoints['depth'], params)
        depth = decode_depth(data if isinstance(data, dict) else {})
        logger.debug(
            f"Retrieved depth snapshot for {symbol} with {len(depth.bids)} bids and {len(depth.asks)} asks"
        )
        return depth

    async def get_exchange_info(self) -> List[SymbolInfo]:
        """Get the full symbol catalog."""
        data = await self._make_request(self.endpoints['exchangeInfo'])
        symbols = data.get('symbols', []) if isinstance(data, dict) else []
        return [decode_symbol_info(item) for item in symbols if isinstance(item, dict)]

    async def get_server_time(self) -> int:
        """Get exchange server time in epoch milliseconds."""
        data = await self._make_request(self.endpoints['time'])
        return parse_int(data.get('serverTime') if isinstance(data, dict) else None)

    async def health_check(self) -> Dict[str, Any]:
        requests = self.stats['requests']
        error_rate = self.stats['errors'] / requests if requests else 0.0
        return {
            'status': 'degraded' if error_rate > 0.05 else 'healthy',
            'base_url': self.base_url,
            'error_rate': error_rate,
            'stats': dict(self.stats),
        }
