"""Symbol universe: explicit include/exclude lists reconciled with the exchange catalog."""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from .models import SymbolInfo

logger = logging.getLogger(__name__)


class SymbolUniverse:
    """
    Resolves the working symbol set.

    When explicit symbols are configured they win; otherwise every catalog
    symbol that is TRADING with spot trading enabled is used. Excludes apply
    in both cases and match case-insensitively.

    Mutations and reads are synchronous and therefore atomic on the event
    loop. Only the catalog fetch suspends, and it is serialized so concurrent
    ``resolve()`` calls share one request.
    """

    def __init__(self, symbols: Iterable[str] = (), exclude_symbols: Iterable[str] = (), client=None):
        self._symbols: List[str] = []
        self._exclude_symbols: List[str] = []
        self._catalog: Dict[str, SymbolInfo] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self.client = client

        for symbol in symbols:
            self.add_symbol(symbol)
        for symbol in exclude_symbols:
            self.add_exclude_symbol(symbol)

    @property
    def catalog_loaded(self) -> bool:
        return self._loaded

    async def resolve(self, force: bool = False) -> List[str]:
        """
        Load the tradable catalog if needed and return the working set.

        A failed catalog fetch is logged and leaves the catalog empty; it never
        raises to the caller.
        """
        async with self._load_lock:
            if force or not self._loaded:
                await self._load_catalog()
        return self.working_set()

    async def _load_catalog(self):
        if self.client is None:
            logger.error("Failed to load all symbols: API client not set")
            return

        try:
            infos = await self.client.get_exchange_info()
        except Exception as e:
            logger.error(f"Failed to load all symbols: failed to get exchange info: {e}")
            return

        catalog = {info.symbol.upper(): info for info in infos if info.is_tradable}
        self._catalog = catalog
        self._loaded = True
        logger.info(f"Loaded {len(catalog)} trading symbols from Binance")

    def working_set(self) -> List[str]:
        """Symbols to ingest, in configuration (or catalog) order."""
        if self._symbols:
            return self._filter(self._symbols)
        return self._filter(list(self._catalog))

    def get_symbols(self) -> List[str]:
        """Explicitly configured symbols, minus excludes."""
        return self._filter(self._symbols)

    def get_exclude_symbols(self) -> List[str]:
        return list(self._exclude_symbols)

    def symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        """Catalog metadata; None for symbols only known from configuration."""
        return self._catalog.get(symbol.upper())

    def _filter(self, symbols: List[str]) -> List[str]:
        if not self._exclude_symbols:
            return list(symbols)

        excluded = {s.upper() for s in self._exclude_symbols}
        return [s for s in symbols if s.upper() not in excluded]

    def is_valid_symbol(self, symbol: str) -> bool:
        return symbol.upper() in {s.upper() for s in self.working_set()}

    def symbol_count(self) -> int:
        return len(self.working_set())

    def add_symbol(self, symbol: str):
        if not _contains(self._symbols, symbol):
            self._symbols.append(symbol.strip().upper())

    def remove_symbol(self, symbol: str):
        _remove(self._symbols, symbol)

    def add_exclude_symbol(self, symbol: str):
        if not _contains(self._exclude_symbols, symbol):
            self._exclude_symbols.append(symbol.strip().upper())

    def remove_exclude_symbol(self, symbol: str):
        _remove(self._exclude_symbols, symbol)

    def symbols_by_pattern(self, pattern: str) -> List[str]:
        pattern = pattern.upper()
        return [s for s in self.working_set() if pattern in s.upper()]

    def symbols_by_quote_asset(self, quote_asset: str) -> List[str]:
        """Working-set symbols quoted in ``quote_asset``; uses catalog metadata when known."""
        quote_asset = quote_asset.upper()
        matched = []
        for symbol in self.working_set():
            info = self.symbol_info(symbol)
            if info is not None and info.quote_asset:
                if info.quote_asset.upper() == quote_asset:
                    matched.append(symbol)
            elif symbol.upper().endswith(quote_asset):
                matched.append(symbol)
        return matched


def _contains(symbols: List[str], symbol: str) -> bool:
    symbol = symbol.strip().upper()
    return any(s.upper() == symbol for s in symbols)


def _remove(symbols: List[str], symbol: str):
    symbol = symbol.strip().upper()
    for i, s in enumerate(symbols):
        if s.upper() == symbol:
            del symbols[i]
            return
