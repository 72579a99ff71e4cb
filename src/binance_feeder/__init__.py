"""
Binance Feeder - market data ingestion for Binance spot.

This package backfills historical klines over the REST API and streams
realtime klines, trades and depth over websockets, normalizing everything
into a single record shape before handing it to a storage sink.
"""

__version__ = "1.0.0"
__author__ = "Binance Feeder Team"
