"""Exception types raised by the feeder."""


class FeederError(Exception):
    """Base class for feeder errors."""


class BinanceAPIError(FeederError):
    """Non-success HTTP response from the Binance REST API."""

    def __init__(self, status: int, body: str, url: str = ""):
        self.status = status
        self.body = body
        self.url = url
        super().__init__(f"API request failed: {status} {url}, body: {body}")


class InvalidTimeframeError(FeederError):
    """Cadence has no storage timeframe mapping."""


class SinkWriteError(FeederError):
    """Storage backend rejected a write."""
