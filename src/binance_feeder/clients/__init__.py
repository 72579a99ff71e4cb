from .binance_rest import BinanceRESTClient, RateLimiter

__all__ = ["BinanceRESTClient", "RateLimiter"]
