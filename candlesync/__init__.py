"""Candle synchronization engine: Binance klines → SQLite, with live fan-out."""

__version__ = "0.1.0"
