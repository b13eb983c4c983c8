"""Whale-trade detection with session and rolling VWAP: server, client and wire protocol."""

__version__ = "0.1.0"