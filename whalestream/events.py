"""Event records passed between the market feed, the analytics stage and sessions."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class MarketEvent:
    """A single trade taken from the market feed."""

    price: float = 0.0
    quantity: float = 0.0
    is_sell: bool = False
    timestamp: int = 0
    index_symbol: int = -1

    def total_usd(self) -> float:
        """Notional value of the trade."""
        return self.price * self.quantity


@dataclass(slots=True)
class WhaleEvent:
    """A trade large enough to be reported, with the analytics at that moment."""

    price: float = 0.0
    quantity: float = 0.0
    is_sell: bool = False
    timestamp: int = 0
    index_symbol: int = -1
    vwap_sess: float = 0.0
    vwap_roll50: float = 0.0
    delta_roll: float = 0.0

    def total_usd(self) -> float:
        """Notional value of the trade."""
        return self.price * self.quantity