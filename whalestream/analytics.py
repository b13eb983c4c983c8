"""Per-coin VWAP analytics: session-wide and rolling-window averages."""

from __future__ import annotations

from dataclasses import dataclass, field

_SYMBOL_CAPACITY = 16


@dataclass(frozen=True)
class CoinPair:
    """A tradable symbol with its reference price."""

    symbol: str
    price: float

    def __post_init__(self) -> None:
        if len(self.symbol.encode()) >= _SYMBOL_CAPACITY:
            raise ValueError(f"symbol too long: {self.symbol!r}")


class RollingVWAP:
    """Volume-weighted average price over the last ``window`` trades."""

    __slots__ = ("window", "_pv", "_v", "_pos", "_count", "_sum_pv", "_sum_v")

    def __init__(self, window: int = 50) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        self.window = window
        self._pv = [0.0] * window
        self._v = [0.0] * window
        self.reset()

    def add(self, price: float, qty: float) -> None:
        """Add a trade, evicting the oldest one once the window is full."""
        x = price * qty
        pos = self._pos
        if self._count < self.window:
            self._sum_pv += x
            self._sum_v += qty
            self._count += 1
        else:
            self._sum_pv += x - self._pv[pos]
            self._sum_v += qty - self._v[pos]
        self._pv[pos] = x
        self._v[pos] = qty
        self._pos = (pos + 1) % self.window

    def value(self) -> float:
        """Current VWAP, or 0.0 when there is no volume."""
        return self._sum_pv / self._sum_v if self._sum_v > 0.0 else 0.0

    def reset(self) -> None:
        """Forget all trades."""
        self._pos = 0
        self._count = 0
        self._sum_pv = 0.0
        self._sum_v = 0.0

    def __len__(self) -> int:
        return self._count


@dataclass
class SessionVWAP:
    """Volume-weighted average price since the last reset."""

    pv: float = 0.0
    v: float = 0.0

    def add(self, price: float, qty: float) -> None:
        """Add a trade."""
        self.pv += price * qty
        self.v += qty

    def value(self) -> float:
        """Current VWAP, or 0.0 when there is no volume."""
        return self.pv / self.v if self.v > 0.0 else 0.0

    def reset(self) -> None:
        """Forget all trades."""
        self.pv = 0.0
        self.v = 0.0


@dataclass
class CoinAnalytics:
    """Analytics tracked for one coin."""

    session: SessionVWAP = field(default_factory=SessionVWAP)
    roll50: RollingVWAP = field(default_factory=lambda: RollingVWAP(50))

    def reset(self) -> None:
        """Reset every tracked average."""
        self.session.reset()
        self.roll50.reset()