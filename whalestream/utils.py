"""Small shared helpers: float comparison, error reporting and a fast PRNG."""

from __future__ import annotations

import sys

_U32 = 0xFFFFFFFF


def double_equals(a: float, b: float, epsilon: float = sys.float_info.epsilon) -> bool:
    """Return True when ``a`` and ``b`` differ by less than ``epsilon``."""
    return abs(a - b) < epsilon


def format_error(text: str, error: BaseException) -> str:
    """Build the one-line error report used by the server and client."""
    code = getattr(error, "errno", None) or 0
    message = getattr(error, "strerror", None) or str(error)
    return f"{text}: code={code} {message}\n"


def write_error(text: str, error: BaseException) -> None:
    """Print an error report to standard error."""
    sys.stderr.write("\n" + format_error(text, error))
    sys.stderr.flush()


class FastRandom:
    """32-bit xorshift generator, deterministic for a given seed."""

    __slots__ = ("_state",)

    def __init__(self, seed: int = 42) -> None:
        self._state = seed & _U32

    def next(self) -> int:
        """Advance the generator and return the next 32-bit value."""
        s = self._state
        s ^= (s << 13) & _U32
        s ^= s >> 17
        s ^= (s << 5) & _U32
        self._state = s
        return s

    def range(self, bound: int) -> int:
        """Return a value in ``[0, bound)`` using multiply-shift reduction."""
        return (self.next() * (bound & _U32)) >> 32

    def float_range(self, low: float, high: float) -> float:
        """Return a value in ``[low, high)`` with 24 bits of resolution."""
        r = (self.next() & 0xFFFFFF) * 2.0**-24
        return low + r * (high - low)