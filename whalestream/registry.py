"""Open-addressing lookup table from coin symbol to coin index."""

from __future__ import annotations

_U64 = 0xFFFFFFFFFFFFFFFF
_MULTIPLIER = 0xFF51AFD7ED558CCD


class CoinRegistry:
    """Maps symbols to indexes, keyed on the first eight bytes of the symbol."""

    MASK = 8191
    SIZE = MASK + 1

    def __init__(self) -> None:
        self._keys = [0] * self.SIZE
        self._indexes = [-1] * self.SIZE
        self._used = 0

    @staticmethod
    def symbol_key(symbol: str | bytes) -> int:
        """Return the 64-bit key: up to eight leading bytes, little-endian."""
        raw = symbol.encode() if isinstance(symbol, str) else bytes(symbol)
        raw = raw.split(b"\0", 1)[0]
        return int.from_bytes(raw[:8], "little")

    @classmethod
    def _slot(cls, key: int) -> int:
        h = key
        h ^= h >> 33
        h = (h * _MULTIPLIER) & _U64
        h ^= h >> 33
        return h & cls.MASK

    def _probe(self, key: int):
        slot = self._slot(key)
        for _ in range(self.SIZE):
            yield slot
            slot = (slot + 1) & self.MASK

    def register_coin(self, symbol: str | bytes, index: int) -> None:
        """Register ``symbol`` under ``index``, replacing any earlier index."""
        key = self.symbol_key(symbol)
        for slot in self._probe(key):
            stored = self._keys[slot]
            if stored == 0:
                self._keys[slot] = key
                self._indexes[slot] = index
                self._used += 1
                return
            if stored == key:
                self._indexes[slot] = index
                return
        raise OverflowError("coin registry is full")

    def get_index(self, symbol: str | bytes) -> int | None:
        """Return the index registered for ``symbol``, or None."""
        return self.get_index_fast(self.symbol_key(symbol))

    def get_index_fast(self, key: int) -> int | None:
        """Return the index registered for a precomputed key, or None."""
        for slot in self._probe(key):
            stored = self._keys[slot]
            if stored == 0:
                return None
            if stored == key:
                return self._indexes[slot]
        return None

    def __contains__(self, symbol: object) -> bool:
        if not isinstance(symbol, (str, bytes)):
            return False
        return self.get_index(symbol) is not None

    def __len__(self) -> int:
        return self._used