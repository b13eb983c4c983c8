"""Market data sources: a synthetic trade generator and the Binance trade stream."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from typing import Any, Callable, Iterator, Sequence

import websockets

from .analytics import CoinPair
from .events import MarketEvent
from .registry import CoinRegistry
from .utils import FastRandom

BINANCE_URL = "wss://fstream.binance.com/ws"
BINANCE_STREAMS = ("btcusdt@trade", "ethusdt@trade", "solusdt@trade", "bnbusdt@trade")
WHALE_EVERY = 75_000_000
CLOCK_EVERY = 50_000_000
WATCHDOG_INTERVAL = 5.0
RECONNECT_DELAY = 1.0
PING_INTERVAL = 15
_POLL = 0.1


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class MarketEmulator:
    """Deterministic generator of synthetic trades for a fixed set of coins.

    Trades have unit quantity except every ``whale_every``-th one, which is
    sized around the coin's whale threshold.
    """

    def __init__(
        self,
        coins: Sequence[CoinPair],
        thresholds: Sequence[float],
        *,
        rng: FastRandom | None = None,
        whale_every: int = WHALE_EVERY,
        clock_every: int = CLOCK_EVERY,
    ) -> None:
        if not coins:
            raise ValueError("at least one coin is required")
        if len(coins) != len(thresholds):
            raise ValueError("one threshold per coin is required")
        self.coins = tuple(coins)
        self._rng = rng if rng is not None else FastRandom()
        self._whale_every = whale_every
        self._clock_every = clock_every
        self._base_qty = [int(int(t) / c.price) for c, t in zip(self.coins, thresholds)]
        self._rand_qty = [q * 5 for q in self._base_qty]
        self._whale_counter = 0
        self._clock_counter = 0
        self._timestamp = _now_ms()
        self.generated = 0

    def next_batch(self, size: int) -> list[MarketEvent]:
        """Generate ``size`` trades."""
        rng = self._rng
        batch = []
        for i in range(size):
            index = rng.range(len(self.coins))
            coin = self.coins[index]

            clock = self._clock_counter
            self._clock_counter += 1
            if clock >= self._clock_every:
                self._clock_counter = 0
                self._timestamp = _now_ms()

            price = coin.price + rng.float_range(0.0, 0.7)

            whale = self._whale_counter
            self._whale_counter += 1
            if whale >= self._whale_every:
                self._whale_counter = 0
                quantity = (
                    self._base_qty[index]
                    + rng.range(self._rand_qty[index])
                    + rng.float_range(0.0, 0.99)
                )
            else:
                quantity = 1.0

            batch.append(
                MarketEvent(
                    price=price,
                    quantity=float(quantity),
                    is_sell=(i & 1) == 0,
                    timestamp=self._timestamp,
                    index_symbol=index,
                )
            )
        self.generated += size
        return batch


def _uint(item: dict, key: str) -> int:
    value = item[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise TypeError(f"field {key!r} is not an unsigned integer")
    return value


def _decimal(item: dict, key: str) -> float:
    value = item[key]
    if not isinstance(value, str):
        raise TypeError(f"field {key!r} is not a string")
    return float(value)


def parse_trade(item: Any, registry: CoinRegistry) -> MarketEvent | None:
    """Turn one trade object into an event.

    Returns None for objects that are not trades, for unregistered symbols
    and for trades without a timestamp. Raises KeyError, TypeError or
    ValueError for malformed trades.
    """
    if not isinstance(item, dict):
        return None
    symbol = item.get("s")
    if not isinstance(symbol, str):
        return None
    timestamp = _uint(item, "E")
    index = registry.get_index(symbol)
    if index is None:
        return None
    price = _decimal(item, "p")
    quantity = _decimal(item, "q")
    is_sell = item["m"]
    if not isinstance(is_sell, bool):
        raise TypeError("field 'm' is not a boolean")
    _uint(item, "t")
    if timestamp <= 0:
        return None
    return MarketEvent(
        price=price, quantity=quantity, is_sell=is_sell, timestamp=timestamp, index_symbol=index
    )


def _trade_items(root: Any) -> Iterator[Any]:
    if isinstance(root, list):
        yield from root
    elif isinstance(root, dict):
        if "data" in root:
            data = root["data"]
            if isinstance(data, list):
                yield from data
            else:
                yield data
        else:
            yield root


def parse_market_message(text: str | bytes, registry: CoinRegistry) -> list[MarketEvent]:
    """Extract trade events from a raw stream message.

    Plain objects, arrays and ``{"data": ...}`` wrappers are accepted. A
    malformed trade ends parsing; events before it are kept.
    """
    events: list[MarketEvent] = []
    try:
        root = json.loads(text)
        for item in _trade_items(root):
            event = parse_trade(item, registry)
            if event is not None:
                events.append(event)
    except (ValueError, KeyError, TypeError):
        pass
    return events


def _subscribe_message() -> str:
    return json.dumps({"method": "SUBSCRIBE", "params": list(BINANCE_STREAMS), "id": 1})


async def _follow(ws, registry, sink, stop_event) -> None:
    received = 0

    async def receive() -> None:
        nonlocal received
        async for message in ws:
            received += 1
            for event in parse_market_message(message, registry):
                sink(event)

    loop = asyncio.get_running_loop()
    task = asyncio.create_task(receive())
    try:
        last = 0
        while not stop_event.is_set() and not task.done():
            deadline = loop.time() + WATCHDOG_INTERVAL
            while loop.time() < deadline and not stop_event.is_set() and not task.done():
                await asyncio.sleep(_POLL)
            if stop_event.is_set() or task.done():
                break
            if received == last:
                break
            last = received
    finally:
        task.cancel()
        (outcome,) = await asyncio.gather(task, return_exceptions=True)
    if isinstance(outcome, Exception):
        raise outcome


async def stream_binance(
    url: str,
    registry: CoinRegistry,
    sink: Callable[[MarketEvent], None],
    stop_event,
) -> None:
    """Feed trades from the stream at ``url`` to ``sink`` until ``stop_event`` is set.

    Reconnects when the connection fails or stays silent for a watchdog period.
    """
    while not stop_event.is_set():
        try:
            async with websockets.connect(url, ping_interval=PING_INTERVAL) as ws:
                print("\n[Binance] Connected", flush=True)
                await ws.send(_subscribe_message())
                await _follow(ws, registry, sink, stop_event)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            print(f"\n[Binance] Error: {exc}", file=sys.stderr)
        if not stop_event.is_set():
            await asyncio.sleep(RECONNECT_DELAY)
            print("\n[Binance] Reconnecting...", file=sys.stderr)