"""Whale-alert server: market feed, analytics pipeline and client sessions."""

from __future__ import annotations

import argparse
import asyncio
import re
import signal
import sys
import threading
import time
from typing import Iterable, Sequence

from .analytics import CoinAnalytics, CoinPair
from .events import MarketEvent, WhaleEvent
from .market import BINANCE_URL, MarketEmulator, stream_binance
from .registry import CoinRegistry
from .ringbuffer import RingBuffer
from .session import SESSION_BUFFER_SIZE, Session

DEFAULT_PORT = 6000
BUFFER_SIZE = 8 * 1024 * 1024
COLD_BUFFER_SIZE = 2 * 1024 * 1024

DEFAULT_COINS = (
    CoinPair("BTCUSDT", 96000.0),
    CoinPair("ETHUSDT", 2700.0),
    CoinPair("SOLUSDT", 180.0),
    CoinPair("BNBUSDT", 600.0),
)
DEFAULT_THRESHOLDS = (100000.0, 70000.0, 50000.0, 60000.0)

PRODUCER_BATCH = 64
DISPATCH_BATCH = 1024
TAIL_UPDATE_EVERY = 512
SESSION_SWEEP_INTERVAL = 0.1
MONITOR_INTERVAL = 1.0
_SPIN_CYCLES = 100_000
_IDLE_SLEEP = 0.001


def _idle(empty_cycles: int) -> None:
    time.sleep(0 if empty_cycles < _SPIN_CYCLES else _IDLE_SLEEP)


def format_throughput(delta: int, seconds: float, total: int) -> str:
    """Render the throughput line: events per second over ``seconds`` and the total."""
    if seconds <= 0:
        raise ValueError("seconds must be positive")
    speed = delta / seconds
    if speed >= 1e6:
        eps, mul = speed / 1e6, " M"
    elif speed >= 1e3:
        eps, mul = speed / 1e3, " K"
    else:
        eps, mul = speed, ""
    body = f"{eps:.2f}{mul} event/sec | Total: {total} events"
    return f"Throughput: {body:<50}"


class Server:
    """Accepts subscribers and streams whale trades to them.

    A producer thread feeds trades into a hot ring buffer; the hot dispatcher
    updates per-coin VWAP and forwards whale trades to an event buffer; the
    event dispatcher hands each whale to the sessions subscribed to its coin.
    """

    def __init__(
        self,
        port: int = DEFAULT_PORT,
        host: str = "0.0.0.0",
        *,
        data_emulation: bool = True,
        ext_vwap: bool = False,
        show_log_msg: bool = True,
        coins: Sequence[CoinPair] = DEFAULT_COINS,
        thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
        hot_capacity: int = BUFFER_SIZE,
        event_capacity: int = COLD_BUFFER_SIZE,
        session_capacity: int = SESSION_BUFFER_SIZE,
        market_url: str = BINANCE_URL,
    ) -> None:
        if len(coins) != len(thresholds):
            raise ValueError("one threshold per coin is required")
        self.host = host
        self.port = port
        self.data_emulation = data_emulation
        self.ext_vwap = ext_vwap
        self.show_log_msg = show_log_msg
        self.market_url = market_url
        self.coins = tuple(coins)
        self.thresholds = [float(t) for t in thresholds]
        self.analytics = [CoinAnalytics() for _ in self.coins]

        self._registry = CoinRegistry()
        for index, coin in enumerate(self.coins):
            self._registry.register_coin(coin.symbol, index)

        self._hot_buffer: RingBuffer[MarketEvent] = RingBuffer(hot_capacity)
        self._event_buffer: RingBuffer[WhaleEvent] = RingBuffer(event_capacity)
        self._session_capacity = session_capacity

        self._lock = threading.Lock()
        self._subscribers: list = []
        self._need_update_clients = True
        self._client_rows: list[list] = [[] for _ in self.coins]
        self._connections: set[Session] = set()

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._acceptor: asyncio.AbstractServer | None = None
        self._shutdown: asyncio.Event | None = None
        self._started = False
        self._stopped = False

    @property
    def sessions(self) -> tuple:
        """The currently registered subscribers."""
        with self._lock:
            return tuple(self._subscribers)

    def _log(self, message: str) -> None:
        if self.show_log_msg:
            print(message, flush=True)

    async def start(self) -> None:
        """Bind the listening socket and start the processing threads."""
        if self._started:
            raise RuntimeError("server already started")
        self._started = True
        self._shutdown = asyncio.Event()
        self._acceptor = await asyncio.start_server(
            self._handle_client, self.host, self.port, reuse_address=True
        )
        sockets = self._acceptor.sockets or ()
        if sockets:
            self.port = sockets[0].getsockname()[1]
        for name, target in (
            ("session-dispatcher", self._session_dispatcher),
            ("hot-dispatcher", self._hot_dispatcher),
            ("event-dispatcher", self._event_dispatcher),
            ("speed-monitor", self._speed_monitor),
            ("producer", self._producer),
        ):
            thread = threading.Thread(target=target, name=name, daemon=True)
            self._threads.append(thread)
            thread.start()
        self._log("Server started")

    async def stop(self) -> None:
        """Stop accepting, stop the threads and close every session; safe to repeat."""
        if self._shutdown is not None:
            self._shutdown.set()
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        if self._acceptor is not None:
            self._acceptor.close()
        await asyncio.to_thread(self._join_threads)
        self._clear_sessions()
        await asyncio.sleep(0.1)

    async def run(self) -> None:
        """Start the server and serve until it is stopped or interrupted."""
        await self.start()
        loop = asyncio.get_running_loop()
        handler_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self._shutdown.set)
            handler_installed = True
        except (NotImplementedError, RuntimeError, ValueError):
            pass
        try:
            await self._shutdown.wait()
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
            await self.stop()

    def _join_threads(self) -> None:
        for thread in self._threads:
            thread.join()
        self._threads.clear()

    async def _handle_client(self, reader: asyncio.StreamReader, writer) -> None:
        self._log("\nAccepted connection")
        session = Session(reader, writer, self, buffer_capacity=self._session_capacity)
        self._connections.add(session)
        try:
            await session.start()
        finally:
            self._connections.discard(session)

    def register_session(self, session) -> None:
        """Add a subscribed session to the delivery lists."""
        with self._lock:
            self._subscribers.append(session)
            self._need_update_clients = True

    def unregister_expired(self) -> int:
        """Drop sessions whose connection is closed; return how many were dropped."""
        with self._lock:
            alive = [s for s in self._subscribers if not s.expired()]
            removed = len(self._subscribers) - len(alive)
            if removed:
                self._subscribers = alive
                self._need_update_clients = True
        return removed

    def _clear_sessions(self) -> None:
        with self._lock:
            sessions = list(self._subscribers)
            self._subscribers.clear()
            self._need_update_clients = True
        for session in (*sessions, *self._connections):
            if not session.expired():
                session.force_close()

    def coin_symbol(self, index: int) -> str:
        """Symbol of the coin at ``index``, or an empty string when out of range."""
        if 0 <= index < len(self.coins):
            return self.coins[index].symbol
        return ""

    def coin_index(self, symbol: str) -> int | None:
        """Index of the coin named ``symbol``, or None when it is not known."""
        return self._registry.get_index(symbol)

    def process_market_events(self, events: Iterable[MarketEvent]) -> list[WhaleEvent]:
        """Update per-coin VWAP with ``events`` and return the whale trades among them."""
        ext_vwap = self.ext_vwap
        whales: list[WhaleEvent] = []
        count = len(self.coins)
        for ev in events:
            index = ev.index_symbol
            if not 0 <= index < count:
                continue
            coin = self.analytics[index]
            coin.session.add(ev.price, ev.quantity)
            if ext_vwap:
                coin.roll50.add(ev.price, ev.quantity)
            if ev.total_usd() >= self.thresholds[index]:
                whale = WhaleEvent(
                    price=ev.price,
                    quantity=ev.quantity,
                    is_sell=ev.is_sell,
                    timestamp=ev.timestamp,
                    index_symbol=index,
                    vwap_sess=coin.session.value(),
                )
                if ext_vwap:
                    whale.vwap_roll50 = coin.roll50.value()
                    whale.delta_roll = ev.price - whale.vwap_roll50
                whales.append(whale)
        return whales

    def _refresh_clients(self) -> None:
        with self._lock:
            self._need_update_clients = False
            rows: list[list] = [[] for _ in self.coins]
            for session in self._subscribers:
                index = session.symbol_index
                if 0 <= index < len(rows):
                    rows[index].append(session)
            self._client_rows = rows

    def dispatch_whale_events(self, events: Iterable[WhaleEvent]) -> int:
        """Hand whale events to the sessions of their coin whose threshold they reach.

        Returns the number of deliveries made.
        """
        if self._need_update_clients:
            self._refresh_clients()
        rows = self._client_rows
        delivered = 0
        for ev in events:
            if not 0 <= ev.index_symbol < len(rows):
                continue
            total = ev.total_usd()
            for session in rows[ev.index_symbol]:
                if total >= session.whale_threshold:
                    session.push_event(ev)
                    delivered += 1
        return delivered

    def _session_dispatcher(self) -> None:
        while not self._stop_event.wait(SESSION_SWEEP_INTERVAL):
            self.unregister_expired()

    def _producer(self) -> None:
        if self.data_emulation:
            self._emulator_loop()
        else:
            self._binance_stream()

    def _emulator_loop(self) -> None:
        emulator = MarketEmulator(self.coins, self.thresholds)
        dropped = 0
        while not self._stop_event.is_set():
            if self._hot_buffer.can_write(PRODUCER_BATCH):
                self._hot_buffer.push_batch(emulator.next_batch(PRODUCER_BATCH))
            else:
                dropped += PRODUCER_BATCH
            time.sleep(0)

    def _binance_stream(self) -> None:
        def sink(event: MarketEvent) -> None:
            self._hot_buffer.push_batch((event,))

        asyncio.run(stream_binance(self.market_url, self._registry, sink, self._stop_event))

    def _drain(self, buffer: RingBuffer, reader: int, name: str):
        """Skip ahead when the reader lags too far; return the new reader position."""
        head = buffer.head
        if head - reader > buffer.capacity * 0.9:
            buffer.update_tail(head)
            print(f"\n{name} OVERLOADED! DROPS!", flush=True)
            return head, head
        return reader, head

    def _hot_dispatcher(self) -> None:
        buffer = self._hot_buffer
        reader = buffer.tail
        last_tail = reader
        empty_cycles = 0
        while not self._stop_event.is_set():
            reader, head = self._drain(buffer, reader, "hot_dispatcher")
            if head > reader:
                count = min(head - reader, DISPATCH_BATCH)
                events = [buffer.read(pos) for pos in range(reader, reader + count)]
                reader += count
                whales = self.process_market_events(events)
                if reader - last_tail >= TAIL_UPDATE_EVERY:
                    buffer.update_tail(reader)
                    last_tail = reader
                if whales:
                    while not self._event_buffer.can_write(len(whales)):
                        if self._stop_event.is_set():
                            return
                        time.sleep(0)
                    self._event_buffer.push_batch(whales)
                empty_cycles = 0
            else:
                if reader != last_tail:
                    buffer.update_tail(reader)
                    last_tail = reader
                empty_cycles += 1
                _idle(empty_cycles)

    def _event_dispatcher(self) -> None:
        buffer = self._event_buffer
        reader = buffer.head
        last_tail = reader
        empty_cycles = 0
        while not self._stop_event.is_set():
            reader, head = self._drain(buffer, reader, "event_dispatcher")
            if head > reader:
                count = min(head - reader, DISPATCH_BATCH)
                events = [buffer.read(pos) for pos in range(reader, reader + count)]
                reader += count
                self.dispatch_whale_events(events)
                if reader - last_tail >= TAIL_UPDATE_EVERY:
                    buffer.update_tail(reader)
                    last_tail = reader
                empty_cycles = 0
            else:
                if reader != last_tail:
                    buffer.update_tail(reader)
                    last_tail = reader
                empty_cycles += 1
                _idle(empty_cycles)

    def _speed_monitor(self) -> None:
        last_head = self._hot_buffer.head
        last_time = time.monotonic()
        while not self._stop_event.wait(MONITOR_INTERVAL):
            head = self._hot_buffer.head
            now = time.monotonic()
            seconds = now - last_time
            if seconds > 0:
                line = format_throughput(head - last_head, seconds, head)
                sys.stdout.write("\r" + line)
                sys.stdout.flush()
            last_head = head
            last_time = now


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def main(argv: Sequence[str] | None = None) -> int:
    """Command-line entry: ``[port] [data_emulation] [ext_vwap]``."""
    parser = argparse.ArgumentParser(description="Stream whale trade alerts to clients.")
    parser.add_argument("port", nargs="?", default=str(DEFAULT_PORT))
    parser.add_argument("data_emulation", nargs="?", default="1")
    parser.add_argument("ext_vwap", nargs="?", default="1")
    args = parser.parse_args(argv)

    try:
        server = Server(
            port=_atoi(args.port) & 0xFFFF,
            data_emulation=bool(_atoi(args.data_emulation)),
            ext_vwap=bool(_atoi(args.ext_vwap)),
            show_log_msg=True,
        )
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass
    except Exception as exc:  # noqa: BLE001 - report any failure and exit cleanly
        print(f"\n{exc}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())