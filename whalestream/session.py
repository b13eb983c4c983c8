"""Server side of one client connection: subscription handling and alert delivery."""

from __future__ import annotations

import asyncio
import sys
import time
from typing import Iterable, Protocol

from .events import WhaleEvent
from .protocol import (
    HEADER_SIZE,
    Header,
    MessageType,
    ProtocolError,
    Subscription,
    WhaleAlert,
    build_frame,
    decode_subscribe,
    encode_whale_alerts,
)
from .ringbuffer import RingBuffer
from .utils import write_error

SESSION_BUFFER_SIZE = 512 * 1024
DELIVERY_BATCH = 4096
_SPIN_CYCLES = 1000
_IDLE_SLEEP = 0.001


class SessionHost(Protocol):
    """What a session needs from the server that owns it."""

    show_log_msg: bool

    def coin_index(self, symbol: str) -> int | None: ...

    def coin_symbol(self, index: int) -> str: ...

    def register_session(self, session: "Session") -> None: ...


class Session:
    """One subscribed client.

    Whale events are pushed into a private ring buffer (possibly from another
    thread) and a pump task sends them to the client as data frames.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer,
        server: SessionHost,
        *,
        buffer_capacity: int = SESSION_BUFFER_SIZE,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._server = server
        self._events: RingBuffer[WhaleEvent] = RingBuffer(buffer_capacity)
        self._msg_num = 0
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: tuple[asyncio.Task, ...] = ()
        self.req_type = 0
        self.symbol_index = -1
        self.whale_threshold = 0.0
        self.subscription: Subscription | None = None
        self.time_last_send = time.monotonic()

    async def start(self) -> None:
        """Serve the connection until the client leaves or the session is closed."""
        self._loop = asyncio.get_running_loop()
        read_task = asyncio.create_task(self._read_loop())
        pump_task = asyncio.create_task(self._pump_events())
        self._tasks = (read_task, pump_task)
        try:
            await asyncio.wait({read_task})
        finally:
            self.close()
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _log(self, message: str) -> None:
        if self._server.show_log_msg:
            print(message, flush=True)

    async def _read_loop(self) -> None:
        while not self._closed:
            try:
                raw = await self._reader.readexactly(HEADER_SIZE)
            except (asyncio.IncompleteReadError, ConnectionResetError):
                self._log("\nClient disconnected")
                return
            except OSError as exc:
                write_error("Read header error", exc)
                return
            try:
                header = Header.unpack(raw)
            except ProtocolError as exc:
                print(f"\nSession: {exc}, closing", file=sys.stderr)
                return
            if header.msg_num != 0:
                print("\nSession: bad msg_num, closing", file=sys.stderr)
                return
            try:
                body = await self._reader.readexactly(header.length) if header.length else b""
            except (asyncio.IncompleteReadError, ConnectionResetError):
                self._log("\nClient disconnected")
                return
            except OSError as exc:
                write_error("Read body error", exc)
                return
            if header.message_type == MessageType.SUBSCRIBE:
                try:
                    self.handle_subscribe(body)
                except ProtocolError:
                    return
            else:
                print(
                    f"\nSession: unexpected dataType from client: {header.message_type}",
                    file=sys.stderr,
                )

    async def _pump_events(self) -> None:
        empty_cycles = 0
        overload = self._events.capacity * 0.9
        while not self._closed:
            if len(self._events) > overload:
                self._events.update_tail(self._events.head)
                print("\nSession event pump OVERLOADED! DROPS!", flush=True)
            delivered = False
            while not self._closed and (batch := self._events.pop_batch(DELIVERY_BATCH)):
                self.deliver_updates(batch)
                delivered = True
                try:
                    await self._writer.drain()
                except (ConnectionResetError, BrokenPipeError):
                    self._log("\nClient disconnected")
                    self.close()
                    return
                except OSError as exc:
                    write_error("Write error", exc)
                    self.close()
                    return
            if delivered:
                empty_cycles = 0
                await asyncio.sleep(0)
            else:
                empty_cycles += 1
                await asyncio.sleep(0 if empty_cycles < _SPIN_CYCLES else _IDLE_SLEEP)

    def handle_subscribe(self, payload: bytes) -> Subscription:
        """Apply a subscribe payload and register with the server.

        On a malformed payload the session is closed and ProtocolError raised.
        """
        try:
            subscription = decode_subscribe(payload)
        except ProtocolError as exc:
            print(f"\nSession: {exc}", file=sys.stderr)
            self.close()
            raise
        index = self._server.coin_index(subscription.symbol)
        self.req_type = int(subscription.data_type)
        self.symbol_index = -1 if index is None else index
        self.whale_threshold = subscription.threshold
        self.subscription = subscription
        self._log(f"\nSession: client subscribed to {subscription.symbol}")
        self._server.register_session(self)
        return subscription

    def deliver_updates(self, events: Iterable[WhaleEvent]) -> bytes | None:
        """Send events as one data frame; return the frame, or None once closed."""
        if self._closed:
            return None
        alerts = [
            WhaleAlert.from_event(event, self._server.coin_symbol(event.index_symbol))
            for event in events
        ]
        frame = build_frame(MessageType.DATA, self._msg_num, encode_whale_alerts(alerts))
        self._msg_num = (self._msg_num + 1) & 0xFF
        self._writer.write(frame)
        self.time_last_send = time.monotonic()
        return frame

    def push_event(self, event: WhaleEvent) -> bool:
        """Queue an event for delivery; return False when it had to be dropped."""
        if self._events.can_write(1):
            self._events.push_batch((event,))
            return True
        return False

    def expired(self) -> bool:
        """True once the connection is closed."""
        return self._closed

    def close(self) -> None:
        """Close the connection and stop the session's tasks; safe to repeat."""
        if self._closed:
            return
        self._closed = True
        try:
            self._writer.close()
        except OSError:
            pass
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._tasks:
            if task is not current:
                task.cancel()

    def force_close(self) -> None:
        """Close the session from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self.close()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self.close()
        else:
            loop.call_soon_threadsafe(self.close)