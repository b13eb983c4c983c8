"""Whale-alert client: subscribes to one coin and prints the alerts it receives."""

from __future__ import annotations

import argparse
import asyncio
import re
import socket
import sys
from dataclasses import dataclass
from typing import Callable, Sequence

from .protocol import (
    HEADER_SIZE,
    DataType,
    Header,
    MessageType,
    ProtocolError,
    Subscription,
    WhaleAlert,
    build_frame,
    decode_whale_alerts,
    encode_subscribe,
)
from .utils import write_error

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6000
DEFAULT_SYMBOL = "BTCUSDT"
DEFAULT_THRESHOLD = 100_000.0
RECONNECT_DELAY = 2.0


def format_alert(alert: WhaleAlert, ext_vwap: bool) -> str:
    """Render one alert as the line the client prints."""
    side = "sell" if alert.is_sell else "buy"
    if ext_vwap:
        return (
            f"WHALE ALERT! [{alert.symbol}] {side}: total={alert.total:.2f} "
            f"price={alert.price:.2f} qty=={alert.quantity:.2f} VWAP={alert.vwap_sess:.2f} "
            f"VWAP_roll={alert.vwap_roll50:.2f} delta_roll={alert.delta_roll:.2f} "
        )
    return (
        f"WHALE ALERT! [{alert.symbol}] {side}: total = {alert.total:.2f} "
        f"price = {alert.price:.2f} qty = {alert.quantity:.2f} VWAP = {alert.vwap_sess:.2f}"
    )


class Client:
    """Connects to a server, subscribes and keeps reading frames, reconnecting on failure."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        data_type: int = DataType.WHALE | DataType.VWAP,
        symbol: str = DEFAULT_SYMBOL,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        ext_vwap: bool = False,
        show_log_msg: bool = True,
        reconnect_delay: float = RECONNECT_DELAY,
        on_alert: Callable[[WhaleAlert], None] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.data_type = DataType(int(data_type) & 0xFF)
        self.symbol = symbol
        self.threshold = float(threshold)
        self.ext_vwap = ext_vwap
        self.show_log_msg = show_log_msg
        self.reconnect_delay = reconnect_delay
        self.on_alert = on_alert
        self.packet_count = 0
        self._task: asyncio.Task | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def subscription(self) -> Subscription:
        """The subscription sent after every connect."""
        return Subscription(self.data_type, self.symbol, self.threshold)

    def _log(self, message: str) -> None:
        if self.show_log_msg:
            print(message, flush=True)

    async def start(self) -> None:
        """Begin connecting in the background."""
        if self._task is not None and not self._task.done():
            raise RuntimeError("client already started")
        self._task = asyncio.create_task(self._connect_loop())
        self._log(f"Client started [{self.symbol}]")

    async def stop(self) -> None:
        """Cancel pending work and close the connection; safe to repeat."""
        task, self._task = self._task, None
        self._close_writer()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def run(self) -> None:
        """Start the client and keep it running until it is stopped."""
        await self.start()
        task = self._task
        try:
            await asyncio.gather(task, return_exceptions=True)
        finally:
            await self.stop()

    def _close_writer(self) -> None:
        writer, self._writer = self._writer, None
        if writer is not None:
            try:
                writer.close()
            except OSError:
                pass

    async def _connect_loop(self) -> None:
        while True:
            await self._session()
            await asyncio.sleep(self.reconnect_delay)

    async def _session(self) -> None:
        try:
            reader, writer = await asyncio.open_connection(self.host, self.port)
        except socket.gaierror as exc:
            write_error("Resolve failed", exc)
            return
        except OSError as exc:
            write_error("Connect failed", exc)
            return
        self._writer = writer
        try:
            self._log("Connected to server")
            self.packet_count = 0
            frame = build_frame(MessageType.SUBSCRIBE, 0, encode_subscribe(self.subscription))
            try:
                writer.write(frame)
                await writer.drain()
            except OSError as exc:
                write_error("Write subscribe failed", exc)
                return
            await self._read_frames(reader)
        finally:
            if self._writer is writer:
                self._close_writer()

    async def _read_frames(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await reader.readexactly(HEADER_SIZE)
            except (asyncio.IncompleteReadError, ConnectionResetError):
                print("Connection lost", flush=True)
                return
            except OSError as exc:
                write_error("Read header error", exc)
                return
            try:
                header = Header.unpack(raw)
            except ProtocolError as exc:
                print(f"{exc}", file=sys.stderr)
                return
            expected = self.packet_count % 256
            if header.msg_num != expected:
                print(
                    f"Bad header_msg_num = {header.msg_num} waiting msg_num = {expected}",
                    file=sys.stderr,
                )
                return
            self.packet_count += 1
            body = b""
            if header.length:
                try:
                    body = await reader.readexactly(header.length)
                except (asyncio.IncompleteReadError, OSError) as exc:
                    write_error("Read body error", exc)
                    return
            self.process_body(header.message_type, body)

    def process_body(self, data_type: int, body: bytes) -> list[WhaleAlert]:
        """Handle one frame body and return the alerts it carried."""
        if data_type == MessageType.DATA:
            alerts: list[WhaleAlert] = []
            try:
                for alert in decode_whale_alerts(body):
                    alerts.append(alert)
                    if self.show_log_msg:
                        print("\n" + format_alert(alert, self.ext_vwap), flush=True)
                    if self.on_alert is not None:
                        self.on_alert(alert)
            except ProtocolError as exc:
                print(f"{exc}", flush=True)
            return alerts
        if data_type == MessageType.ALIVE:
            self._log("Alive msg")
        else:
            print(f"Unknown msg_data_type={int(data_type)}", flush=True)
        return []


@dataclass(frozen=True)
class _Options:
    host: str
    port: int
    data_type: int
    symbol: str
    threshold: float
    ext_vwap: bool


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


_FLOAT = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def _atof(text: str) -> float:
    match = _FLOAT.match(text)
    return float(match.group(1)) if match else 0.0


def _parse_args(argv: Sequence[str] | None) -> _Options:
    parser = argparse.ArgumentParser(description="Receive whale trade alerts from a server.")
    parser.add_argument("host", nargs="?", default=DEFAULT_HOST)
    parser.add_argument("port", nargs="?", default=str(DEFAULT_PORT))
    parser.add_argument("data_type", nargs="?", default=str(int(DataType.WHALE | DataType.VWAP)))
    parser.add_argument("symbol", nargs="?", default=DEFAULT_SYMBOL)
    parser.add_argument("threshold", nargs="?", default=str(DEFAULT_THRESHOLD))
    parser.add_argument("ext_vwap", nargs="?", default="1")
    args = parser.parse_args(argv)
    return _Options(
        host=args.host,
        port=_atoi(args.port) & 0xFFFF,
        data_type=_atoi(args.data_type) & 0xFF,
        symbol=args.symbol,
        threshold=_atof(args.threshold),
        ext_vwap=bool(_atoi(args.ext_vwap)),
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Command-line entry: ``[host] [port] [data_type] [symbol] [threshold] [ext_vwap]``."""
    options = _parse_args(argv)
    try:
        client = Client(
            options.host,
            options.port,
            options.data_type,
            options.symbol,
            threshold=options.threshold,
            ext_vwap=options.ext_vwap,
        )
        asyncio.run(client.run())
    except KeyboardInterrupt:
        pass
    except Exception as exc:  # noqa: BLE001 - report any failure and exit cleanly
        print(f"Exception: {exc}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())