"""Binary wire protocol shared by the server and its clients.

Every frame starts with a 9-byte big-endian header: a 16-bit signature
(0xAA55), an 8-bit version (1), an 8-bit message type, an 8-bit message
number and a 32-bit payload length.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Iterable, Iterator

from .events import WhaleEvent

HEADER_SIGNATURE = 0xAA55
PROTOCOL_VERSION = 1
MAX_PAYLOAD = 10 * 1024 * 1024

_HEADER = struct.Struct(">HBBBI")
HEADER_SIZE = _HEADER.size

_U8 = struct.Struct(">B")
_U16 = struct.Struct(">H")
_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")
_F64 = struct.Struct(">d")


class DataType(IntFlag):
    """Kinds of signal a client may subscribe to."""

    UNKNOWN = 0
    WHALE = 1 << 0
    VWAP = 1 << 1


class MessageType(IntEnum):
    """The message type carried in a frame header."""

    SUBSCRIBE = 0x01
    DATA = 0x02
    ALIVE = 0x03


class ProtocolError(ValueError):
    """Raised when a frame or payload does not follow the protocol."""


@dataclass(frozen=True)
class Header:
    """A frame header."""

    message_type: int
    msg_num: int = 0
    length: int = 0
    signature: int = HEADER_SIGNATURE
    version: int = PROTOCOL_VERSION

    def pack(self) -> bytes:
        """Encode the header as its 9 wire bytes."""
        try:
            return _HEADER.pack(
                self.signature, self.version, self.message_type, self.msg_num, self.length
            )
        except struct.error as exc:
            raise ProtocolError(f"header field out of range: {exc}") from exc

    @classmethod
    def unpack(cls, data: bytes) -> "Header":
        """Decode and validate a header read from the wire."""
        if len(data) != HEADER_SIZE:
            raise ProtocolError(f"header must be {HEADER_SIZE} bytes, got {len(data)}")
        signature, version, message_type, msg_num, length = _HEADER.unpack(data)
        if signature != HEADER_SIGNATURE:
            raise ProtocolError("bad signature")
        if version != PROTOCOL_VERSION:
            raise ProtocolError("bad version")
        if length > MAX_PAYLOAD:
            raise ProtocolError(f"payload too large ({length})")
        return cls(message_type, msg_num, length, signature, version)


class _Reader:
    """Sequential reader over a payload that names the missing field on underrun."""

    __slots__ = ("_data", "_pos")

    def __init__(self, data: bytes, pos: int = 0) -> None:
        self._data = bytes(data)
        self._pos = pos

    def take(self, size: int, what: str) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise ProtocolError(f"No {what}")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def unpack(self, fmt: struct.Struct, what: str):
        return fmt.unpack(self.take(fmt.size, what))[0]


def _decode_symbol(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError("symbol is not valid UTF-8") from exc


@dataclass(frozen=True)
class Subscription:
    """A client's request: signal kinds, coin symbol and whale threshold in USD."""

    data_type: DataType
    symbol: str
    threshold: float = 100_000.0


def encode_subscribe(subscription: Subscription) -> bytes:
    """Encode a subscribe payload."""
    symbol = subscription.symbol.encode("utf-8")
    if len(symbol) > 0xFF:
        raise ProtocolError("symbol longer than 255 bytes")
    return b"".join(
        (
            _U8.pack(int(subscription.data_type) & 0xFF),
            _U8.pack(len(symbol)),
            symbol,
            _F64.pack(subscription.threshold),
        )
    )


def decode_subscribe(payload: bytes) -> Subscription:
    """Decode a subscribe payload sent by a client."""
    if not payload:
        raise ProtocolError("subscribe payload empty")
    # The server insists on at least five bytes before reading the symbol.
    if len(payload) < 5:
        raise ProtocolError("subscribe payload too short")
    data_type = DataType(payload[0])
    reader = _Reader(payload, 1)
    symbol_len = reader.unpack(_U8, "symbol_length")
    symbol = _decode_symbol(reader.take(symbol_len, "symbol_data"))
    threshold = reader.unpack(_F64, "treshold")
    return Subscription(data_type, symbol, threshold)


@dataclass(frozen=True)
class WhaleAlert:
    """A whale trade as it travels to the client."""

    price: float
    quantity: float
    is_sell: bool
    timestamp: int
    symbol: str
    vwap_sess: float = 0.0
    vwap_roll50: float = 0.0
    delta_roll: float = 0.0

    @property
    def total(self) -> float:
        """Notional value of the trade."""
        return self.price * self.quantity

    @classmethod
    def from_event(cls, event: WhaleEvent, symbol: str) -> "WhaleAlert":
        """Build an alert from a server-side event and its coin symbol."""
        return cls(
            price=event.price,
            quantity=event.quantity,
            is_sell=bool(event.is_sell),
            timestamp=event.timestamp,
            symbol=symbol,
            vwap_sess=event.vwap_sess,
            vwap_roll50=event.vwap_roll50,
            delta_roll=event.delta_roll,
        )


def encode_whale_alerts(alerts: Iterable[WhaleAlert]) -> bytes:
    """Encode a data payload: a 32-bit count followed by the alerts."""
    parts: list[bytes] = []
    for alert in alerts:
        symbol = alert.symbol.encode("utf-8")
        if len(symbol) > 0xFFFF:
            raise ProtocolError("symbol longer than 65535 bytes")
        parts.extend(
            (
                _F64.pack(alert.price),
                _F64.pack(alert.quantity),
                _U8.pack(1 if alert.is_sell else 0),
                _U64.pack(alert.timestamp),
                _U16.pack(len(symbol)),
                symbol,
                _F64.pack(alert.vwap_sess),
                _F64.pack(alert.vwap_roll50),
                _F64.pack(alert.delta_roll),
            )
        )
    return _U32.pack(len(parts) // 9) + b"".join(parts)


def decode_whale_alerts(body: bytes) -> Iterator[WhaleAlert]:
    """Yield the alerts of a data payload in order.

    Raises ProtocolError, naming the missing field, when the payload ends
    early; alerts decoded before that point have already been yielded.
    """
    reader = _Reader(body)
    count = reader.unpack(_U32, "cont_whale")
    for _ in range(count):
        price = reader.unpack(_F64, "price")
        quantity = reader.unpack(_F64, "quantity")
        is_sell = reader.unpack(_U8, "is_sell")
        timestamp = reader.unpack(_U64, "timestamp")
        symbol_len = reader.unpack(_U16, "symbol_length")
        symbol = _decode_symbol(reader.take(symbol_len, "symbol_data"))
        vwap_sess = reader.unpack(_F64, "vwap_sess")
        vwap_roll50 = reader.unpack(_F64, "vwap_roll50")
        delta_roll = reader.unpack(_F64, "delta_roll")
        yield WhaleAlert(
            price=price,
            quantity=quantity,
            is_sell=bool(is_sell),
            timestamp=timestamp,
            symbol=symbol,
            vwap_sess=vwap_sess,
            vwap_roll50=vwap_roll50,
            delta_roll=delta_roll,
        )


def build_frame(message_type: int, msg_num: int, payload: bytes) -> bytes:
    """Prefix ``payload`` with a header; the message number wraps at 256."""
    payload = bytes(payload)
    header = Header(int(message_type), msg_num & 0xFF, len(payload))
    return header.pack() + payload