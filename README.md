# whalestream

whalestream is a small market-data server and client that pick out large
("whale") trades as they happen.

The server reads a stream of trades, either from a built-in market emulator or
from the Binance futures trade stream. For each coin it keeps a session-wide
volume-weighted average price (VWAP) and, optionally, a VWAP over the last 50
trades. When a trade's USD value reaches the server's threshold for that coin,
it is passed to every client subscribed to that coin whose own threshold the
trade also reaches.

The server tracks four coins, each with its own server-side threshold:

| Coin | Threshold (USD) |
|---|---|
| `BTCUSDT` | 100000 |
| `ETHUSDT` | 70000 |
| `SOLUSDT` | 50000 |
| `BNBUSDT` | 60000 |

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Running the server

```
whalestream-server [port] [data_emulation] [ext_vwap]
```

All arguments are positional and optional. Numbers are read leniently: text
that does not start with a number counts as `0`.

| Argument | Default | Meaning |
|---|---|---|
| `port` | `6000` | TCP port to listen on. |
| `data_emulation` | `1` | `1` uses the built-in emulator; `0` streams live trades from Binance. |
| `ext_vwap` | `1` | `1` also computes the rolling 50-trade VWAP and the price's distance from it. |

Once a second the server prints its throughput and the total number of trades
it has taken in. Press Ctrl+C to stop it.

The emulator produces unit-quantity trades around fixed reference prices;
only one trade in every 75,000,000 is sized as a whale. In live mode the server
reconnects to Binance when the connection fails or no message arrives for five
seconds.

## Running the client

```
whalestream-client [host] [port] [request_type] [symbol] [threshold] [ext_vwap]
```

All arguments are positional and optional.

| Argument | Default | Meaning |
|---|---|---|
| `host` | `127.0.0.1` | Server address. |
| `port` | `6000` | Server port. |
| `request_type` | `3` | Bit flags sent with the subscription: `1` whale trades, `2` VWAP. |
| `symbol` | `BTCUSDT` | Coin to subscribe to. |
| `threshold` | `100000` | Smallest trade value, in USD, to be told about. |
| `ext_vwap` | `1` | `1` also prints the rolling VWAP and the price's distance from it. |

The client subscribes and prints each alert it receives, for example:

```
WHALE ALERT! [BTCUSDT] buy: total=104512.33 price=96000.41 qty==1.09 VWAP=96000.35 VWAP_roll=96000.37 delta_roll=0.04
```

If the connection drops, or a frame arrives with a bad header or an
out-of-order message number, the client connects again after two seconds.

## Wire protocol

Every message is a frame: a 9-byte header followed by a payload. All values
are big-endian.

| Field | Size | Value |
|---|---|---|
| signature | 2 | `0xAA55` |
| version | 1 | `1` |
| message type | 1 | `1` subscribe (client to server), `2` whale data, `3` alive |
| message number | 1 | counts up from 0 and wraps at 256 |
| length | 4 | payload length in bytes, at most 10 MiB |

`whalestream.protocol` builds and reads these frames:

- `Header` packs and unpacks the header; `unpack` checks signature, version and length.
- `build_frame` makes a complete frame.
- `encode_subscribe` and `decode_subscribe` handle the subscribe payload (`Subscription`).
- `encode_whale_alerts` and `decode_whale_alerts` handle the data payload (`WhaleAlert`).
- `DataType` holds the subscription flags and `MessageType` the header message types.

Malformed input raises `ProtocolError`.

## Library use

The parts the programs are built from can be used on their own.

`whalestream.analytics.RollingVWAP` keeps a VWAP over a fixed window of trades:

```python
from whalestream.analytics import RollingVWAP

vwap = RollingVWAP(3)
vwap.add(100.0, 2.0)
vwap.add(200.0, 2.0)
print(vwap.value())  # 150.0
```

The other modules:

- `whalestream.analytics` also has `SessionVWAP`, `CoinAnalytics` and `CoinPair`.
- `whalestream.registry.CoinRegistry` maps a coin symbol (by its first eight bytes) to an index.
- `whalestream.ringbuffer.RingBuffer` is a fixed-capacity batch queue whose capacity must be a power of two.
- `whalestream.events` has the `MarketEvent` and `WhaleEvent` records.
- `whalestream.market` has `MarketEmulator`, `parse_trade`, `parse_market_message` and `stream_binance`.
- `whalestream.server.Server` can be started from asyncio code with `start`/`stop` or `run`;
  `process_market_events` and `dispatch_whale_events` run the analytics and delivery steps directly.
- `whalestream.client.Client` does the same for the client; `format_alert` renders an alert line.
- `whalestream.utils` has `FastRandom`, a deterministic 32-bit xorshift generator.

## What it does not do

- The server never sends alive (type `3`) frames; the client only recognises them.
- The request type in a subscription is stored but does not change what the
  server sends: every alert carries both VWAP fields.
- A client that subscribes to a coin the server does not track receives no alerts.
- The coin list and server thresholds are fixed on the command line; other
  sets can only be given through the `Server` class.
- There is no encryption, authentication or storage of past trades.