import asyncio
import json

import pytest
import websockets

from whalestream.analytics import CoinPair
from whalestream.market import (
    BINANCE_STREAMS,
    MarketEmulator,
    parse_market_message,
    parse_trade,
    stream_binance,
)
from whalestream.registry import CoinRegistry
from whalestream.utils import FastRandom

COINS = [CoinPair("BTCUSDT", 96000.0), CoinPair("ETHUSDT", 2700.0),
         CoinPair("SOLUSDT", 180.0), CoinPair("BNBUSDT", 600.0)]
THRESHOLDS = [100000, 70000, 50000, 60000]


@pytest.fixture
def registry():
    reg = CoinRegistry()
    for i, coin in enumerate(COINS):
        reg.register_coin(coin.symbol, i)
    return reg


def trade(symbol="BTCUSDT", **overrides):
    item = {"e": "trade", "E": 1700000000000, "s": symbol, "t": 42,
            "p": "96001.5", "q": "2.5", "m": True}
    item.update(overrides)
    return item


def test_emulator_regular_trades():
    emu = MarketEmulator(COINS, THRESHOLDS)
    batch = emu.next_batch(64)
    assert len(batch) == 64
    assert emu.generated == 64
    for i, ev in enumerate(batch):
        coin = COINS[ev.index_symbol]
        assert coin.price <= ev.price < coin.price + 0.7
        assert ev.quantity == 1.0
        assert ev.is_sell == (i % 2 == 0)
        assert ev.timestamp > 0
    assert len({ev.timestamp for ev in batch}) == 1


def test_emulator_is_deterministic_for_seed():
    a = MarketEmulator(COINS, THRESHOLDS, rng=FastRandom(7)).next_batch(32)
    b = MarketEmulator(COINS, THRESHOLDS, rng=FastRandom(7)).next_batch(32)
    assert [(e.index_symbol, e.price) for e in a] == [(e.index_symbol, e.price) for e in b]


def test_emulator_whale_cadence():
    emu = MarketEmulator([CoinPair("BTCUSDT", 100.0)], [100000], whale_every=2)
    batch = emu.next_batch(9)
    whales = [i for i, ev in enumerate(batch) if ev.quantity != 1.0]
    assert whales == [2, 5, 8]
    for i in whales:
        assert 1000 <= batch[i].quantity < 1000 + 5000 + 1


def test_emulator_validates_arguments():
    with pytest.raises(ValueError):
        MarketEmulator(COINS, THRESHOLDS[:2])
    with pytest.raises(ValueError):
        MarketEmulator([], [])


def test_parse_trade_fields(registry):
    ev = parse_trade(trade("ETHUSDT", p="2700.25", q="3", m=False), registry)
    assert ev.index_symbol == 1
    assert ev.price == 2700.25
    assert ev.quantity == 3.0
    assert ev.is_sell is False
    assert ev.timestamp == 1700000000000


def test_parse_trade_skips_non_trades(registry):
    assert parse_trade({"result": None, "id": 1}, registry) is None
    assert parse_trade(None, registry) is None
    assert parse_trade(trade("XRPUSDT"), registry) is None
    assert parse_trade(trade(E=0), registry) is None


def test_parse_trade_malformed_raises(registry):
    bad = trade()
    del bad["t"]
    with pytest.raises(KeyError):
        parse_trade(bad, registry)
    with pytest.raises(TypeError):
        parse_trade(trade(p=96000.0), registry)
    with pytest.raises(ValueError):
        parse_trade(trade(q="abc"), registry)


def test_parse_market_message_shapes(registry):
    single = parse_market_message(json.dumps(trade()), registry)
    array = parse_market_message(json.dumps([trade(), trade("SOLUSDT")]), registry)
    wrapped = parse_market_message(json.dumps({"stream": "x", "data": trade("BNBUSDT")}), registry)
    wrapped_list = parse_market_message(json.dumps({"data": [trade(), trade()]}), registry)
    assert [e.index_symbol for e in single] == [0]
    assert [e.index_symbol for e in array] == [0, 2]
    assert [e.index_symbol for e in wrapped] == [3]
    assert len(wrapped_list) == 2


def test_parse_market_message_errors(registry):
    assert parse_market_message("not json", registry) == []
    assert parse_market_message(json.dumps({"data": None}), registry) == []
    bad = trade()
    del bad["m"]
    events = parse_market_message(json.dumps([trade(), bad, trade()]), registry)
    assert len(events) == 1


@pytest.mark.asyncio
async def test_stream_binance_delivers_trades(registry):
    received_requests = []
    sent_trade = trade("SOLUSDT", p="180.5", q="10")

    async def handler(ws, *args):
        received_requests.append(json.loads(await ws.recv()))
        await ws.send(json.dumps(sent_trade))
        await ws.wait_closed()

    server = await websockets.serve(handler, "127.0.0.1", 0)
    try:
        port = server.sockets[0].getsockname()[1]
        stop = asyncio.Event()
        events = []

        def sink(ev):
            events.append(ev)
            stop.set()

        await asyncio.wait_for(stream_binance(f"ws://127.0.0.1:{port}", registry, sink, stop), 10)
    finally:
        server.close()
        await server.wait_closed()

    assert received_requests[0]["method"] == "SUBSCRIBE"
    assert received_requests[0]["params"] == list(BINANCE_STREAMS)
    assert len(events) == 1
    expected = parse_trade(sent_trade, registry)
    got = events[0]
    assert (got.index_symbol, got.price, got.quantity, got.is_sell, got.timestamp) == (
        expected.index_symbol,
        expected.price,
        expected.quantity,
        expected.is_sell,
        expected.timestamp,
    )
    assert got.index_symbol == 2
    assert got.total_usd() == 1805.0