import asyncio

import pytest

from whalestream.events import MarketEvent, WhaleEvent
from whalestream.protocol import (
    HEADER_SIZE,
    DataType,
    Header,
    MessageType,
    Subscription,
    build_frame,
    decode_whale_alerts,
    encode_subscribe,
)
from whalestream.server import DEFAULT_COINS, DEFAULT_THRESHOLDS, Server, format_throughput


class FakeSession:
    def __init__(self, symbol_index, whale_threshold):
        self.symbol_index = symbol_index
        self.whale_threshold = whale_threshold
        self.pushed = []
        self.closed = False

    def push_event(self, event):
        self.pushed.append(event)
        return True

    def expired(self):
        return self.closed

    def force_close(self):
        self.closed = True


@pytest.fixture
def server():
    return Server(port=0, show_log_msg=False, hot_capacity=64, event_capacity=64)


def test_coin_symbol_and_index_round_trip(server):
    for index, coin in enumerate(DEFAULT_COINS):
        assert server.coin_symbol(index) == coin.symbol
        assert server.coin_index(coin.symbol) == index


def test_coin_symbol_out_of_range_is_empty(server):
    assert server.coin_symbol(-1) == ""
    assert server.coin_symbol(len(DEFAULT_COINS)) == ""


def test_unknown_coin_index_is_none(server):
    assert server.coin_index("XRPUSDT") is None


def test_small_trade_updates_vwap_without_whale(server):
    whales = server.process_market_events([MarketEvent(price=100.0, quantity=1.0, index_symbol=0)])
    assert whales == []
    assert server.analytics[0].session.value() == 100.0


def test_large_trade_becomes_whale(server):
    event = MarketEvent(price=100.0, quantity=2000.0, is_sell=True, timestamp=7, index_symbol=0)
    (whale,) = server.process_market_events([event])
    assert whale.price == 100.0
    assert whale.quantity == 2000.0
    assert whale.is_sell is True
    assert whale.timestamp == 7
    assert whale.index_symbol == 0
    assert whale.vwap_sess == 100.0
    assert whale.vwap_roll50 == 0.0


def test_threshold_is_inclusive(server):
    event = MarketEvent(price=DEFAULT_THRESHOLDS[0], quantity=1.0, index_symbol=0)
    assert len(server.process_market_events([event])) == 1


def test_invalid_index_is_ignored(server):
    whales = server.process_market_events(
        [MarketEvent(price=1e9, quantity=1.0, index_symbol=-1),
         MarketEvent(price=1e9, quantity=1.0, index_symbol=len(DEFAULT_COINS))]
    )
    assert whales == []
    assert all(c.session.value() == 0.0 for c in server.analytics)


def test_ext_vwap_fills_rolling_fields(server):
    server.ext_vwap = True
    server.process_market_events([MarketEvent(price=100.0, quantity=1.0, index_symbol=0)])
    (whale,) = server.process_market_events(
        [MarketEvent(price=200.0, quantity=2000.0, index_symbol=0)]
    )
    assert whale.vwap_roll50 == pytest.approx(server.analytics[0].roll50.value())
    assert whale.delta_roll == pytest.approx(200.0 - whale.vwap_roll50)
    assert whale.vwap_sess == pytest.approx(server.analytics[0].session.value())


def test_dispatch_respects_coin_and_threshold(server):
    low = FakeSession(0, 1_000.0)
    high = FakeSession(0, 1_000_000.0)
    other = FakeSession(1, 0.0)
    for session in (low, high, other):
        server.register_session(session)
    event = WhaleEvent(price=100.0, quantity=200.0, index_symbol=0)
    assert server.dispatch_whale_events([event]) == 1
    assert low.pushed == [event]
    assert high.pushed == []
    assert other.pushed == []


def test_dispatch_ignores_out_of_range_events(server):
    session = FakeSession(0, 0.0)
    server.register_session(session)
    event = WhaleEvent(price=1.0, quantity=1.0, index_symbol=99)
    assert server.dispatch_whale_events([event]) == 0
    assert session.pushed == []


def test_new_session_is_picked_up(server):
    first = FakeSession(2, 0.0)
    server.register_session(first)
    event = WhaleEvent(price=10.0, quantity=1.0, index_symbol=2)
    assert server.dispatch_whale_events([event]) == 1
    second = FakeSession(2, 0.0)
    server.register_session(second)
    assert server.dispatch_whale_events([event]) == 2
    assert second.pushed == [event]


def test_unregister_expired_removes_closed_sessions(server):
    alive = FakeSession(0, 0.0)
    gone = FakeSession(0, 0.0)
    server.register_session(alive)
    server.register_session(gone)
    gone.closed = True
    assert server.unregister_expired() == 1
    assert server.sessions == (alive,)
    event = WhaleEvent(price=1.0, quantity=1.0, index_symbol=0)
    assert server.dispatch_whale_events([event]) == 1
    assert gone.pushed == []
    assert server.unregister_expired() == 0


def test_format_throughput_millions():
    line = format_throughput(2_500_000, 1.0, 7)
    assert line.startswith("Throughput: ")
    assert "2.50 M event/sec" in line
    assert "Total: 7 events" in line
    assert len(line) == len("Throughput: ") + 50


def test_format_throughput_thousands():
    assert "1.50 K event/sec" in format_throughput(1500, 1.0, 1500)


def test_format_throughput_plain():
    line = format_throughput(12, 2.0, 12)
    assert "6.00 event/sec" in line
    assert " K " not in line and " M " not in line


def test_format_throughput_rejects_zero_seconds():
    with pytest.raises(ValueError):
        format_throughput(1, 0.0, 1)


def test_mismatched_thresholds_rejected():
    with pytest.raises(ValueError):
        Server(port=0, coins=DEFAULT_COINS, thresholds=(1.0,))


@pytest.mark.asyncio
async def test_end_to_end_whale_delivery():
    server = Server(
        port=0,
        host="127.0.0.1",
        show_log_msg=False,
        thresholds=(0.0, 0.0, 0.0, 0.0),
        hot_capacity=1024,
        event_capacity=1024,
        session_capacity=1024,
    )
    await server.start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        payload = encode_subscribe(Subscription(DataType.WHALE, "BTCUSDT", 0.0))
        writer.write(build_frame(MessageType.SUBSCRIBE, 0, payload))
        await writer.drain()

        header = Header.unpack(await asyncio.wait_for(reader.readexactly(HEADER_SIZE), 20))
        body = await asyncio.wait_for(reader.readexactly(header.length), 20)
        alerts = list(decode_whale_alerts(body))

        assert header.message_type == MessageType.DATA
        assert header.msg_num == 0
        assert alerts
        assert {alert.symbol for alert in alerts} == {"BTCUSDT"}
        writer.close()
    finally:
        await server.stop()
    assert server.sessions == ()