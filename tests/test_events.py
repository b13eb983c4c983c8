import pytest

from whalestream.events import MarketEvent, WhaleEvent


def test_market_event_total_usd():
    event = MarketEvent(price=2.0, quantity=3.0, is_sell=True, timestamp=1, index_symbol=0)
    assert event.total_usd() == pytest.approx(6.0)


def test_whale_event_total_usd():
    event = WhaleEvent(price=96000.0, quantity=0.5, index_symbol=0)
    assert event.total_usd() == pytest.approx(48000.0)


def test_market_event_total_scales_with_quantity():
    small = MarketEvent(price=180.0, quantity=1.0)
    large = MarketEvent(price=180.0, quantity=10.0)
    assert large.total_usd() == pytest.approx(small.total_usd() * 10)


def test_whale_event_analytics_default_to_zero():
    event = WhaleEvent(price=1.0, quantity=1.0)
    assert (event.vwap_sess, event.vwap_roll50, event.delta_roll) == (0.0, 0.0, 0.0)


def test_events_compare_by_value():
    a = WhaleEvent(price=10.0, quantity=2.0, timestamp=5, index_symbol=1)
    b = WhaleEvent(price=10.0, quantity=2.0, timestamp=5, index_symbol=1)
    assert a == b
    b.index_symbol = 2
    assert a != b
    assert a.index_symbol == 1