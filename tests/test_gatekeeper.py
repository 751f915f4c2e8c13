"""
Tests for the signal gatekeeper: daily limit, open-trade blocking and the
close-on-crossed-level side effect.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.signals.gatekeeper import BlockingKind, SignalGatekeeper
from src.signals.models import Direction, SignalStatus
from src.signals.store import SignalStore

from tests.conftest import NOW

YESTERDAY = NOW - timedelta(days=1)


@pytest.fixture
def store(db) -> SignalStore:
    return SignalStore(db)


@pytest.fixture
def gatekeeper(store) -> SignalGatekeeper:
    return SignalGatekeeper(store)


async def _open_long(store: SignalStore, now=YESTERDAY):
    return await store.record_signal("BTCUSDT", Direction.LONG, 100.0, 98.0, 104.0, now=now)


@pytest.mark.asyncio
async def test_no_history_allows_both(gatekeeper):
    result = await gatekeeper.evaluate("btcusdt", 100.0, now=NOW)
    assert result.symbol == "BTCUSDT"
    assert result.allowed_directions == [Direction.LONG, Direction.SHORT]


@pytest.mark.asyncio
async def test_daily_limit_blocks_only_that_direction(store, gatekeeper):
    await _open_long(store, now=NOW - timedelta(hours=3))
    result = await gatekeeper.evaluate("BTCUSDT", 100.0, now=NOW)

    long_check = result.results[Direction.LONG]
    assert long_check.allowed is False
    assert long_check.blocking_kind is BlockingKind.DAILY_LIMIT
    assert result.is_allowed(Direction.SHORT)


@pytest.mark.asyncio
async def test_daily_limit_wins_even_if_trade_closed(store, gatekeeper):
    sig = await _open_long(store, now=NOW - timedelta(hours=3))
    await store.update_status(sig.id, SignalStatus.HIT_TP1, 104.0)
    result = await gatekeeper.evaluate("BTCUSDT", 100.0, Direction.LONG, now=NOW)
    assert result.results[Direction.LONG].blocking_kind is BlockingKind.DAILY_LIMIT


@pytest.mark.asyncio
async def test_open_trade_blocks(store, gatekeeper):
    sig = await _open_long(store)
    result = await gatekeeper.evaluate("BTCUSDT", 101.0, now=NOW)

    check = result.results[Direction.LONG]
    assert check.allowed is False
    assert check.blocking_kind is BlockingKind.ACTIVE_TRADE
    stored = await store.get(sig.id)
    assert stored.status is SignalStatus.ACTIVE
    assert len(stored.history) == len(sig.history)


@pytest.mark.asyncio
async def test_crossed_stop_closes_and_allows(store, gatekeeper):
    sig = await _open_long(store)
    result = await gatekeeper.evaluate("BTCUSDT", 97.0, Direction.LONG, now=NOW)

    check = result.results[Direction.LONG]
    assert check.allowed is True
    assert check.closed_signal_id == sig.id
    assert check.closed_status is SignalStatus.HIT_SL
    stored = await store.get(sig.id)
    assert stored.status is SignalStatus.HIT_SL
    assert stored.history[-1].price == 97.0


@pytest.mark.asyncio
async def test_crossed_target_closes_as_tp1(store, gatekeeper):
    sig = await _open_long(store)
    result = await gatekeeper.evaluate("BTCUSDT", 104.0, Direction.LONG, now=NOW)
    assert result.results[Direction.LONG].closed_status is SignalStatus.HIT_TP1
    assert (await store.get(sig.id)).status is SignalStatus.HIT_TP1


@pytest.mark.asyncio
async def test_short_levels_are_mirrored(store, gatekeeper):
    await store.record_signal("ETHUSDT", Direction.SHORT, 100.0, 102.0, 96.0, now=YESTERDAY)

    blocked = await gatekeeper.evaluate("ETHUSDT", 99.0, Direction.SHORT, now=NOW)
    assert blocked.results[Direction.SHORT].blocking_kind is BlockingKind.ACTIVE_TRADE

    closed = await gatekeeper.evaluate("ETHUSDT", 102.5, Direction.SHORT, now=NOW)
    assert closed.results[Direction.SHORT].closed_status is SignalStatus.HIT_SL


@pytest.mark.asyncio
async def test_single_direction_request(gatekeeper):
    result = await gatekeeper.evaluate("BTCUSDT", 100.0, "bearish", now=NOW)
    assert list(result.results) == [Direction.SHORT]
    assert result.to_dict()["allowed_directions"] == ["SHORT"]


@pytest.mark.asyncio
async def test_enum_direction_is_accepted(store, gatekeeper):
    await _open_long(store)
    result = await gatekeeper.evaluate("BTCUSDT", 101.0, Direction.SHORT, now=NOW)
    assert result.allowed_directions == [Direction.SHORT]
