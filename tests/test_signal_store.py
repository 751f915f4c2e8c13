"""
Tests for the signal store: level invariants, the daily uniqueness rule,
status transitions and derived statistics.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.core.exceptions import InvariantViolationError, RecordNotFoundError
from src.signals.models import SIGNAL_CREATED, Direction, SignalStatus
from src.signals.store import SignalStore, validate_levels

from tests.conftest import NOW


@pytest.fixture
def store(db) -> SignalStore:
    return SignalStore(db)


async def _long(store: SignalStore, symbol: str = "BTCUSDT", now=NOW, **kwargs):
    return await store.record_signal(symbol, Direction.LONG, 100.0, 98.0, 104.0, 106.0, 110.0, now=now, **kwargs)


class TestParsing:

    @pytest.mark.parametrize("value", [Direction.SHORT, "SHORT", "sell", "Bearish"])
    def test_direction(self, value):
        assert Direction.parse(value) is Direction.SHORT

    @pytest.mark.parametrize("value", [SignalStatus.HIT_TP1, "Hit_TP1", "HIT_TP1", "hittp1"])
    def test_status(self, value):
        assert SignalStatus.parse(value) is SignalStatus.HIT_TP1

    def test_unknown_status(self):
        with pytest.raises(ValueError):
            SignalStatus.parse("Pending")


class TestLevels:

    def test_valid_long_and_short(self):
        validate_levels(Direction.LONG, 100.0, 98.0, 104.0)
        validate_levels(Direction.SHORT, 100.0, 102.0, 96.0)

    @pytest.mark.parametrize("entry,sl,tp1", [
        (100.0, 101.0, 104.0),   # stop above entry
        (100.0, 98.0, 99.0),     # target below entry
        (100.0, 100.0, 104.0),   # stop equals entry
        (0.0, 98.0, 104.0),      # non-positive entry
    ])
    def test_invalid_long(self, entry, sl, tp1):
        with pytest.raises(InvariantViolationError):
            validate_levels(Direction.LONG, entry, sl, tp1)

    def test_invalid_short(self):
        with pytest.raises(InvariantViolationError):
            validate_levels(Direction.SHORT, 100.0, 98.0, 96.0)


class TestRecord:

    @pytest.mark.asyncio
    async def test_record_creates_active_signal(self, store):
        sig = await _long(store, confidence_percent=80, leverage=0.5, trigger_reason="Smart Scan (NEW_ASSET)")

        assert sig.id == f"SIG_{int(NOW.timestamp() * 1000)}_BTCUSDT_LONG"
        assert sig.status is SignalStatus.ACTIVE
        assert [e.event for e in sig.history] == [SIGNAL_CREATED]

        loaded = await store.get(sig.id)
        assert loaded.entry_price == 100.0
        assert loaded.take_profit3 == 110.0
        assert loaded.confidence_percent == 80
        assert loaded.trigger_reason == "Smart Scan (NEW_ASSET)"
        assert loaded.history[0].price == 100.0

    @pytest.mark.asyncio
    async def test_direction_aliases(self, store):
        sig = await store.record_signal("ethusdt", "SELL", 100.0, 102.0, 96.0, now=NOW)
        assert sig.direction is Direction.SHORT
        assert sig.symbol == "ETHUSDT"

    @pytest.mark.asyncio
    async def test_invalid_levels_not_stored(self, store):
        with pytest.raises(InvariantViolationError):
            await store.record_signal("BTCUSDT", Direction.LONG, 100.0, 101.0, 104.0, now=NOW)
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_same_day_duplicate_refused(self, store):
        await _long(store)
        with pytest.raises(InvariantViolationError):
            await _long(store, now=NOW + timedelta(hours=2))
        assert len(await store.list()) == 1

    @pytest.mark.asyncio
    async def test_other_direction_and_next_day_allowed(self, store):
        await _long(store)
        await store.record_signal("BTCUSDT", Direction.SHORT, 100.0, 102.0, 96.0, now=NOW)
        await _long(store, now=NOW + timedelta(days=1))
        assert len(await store.list(symbol="BTCUSDT")) == 3

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        with pytest.raises(RecordNotFoundError):
            await store.get("SIG_0_NOPE")


class TestTransitions:

    @pytest.mark.asyncio
    async def test_update_appends_history(self, store):
        sig = await _long(store)
        updated = await store.update_status(sig.id, SignalStatus.HIT_TP1, 104.5, now=NOW + timedelta(hours=1))

        assert updated.status is SignalStatus.HIT_TP1
        loaded = await store.get(sig.id)
        assert loaded.status is SignalStatus.HIT_TP1
        assert loaded.history[-1].event == "STATUS_CHANGE: Active -> Hit_TP1"
        assert loaded.history[-1].price == 104.5
        assert loaded.last_checked_at == NOW + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, store):
        sig = await _long(store)
        await store.update_status(sig.id, SignalStatus.HIT_SL, 97.0)
        with pytest.raises(InvariantViolationError):
            await store.update_status(sig.id, SignalStatus.HIT_TP1, 105.0)
        assert len((await store.get(sig.id)).history) == 2

    @pytest.mark.asyncio
    async def test_cannot_return_to_active(self, store):
        sig = await _long(store)
        with pytest.raises(InvariantViolationError):
            await store.update_status(sig.id, SignalStatus.ACTIVE, 100.0)

    @pytest.mark.asyncio
    async def test_manual_close_statuses(self, store):
        sig = await _long(store)
        with pytest.raises(InvariantViolationError):
            await store.close_manual(sig.id, SignalStatus.HIT_TP1)
        closed = await store.close_manual(sig.id, SignalStatus.INVALIDATED)
        assert closed.status is SignalStatus.INVALIDATED

    @pytest.mark.asyncio
    async def test_mark_checked(self, store):
        sig = await _long(store)
        await store.mark_checked(sig.id, NOW + timedelta(minutes=5))
        loaded = await store.get(sig.id)
        assert loaded.last_checked_at == NOW + timedelta(minutes=5)
        assert loaded.status is SignalStatus.ACTIVE


class TestStats:

    @pytest.mark.asyncio
    async def test_stats_and_summary(self, store):
        yesterday = NOW - timedelta(days=1)
        a = await _long(store, "AAAUSDT", now=yesterday)
        b = await _long(store, "BBBUSDT", now=yesterday)
        c = await _long(store, "CCCUSDT", now=yesterday)
        await _long(store, "DDDUSDT")
        await store.update_status(a.id, SignalStatus.HIT_TP2, 106.0)
        await store.update_status(b.id, SignalStatus.HIT_SL, 97.0)
        await store.update_status(c.id, SignalStatus.EXPIRED_DAILY, None)

        stats = await store.stats(now=NOW)
        assert (stats.total, stats.wins, stats.losses, stats.active, stats.today) == (4, 1, 1, 1, 1)
        assert stats.win_rate == pytest.approx(0.5)

        summary = await store.summary(now=NOW, recent=2)
        assert summary["win_rate"] == pytest.approx(0.5)
        assert summary["today_count"] == 1
        assert summary["recent_signals"][0]["symbol"] == "DDDUSDT"
        assert len(summary["recent_signals"]) == 2

    @pytest.mark.asyncio
    async def test_win_rate_without_closed_signals(self, store):
        await _long(store)
        assert (await store.stats(now=NOW)).win_rate == 0.0

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        await _long(store, "AAAUSDT")
        await store.record_signal("AAAUSDT", Direction.SHORT, 100.0, 102.0, 96.0, now=NOW)
        await _long(store, "BBBUSDT")

        assert len(await store.list(direction=Direction.SHORT)) == 1
        assert len(await store.list(symbol="aaausdt")) == 2
        assert len(await store.active_signals()) == 3
        latest = await store.latest_active("AAAUSDT", Direction.LONG)
        assert latest.direction is Direction.LONG
