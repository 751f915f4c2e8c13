"""
Tests for confidence scoring and the SIGNAL / MUTED decision.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.ai.confidence import (
    ConfidenceGate,
    DecisionAction,
    check_threshold,
    confidence_percent,
)
from src.ai.oracle import SignalResult, WaitResult
from src.core.config import ConfidenceConfig, RiskConfig
from src.core.exceptions import InvalidOracleResultError
from src.execution.risk_manager import RiskManager
from src.memory.analysis_memory import AnalysisMemory, MuteReason
from src.signals.gatekeeper import BlockingKind, DirectionCheck, GatekeeperResult
from src.signals.models import Direction, SignalStatus
from src.signals.store import SignalStore

from tests.conftest import NOW


def _signal_result(points: float, direction: Direction = Direction.LONG, **levels) -> SignalResult:
    levels.setdefault("entry", 100.0)
    levels.setdefault("stop_loss", 98.0 if direction is Direction.LONG else 102.0)
    levels.setdefault("tp1", 104.0 if direction is Direction.LONG else 96.0)
    return SignalResult(direction=direction, confluence_points=points, max_points=15, **levels)


class TestScoring:

    @pytest.mark.parametrize("points,max_points,expected", [
        (11, 15, 73),
        (12, 15, 80),
        (13, 15, 87),
        (15, 15, 100),
        (0, 15, 0),
        (1, 8, 13),      # 12.5 rounds half up
        (7.5, 10, 75),
    ])
    def test_percent(self, points, max_points, expected):
        assert confidence_percent(points, max_points) == expected

    def test_non_positive_max_rejected(self):
        with pytest.raises(InvalidOracleResultError):
            confidence_percent(5, 0)

    def test_threshold_is_inclusive(self):
        assert check_threshold(75, 75).meets_threshold is True
        below = check_threshold(74, 75)
        assert below.meets_threshold is False
        assert below.difference == -1
        assert "below threshold" in below.message


class TestGate:

    @pytest.fixture
    def memory(self, db) -> AnalysisMemory:
        return AnalysisMemory(db)

    @pytest.fixture
    def store(self, db) -> SignalStore:
        return SignalStore(db)

    @pytest.fixture
    def gate(self, memory, store) -> ConfidenceGate:
        return ConfidenceGate(
            memory,
            store,
            RiskManager(RiskConfig(max_leverage=20, risk_pct=0.01, portfolio_value=1000)),
            ConfidenceConfig(threshold=75, mute_duration_hours=4),
        )

    @pytest.mark.asyncio
    async def test_low_confidence_mutes(self, gate, memory, store):
        decision = await gate.process("BTCUSDT", _signal_result(11), price=100.0, rvol=2.0, now=NOW)

        assert decision.action is DecisionAction.MUTED
        assert decision.notify is False
        assert decision.confidence_percent == 73
        assert decision.mute_until == NOW + timedelta(hours=4)

        status = await memory.check_mute_status("BTCUSDT", now=NOW)
        assert status.muted is True
        assert status.reason is MuteReason.LOW_CONFIDENCE
        assert status.confidence_score == 73
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_confident_signal_is_emitted(self, gate, memory, store):
        decision = await gate.process(
            "btcusdt", _signal_result(12, tp2=106.0), price=100.0, rvol=2.0,
            trigger_reason="Smart Scan (NEW_ASSET)", now=NOW,
        )

        assert decision.action is DecisionAction.SIGNAL
        assert decision.notify is True
        assert decision.confidence_percent == 80
        sig = decision.signal
        assert sig.status is SignalStatus.ACTIVE
        assert sig.confidence_percent == 80
        assert sig.leverage == pytest.approx(0.5)
        assert sig.position_size == pytest.approx(5.0)
        assert sig.take_profit2 == 106.0
        assert sig.trigger_reason == "Smart Scan (NEW_ASSET)"
        assert len(await store.list()) == 1
        assert (await memory.check_mute_status("BTCUSDT", now=NOW)).muted is False

    @pytest.mark.asyncio
    async def test_wait_result_mutes_regardless_of_score(self, gate, memory):
        result = WaitResult(confluence_points=14, max_points=15)
        decision = await gate.process("BTCUSDT", result, price=100.0, now=NOW)

        assert decision.action is DecisionAction.MUTED
        assert decision.result_kind == "WAIT"
        assert (await memory.check_mute_status("BTCUSDT", now=NOW)).reason is MuteReason.WAIT_RESULT

    @pytest.mark.asyncio
    async def test_exact_threshold_signals(self, gate):
        result = SignalResult(
            direction=Direction.LONG, confluence_points=7.5, max_points=10,
            entry=100.0, stop_loss=98.0, tp1=104.0,
        )
        decision = await gate.process("BTCUSDT", result, price=100.0, now=NOW)
        assert decision.action is DecisionAction.SIGNAL

    @pytest.mark.asyncio
    async def test_disallowed_direction_is_blocked(self, gate, memory, store):
        gk = GatekeeperResult(symbol="BTCUSDT", price=100.0, results={
            Direction.LONG: DirectionCheck(Direction.LONG, False, "sent today", BlockingKind.DAILY_LIMIT),
            Direction.SHORT: DirectionCheck(Direction.SHORT, True, "No active trade"),
        })
        decision = await gate.process("BTCUSDT", _signal_result(13), price=100.0, gate=gk, now=NOW)

        assert decision.action is DecisionAction.BLOCKED
        assert decision.notify is False
        assert await store.list() == []
        assert (await memory.check_mute_status("BTCUSDT", now=NOW)).muted is False

    @pytest.mark.asyncio
    async def test_degenerate_stop_is_rejected(self, gate, store):
        result = _signal_result(13, stop_loss=100.0)
        decision = await gate.process("BTCUSDT", result, price=100.0, now=NOW)

        assert decision.action is DecisionAction.REJECTED
        assert decision.signal is None
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_same_day_duplicate_is_rejected(self, gate, store):
        await gate.process("BTCUSDT", _signal_result(13), price=100.0, now=NOW)
        decision = await gate.process("BTCUSDT", _signal_result(13), price=100.0, now=NOW + timedelta(hours=1))

        assert decision.action is DecisionAction.REJECTED
        assert len(await store.list()) == 1

    @pytest.mark.asyncio
    async def test_low_reward_risk_still_emits(self, gate):
        decision = await gate.process("BTCUSDT", _signal_result(13, tp1=101.0), price=100.0, now=NOW)
        assert decision.action is DecisionAction.SIGNAL
        assert decision.sizing.reward_risk_ok is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("points", [11, 12])
    async def test_analysis_recorded_exactly_once(self, gate, memory, points):
        await gate.process("BTCUSDT", _signal_result(points), price=101.0, rvol=1.9, now=NOW)
        record = await memory.get("BTCUSDT")
        assert record.analysis_count == 1
        assert record.last_price == 101.0
        assert record.last_rvol == 1.9
        assert record.last_analysis_time == NOW
        assert record.last_result["confidence"] == confidence_percent(points, 15)
