"""
Tests for notification formatting, the webhook channel, the Telegram channel
and the fan-out hub.
"""

from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import pytest

from src.scanner.market_scanner import ScanCandidate
from src.scanner.smart_filter import (
    FilterAction,
    FilterDecision,
    FilteredCandidate,
    FilterReason,
    SmartScanReport,
)
from src.signals.models import Direction, Signal, SignalStatus
from src.signals.monitor import Transition
from src.utils.notifier import (
    NotificationHub,
    WebhookNotifier,
    format_scan_report,
    format_signal_message,
    format_transition_message,
    scan_report_payload,
)
from src.utils.telegram import TelegramNotifier

from tests.conftest import NOW, RecordingChannel


def _signal(**kwargs) -> Signal:
    defaults = dict(
        id="SIG_1_BTCUSDT_LONG",
        symbol="BTCUSDT",
        direction=Direction.LONG,
        created_at=NOW,
        entry_price=100.0,
        stop_loss=98.0,
        take_profit1=104.0,
        take_profit2=106.0,
        confidence_percent=80,
        leverage=0.5,
        last_checked_at=NOW,
    )
    defaults.update(kwargs)
    return Signal(**defaults)


def _transition(status: SignalStatus = SignalStatus.HIT_TP1, price: float = 104.2) -> Transition:
    return Transition("SIG_1_BTCUSDT_LONG", "BTCUSDT", SignalStatus.ACTIVE, status, price)


def _outside_code(text: str) -> str:
    return "".join(text.split("`")[::2])


def _report(analyze=("AAAUSDT",), skipped=()) -> SmartScanReport:
    def item(symbol, action, reason):
        cand = ScanCandidate(symbol=symbol, price=1.0, change_24h=5.0, volume_24h=1e8, change_4h=2.0, rvol=2.0)
        return FilteredCandidate(cand, FilterDecision(symbol, action, reason))

    return SmartScanReport(
        timestamp=NOW,
        total_pairs=100,
        scout_matches=len(analyze) + len(skipped),
        to_analyze=[item(s, FilterAction.ANALYZE, FilterReason.NEW_ASSET) for s in analyze],
        skipped=[item(s, FilterAction.SKIP, FilterReason.NO_SIGNIFICANT_CHANGE) for s in skipped],
        observations=list(skipped),
    )


class TestFormatting:

    def test_signal_message(self):
        text = format_signal_message(_signal())
        assert "LONG Signal: BTCUSDT" in text
        assert "Entry: `100`" in text
        assert "TP2: `106`" in text
        assert "TP3" not in text
        assert "Confidence: `80%`" in text

    def test_transition_message(self):
        text = format_transition_message(_signal(), _transition())
        assert "`Active` -> `Hit_TP1`" in text
        assert "+4.20%" in text

    @pytest.mark.parametrize("status", list(SignalStatus))
    def test_transition_markdown_is_balanced(self, status):
        text = format_transition_message(_signal(), _transition(status))
        assert text.count("`") % 2 == 0
        assert "_" not in _outside_code(text)

    def test_scan_report_markdown_is_balanced(self):
        text = format_scan_report(_report(analyze=("AAAUSDT", "BBBUSDT"), skipped=("CCCUSDT",)))
        assert "(`NEW_ASSET`)" in text
        assert "Observing: `CCCUSDT`" in text
        assert "_" not in _outside_code(text)

    def test_free_text_label_stays_in_code_span(self):
        text = format_signal_message(_signal(confidence_label="VERY_HIGH"))
        assert "(`VERY_HIGH`)" in text
        assert "_" not in _outside_code(text)

    def test_empty_report_has_no_payload(self):
        assert scan_report_payload(_report(analyze=())) is None

    def test_report_payload(self):
        payload = scan_report_payload(_report(skipped=("BBBUSDT",)))
        assert [c["symbol"] for c in payload["to_analyze"]] == ["AAAUSDT"]
        assert payload["skipped"][0]["filter_reason"] == "NO_SIGNIFICANT_CHANGE"
        assert payload["observations"] == ["BBBUSDT"]


class TestWebhook:

    @pytest.mark.asyncio
    async def test_posts_to_bridge_paths(self):
        posted = []

        def handler(request: httpx.Request) -> httpx.Response:
            posted.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"ok": True})

        channel = WebhookNotifier("http://bridge.local/", transport=httpx.MockTransport(handler))
        await channel.start()
        await channel.send_signal(_signal())
        await channel.send_transition(_signal(), _transition())
        await channel.send_scan_report(_report())
        await channel.send_scan_report(_report(analyze=()))
        await channel.stop()

        assert [p for p, _ in posted] == ["/webhook/signal", "/webhook/signal-status", "/webhook/scan-report"]
        assert posted[0][1]["id"] == "SIG_1_BTCUSDT_LONG"
        assert posted[1][1]["new_status"] == "Hit_TP1"
        assert posted[1][1]["direction"] == "LONG"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        channel = WebhookNotifier(
            "http://bridge.local", transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        with pytest.raises(httpx.HTTPStatusError):
            await channel.send_signal(_signal())
        await channel.stop()

    def test_disabled_without_url(self):
        assert WebhookNotifier("").enabled is False


class TestTelegram:

    def test_disabled_without_token_or_chats(self):
        assert TelegramNotifier(token="", chat_ids=["1"]).enabled is False
        assert TelegramNotifier(token="abc", chat_ids=[]).enabled is False
        assert TelegramNotifier(token="abc", chat_ids=["1"]).enabled is True

    @pytest.mark.asyncio
    async def test_sends_to_every_chat(self):
        sent = []

        async def send_message(**kwargs):
            sent.append(kwargs)

        notifier = TelegramNotifier(token="abc", chat_ids=["1", "2"], rate_limit_seconds=0)
        notifier._app = SimpleNamespace(bot=SimpleNamespace(send_message=send_message))

        await notifier.send_signal(_signal())

        assert [m["chat_id"] for m in sent] == ["1", "2"]
        assert sent[0]["parse_mode"] == "Markdown"
        assert "BTCUSDT" in sent[0]["text"]

    @pytest.mark.asyncio
    async def test_scan_reports_can_be_disabled(self):
        sent = []

        async def send_message(**kwargs):
            sent.append(kwargs)

        notifier = TelegramNotifier(token="abc", chat_ids=["1"], rate_limit_seconds=0, send_scan_reports=False)
        notifier._app = SimpleNamespace(bot=SimpleNamespace(send_message=send_message))

        await notifier.send_scan_report(_report())
        assert sent == []

    @pytest.mark.asyncio
    async def test_alerts_are_plain_text(self):
        sent = []

        async def send_message(**kwargs):
            sent.append(kwargs)

        notifier = TelegramNotifier(token="abc", chat_ids=["1"], rate_limit_seconds=0)
        notifier._app = SimpleNamespace(bot=SimpleNamespace(send_message=send_message))

        await notifier.send_alert("[UNEXPECTED] scan_cycle / ETHUSDT: KeyError: 'last_price'")

        assert sent[0]["parse_mode"] is None
        assert "scan_cycle" in sent[0]["text"]


class TestHub:

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_others(self):
        broken, good = RecordingChannel(fail=True), RecordingChannel()
        hub = NotificationHub([broken, good])

        delivered = await hub.notify_signal(_signal())

        assert delivered == 1
        assert len(good.signals) == 1

    @pytest.mark.asyncio
    async def test_disabled_channels_skipped(self):
        good = RecordingChannel()
        hub = NotificationHub([WebhookNotifier(""), good])
        assert hub.active_channels == [good]
        assert await hub.notify_transition(_signal(), _transition()) == 1

    @pytest.mark.asyncio
    async def test_empty_scan_report_not_sent(self):
        good = RecordingChannel()
        hub = NotificationHub([good])
        assert await hub.notify_scan_report(_report(analyze=())) == 0
        assert good.reports == []
        assert await hub.notify_scan_report(_report()) == 1
