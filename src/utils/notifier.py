"""
Notification fan-out for signals, lifecycle transitions and scan reports.

Channels share one small interface; the hub delivers to every enabled
channel and swallows nothing silently, but a failing channel never fails
the pipeline that triggered the notification.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from src.core.database import to_iso
from src.core.logger import get_logger
from src.scanner.smart_filter import SmartScanReport
from src.signals.models import Direction, Signal
from src.signals.monitor import Transition

logger = get_logger("notifier")


def _price(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:,.8f}".rstrip("0").rstrip(".")


def format_signal_message(signal: Signal) -> str:
    emoji = "📈" if signal.direction is Direction.LONG else "📉"
    lines = [
        f"{emoji} *{signal.direction.value} Signal: {signal.symbol}*",
        f"Entry: `{_price(signal.entry_price)}`",
        f"Stop Loss: `{_price(signal.stop_loss)}`",
        f"TP1: `{_price(signal.take_profit1)}`",
    ]
    if signal.take_profit2 is not None:
        lines.append(f"TP2: `{_price(signal.take_profit2)}`")
    if signal.take_profit3 is not None:
        lines.append(f"TP3: `{_price(signal.take_profit3)}`")
    if signal.leverage:
        lines.append(f"Leverage: `{signal.leverage:g}x`")
    if signal.confidence_percent is not None:
        lines.append(f"Confidence: `{signal.confidence_percent}%` (`{signal.confidence_label or 'NORMAL'}`)")
    if signal.confluence_score is not None:
        lines.append(f"Confluence: `{signal.confluence_score:g}`")
    lines.append(f"ID: `{signal.id}`")
    return "\n".join(lines)


def format_transition_message(signal: Signal, transition: Transition) -> str:
    emoji = "✅" if transition.new_status.is_win else "❌"
    pnl = signal.unrealized_pnl_pct(transition.price)
    return (
        f"{emoji} *{signal.symbol} {signal.direction.value}*: "
        f"`{transition.old_status.value}` -> `{transition.new_status.value}`\n"
        f"Price: `{_price(transition.price)}` ({pnl:+.2f}%)\n"
        f"ID: `{signal.id}`"
    )


def format_scan_report(report: SmartScanReport) -> str:
    lines = [
        "🔎 *Smart Scan*",
        f"Scout matches: `{report.scout_matches}` / `{report.total_pairs}` pairs",
        f"To analyze: `{len(report.to_analyze)}`",
    ]
    for item in report.to_analyze[:10]:
        c = item.candidate
        rvol = f"{c.rvol:.2f}" if c.rvol is not None else "-"
        lines.append(f"• `{c.symbol}` {c.change_24h:+.2f}% RVOL {rvol} (`{item.decision.reason.value}`)")
    if report.skipped:
        lines.append(f"Skipped: `{len(report.skipped)}`")
    if report.observations:
        lines.append("Observing: " + ", ".join(f"`{s}`" for s in report.observations[:15]))
    return "\n".join(lines)


def scan_report_payload(report: SmartScanReport) -> Optional[Dict[str, Any]]:
    """Webhook body for a scan report, or None when nothing was found."""
    if not report.to_analyze and not report.skipped:
        return None
    return {
        "to_analyze": [c.to_dict() for c in report.to_analyze],
        "skipped": [c.to_dict() for c in report.skipped],
        "observations": list(report.observations),
        "scout_matches": report.scout_matches,
        "timestamp": to_iso(report.timestamp),
    }


class NotificationChannel(ABC):
    name = "channel"

    @property
    @abstractmethod
    def enabled(self) -> bool:
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def send_signal(self, signal: Signal) -> None:
        ...

    @abstractmethod
    async def send_transition(self, signal: Signal, transition: Transition) -> None:
        ...

    @abstractmethod
    async def send_scan_report(self, report: SmartScanReport) -> None:
        ...


class WebhookNotifier(NotificationChannel):
    """JSON POSTs to a bridge service."""

    name = "webhook"

    def __init__(self, url: str = "", timeout_seconds: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = (url or "").rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def start(self) -> None:
        if self._client is None and self.enabled:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> None:
        if self._client is None:
            await self.start()
        resp = await self._client.post(f"{self.url}{path}", json=payload)
        resp.raise_for_status()
        logger.debug("Webhook delivered", path=path, status=resp.status_code)

    async def send_signal(self, signal: Signal) -> None:
        await self._post("/webhook/signal", signal.to_dict())

    async def send_transition(self, signal: Signal, transition: Transition) -> None:
        payload = transition.to_dict()
        payload["direction"] = signal.direction.value
        payload["checked_at"] = to_iso(signal.last_checked_at) if signal.last_checked_at else None
        await self._post("/webhook/signal-status", payload)

    async def send_scan_report(self, report: SmartScanReport) -> None:
        payload = scan_report_payload(report)
        if payload is None:
            logger.info("No scan results to report")
            return
        await self._post("/webhook/scan-report", payload)


class NotificationHub:
    """Delivers to every enabled channel; channel errors are logged and dropped."""

    def __init__(self, channels: Optional[List[NotificationChannel]] = None):
        self.channels: List[NotificationChannel] = list(channels or [])

    @property
    def active_channels(self) -> List[NotificationChannel]:
        return [c for c in self.channels if c.enabled]

    async def start(self) -> None:
        for channel in self.active_channels:
            try:
                await channel.start()
            except Exception as e:
                logger.warning("Notification channel failed to start", channel=channel.name, error=repr(e))

    async def stop(self) -> None:
        for channel in self.channels:
            try:
                await channel.stop()
            except Exception as e:
                logger.warning("Notification channel failed to stop", channel=channel.name, error=repr(e))

    async def _deliver(self, kind: str, method: str, *args: Any) -> int:
        delivered = 0
        for channel in self.active_channels:
            try:
                await getattr(channel, method)(*args)
                delivered += 1
            except Exception as e:
                logger.warning("Notification failed", channel=channel.name, kind=kind, error=repr(e))
        return delivered

    async def notify_signal(self, signal: Signal) -> int:
        return await self._deliver("signal", "send_signal", signal)

    async def notify_transition(self, signal: Signal, transition: Transition) -> int:
        return await self._deliver("transition", "send_transition", signal, transition)

    async def notify_scan_report(self, report: SmartScanReport) -> int:
        if scan_report_payload(report) is None:
            return 0
        return await self._deliver("scan_report", "send_scan_report", report)
