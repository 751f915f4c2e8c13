"""
Telegram notification channel.

Send-only: signals, lifecycle transitions and scan summaries are pushed to
every configured chat with Markdown formatting. Messages are rate limited
across recipients.
"""

from __future__ import annotations

import asyncio
import time
from typing import List, Optional

from src.core.logger import get_logger
from src.scanner.smart_filter import SmartScanReport
from src.signals.models import Signal
from src.signals.monitor import Transition
from src.utils.notifier import (
    NotificationChannel,
    format_scan_report,
    format_signal_message,
    format_transition_message,
    scan_report_payload,
)

logger = get_logger("telegram")


class TelegramNotifier(NotificationChannel):
    """Telegram bot that only sends messages."""

    name = "telegram"

    def __init__(
        self,
        token: str = "",
        chat_ids: Optional[List[str]] = None,
        rate_limit_seconds: float = 2.0,
        send_scan_reports: bool = True,
    ):
        self.token = (token or "").strip()
        self.chat_ids = [str(c).strip() for c in (chat_ids or []) if str(c).strip()]
        self.rate_limit_seconds = float(rate_limit_seconds)
        self.send_scan_reports = send_scan_reports
        self._app = None
        self._last_message_time: float = 0
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_ids)

    async def start(self) -> None:
        """Build and initialize the bot application."""
        if not self.enabled or self._app is not None:
            return
        from telegram.ext import Application

        self._app = Application.builder().token(self.token).build()
        await self._app.initialize()
        logger.info("Telegram notifier ready", chats=len(self.chat_ids))

    async def stop(self) -> None:
        if self._app is None:
            return
        app, self._app = self._app, None
        try:
            await app.shutdown()
        except Exception as e:
            logger.warning("Telegram shutdown failed", error=repr(e))

    async def send_message(self, text: str, parse_mode: Optional[str] = "Markdown") -> None:
        """Send a message to every configured chat, respecting rate limits."""
        if not self.enabled:
            return
        if self._app is None:
            await self.start()
        async with self._lock:
            for cid in self.chat_ids:
                elapsed = time.time() - self._last_message_time
                if elapsed < self.rate_limit_seconds:
                    await asyncio.sleep(self.rate_limit_seconds - elapsed)
                await self._app.bot.send_message(chat_id=cid, text=text, parse_mode=parse_mode)
                self._last_message_time = time.time()

    async def send_alert(self, text: str) -> None:
        """Operator alert sent as plain text; exception messages are not valid Markdown."""
        await self.send_message(text, parse_mode=None)

    async def send_signal(self, signal: Signal) -> None:
        await self.send_message(format_signal_message(signal))

    async def send_transition(self, signal: Signal, transition: Transition) -> None:
        await self.send_message(format_transition_message(signal, transition))

    async def send_scan_report(self, report: SmartScanReport) -> None:
        if not self.send_scan_reports or scan_report_payload(report) is None:
            return
        await self.send_message(format_scan_report(report))
