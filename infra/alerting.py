"""Telegram notifications for stop-loss fills, session failures and daemon lifecycle."""

from __future__ import annotations

import hashlib
import json
import logging
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, time as dtime
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from core.config import GlobalConfig, QuietHours

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    bot_token: Optional[str]
    chat_id: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 60.0  # Dedupe identical alerts within 60s


def _parse_hhmm(value: str) -> dtime:
    hour, minute = value.split(":")
    return dtime(int(hour), int(minute))


def in_quiet_hours(quiet: Optional[QuietHours], local_now: datetime) -> bool:
    """True when local_now falls inside the window; windows may wrap midnight."""
    if quiet is None or not quiet.enabled:
        return False
    start = _parse_hhmm(quiet.start)
    end = _parse_hhmm(quiet.end)
    now = local_now.time().replace(second=0, microsecond=0)
    if start <= end:
        return start <= now < end
    return now >= start or now < end


class AlertService:
    """
    Send Telegram messages for events an operator must see.

    Features:
    - Deduplication: suppress identical alerts within the dedupe window
    - Quiet hours: non-critical alerts are held back inside a fund's window
    - Disabled unless both bot_token and chat_id are configured
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and config.bot_token and config.chat_id)
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but Telegram bot_token/chat_id not set; disabling alerts")
        self._last_sent: Dict[str, float] = {}
        self._started = False

    @classmethod
    def from_config(cls, global_config: GlobalConfig, dry_run: bool = False) -> "AlertService":
        telegram = global_config.telegram
        config = AlertConfig(
            enabled=bool(telegram.bot_token and telegram.chat_id),
            bot_token=telegram.bot_token,
            chat_id=telegram.chat_id,
            dry_run=dry_run,
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    # Gateway lifecycle, started and stopped alongside the daemon
    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self._enabled:
            logger.info("Notification gateway ready (telegram)")
            self._send_text("FundX daemon started")
        else:
            logger.info("Notification gateway disabled (telegram not configured)")

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._enabled:
            self._send_text("FundX daemon stopped")

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        quiet_hours: Optional[QuietHours] = None,
        timezone: str = "UTC",
        now: Optional[datetime] = None,
    ) -> bool:
        """Returns True if the alert was handed to Telegram (or logged in dry-run)."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        if severity is not AlertSeverity.CRITICAL:
            local_now = (now or datetime.now(ZoneInfo("UTC"))).astimezone(ZoneInfo(timezone))
            if in_quiet_hours(quiet_hours, local_now):
                logger.debug(f"Alert held for quiet hours: {title}")
                return False

        fingerprint = self._fingerprint(severity, title, message)
        last = self._last_sent.get(fingerprint)
        mono = time.monotonic()
        if last is not None and mono - last < self._config.dedupe_seconds:
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False
        self._last_sent[fingerprint] = mono

        return self._send_text(self._format(severity, title, message, context))

    def notify_stop_loss(self, fund_name: str, lines: List[str]) -> bool:
        if not lines:
            return False
        return self.notify(
            AlertSeverity.CRITICAL,
            f"Stop-loss executed ({fund_name})",
            "\n".join(lines),
        )

    def notify_session_failure(
        self,
        fund_name: str,
        session_type: str,
        status: str,
        error: Optional[str],
        quiet_hours: Optional[QuietHours] = None,
        timezone: str = "UTC",
    ) -> bool:
        return self.notify(
            AlertSeverity.WARNING,
            f"Session {session_type} ended with {status} ({fund_name})",
            error or "no detail",
            quiet_hours=quiet_hours,
            timezone=timezone,
        )

    def send_text(
        self,
        text: str,
        quiet_hours: Optional[QuietHours] = None,
        timezone: str = "UTC",
        urgent: bool = False,
    ) -> bool:
        """Free-form message (agent tool). Quiet hours apply unless urgent."""
        if not self._enabled:
            return False
        if not urgent:
            local_now = datetime.now(ZoneInfo(timezone))
            if in_quiet_hours(quiet_hours, local_now):
                logger.info("Telegram message suppressed by quiet hours")
                return False
        return self._send_text(text)

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode('utf-8')).hexdigest()

    @staticmethod
    def _format(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> str:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return "\n".join(filter(None, line_items))

    def _send_text(self, text: str) -> bool:
        if self._config.dry_run:
            logger.info("[TELEGRAM] %s", text)
            return True

        url = f"{TELEGRAM_API_URL}/bot{self._config.bot_token}/sendMessage"
        data = json.dumps({"chat_id": self._config.chat_id, "text": text}).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json"},
        )

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    raise urllib.error.HTTPError(url, response.status, body, response.headers, None)
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            # Token is part of the URL; keep it out of the log line
            logger.error("Failed to deliver Telegram message: %s", getattr(exc, "reason", exc))
            return False
        return True


__all__ = ["AlertService", "AlertSeverity", "AlertConfig", "in_quiet_hours"]
