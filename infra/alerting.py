"""Webhook notification sink for entry, exit and circuit breaker events."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from infra.events import (
    CircuitReset,
    CircuitTripped,
    EntrySignalled,
    ExitFailed,
    PositionClosed,
    PositionOpened,
)

logger = logging.getLogger(__name__)


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
        try:
            return cls[value.strip().upper()]
        except KeyError:
            return default or cls.WARNING

    def boosted(self, levels: int) -> "AlertSeverity":
        ordered = list(AlertSeverity)
        index = min(ordered.index(self) + max(levels, 0), len(ordered) - 1)
        return ordered[index]


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0
    escalation_seconds: float = 120.0
    escalation_webhook_url: Optional[str] = None
    escalation_severity_boost: int = 1


@dataclass
class AlertRecord:
    """Track alert history for dedupe and escalation."""
    fingerprint: str
    first_seen: float
    last_seen: float
    count: int = 1
    escalated: bool = False
    resolved: bool = False


class AlertService:
    """
    Fire-and-forget notifications.

    Identical alerts inside the dedupe window are suppressed. An alert that
    keeps recurring past the escalation window without being resolved is
    sent once more with boosted severity (to the escalation webhook when one
    is configured).
    """

    HISTORY_MAX_AGE_SECONDS = 300.0

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._history: Dict[str, AlertRecord] = {}

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        def _url(name: str) -> Optional[str]:
            value = raw_config.get(name)
            if value and "${" in value:
                value = os.path.expandvars(value)
            # unresolved placeholders count as unset
            if value and "${" in value:
                value = None
            return value or None

        webhook_url = _url("webhook_url")
        if not webhook_url:
            webhook_url = os.getenv(raw_config.get("webhook_env", "ALERT_WEBHOOK_URL"), "") or None

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "info"), AlertSeverity.INFO),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
            escalation_seconds=float(raw_config.get("escalation_seconds", 120.0)),
            escalation_webhook_url=_url("escalation_webhook_url"),
            escalation_severity_boost=int(raw_config.get("escalation_severity_boost", 1)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify_text(self, text: str, severity: AlertSeverity = AlertSeverity.INFO) -> None:
        """Plain human-readable notification; never raises."""
        first_line, _, rest = text.partition("\n")
        self.notify(severity, first_line, rest)

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._enabled or severity.value < self._config.min_severity.value:
            return

        now = self._clock()
        self._prune(now)
        fingerprint = hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()
        record = self._history.get(fingerprint)

        if record is None or self._lifecycle_over(record, now):
            self._history[fingerprint] = AlertRecord(fingerprint, first_seen=now, last_seen=now)
            self._send(severity, title, message, context, self._config.webhook_url)
            return

        record.count += 1
        record.last_seen = now
        age = now - record.first_seen

        if not record.escalated and not record.resolved and age >= self._config.escalation_seconds:
            record.escalated = True
            logger.warning("Escalating alert: %s (unresolved for %ds)", title, int(age))
            self._send(
                severity.boosted(self._config.escalation_severity_boost),
                f"ESCALATED: {title}",
                f"{message} (unresolved for {int(age)}s, {record.count} occurrences)",
                {**(context or {}), "escalated": True, "occurrence_count": record.count},
                self._config.escalation_webhook_url or self._config.webhook_url,
            )
            return

        if age <= self._config.dedupe_seconds or record.escalated:
            logger.debug("Alert deduped: %s (fingerprint=%s...)", title, fingerprint[:8])
            return

        self._send(severity, title, message, context, self._config.webhook_url)

    def resolve_alert(self, severity: AlertSeverity, title: str, message: str) -> None:
        fingerprint = hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()
        record = self._history.get(fingerprint)
        if record is not None:
            record.resolved = True

    def _lifecycle_over(self, record: AlertRecord, now: float) -> bool:
        if record.resolved:
            return True
        window = self._config.dedupe_seconds + self._config.escalation_seconds
        return now - record.first_seen > window

    def _prune(self, now: float) -> None:
        stale = [fp for fp, rec in self._history.items() if now - rec.last_seen > self.HISTORY_MAX_AGE_SECONDS]
        for fp in stale:
            del self._history[fp]

    def _send(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
        webhook_url: Optional[str],
    ) -> None:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s", severity.name, payload["text"])
            return

        if not webhook_url:
            logger.warning("No webhook URL for alert: %s", title)
            return

        request = urllib.request.Request(
            webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned HTTP %s for '%s'", response.status, title)
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        parts = [f"[{severity.name}] {title}", message]
        if context:
            try:
                parts.append(f"context={json.dumps(context, sort_keys=True)}")
            except TypeError:
                parts.append(f"context={context}")
        return {"text": " | ".join(p for p in parts if p)}


class AlertingListener:
    """Event listener that forwards trading events to an AlertService."""

    SEVERITY = {
        PositionOpened: AlertSeverity.INFO,
        EntrySignalled: AlertSeverity.INFO,
        PositionClosed: AlertSeverity.INFO,
        ExitFailed: AlertSeverity.WARNING,
        CircuitTripped: AlertSeverity.CRITICAL,
        CircuitReset: AlertSeverity.INFO,
    }

    def __init__(self, alerts: AlertService, notify_on_entry: bool = True):
        self._alerts = alerts
        self._notify_on_entry = notify_on_entry

    def __call__(self, event: object) -> None:
        severity = self.SEVERITY.get(type(event))
        if severity is None:
            return
        if not self._notify_on_entry and isinstance(event, (PositionOpened, EntrySignalled)):
            return
        self._alerts.notify_text(event.describe(), severity=severity)


__all__ = ["AlertService", "AlertSeverity", "AlertConfig", "AlertingListener"]
