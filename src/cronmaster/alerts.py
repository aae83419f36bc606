"""Alert delivery for CronMaster.

Alerts go to an optional webhook. Without one they are written to the log
so they are never lost. Every attempt is recorded in the ``alerts`` table.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from cronmaster.models import AlertsConfig, Severity, utcnow

if TYPE_CHECKING:
    from cronmaster.db import Database


SEVERITY_EMOJI: dict[str, str] = {
    Severity.CRITICAL.value: "🔴",
    Severity.HIGH.value: "🟠",
    Severity.MEDIUM.value: "🟡",
    Severity.LOW.value: "🟢",
    Severity.INFO.value: "ℹ️",
}


def format_alert(
    severity: str,
    title: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> str:
    """Render an alert as chat-friendly text."""
    emoji = SEVERITY_EMOJI.get(severity, "ℹ️")
    lines = [f"{emoji} *[{severity}] {title}*", message]
    if details:
        lines.append("")
        for key, value in details.items():
            if value is not None:
                lines.append(f"• {key}: {value}")
    return "\n".join(lines)


def build_payload(url: str, text: str, severity: str, title: str, message: str) -> dict:
    """Shape the webhook body for the receiving service.

    - Slack: {"text": ...}
    - Discord: {"content": ...}
    - Generic: {"severity", "title", "message", "timestamp"}
    """
    if "slack.com" in url:
        return {"text": text}
    if "discord.com" in url:
        return {"content": text}
    return {
        "severity": severity,
        "title": title,
        "message": message,
        "timestamp": utcnow().isoformat(),
    }


class AlertChannel:
    """Sends alerts to the configured webhook, falling back to the log."""

    def __init__(
        self,
        config: AlertsConfig,
        db: "Database | None" = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config
        self._db = db
        self._transport = transport

    @property
    def channel_name(self) -> str:
        return "webhook" if self._config.webhook_url else "log"

    async def send(
        self,
        severity: str | Severity,
        title: str,
        message: str,
        job_name: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Send an alert.

        Returns:
            True if the webhook accepted it
        """
        severity = getattr(severity, "value", severity)
        if not self._config.enabled:
            logger.debug(f"Alerts disabled, dropping '{title}'")
            return False

        text = format_alert(severity, title, message, details)
        delivered = False

        if self._config.webhook_url:
            delivered = await self._post(text, severity, title, message)
        else:
            logger.warning(f"[ALERT:{severity}] {title}: {message}")

        if self._db is not None:
            self._db.add_alert(
                severity=severity,
                title=title,
                message=message,
                channel=self.channel_name,
                delivered=delivered,
                job_name=job_name,
            )
        return delivered

    async def _post(self, text: str, severity: str, title: str, message: str) -> bool:
        url = self._config.webhook_url or ""
        payload = build_payload(url, text, severity, title, message)
        try:
            async with httpx.AsyncClient(
                timeout=self._config.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Alert webhook error: {e}")
            return False

        if response.is_success:
            logger.info(f"Alert sent via webhook: {title}")
            return True

        logger.warning(f"Alert webhook returned {response.status_code} for '{title}'")
        return False
