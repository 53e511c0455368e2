"""
Telegram Transport for Alert Notifications

Formats `Alert` records as short MarkdownV2 messages and delivers them to a
Telegram chat through the Bot API.

Design Principles:
- Decoupling: this module only knows how to format and send an `Alert`;
  retry and backoff belong to the publisher, so `send` raises
  `PublishError` on any failure instead of retrying itself.
- Configurability: token, chat id and enabled status come from
  `publisher.telegram` in the settings.
- Testability: with `dry_run` the sink logs the message and makes no
  network request.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import List, Optional

import httpx
from loguru import logger

from sentiment_fusion.core.config import TelegramSettings
from sentiment_fusion.core.errors import PublishError
from sentiment_fusion.core.types import Alert, Severity
from sentiment_fusion.live.publisher import ALERT, PublishItem, Sink

API_URL = "https://api.telegram.org/bot{token}/sendMessage"

_SEVERITY_ICON = {
    Severity.INFO: "ℹ️",
    Severity.WARNING: "⚠️",
    Severity.CRITICAL: "\U0001f6a8",
}


# --- helpers -----------------------------------------------------------------

def _escape_markdown_v2(text: str) -> str:
    """Escape characters for Telegram MarkdownV2."""
    return re.sub(r"([_*\[\]()~`>#+\-=|{}.!\\])", r"\\\1", text)


def _chunk_for_telegram(text: str, limit: int = 4096) -> List[str]:
    """
    Telegram messages have a 4096 char limit. Split cleanly on newlines where possible.
    """
    if len(text) <= limit:
        return [text]
    parts: List[str] = []
    start = 0
    while start < len(text):
        end = min(start + limit, len(text))
        nl = text.rfind("\n", start, end) if end < len(text) else end
        if nl == -1 or nl <= start:
            nl = end
        parts.append(text[start:nl])
        start = nl + 1 if nl < len(text) and text[nl] == "\n" else nl
    return parts


def format_alert_message(alert: Alert) -> str:
    """Trader-facing MarkdownV2 message for one alert."""
    esc = _escape_markdown_v2
    icon = _SEVERITY_ICON.get(alert.severity, "")
    ts = datetime.fromtimestamp(alert.ts / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    lines = [
        f"{icon} *{esc(alert.alert_type.value)}* {esc(alert.entity)}",
        esc(alert.description),
        "",
        f"*Value:* {esc(f'{alert.current_value:.4g}')}  *Threshold:* {esc(f'{alert.threshold:.4g}')}",
        f"*Severity:* {esc(alert.severity.value)}",
    ]
    meta = alert.metadata or {}
    sources = meta.get("contributing_sources") or []
    if sources:
        weights = meta.get("weights") or {}
        parts = [f"{s} {weights[s]:.0%}" if s in weights else s for s in sources]
        lines.append(f"*Sources:* {esc(', '.join(parts))}")
    if meta.get("confidence") is not None:
        lines.append(f"*Confidence:* {esc(format(float(meta['confidence']), '.0%'))}")
    if meta.get("recommendation"):
        lines.append(f"\U0001f4a1 {esc(meta['recommendation'])}")
    lines.append(f"\U0001f550 {esc(ts)}")
    return "\n".join(lines)


class TelegramSink(Sink):
    name = "telegram"
    kinds = frozenset({ALERT})

    def __init__(self, cfg: TelegramSettings, client: Optional[httpx.AsyncClient] = None, timeout_sec: float = 10.0):
        self.cfg = cfg
        self._client = client
        self._timeout = timeout_sec
        self.sent = 0

    async def send(self, item: PublishItem) -> None:
        alert: Alert = item.payload
        text = format_alert_message(alert)
        if self.cfg.dry_run:
            logger.info("[Telegram dry-run] Message not sent:\n" + text)
            return
        if not self.cfg.bot_token or not self.cfg.chat_id:
            raise PublishError("Telegram bot_token or chat_id not configured")

        url = API_URL.format(token=self.cfg.bot_token)
        chunks = _chunk_for_telegram(text)
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            for i, chunk in enumerate(chunks):
                payload = {
                    "chat_id": self.cfg.chat_id,
                    "text": chunk,
                    "parse_mode": "MarkdownV2",
                    "disable_web_page_preview": True,
                }
                try:
                    response = await client.post(url, json=payload)
                except httpx.HTTPError as e:
                    raise PublishError(f"Telegram transport error: {e}") from e
                if response.status_code == 429:
                    retry_after = response.json().get("parameters", {}).get("retry_after")
                    raise PublishError(f"Telegram rate limited (retry_after={retry_after})")
                if response.status_code != 200:
                    raise PublishError(f"Telegram HTTP error {response.status_code}: {response.text[:200]}")
                result = response.json()
                if not result.get("ok"):
                    raise PublishError(f"Telegram API error: {result.get('description', 'Unknown error')}")
                logger.debug(f"[Telegram] sent {alert.alert_type.value} {alert.entity} (chunk {i + 1}/{len(chunks)})")
        finally:
            if self._client is None:
                await client.aclose()
        self.sent += 1


__all__ = ["TelegramSink", "format_alert_message", "_escape_markdown_v2", "_chunk_for_telegram"]
