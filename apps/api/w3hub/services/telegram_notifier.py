"""Telegram Bot API delivery backend."""
import html
import logging
from typing import Any, Dict, Optional

import httpx

from w3hub.config import Settings, settings as default_settings
from w3hub.services.activity_detector import AlertEvent, AlertKind
from w3hub.utils.helpers import format_amount

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class TelegramNotifier:
    """Posts each alert to one chat through ``sendMessage``."""

    name = "telegram"

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or default_settings
        self._transport = transport
        if not self.settings.has_telegram_credentials:
            logger.warning("⚠️ Telegram bot token/chat id not configured, Telegram alerts disabled")

    @property
    def is_available(self) -> bool:
        return self.settings.has_telegram_credentials and self.settings.notification_enabled

    def _format_message(self, event: AlertEvent) -> str:
        p = event.payload
        address = html.escape(event.address)
        if event.kind == AlertKind.BALANCE_CHANGE:
            delta = str(p.get("delta", ""))
            emoji = "📉" if delta.startswith("-") else "📈"
            lines = [
                f"<b>{emoji} Balance change ({event.chain.upper()})</b>",
                "",
                f"<b>Address:</b> <code>{address}</code>",
                f"<b>Asset:</b> {html.escape(str(p.get('symbol')))}",
                f"<b>Balance:</b> {format_amount(p.get('previous'))} → {format_amount(p.get('current'))}",
                f"<b>Change:</b> {format_amount(delta, signed=True)}",
            ]
        else:
            lines = [
                f"<b>💸 New transaction ({event.chain.upper()})</b>",
                "",
                f"<b>Address:</b> <code>{address}</code>",
                f"<b>Tx:</b> <code>{html.escape(str(p.get('hash')))}</code>",
                f"<b>From:</b> <code>{html.escape(str(p.get('from')))}</code>",
                f"<b>To:</b> <code>{html.escape(str(p.get('to')))}</code>",
                f"<b>Amount:</b> {format_amount(p.get('amount'))} {html.escape(str(p.get('symbol') or ''))}",
            ]
        return "\n".join(lines)

    async def send(self, event: AlertEvent) -> Dict[str, Any]:
        if not self.is_available:
            return {"success": False, "error": "Telegram not configured"}

        url = f"{TELEGRAM_API_URL}/bot{self.settings.telegram_bot_token.strip()}/sendMessage"
        async with httpx.AsyncClient(timeout=20.0, transport=self._transport) as client:
            resp = await client.post(
                url,
                json={
                    "chat_id": self.settings.telegram_chat_id,
                    "text": self._format_message(event),
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
            )
            resp.raise_for_status()
            data = resp.json()
        if not data.get("ok"):
            raise RuntimeError(f"Telegram API rejected message: {data.get('description')}")
        return {"success": True}
