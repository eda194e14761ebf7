"""
Email notification service using SMTP.

Sends formatted HTML emails for address activity alerts.
"""
import html
import logging
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import aiosmtplib

from w3hub.config import Settings, settings as default_settings
from w3hub.services.activity_detector import AlertEvent, AlertKind
from w3hub.utils.helpers import format_amount, shorten

logger = logging.getLogger(__name__)


def _escape(value) -> str:
    return html.escape(str(value if value is not None else ""))


class EmailService:
    """
    Delivery backend sending every alert to the configured recipients via SMTP.
    """

    name = "email"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._check_config()

    def _check_config(self):
        """Check SMTP configuration."""
        if self.settings.has_email_credentials:
            logger.info("✅ SMTP email service configured")
        else:
            logger.warning("⚠️ SMTP credentials not configured, email notifications disabled")

    @property
    def is_available(self) -> bool:
        """Check if email service is available."""
        return self.settings.has_email_credentials and self.settings.notification_enabled

    def _build_subject(self, event: AlertEvent) -> str:
        chain = event.chain.upper()
        if event.kind == AlertKind.BALANCE_CHANGE:
            p = event.payload
            direction = "📈" if not str(p.get("delta", "")).startswith("-") else "📉"
            # Token symbols come from the chain; keep the header on one line
            symbol = " ".join(str(p.get("symbol") or "").split())
            return f"{direction} {symbol} balance change on {chain}: {shorten(event.address)}"
        return f"💸 New transaction on {chain}: {shorten(event.address)}"

    def _build_rows(self, event: AlertEvent) -> List[tuple]:
        p = event.payload
        if event.kind == AlertKind.BALANCE_CHANGE:
            return [
                ("Asset", p.get("symbol")),
                ("Previous", format_amount(p.get("previous"))),
                ("Current", format_amount(p.get("current"))),
                ("Change", format_amount(p.get("delta"), signed=True)),
            ]
        return [
            ("Hash", p.get("hash")),
            ("From", p.get("from")),
            ("To", p.get("to")),
            ("Amount", f"{format_amount(p.get('amount'))} {p.get('symbol') or ''}".strip()),
            ("Block", p.get("block_height")),
        ]

    def _build_html_email(self, event: AlertEvent) -> str:
        """Build HTML email body for an alert. Every interpolated value is escaped."""
        rows = "".join(
            f"""
            <tr>
                <td style="padding: 8px 0; color: #6b7280;">{_escape(label)}</td>
                <td style="padding: 8px 0; text-align: right; font-weight: 600; font-family: monospace;">{_escape(value)}</td>
            </tr>
            """
            for label, value in self._build_rows(event)
        )
        return f"""
        <html>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f9fafb; padding: 24px;">
            <div style="max-width: 560px; margin: 0 auto; background: #ffffff; border-radius: 8px; padding: 24px;">
                <h2 style="margin-top: 0;">{_escape(self._build_subject(event))}</h2>
                <p style="color: #6b7280;">Address <code>{_escape(event.address)}</code> on {_escape(event.chain)}</p>
                <table style="width: 100%; border-collapse: collapse;">{rows}</table>
                <p style="color: #9ca3af; font-size: 12px; margin-top: 24px;">
                    Detected at {event.detected_at.isoformat()}<br>
                    This is an automated notification from {_escape(self.settings.project_name)}
                </p>
            </div>
        </body>
        </html>
        """

    def _build_message(self, event: AlertEvent) -> EmailMessage:
        message = EmailMessage()
        display_name = self.settings.project_name.replace('"', '').strip()
        message["From"] = f"{display_name} <{self.settings.notification_from_email}>"
        message["To"] = ", ".join(self.settings.notification_recipients)
        message["Subject"] = self._build_subject(event)
        message.set_content("Please enable HTML to view this email.")
        message.add_alternative(self._build_html_email(event), subtype="html")
        return message

    async def send(self, event: AlertEvent) -> Dict[str, Any]:
        """
        Send an alert email to all configured recipients.

        Returns:
            dict with success status and error if any
        """
        if not self.is_available:
            return {"success": False, "error": "Email service not configured"}

        message = self._build_message(event)

        # Determine security based on port
        use_tls = self.settings.smtp_port == 465
        start_tls = self.settings.smtp_port == 587

        await aiosmtplib.send(
            message,
            hostname=self.settings.smtp_host,
            port=self.settings.smtp_port,
            username=self.settings.smtp_user,
            password=self.settings.clean_smtp_password,
            start_tls=start_tls,
            use_tls=use_tls,
            timeout=30.0,
        )
        logger.info(f"📧 Alert email sent for {event.chain}:{event.address} ({event.kind.value})")
        return {"success": True}
