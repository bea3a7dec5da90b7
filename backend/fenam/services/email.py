"""
Email notification service for FENAM.

Messages go through the Resend HTTP API when RESEND_API_KEY is set.
Without a key, development builds log emails to console/file instead of
sending them. Production never writes the log, whatever DEBUG says: the send
is reported as failed so callers record a warning and leave markers unset.
"""
import base64
import logging
from html import escape
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import httpx

from fenam.core.config import settings
from fenam.core.logging import mask_email

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

_EMAIL_STYLE = """
        body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; }
        .header { background-color: #8fd1d2; padding: 20px; text-align: center; border-radius: 8px 8px 0 0; }
        .content { background-color: #f9f9f9; padding: 30px; border-radius: 0 0 8px 8px; }
        .info-box { background-color: #fff; padding: 15px; border-left: 4px solid #8fd1d2; margin: 20px 0; }
        .footer { text-align: center; margin-top: 30px; color: #666; font-size: 12px; }
"""

_FOOTER_TEXT = """---
FENAM - Federazione Nazionale Associazioni Multiculturali
Questa email è stata inviata automaticamente. Si prega di non rispondere."""


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


def format_date_it(value: Optional[datetime]) -> str:
    return value.strftime("%d/%m/%Y") if value else "-"


def _wrap_html(title: str, inner: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_EMAIL_STYLE}</style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1 style="color: #fff; margin: 0;">FENAM</h1>
            <p style="color: #fff; margin: 5px 0 0 0;">Federazione Nazionale Associazioni Multiculturali</p>
        </div>
        <div class="content">
            <h2>{title}</h2>
{inner}
            <p>Cordiali saluti,<br><strong>Il team FENAM</strong></p>
        </div>
        <div class="footer">
            <p>FENAM - Federazione Nazionale Associazioni Multiculturali</p>
            <p>Questa email è stata inviata automaticamente. Si prega di non rispondere.</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """
    Email service for member notifications.

    All send_* methods return True only when the message was accepted by the
    provider (or logged, in development).
    """

    def __init__(self, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_email = settings.SENDER_EMAIL
        self.site_url = settings.BASE_URL.rstrip("/")
        self.contact_email = settings.CONTACT_EMAIL
        self.debug = settings.DEBUG
        self.production = settings.is_production
        self.email_log_path = Path(settings.EMAIL_LOG_PATH)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    @property
    def log_only(self) -> bool:
        """Write emails to the log file instead of sending. Never in production."""
        return self.debug and not self.production

    def _log_email(
        self,
        to: str,
        subject: str,
        body: str,
        attachments: Sequence[EmailAttachment] = (),
    ):
        """Log email to file for development/testing."""
        timestamp = datetime.now().isoformat()
        names = ", ".join(a.filename for a in attachments) or "-"
        log_entry = f"""
================================================================================
EMAIL LOGGED: {timestamp}
================================================================================
TO: {to}
FROM: {self.from_email}
SUBJECT: {subject}
ATTACHMENTS: {names}
--------------------------------------------------------------------------------
{body}
--------------------------------------------------------------------------------
"""
        try:
            with open(self.email_log_path, "a", encoding="utf-8") as f:
                f.write(log_entry)
        except OSError as e:
            logger.warning(f"Could not write email log {self.email_log_path}: {e}")

        logger.info(f"Email logged: to={mask_email(to)}, subject={subject}")

    async def _send_resend(
        self,
        to: str,
        subject: str,
        body: str,
        html: Optional[str],
        attachments: Sequence[EmailAttachment],
    ) -> None:
        payload = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "text": body,
        }
        if html:
            payload["html"] = html
        if attachments:
            payload["attachments"] = [
                {
                    "filename": a.filename,
                    "content": base64.b64encode(a.content).decode("ascii"),
                    "content_type": a.content_type,
                }
                for a in attachments
            ]

        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            response = await client.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        html: Optional[str] = None,
        attachments: Sequence[EmailAttachment] = (),
    ) -> bool:
        """
        Send an email.

        Args:
            to: Recipient email address
            subject: Email subject line
            body: Plain text body
            html: Optional HTML body
            attachments: Optional file attachments

        Returns:
            True if the email was sent (or logged in development)
        """
        try:
            if self.configured:
                await self._send_resend(to, subject, body, html, attachments)
                logger.info(f"Email sent: to={mask_email(to)}, subject={subject}")
                return True

            if self.log_only:
                self._log_email(to, subject, body, attachments)
                return True

            logger.warning(f"Email provider not configured, not sending '{subject}' to {mask_email(to)}")
            return False

        except httpx.HTTPError as e:
            logger.error(f"Failed to send email to {mask_email(to)}: {e}")
            return False

    async def send_affiliation_confirmation(
        self,
        to: str,
        first_name: str,
        last_name: str,
        order_id: Optional[str],
        amount: Optional[float] = None,
        currency: str = "EUR",
    ) -> bool:
        """Send the affiliation confirmation email."""
        total = f"{amount:.2f} {currency}" if amount else "€0,00 (affiliazione gratuita)"
        subject = settings.AFFILIATION_EMAIL_SUBJECT

        body = f"""FENAM - Federazione Nazionale Associazioni Multiculturali

Grazie per la tua affiliazione!

Caro/a {first_name} {last_name},

La tua richiesta di affiliazione a FENAM è stata completata con successo.

RIEPILOGO AFFILIAZIONE:
- Nome: {first_name} {last_name}
- Email: {to}
- Importo totale: {total}
- ID Ordine: {order_id or 'N/A'}

Per qualsiasi domanda o informazione:
- Email: {self.contact_email}
- Sito web: {self.site_url}

Cordiali saluti,
Il team FENAM

{_FOOTER_TEXT}
"""

        name = escape(f"{first_name} {last_name}")
        html = _wrap_html("Grazie per la tua affiliazione!", f"""
            <p>Caro/a <strong>{name}</strong>,</p>
            <p>La tua richiesta di affiliazione a FENAM è stata completata con successo.</p>
            <div class="info-box">
                <h3 style="margin-top: 0;">Riepilogo affiliazione</h3>
                <p><strong>Nome:</strong> {name}</p>
                <p><strong>Email:</strong> {escape(to)}</p>
                <p><strong>Importo totale:</strong> {total}</p>
                <p><strong>ID Ordine:</strong> {escape(order_id or "N/A")}</p>
            </div>
            <p>Per qualsiasi domanda: <a href="mailto:{self.contact_email}">{self.contact_email}</a></p>
""")

        return await self.send_email(to, subject, body, html)

    async def send_membership_card(
        self,
        to: str,
        first_name: str,
        last_name: str,
        member_number: str,
        member_since: Optional[datetime],
        member_until: Optional[datetime],
        pdf: bytes,
    ) -> bool:
        """Send the membership card PDF as an attachment."""
        subject = "La tua tessera socio FENAM"
        since = format_date_it(member_since)
        until = format_date_it(member_until)

        body = f"""La tua tessera socio è pronta!

Caro/a {first_name} {last_name},

In allegato troverai la tua tessera socio FENAM in formato PDF.

Numero tessera: {member_number}
Valida dal: {since}
Valida fino al: {until}

La tessera può essere verificata online su {self.site_url}/verifica?n={member_number}

Cordiali saluti,
Il team FENAM

{_FOOTER_TEXT}
"""

        name = escape(f"{first_name} {last_name}")
        html = _wrap_html("La tua tessera socio è pronta!", f"""
            <p>Caro/a <strong>{name}</strong>,</p>
            <p>In allegato troverai la tua tessera socio FENAM in formato PDF.</p>
            <div class="info-box">
                <h3 style="margin-top: 0;">Dettagli tessera</h3>
                <p><strong>Numero tessera:</strong> {escape(member_number)}</p>
                <p><strong>Valida dal:</strong> {since}</p>
                <p><strong>Valida fino al:</strong> {until}</p>
            </div>
            <p>Puoi stampare la tessera o conservarla sul tuo dispositivo.</p>
""")

        attachment = EmailAttachment(filename=f"Tessera_FENAM_{member_number}.pdf", content=pdf)
        return await self.send_email(to, subject, body, html, attachments=[attachment])

    async def send_login_link(self, to: str, verify_url: str, ttl_minutes: int) -> bool:
        """Send the one-time login link. The URL carries a secret: never log it."""
        subject = "Link di accesso socio FENAM"

        body = f"""Clicca per accedere (valido {ttl_minutes} minuti):
{verify_url}

Se non hai richiesto tu questo link, ignora questa email.
- Il team FENAM
"""

        link = escape(verify_url)
        html = _wrap_html("Accesso socio", f"""
            <p>Clicca il link qui sotto per accedere (valido {ttl_minutes} minuti):</p>
            <p><a href="{link}" style="color: #024230;">{link}</a></p>
            <p>Se non hai richiesto tu questo link, ignora questa email.</p>
""")

        return await self.send_email(to, subject, body, html)


# Singleton instance
email_service = EmailService()


def get_email_service() -> EmailService:
    """FastAPI dependency, overridden in tests."""
    return email_service
