import base64
import binascii
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Iterable, Optional, Union

from ..core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class MailerNotConfigured(RuntimeError):
    pass


def _recipients(to: Union[str, Iterable[str]]) -> list:
    if isinstance(to, str):
        return [to]
    return [t for t in to if t]


def decode_pdf_base64(data: str) -> bytes:
    """Accepts raw base64 or a data: URL."""
    payload = data.strip()
    if payload.startswith("data:"):
        payload = payload.split(",", 1)[1] if "," in payload else ""
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Invalid base64 PDF payload") from e


class Mailer:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def configured(self) -> bool:
        return self.settings.smtp_configured

    def _connect(self) -> smtplib.SMTP:
        s = self.settings
        if not self.configured:
            raise MailerNotConfigured("SMTP not configured (SMTP_HOST, SMTP_USER, SMTP_PASS, SMTP_FROM)")
        if s.SMTP_SECURE:
            conn = smtplib.SMTP_SSL(s.SMTP_HOST, s.SMTP_PORT, context=ssl.create_default_context(), timeout=20)
        else:
            conn = smtplib.SMTP(s.SMTP_HOST, s.SMTP_PORT, timeout=20)
            conn.ehlo()
            if conn.has_extn("starttls"):
                conn.starttls(context=ssl.create_default_context())
                conn.ehlo()
        conn.login(s.SMTP_USER, s.SMTP_PASS)
        return conn

    def _send(self, msg: EmailMessage) -> None:
        conn = self._connect()
        try:
            conn.send_message(msg)
        finally:
            try:
                conn.quit()
            except smtplib.SMTPException:
                pass

    def _message(self, to, subject: str, text: str, html: Optional[str] = None) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.settings.SMTP_FROM or ""
        msg["To"] = ", ".join(_recipients(to))
        msg["Subject"] = subject
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    def send_email(self, to, subject: str, text: str, html: Optional[str] = None) -> None:
        self._send(self._message(to, subject, text, html))
        logger.info("mail sent: subject=%r to=%s", subject, _recipients(to))

    def send_password_reset_email(self, to: str, temporary_password: str) -> None:
        text = (
            "Se restableció su contraseña de PharmaFlow.\n\n"
            f"Contraseña temporal: {temporary_password}\n\n"
            "Inicie sesión y cámbiela lo antes posible."
        )
        self.send_email(to, "PharmaFlow: contraseña restablecida", text)

    def send_report_email(self, to, subject: str, filename: str, pdf_base64: str, message: Optional[str] = None) -> None:
        content = decode_pdf_base64(pdf_base64)
        name = filename if filename.lower().endswith(".pdf") else f"{filename}.pdf"
        msg = self._message(to, subject, message or "Adjuntamos el reporte solicitado.")
        msg.add_attachment(content, maintype="application", subtype="pdf", filename=name)
        self._send(msg)
        logger.info("report mail sent: %s to=%s", name, _recipients(to))


def get_mailer() -> Mailer:
    return Mailer()
