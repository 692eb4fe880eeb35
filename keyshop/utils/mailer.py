from typing import Optional
import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from email.utils import make_msgid

logger = logging.getLogger(__name__)


def _to_bool(v):
    if v is None:
        return False
    if isinstance(v, bool):
        return v
    return str(v).lower() in ('1', 'true', 'yes', 'on')


class KeyMailer:
    """SMTP notifier for license-key receipts and operator reports.

    Returns ``{'skipped': True}`` when SMTP is not configured, otherwise
    ``{'message_id': ...}``. SMTP errors are raised to the caller.
    """

    def __init__(self, config):
        self.server = config.get('MAIL_SERVER')
        try:
            self.port = int(config.get('MAIL_PORT') or 0)
        except (TypeError, ValueError):
            self.port = 0
        self.username = config.get('MAIL_USERNAME')
        self.password = config.get('MAIL_PASSWORD')
        self.sender = config.get('MAIL_DEFAULT_SENDER')
        self.use_ssl = _to_bool(config.get('MAIL_USE_SSL')) or self.port == 465
        self.use_tls = _to_bool(config.get('MAIL_USE_TLS')) and not self.use_ssl
        self.download_base_url = (config.get('DOWNLOAD_BASE_URL') or '').rstrip('/')
        self.downloads = config.get('APP_DOWNLOADS') or {}
        self.default_download = config.get('DEFAULT_DOWNLOAD_FILE')

    @property
    def is_configured(self) -> bool:
        return bool(self.server and self.port and self.sender)

    def download_url(self, product_name: str) -> Optional[str]:
        filename = self.downloads.get(product_name) or self.default_download
        if not filename or not self.download_base_url:
            return None
        return f"{self.download_base_url}/{filename}"

    def _send(self, to_address: str, subject: str, body: str) -> dict:
        if not self.is_configured or not to_address:
            logger.info(f"[mailer] SMTP not configured, skipping email to {to_address}: {subject}")
            return {'skipped': True}

        msg = EmailMessage()
        msg['Subject'] = subject
        msg['From'] = self.sender
        msg['To'] = to_address
        msg['Message-ID'] = make_msgid()
        msg.set_content(body)

        try:
            if self.use_ssl:
                with smtplib.SMTP_SSL(self.server, self.port) as server:
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP(self.server, self.port) as server:
                    server.ehlo()
                    if self.use_tls:
                        server.starttls()
                        server.ehlo()
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"[mailer] Error sending email to {to_address}: {e}")
            raise

        return {'message_id': msg['Message-ID']}

    def send_key(self, to: str, license_key: str, product_name: str) -> dict:
        purchase_date = datetime.now().strftime('%B %d, %Y')
        download = self.download_url(product_name)
        lines = [
            "Thanks for your purchase!",
            "",
            "Order Confirmation",
            "=================",
            f"App: {product_name}",
            f"License Key: {license_key}",
            f"Date: {purchase_date}",
        ]
        if download:
            lines += ["", f"Download: {download}"]
        lines += [
            "",
            "Quick Install Steps:",
            "1) Download the installer",
            "2) Open it to start setup",
            "3) If Windows warns you, click \"More info\" then \"Run anyway\"",
            "4) Enter your license key when the app opens",
            "",
            "Questions? Reply to this email.",
        ]
        return self._send(to, f"Your {product_name} License Key & Receipt", "\n".join(lines))

    def send_generic_email(self, to_address: str, subject: str, body: str) -> dict:
        return self._send(to_address, subject, body)
