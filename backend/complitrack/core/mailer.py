"""メール送信クライアント"""
import logging
import smtplib
from email.mime.text import MIMEText
from typing import Optional
from complitrack.core.config import settings
from complitrack.core.errors import DeliveryFailure

logger = logging.getLogger(__name__)


class SmtpNotifier:
    """SMTP経由の通知送信"""

    def __init__(
        self,
        host: str = settings.SMTP_HOST,
        port: int = settings.SMTP_PORT,
        username: Optional[str] = settings.SMTP_USERNAME,
        password: Optional[str] = settings.SMTP_PASSWORD,
        use_tls: bool = settings.SMTP_USE_TLS,
        sender: str = settings.MAIL_FROM,
        timeout: float = settings.NOTIFIER_TIMEOUT_SECONDS,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    def send(self, address: str, subject: str, body: str) -> bool:
        """1通送信する。失敗時は DeliveryFailure"""
        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = address

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.sendmail(self.sender, [address], message.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailure(f"Failed to send mail to {address}: {e}") from e

        logger.info(f"Mail sent to {address}: {subject}")
        return True


smtp_notifier = SmtpNotifier()
