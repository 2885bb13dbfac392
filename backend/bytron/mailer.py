import asyncio
import logging
import smtplib
from email.mime.text import MIMEText

logger = logging.getLogger("mailer")


class Mailer:
    def __init__(self, host: str, port: int = 465, user: str = "", password: str = "", sender: str = ""):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user

    def _send(self, to: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to

        with smtplib.SMTP_SSL(self.host, self.port, timeout=20) as server:
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(self.sender, [to], msg.as_string())

    async def send(self, to: str, subject: str, body: str) -> bool:
        if not self.host:
            logger.warning("[MAIL] SMTP_HOST is not set, not sending to %s", to)
            return False
        try:
            await asyncio.to_thread(self._send, to, subject, body)
        except (smtplib.SMTPException, OSError):
            logger.exception("[MAIL] Failed to send email to %s", to)
            return False
        logger.info("[MAIL] Email sent to %s", to)
        return True


def receipt_text(order_id: str, product_id: str, link: str, expires_at: str) -> str:
    return (
        f"Thank you for your purchase of {product_id}.\n\n"
        f"Order: {order_id}\n"
        f"Download: {link}\n"
        f"The link is valid until {expires_at}.\n"
    )
