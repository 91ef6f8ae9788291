"""Email notification service"""
import logging
from typing import Optional
import aiosmtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.db.models.alert_event import AlertEvent

logger = logging.getLogger(__name__)


class EmailNotificationService:
    """
    Email channel using SMTP.

    Sends one email per alert event to the configured address.
    """

    name = "email"

    def __init__(
        self,
        server: str,
        port: int,
        user: str,
        password: str,
        from_email: str,
        to_email: str,
        use_ssl: bool,
        clock: Optional[MarketClock] = None,
        timeout_seconds: float = 20.0,
    ):
        self.server = server
        self.port = port
        self.user = user
        self.password = password
        self.from_email = from_email or user
        self.to_email = to_email
        self.use_ssl = use_ssl
        self.clock = clock or MarketClock()
        self.timeout_seconds = timeout_seconds

    async def _send_email(self, subject: str, body: str) -> None:
        """
        Send email via SMTP.

        Args:
            subject: Email subject
            body: Email body (HTML)
        """
        message = MIMEMultipart('alternative')
        message['Subject'] = subject
        message['From'] = self.from_email
        message['To'] = self.to_email
        message.attach(MIMEText(body, 'html'))

        await aiosmtplib.send(
            message,
            hostname=self.server,
            port=self.port,
            username=self.user,
            password=self.password,
            use_tls=self.use_ssl,
            timeout=self.timeout_seconds,
        )
        logger.info(f"Email sent successfully: {subject}")

    async def notify(self, user_id: str, event: AlertEvent) -> None:
        """Send an alert email"""
        timestamp = self.clock.format_local(event.created_at)
        target = f"{event.target_price:.2f}" if event.target_price is not None else "N/A"
        stop = f"{event.stop_price:.2f}" if event.stop_price is not None else "N/A"

        subject = f"[{event.type}] {event.symbol} alert"
        body = f"""
        <html>
        <body style="font-family: Arial, sans-serif;">
            <h1>{event.symbol} {event.type}</h1>
            <p>{event.message}</p>
            <table>
                <tr><th align="left">Time</th><td>{timestamp}</td></tr>
                <tr><th align="left">Price</th><td>{event.price:.2f}</td></tr>
                <tr><th align="left">Target</th><td>{target}</td></tr>
                <tr><th align="left">Stop</th><td>{stop}</td></tr>
                <tr><th align="left">Timeframe</th><td>{event.timeframe or 'N/A'}</td></tr>
            </table>
            <hr>
            <p><em>Automated alert for {user_id}</em></p>
        </body>
        </html>
        """

        await self._send_email(subject, body)
