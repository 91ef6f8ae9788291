"""Telegram notification service"""
import logging
from typing import Optional
import aiohttp

from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.core.errors import DispatchError
from opportunity_engine.db.models.alert_event import AlertEvent

logger = logging.getLogger(__name__)


class TelegramNotificationService:
    """
    Telegram push channel using the Bot API.

    Sends formatted alert and error messages to the configured chat.
    """

    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        clock: Optional[MarketClock] = None,
        timeout_seconds: float = 10.0,
    ):
        """
        Initialize Telegram service.

        Args:
            bot_token: Telegram bot token
            chat_id: Telegram chat ID
            clock: Market clock for local timestamps
            timeout_seconds: Total request timeout
        """
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.clock = clock or MarketClock()
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.api_url = f"https://api.telegram.org/bot{bot_token}/sendMessage"

    async def _send_message(self, text: str) -> None:
        """
        Send message to Telegram.

        Raises:
            DispatchError: Telegram answered with a non-200 status
        """
        payload = {
            'chat_id': self.chat_id,
            'text': text,
            'parse_mode': 'HTML'
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.api_url, json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise DispatchError(f"Telegram API error: {error_text}", status_code=response.status)
        logger.info("Telegram message sent successfully")

    async def notify(self, user_id: str, event: AlertEvent) -> None:
        """Send an [ALERT] message"""
        timestamp = self.clock.format_local(event.created_at)
        lines = [
            f"<b>[ALERT] {event.symbol} {event.type}</b>",
            "",
            f"• Time: {timestamp}",
            f"• {event.message}",
            f"• Price: {event.price:.2f}",
        ]
        if event.target_price is not None:
            lines.append(f"• Target: {event.target_price:.2f}")
        if event.stop_price is not None:
            lines.append(f"• Stop: {event.stop_price:.2f}")
        if event.timeframe:
            lines.append(f"• Timeframe: {event.timeframe}")
        lines.extend(["", f"User: {user_id}"])

        await self._send_message("\n".join(lines))

    async def send_error_alert(
        self,
        component: str,
        severity: str,
        message: str,
        exception_type: str,
        symbol: Optional[str]
    ) -> None:
        """Send [ERROR] alert"""
        timestamp = self.clock.format_local(self.clock.now_utc())

        symbol_text = symbol if symbol else "-"

        error_message = f"""<b>[ERROR] {component}</b>

• Time: {timestamp}
• Severity: {severity}
• Message: {message}
• Exception: {exception_type}
• Symbol: {symbol_text}"""

        await self._send_message(error_message)
