"""
Automation webhook wire format and client.

Commands are posted as text/plain:
    enter sym=AAPL lp=150.00 tp=160.00 sl=145.00
    exit sym=AAPL reason="stop hit" tp=160.00
"""
import asyncio
import hashlib
import hmac
import logging
from typing import Optional

import aiohttp

from opportunity_engine.core.errors import DispatchError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature-256"


def format_entry_message(symbol: str, last_price: float, target_price: float, stop_loss: float) -> str:
    return f"enter sym={symbol} lp={last_price:.2f} tp={target_price:.2f} sl={stop_loss:.2f}"


def format_exit_message(symbol: str, reason: str, target_price: Optional[float] = None) -> str:
    message = f'exit sym={symbol} reason="{reason}"'
    if target_price is not None:
        message += f" tp={target_price:.2f}"
    return message


def sign_payload(secret: str, body: str) -> str:
    """Header value carrying the HMAC-SHA256 of the body"""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookClient:
    """
    Posts command strings to automation endpoints.

    Every request carries a total timeout; non-2xx responses and network
    errors are raised as DispatchError so the retry policy can act on them.
    """

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def post(self, url: str, body: str, secret: Optional[str] = None) -> str:
        """
        POST a command and return the response text.

        Raises:
            DispatchError: network failure, timeout or non-2xx response
        """
        headers = {"Content-Type": "text/plain"}
        if secret:
            headers[SIGNATURE_HEADER] = sign_payload(secret, body)

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, data=body.encode("utf-8"), headers=headers) as response:
                    text = await response.text()
                    if not 200 <= response.status < 300:
                        raise DispatchError(f"HTTP {response.status}: {text[:200]}", status_code=response.status)
        except aiohttp.ClientError as e:
            raise DispatchError(f"Webhook request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise DispatchError("Webhook request timed out") from e

        logger.debug(f"Webhook delivered to {url}: {body}")
        return text
