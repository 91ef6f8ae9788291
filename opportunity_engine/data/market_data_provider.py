"""Market data provider protocol"""
from typing import Protocol, Tuple
from datetime import datetime, timedelta
import pandas as pd


class MarketDataProvider(Protocol):
    """
    Pull-based market data contract.

    Implementations raise MarketDataUnavailable when a symbol cannot be
    served; callers treat that as "no decision this cycle".
    """

    async def get_latest_price(self, symbol: str) -> Tuple[float, datetime]:
        """
        Latest traded price of a symbol.

        Returns:
            (price, naive UTC timestamp of the quote)
        """
        ...

    async def get_candles(
        self,
        symbol: str,
        timeframe: str,  # "1m", "5m", "15m", "30m", "1h", "1d", "1w"
        lookback: timedelta
    ) -> pd.DataFrame:
        """
        Fetch OHLCV candles for a symbol and timeframe.

        Returns:
            DataFrame indexed by timestamp with columns: open, high, low, close, volume
        """
        ...
