"""yfinance market data provider implementation"""
import asyncio
import logging
from typing import Optional, Tuple
from datetime import datetime, timedelta, timezone
import pandas as pd
import yfinance as yf
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from opportunity_engine.core.errors import MarketDataUnavailable
from opportunity_engine.utils.ttl_cache import TTLCache

logger = logging.getLogger(__name__)


class YFinanceMarketDataProvider:
    """
    Market data provider using yfinance library.

    Features:
    - Responses cached in an injected TTLCache keyed by (kind, symbol, timeframe)
    - Handles yfinance lookback limits per interval
    - Blocking yfinance calls run in a worker thread under an explicit timeout
    - Retry with exponential backoff for transient network errors
    """

    # Interval mapping: our format -> yfinance format
    INTERVAL_MAP = {
        "1m": "1m",
        "2m": "2m",
        "5m": "5m",
        "15m": "15m",
        "30m": "30m",
        "60m": "1h",
        "1h": "1h",
        "1d": "1d",
        "daily": "1d",
        "1w": "1wk",
    }

    # Maximum lookback periods for each interval (yfinance limitations)
    MAX_LOOKBACK = {
        "1m": timedelta(days=7),
        "2m": timedelta(days=60),
        "5m": timedelta(days=60),
        "15m": timedelta(days=60),
        "30m": timedelta(days=60),
        "60m": timedelta(days=730),
        "1h": timedelta(days=730),
    }

    def __init__(
        self,
        cache: Optional[TTLCache] = None,
        request_timeout_seconds: float = 20.0,
    ):
        self._cache = cache if cache is not None else TTLCache(ttl_seconds=60)
        self.request_timeout_seconds = request_timeout_seconds

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((ConnectionError, TimeoutError))
    )
    async def get_candles(
        self,
        symbol: str,
        timeframe: str,
        lookback: timedelta
    ) -> pd.DataFrame:
        """
        Fetch OHLCV candles, served from cache while fresh.

        Raises:
            MarketDataUnavailable: unsupported timeframe or no data returned
        """
        yf_interval = self.INTERVAL_MAP.get(timeframe)
        if not yf_interval:
            raise MarketDataUnavailable(symbol, f"unsupported timeframe {timeframe}")

        cache_key = ("candles", symbol, timeframe)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached.copy()

        # Respect yfinance limitations
        max_lookback = self.MAX_LOOKBACK.get(timeframe)
        if max_lookback is not None and lookback > max_lookback:
            logger.warning(
                f"Lookback {lookback} exceeds max {max_lookback} for {timeframe}. "
                f"Using max lookback."
            )
            lookback = max_lookback

        start_date = datetime.now(timezone.utc).replace(tzinfo=None) - lookback
        data = await self._fetch_yfinance(symbol, yf_interval, start=start_date)

        if data.empty:
            raise MarketDataUnavailable(symbol, f"no candles for {timeframe}")

        self._cache.set(cache_key, data)
        return data.copy()

    async def get_latest_price(self, symbol: str) -> Tuple[float, datetime]:
        """
        Latest close from today's 1m bars, falling back to the last daily bar.

        Raises:
            MarketDataUnavailable: no quote could be obtained
        """
        cache_key = ("quote", symbol)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        data = await self._fetch_yfinance(
            symbol, "1m", start=datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=1)
        )
        if data.empty:
            data = await self._fetch_yfinance(
                symbol, "1d", start=datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=7)
            )
        if data.empty:
            raise MarketDataUnavailable(symbol, "no quote")

        price = float(data["close"].iloc[-1])
        quote_time = self._to_naive_utc(data.index[-1])
        quote = (price, quote_time)
        self._cache.set(cache_key, quote, ttl_seconds=min(self._cache.ttl_seconds, 30))
        return quote

    async def _fetch_yfinance(
        self,
        symbol: str,
        interval: str,
        start: datetime,
        end: Optional[datetime] = None
    ) -> pd.DataFrame:
        """
        Fetch data from yfinance in a worker thread.

        Returns:
            DataFrame with OHLCV data (empty when yfinance has nothing)
        """
        try:
            df = await asyncio.wait_for(
                asyncio.to_thread(self._history, symbol, interval, start, end),
                timeout=self.request_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise MarketDataUnavailable(symbol, f"timed out after {self.request_timeout_seconds}s") from e

        if df.empty:
            logger.warning(f"No data returned for {symbol} {interval}")
            return pd.DataFrame()

        # Standardize column names
        df = df.rename(columns={
            'Open': 'open',
            'High': 'high',
            'Low': 'low',
            'Close': 'close',
            'Volume': 'volume'
        })

        # Keep only OHLCV columns
        df = df[['open', 'high', 'low', 'close', 'volume']]

        df.index = pd.to_datetime(df.index)
        df.index.name = 'timestamp'

        logger.debug(
            f"Fetched {len(df)} candles for {symbol} {interval} "
            f"from {df.index[0]} to {df.index[-1]}"
        )

        return df

    @staticmethod
    def _history(symbol: str, interval: str, start: datetime, end: Optional[datetime]) -> pd.DataFrame:
        ticker = yf.Ticker(symbol)
        return ticker.history(
            start=start,
            end=end,
            interval=interval,
            auto_adjust=True,
            actions=False
        )

    @staticmethod
    def _to_naive_utc(ts) -> datetime:
        ts = pd.Timestamp(ts)
        if ts.tzinfo is not None:
            ts = ts.tz_convert(timezone.utc).tz_localize(None)
        return ts.to_pydatetime()
