"""
Market clock: timezone conversion and trading-session arithmetic.

All persisted timestamps are naive UTC; the market clock converts them to the
exchange timezone to find session closes and trading-day boundaries.
"""
from datetime import datetime, time
from zoneinfo import ZoneInfo

import pandas as pd


class MarketClock:
    """Handles timezone conversions and session boundaries for the market"""

    def __init__(self, timezone: str = "America/New_York", session_close: str = "16:00"):
        """
        Initialize market clock.

        Args:
            timezone: IANA timezone name of the exchange
            session_close: Session close as HH:MM in exchange local time
        """
        self.timezone = timezone
        self.tz = ZoneInfo(timezone)
        hour, minute = session_close.split(":")
        self.session_close = time(int(hour), int(minute))

    def utc_to_local(self, utc_dt: datetime) -> datetime:
        """
        Convert UTC datetime to exchange local time.

        Args:
            utc_dt: UTC datetime (naive or aware)

        Returns:
            Datetime in exchange timezone
        """
        if utc_dt.tzinfo is None:
            # Assume naive datetime is UTC
            utc_dt = utc_dt.replace(tzinfo=ZoneInfo("UTC"))

        return utc_dt.astimezone(self.tz)

    def local_to_naive_utc(self, local_dt: datetime) -> datetime:
        """Convert an exchange-local datetime back to naive UTC"""
        if local_dt.tzinfo is None:
            local_dt = local_dt.replace(tzinfo=self.tz)
        return local_dt.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)

    def format_local(self, utc_dt: datetime, fmt: str = "%Y-%m-%d %H:%M:%S %Z") -> str:
        """Format UTC datetime as exchange-local string"""
        return self.utc_to_local(utc_dt).strftime(fmt)

    def now_utc(self) -> datetime:
        """Get current time as naive UTC"""
        return datetime.now(ZoneInfo("UTC")).replace(tzinfo=None)

    def session_close_utc(self, utc_dt: datetime) -> datetime:
        """
        Close of the trading session containing utc_dt.

        Detections after the close (or on a weekend) roll to the next
        trading day's close.
        """
        local = self.utc_to_local(utc_dt)
        close_local = datetime.combine(local.date(), self.session_close, tzinfo=self.tz)
        if local > close_local or local.weekday() >= 5:
            next_day = (pd.Timestamp(local.date()) + pd.offsets.BDay(1)).date()
            close_local = datetime.combine(next_day, self.session_close, tzinfo=self.tz)
        return self.local_to_naive_utc(close_local)

    def add_trading_days(self, utc_dt: datetime, days: int) -> datetime:
        """
        Shift a UTC timestamp forward by a number of trading (business) days,
        keeping the local time of day.
        """
        local = self.utc_to_local(utc_dt)
        shifted = pd.Timestamp(local.replace(tzinfo=None)) + pd.offsets.BDay(days)
        return self.local_to_naive_utc(shifted.to_pydatetime().replace(tzinfo=self.tz))

    def trading_date(self, utc_dt: datetime) -> str:
        """Exchange-local date of a UTC timestamp as YYYY-MM-DD"""
        return self.utc_to_local(utc_dt).strftime("%Y-%m-%d")


# Global market clock instance
_market_clock: MarketClock | None = None


def get_market_clock(timezone: str = "America/New_York", session_close: str = "16:00") -> MarketClock:
    """Get or create global market clock instance"""
    global _market_clock
    if _market_clock is None:
        _market_clock = MarketClock(timezone, session_close)
    return _market_clock
