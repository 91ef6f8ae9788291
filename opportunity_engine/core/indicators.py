"""Technical indicator helpers over candle frames"""
import pandas as pd


def calculate_ema(close: pd.Series, period: int = 21) -> pd.Series:
    """
    Exponential moving average of a close series.

    Args:
        close: Close prices
        period: EMA span

    Returns:
        Series with EMA values aligned to close
    """
    return close.ewm(span=period, adjust=False).mean()


def ema_slope_percent(ema: pd.Series, bars: int = 5) -> float:
    """
    Percent change of the EMA over the last `bars` bars.

    Returns 0.0 when there is not enough history.
    """
    if len(ema) < bars + 1:
        return 0.0
    previous = float(ema.iloc[-bars - 1])
    if previous == 0:
        return 0.0
    return (float(ema.iloc[-1]) - previous) / previous * 100


def count_ema_crosses(close: pd.Series, ema: pd.Series, lookback: int = 20) -> int:
    """Number of times close flipped sides of the EMA over the lookback window"""
    above = (close > ema).iloc[-min(lookback, len(close)):]
    return int((above != above.shift()).iloc[1:].sum())


def crossed_below(close: pd.Series, ema: pd.Series) -> bool:
    """Whether the last close moved from at/above the EMA to below it"""
    if len(close) < 2:
        return False
    return bool(close.iloc[-2] >= ema.iloc[-2] and close.iloc[-1] < ema.iloc[-1])


def crossed_above(close: pd.Series, ema: pd.Series) -> bool:
    """Whether the last close moved from at/below the EMA to above it"""
    if len(close) < 2:
        return False
    return bool(close.iloc[-2] <= ema.iloc[-2] and close.iloc[-1] > ema.iloc[-1])
