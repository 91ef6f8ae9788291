"""Explicit retry policy for webhook delivery"""
from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from opportunity_engine.config.settings import DispatchConfig
from opportunity_engine.core.errors import DispatchError


@dataclass(frozen=True)
class RetryPolicy:
    """Attempts and exponential backoff applied to one delivery"""
    max_attempts: int = 3
    multiplier: float = 1.0
    min_seconds: float = 1.0
    max_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: DispatchConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            multiplier=config.backoff_multiplier,
            min_seconds=config.backoff_min_seconds,
            max_seconds=config.backoff_max_seconds,
        )

    def retrying(self) -> AsyncRetrying:
        """Fresh tenacity controller; only DispatchError is retried and the last one is re-raised"""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.multiplier, min=self.min_seconds, max=self.max_seconds),
            retry=retry_if_exception_type(DispatchError),
            reraise=True,
        )
