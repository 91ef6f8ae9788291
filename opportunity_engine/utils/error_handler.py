"""Centralized error handling"""
import logging
import traceback
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.orm import Session

from opportunity_engine.db.queries import create_error_log

logger = logging.getLogger(__name__)


def _stack(error: Exception) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


class ErrorHandler:
    """
    Centralized error handling for the engine.

    Handles different types of errors:
    - Startup errors (fatal, re-raised)
    - Runtime errors (per-symbol failures, timeouts)
    - Data errors (missing market data)
    - Rule errors (one alert rule failed to evaluate)
    - Dispatch errors (sink or webhook delivery failed)

    Everything except startup errors is contained: logged, written to
    error_logs and never re-raised.
    """

    def __init__(self, db: Session, notification_service=None):
        """
        Initialize error handler.

        Args:
            db: Database session used for error_logs rows
            notification_service: Service with send_error_alert (Telegram), optional
        """
        self.db = db
        self.notification_service = notification_service

    def _persist(
        self,
        component: str,
        severity: str,
        error: Exception,
        symbol: Optional[str] = None,
        rule_id: Optional[int] = None,
        execution_request_id: Optional[int] = None,
        stack_trace: Optional[str] = None,
    ) -> None:
        try:
            create_error_log(
                db=self.db,
                timestamp_utc=datetime.now(timezone.utc).replace(tzinfo=None),
                component=component,
                severity=severity,
                message=str(error),
                exception_type=type(error).__name__,
                symbol=symbol,
                rule_id=rule_id,
                execution_request_id=execution_request_id,
                stack_trace=stack_trace,
            )
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to log error to database: {e}")

    async def _alert(self, component: str, severity: str, error: Exception, symbol: Optional[str]) -> None:
        if not self.notification_service:
            return
        try:
            await self.notification_service.send_error_alert(
                component=component,
                severity=severity,
                message=str(error),
                exception_type=type(error).__name__,
                symbol=symbol
            )
        except Exception as e:
            logger.error(f"Failed to send error notification: {e}")

    async def handle_startup_error(self, component: str, error: Exception) -> None:
        """
        Handle fatal startup errors.

        Logs, alerts and records the error, then re-raises to abort startup.
        """
        logger.critical(
            f"FATAL STARTUP ERROR in {component}: {error}",
            extra={'component': component},
            exc_info=True
        )
        await self._alert(component, "CRITICAL", error, None)
        self._persist(component, "CRITICAL", error, stack_trace=_stack(error))
        raise error

    async def handle_runtime_error(
        self,
        component: str,
        error: Exception,
        symbol: Optional[str] = None
    ) -> None:
        """
        Handle non-fatal runtime errors.

        Actions:
        1. Log error with context
        2. Write to error_logs table
        3. Send Telegram error alert
        4. Continue execution
        """
        error_msg = f"RUNTIME ERROR in {component}: {error}"
        if symbol:
            error_msg += f" (symbol: {symbol})"

        logger.error(error_msg, extra={'component': component, 'symbol': symbol}, exc_info=error)
        await self._alert(component, "ERROR", error, symbol)
        self._persist(component, "ERROR", error, symbol=symbol, stack_trace=_stack(error))

    async def handle_data_error(self, symbol: str, error: Exception) -> None:
        """Missing or unusable market data: warning only, the symbol is skipped this cycle"""
        logger.warning(
            f"DATA ERROR for {symbol}: {error}",
            extra={'component': 'MarketData', 'symbol': symbol}
        )
        self._persist("MarketData", "WARNING", error, symbol=symbol)

    async def handle_rule_error(self, rule_id: int, error: Exception, symbol: Optional[str] = None) -> None:
        """One rule failed; the remaining rules for the symbol still run"""
        logger.error(
            f"RULE ERROR in rule {rule_id}: {error}",
            extra={'component': 'RuleEvaluator', 'symbol': symbol, 'rule_id': rule_id},
            exc_info=error
        )
        self._persist(
            "RuleEvaluator", "ERROR", error,
            symbol=symbol, rule_id=rule_id, stack_trace=_stack(error),
        )

    async def handle_dispatch_error(
        self,
        component: str,
        error: Exception,
        symbol: Optional[str] = None,
        execution_request_id: Optional[int] = None,
    ) -> None:
        """A sink or webhook delivery failed; the alert event is left as is"""
        logger.warning(
            f"DISPATCH ERROR in {component}: {error}",
            extra={
                'component': component,
                'symbol': symbol,
                'execution_request_id': execution_request_id,
            }
        )
        self._persist(
            component, "WARNING", error,
            symbol=symbol, execution_request_id=execution_request_id,
        )
