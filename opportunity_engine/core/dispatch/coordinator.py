"""
Dispatch coordinator.

Delivers fired alerts to the notification sinks and, for rules with
automation enabled, forwards a signed command to the rule's endpoint while
tracking the resulting ExecutionRequest.

Rules governed by an automation profile are forwarded only when the
profile's guardrails let them through.
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from opportunity_engine.config.settings import DispatchConfig
from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.core.alerts.conditions import price_levels
from opportunity_engine.core.alerts.rule_evaluator import FiredAlert
from opportunity_engine.core.dispatch.execution_state import can_transition, transition
from opportunity_engine.core.dispatch.guardrails import AlertContext, ProfileDecision, decide, resolve_profile
from opportunity_engine.core.dispatch.retry_policy import RetryPolicy
from opportunity_engine.core.dispatch.webhook import WebhookClient, format_entry_message, format_exit_message
from opportunity_engine.core.errors import DispatchError, SecretDecryptionError
from opportunity_engine.db.models.alert_event import AlertEvent
from opportunity_engine.db.models.automation import (
    AutomationAction,
    AutomationDecision,
    AutomationEndpoint,
    ExecutionRequest,
    ExecutionStatus,
)
from opportunity_engine.db.queries import get_automation_endpoint, get_execution_request
from opportunity_engine.notifications.notification_service import NotificationSink
from opportunity_engine.utils.secrets import EncryptedSecret, SecretCipher

logger = logging.getLogger(__name__)

TEST_MESSAGE = 'test sym=TEST reason="connection test"'


def build_command(fired: FiredAlert) -> str:
    """Wire command for a fired alert: exit for STOP_HIT/EMA_EXIT, enter otherwise"""
    event = fired.event
    if fired.is_exit:
        reason = event.type.lower().replace("_", " ")
        return format_exit_message(event.symbol, reason, event.target_price)

    target, stop = event.target_price, event.stop_price
    if target is None or stop is None:
        default_target, default_stop = price_levels(event.price, None, None)
        target = default_target if target is None else target
        stop = default_stop if stop is None else stop
    return format_entry_message(event.symbol, event.price, target, stop)


class DispatchCoordinator:
    """
    Fans an alert out to sinks and automation endpoints.

    Sinks run concurrently and their failures are logged, never raised.
    Deliveries to one endpoint are serialized by a per-endpoint lock; each
    delivery is retried under the RetryPolicy and ends SENT or FAILED.
    """

    def __init__(
        self,
        config: DispatchConfig,
        sinks: Sequence[NotificationSink] = (),
        webhook_client: Optional[WebhookClient] = None,
        cipher: Optional[SecretCipher] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[MarketClock] = None,
    ):
        """
        Initialize coordinator.

        Args:
            config: Dispatch configuration
            sinks: Notification channels (Telegram, email)
            webhook_client: Client used for automation endpoints
            cipher: Decrypts endpoint secrets; endpoints with a secret fail without it
            retry_policy: Attempts and backoff per delivery
            clock: Market clock for profile time windows and daily limits
        """
        self.config = config
        self.sinks = list(sinks)
        self.webhook_client = webhook_client or WebhookClient(config.webhook_timeout_seconds)
        self.cipher = cipher
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self.clock = clock or MarketClock()
        self._endpoint_locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, endpoint_id: int) -> asyncio.Lock:
        return self._endpoint_locks.setdefault(endpoint_id, asyncio.Lock())

    async def dispatch_all(self, db: Session, fired: Sequence[FiredAlert], error_handler=None) -> List[ExecutionRequest]:
        """Dispatch a symbol's fired alerts in order"""
        requests = []
        for alert in fired:
            request = await self.dispatch(db, alert, error_handler)
            if request is not None:
                requests.append(request)
        return requests

    async def dispatch(self, db: Session, fired: FiredAlert, error_handler=None) -> Optional[ExecutionRequest]:
        """
        Deliver one alert.

        Returns:
            The ExecutionRequest when the alert was forwarded to an endpoint
        """
        if fired.rule.send_push_notification:
            await self.notify_sinks(fired.event.user_id, fired.event, error_handler)
        if fired.rule.send_webhook:
            return await self.forward(db, fired, error_handler)
        return None

    async def notify_sinks(self, user_id: str, event: AlertEvent, error_handler=None) -> None:
        if not self.sinks:
            return
        results = await asyncio.gather(
            *(sink.notify(user_id, event) for sink in self.sinks),
            return_exceptions=True,
        )
        for sink, result in zip(self.sinks, results):
            if not isinstance(result, Exception):
                continue
            component = f"Sink:{sink.name}"
            if error_handler:
                await error_handler.handle_dispatch_error(component, result, symbol=event.symbol)
            else:
                logger.warning(
                    f"Notification via {sink.name} failed: {result}",
                    extra={'component': component, 'symbol': event.symbol}
                )

    def _secret(self, endpoint: AutomationEndpoint) -> Optional[str]:
        if not endpoint.has_secret:
            return None
        if self.cipher is None:
            raise SecretDecryptionError("No secret key configured to decrypt the endpoint secret")
        return self.cipher.decrypt(EncryptedSecret(
            ciphertext=endpoint.webhook_secret_encrypted,
            iv=endpoint.webhook_secret_iv,
            auth_tag=endpoint.webhook_secret_auth_tag,
        ))

    async def forward(self, db: Session, fired: FiredAlert, error_handler=None) -> Optional[ExecutionRequest]:
        """
        Create an ExecutionRequest and deliver the command to the endpoint.

        When the user has an automation profile the alert goes to the
        profile's endpoint, subject to its mode and guardrails, and the
        decision is recorded. Otherwise it goes to the rule's endpoint.
        """
        rule, event = fired.rule, fired.event
        now_utc = event.created_at or self.clock.now_utc()
        profile = resolve_profile(db, rule, event.user_id)
        decision = None

        if profile is not None or rule.automation_profile_id is not None:
            decision = decide(db, profile, self._context(fired), now_utc, self.clock)
            if decision.action != AutomationAction.SEND:
                self._record(db, decision, fired, now_utc)
                return None
            endpoint_id = decision.profile.automation_endpoint_id
        elif rule.automation_endpoint_id is not None:
            endpoint_id = rule.automation_endpoint_id
        else:
            return None

        endpoint = get_automation_endpoint(db, endpoint_id)
        if endpoint is None or not endpoint.is_active:
            logger.info(
                f"Automation endpoint {endpoint_id} missing or inactive, not forwarding",
                extra={'component': 'DispatchCoordinator', 'symbol': event.symbol, 'rule_id': rule.id}
            )
            if decision is not None:
                skipped = ProfileDecision(AutomationAction.SKIP, "Endpoint missing or inactive", decision.profile)
                self._record(db, skipped, fired, now_utc)
            return None

        command = build_command(fired)
        request = ExecutionRequest(
            user_id=event.user_id,
            symbol=event.symbol,
            strategy_id=event.strategy_id or event.type,
            timeframe=event.timeframe,
            setup_payload={
                "command": command,
                "type": event.type,
                "price": event.price,
                "target_price": event.target_price,
                "stop_price": event.stop_price,
            },
            automation_endpoint_id=endpoint.id,
            alert_event_id=event.id,
            status=ExecutionStatus.CREATED,
            attempts=0,
        )
        db.add(request)
        db.commit()
        if decision is not None:
            self._record(db, decision, fired, now_utc, request)

        try:
            secret = self._secret(endpoint)
        except SecretDecryptionError as e:
            self._fail(db, request, str(e))
            await self._report(error_handler, e, request)
            return request

        try:
            async with self._lock_for(endpoint.id):
                await self._deliver(db, request, endpoint.webhook_url, command, secret, error_handler)
        except asyncio.CancelledError:
            # Cancelled while queued on the lock or mid-delivery
            db.refresh(request)
            if request.status == ExecutionStatus.CREATED:
                self._fail(db, request, "abandoned: delivery cancelled before completion")
                logger.warning(
                    f"Execution request {request.id} abandoned: delivery cancelled",
                    extra={'component': 'DispatchCoordinator', 'symbol': request.symbol,
                           'execution_request_id': request.id}
                )
            raise
        return request

    @staticmethod
    def _context(fired: FiredAlert) -> AlertContext:
        return AlertContext(
            user_id=fired.event.user_id,
            symbol=fired.event.symbol,
            strategy_id=fired.event.strategy_id,
            watchlist_id=fired.rule.watchlist_id,
            score=fired.score,
        )

    @staticmethod
    def _record(
        db: Session,
        decision: ProfileDecision,
        fired: FiredAlert,
        now_utc: datetime,
        request: Optional[ExecutionRequest] = None,
    ) -> AutomationDecision:
        record = AutomationDecision(
            profile_id=decision.profile.id if decision.profile else None,
            user_id=fired.event.user_id,
            symbol=fired.event.symbol,
            strategy_id=fired.event.strategy_id,
            alert_event_id=fired.event.id,
            execution_request_id=request.id if request else None,
            action=decision.action,
            reason=decision.reason,
            created_at=now_utc,
        )
        db.add(record)
        db.commit()
        if decision.action != AutomationAction.SEND:
            logger.info(
                f"Alert {fired.event.id} not forwarded ({decision.action.value}): {decision.reason}",
                extra={'component': 'DispatchCoordinator', 'symbol': fired.event.symbol, 'rule_id': fired.rule.id}
            )
        return record

    async def _deliver(
        self,
        db: Session,
        request: ExecutionRequest,
        url: str,
        command: str,
        secret: Optional[str],
        error_handler=None,
    ) -> None:
        try:
            async for attempt in self.retry_policy.retrying():
                with attempt:
                    request.attempts = (request.attempts or 0) + 1
                    db.commit()
                    await self.webhook_client.post(url, command, secret)
        except DispatchError as e:
            self._fail(db, request, str(e))
            await self._report(error_handler, e, request)
            return

        # A callback may already have moved the request past SENT
        db.refresh(request)
        if can_transition(request.status, ExecutionStatus.SENT):
            transition(request, ExecutionStatus.SENT)
        request.error_message = None
        db.commit()
        logger.info(
            f"Execution request {request.id} sent after {request.attempts} attempt(s): {command}",
            extra={'component': 'DispatchCoordinator', 'symbol': request.symbol,
                   'execution_request_id': request.id}
        )

    @staticmethod
    def _fail(db: Session, request: ExecutionRequest, message: str) -> None:
        if can_transition(request.status, ExecutionStatus.FAILED):
            transition(request, ExecutionStatus.FAILED)
        request.error_message = message
        db.commit()

    @staticmethod
    async def _report(error_handler, error: Exception, request: ExecutionRequest) -> None:
        if error_handler:
            await error_handler.handle_dispatch_error(
                "DispatchCoordinator", error, symbol=request.symbol, execution_request_id=request.id
            )
        else:
            logger.warning(
                f"Execution request {request.id} failed: {error}",
                extra={'component': 'DispatchCoordinator', 'symbol': request.symbol,
                       'execution_request_id': request.id}
            )

    async def test_endpoint(self, db: Session, endpoint_id: int, now_utc: Optional[datetime] = None) -> bool:
        """
        Post a signed test command to an endpoint.

        No ExecutionRequest is created; the endpoint's last test fields are updated.

        Raises:
            LookupError: unknown endpoint
        """
        endpoint = get_automation_endpoint(db, endpoint_id)
        if endpoint is None:
            raise LookupError(f"Automation endpoint {endpoint_id} not found")

        try:
            secret = self._secret(endpoint)
            async with self._lock_for(endpoint.id):
                await self.webhook_client.post(endpoint.webhook_url, TEST_MESSAGE, secret)
            success = True
        except (DispatchError, SecretDecryptionError) as e:
            logger.warning(
                f"Endpoint {endpoint_id} test failed: {e}",
                extra={'component': 'DispatchCoordinator'}
            )
            success = False

        endpoint.last_tested_at = now_utc or self.clock.now_utc()
        endpoint.last_test_success = success
        db.commit()
        return success

    @staticmethod
    def apply_execution_update(
        db: Session,
        request_id: int,
        status: ExecutionStatus,
        external_reference: Optional[str] = None,
        redirect_url: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> ExecutionRequest:
        """
        Apply a status report from the automation side.

        Raises:
            LookupError: unknown request
            InvalidStatusTransition: the report would move the request backwards
        """
        request = get_execution_request(db, request_id)
        if request is None:
            raise LookupError(f"Execution request {request_id} not found")

        transition(request, status)
        if external_reference is not None:
            request.external_reference = external_reference
        if redirect_url is not None:
            request.redirect_url = redirect_url
        if error_message is not None:
            request.error_message = error_message
        db.commit()

        logger.info(
            f"Execution request {request.id} -> {status.value}",
            extra={'component': 'DispatchCoordinator', 'symbol': request.symbol,
                   'execution_request_id': request.id}
        )
        return request
