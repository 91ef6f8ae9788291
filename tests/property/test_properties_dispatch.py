"""Property-based tests for alert dispatch, webhook signing and execution status"""
import asyncio
import hashlib
import hmac
from datetime import time

import pytest
from hypothesis import given, strategies as st

from opportunity_engine.core.alerts.rule_evaluator import FiredAlert
from opportunity_engine.core.dispatch.coordinator import DispatchCoordinator, TEST_MESSAGE, build_command
from opportunity_engine.core.dispatch.execution_state import STATUS_RANK, TERMINAL_STATUSES, can_transition, transition
from opportunity_engine.core.dispatch.guardrails import AlertContext, check_guardrails, within_time_window
from opportunity_engine.core.dispatch.retry_policy import RetryPolicy
from opportunity_engine.core.dispatch.webhook import format_entry_message, format_exit_message, sign_payload
from opportunity_engine.core.errors import DispatchError, InvalidStatusTransition, SecretDecryptionError
from opportunity_engine.db.models.alert_event import AlertEvent
from opportunity_engine.db.models.automation import (
    AutomationAction,
    AutomationDecision,
    AutomationEndpoint,
    AutomationMode,
    AutomationProfile,
    ExecutionRequest,
    ExecutionStatus,
)
from opportunity_engine.db.models.error_log import ErrorLog
from opportunity_engine.utils.error_handler import ErrorHandler
from opportunity_engine.utils.secrets import SecretCipher, generate_key

from tests.property.factories import CYCLE_TIME, RuleConditionType, make_rule

NO_WAIT = RetryPolicy(max_attempts=3, multiplier=0, min_seconds=0, max_seconds=0)


class RecordingSink:
    def __init__(self, name, fail=False):
        self.name = name
        self.fail = fail
        self.received = []

    async def notify(self, user_id, event):
        if self.fail:
            raise ConnectionError(f"{self.name} is down")
        self.received.append((user_id, event.id))


class FakeWebhookClient:
    """Fails the first `failures` posts, then succeeds"""

    def __init__(self, failures=0, delay=0.0):
        self.failures = failures
        self.delay = delay
        self.posts = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def post(self, url, body, secret=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.posts.append((url, body, secret))
            if len(self.posts) <= self.failures:
                raise DispatchError("HTTP 502: bad gateway", status_code=502)
            return "ok"
        finally:
            self.in_flight -= 1


def _endpoint(db, cipher=None, secret=None, active=True):
    endpoint = AutomationEndpoint(user_id="user-1", name="bot", webhook_url="https://hooks.example/run",
                                  is_active=active)
    if secret:
        encrypted = cipher.encrypt(secret)
        endpoint.webhook_secret_encrypted = encrypted.ciphertext
        endpoint.webhook_secret_iv = encrypted.iv
        endpoint.webhook_secret_auth_tag = encrypted.auth_tag
    db.add(endpoint)
    db.commit()
    return endpoint


def _fired(db, condition=RuleConditionType.STAGE_ENTERED, endpoint=None, push=True, profile=None, score=None):
    rule = make_rule(
        db, condition,
        send_push_notification=push,
        send_webhook=endpoint is not None or profile is not None,
        automation_endpoint_id=endpoint.id if endpoint else None,
        automation_profile_id=profile.id if profile else None,
    )
    event = AlertEvent(
        rule_id=rule.id, user_id="user-1", symbol="AAPL", type=condition.value,
        event_key=f"{rule.id}:AAPL:{CYCLE_TIME:%Y-%m-%dT%H:%M:%S}",
        from_state="READY", to_state="BREAKOUT", timeframe="1d", strategy_id="VCP",
        price=150.0, target_price=160.0, stop_price=145.0, message="AAPL entered BREAKOUT",
        created_at=CYCLE_TIME,
    )
    db.add(event)
    db.commit()
    return FiredAlert(
        rule=rule,
        event=event,
        is_exit=condition in (RuleConditionType.STOP_HIT, RuleConditionType.EMA_EXIT),
        score=score,
    )


def test_wire_format():
    assert format_entry_message("AAPL", 150, 160.123, 145) == "enter sym=AAPL lp=150.00 tp=160.12 sl=145.00"
    assert format_exit_message("AAPL", "stop hit") == 'exit sym=AAPL reason="stop hit"'
    assert format_exit_message("AAPL", "stop hit", 160) == 'exit sym=AAPL reason="stop hit" tp=160.00'


def test_signature_is_hmac_sha256_of_body():
    body = "enter sym=AAPL lp=150.00 tp=160.00 sl=145.00"
    expected = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
    assert sign_payload("s3cret", body) == f"sha256={expected}"


def test_commands_for_entry_and_exit_alerts(db):
    assert build_command(_fired(db)) == "enter sym=AAPL lp=150.00 tp=160.00 sl=145.00"
    assert build_command(_fired(db, RuleConditionType.STOP_HIT)) == 'exit sym=AAPL reason="stop hit" tp=160.00'


@pytest.mark.asyncio
async def test_failing_sink_does_not_block_others(db, dispatch_config):
    healthy, broken = RecordingSink("email"), RecordingSink("telegram", fail=True)
    coordinator = DispatchCoordinator(dispatch_config, sinks=[broken, healthy], webhook_client=FakeWebhookClient())
    fired = _fired(db)

    result = await coordinator.dispatch(db, fired, ErrorHandler(db))

    assert result is None
    assert healthy.received == [("user-1", fired.event.id)]
    error = db.query(ErrorLog).one()
    assert error.component == "Sink:telegram"
    assert error.exception_type == "ConnectionError"


@pytest.mark.asyncio
async def test_push_disabled_skips_sinks(db, dispatch_config):
    sink = RecordingSink("email")
    coordinator = DispatchCoordinator(dispatch_config, sinks=[sink], webhook_client=FakeWebhookClient())
    await coordinator.dispatch(db, _fired(db, push=False))
    assert sink.received == []


@pytest.mark.asyncio
async def test_webhook_retries_then_sends(db, dispatch_config):
    client = FakeWebhookClient(failures=2)
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=client, retry_policy=NO_WAIT)
    fired = _fired(db, endpoint=_endpoint(db))

    request = await coordinator.dispatch(db, fired)

    assert request.status == ExecutionStatus.SENT
    assert request.attempts == 3
    assert request.error_message is None
    assert request.alert_event_id == fired.event.id
    assert request.setup_payload["command"] == "enter sym=AAPL lp=150.00 tp=160.00 sl=145.00"
    assert [body for _, body, _ in client.posts] == [request.setup_payload["command"]] * 3


@pytest.mark.asyncio
async def test_webhook_exhausting_retries_fails_request_not_event(db, dispatch_config):
    client = FakeWebhookClient(failures=10)
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=client, retry_policy=NO_WAIT)
    fired = _fired(db, endpoint=_endpoint(db))

    request = await coordinator.dispatch(db, fired, ErrorHandler(db))

    assert request.status == ExecutionStatus.FAILED
    assert request.attempts == 3
    assert "502" in request.error_message
    event = db.query(AlertEvent).filter_by(id=fired.event.id).one()
    assert event.is_read is False
    assert event.price == 150.0
    assert db.query(ErrorLog).one().execution_request_id == request.id


@pytest.mark.asyncio
async def test_inactive_endpoint_creates_no_request(db, dispatch_config):
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=FakeWebhookClient())
    assert await coordinator.dispatch(db, _fired(db, endpoint=_endpoint(db, active=False))) is None
    assert db.query(ExecutionRequest).count() == 0


@pytest.mark.asyncio
async def test_secret_is_decrypted_for_signing(db, dispatch_config):
    cipher = SecretCipher(generate_key())
    client = FakeWebhookClient()
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=client, cipher=cipher, retry_policy=NO_WAIT)

    await coordinator.dispatch(db, _fired(db, endpoint=_endpoint(db, cipher, "s3cret")))
    assert client.posts[0][2] == "s3cret"


@pytest.mark.asyncio
async def test_secret_without_key_fails_request(db, dispatch_config):
    cipher = SecretCipher(generate_key())
    client = FakeWebhookClient()
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=client, retry_policy=NO_WAIT)

    request = await coordinator.dispatch(db, _fired(db, endpoint=_endpoint(db, cipher, "s3cret")))

    assert request.status == ExecutionStatus.FAILED
    assert client.posts == []


@pytest.mark.asyncio
async def test_endpoint_test_records_result_without_request(db, dispatch_config):
    endpoint = _endpoint(db)
    ok = DispatchCoordinator(dispatch_config, webhook_client=FakeWebhookClient())
    assert await ok.test_endpoint(db, endpoint.id, CYCLE_TIME) is True
    assert endpoint.last_test_success is True
    assert endpoint.last_tested_at == CYCLE_TIME

    failing = DispatchCoordinator(dispatch_config, webhook_client=FakeWebhookClient(failures=1))
    assert await failing.test_endpoint(db, endpoint.id, CYCLE_TIME) is False
    assert endpoint.last_test_success is False
    assert db.query(ExecutionRequest).count() == 0

    with pytest.raises(LookupError):
        await ok.test_endpoint(db, 999)


@pytest.mark.asyncio
async def test_deliveries_to_one_endpoint_are_serialized(db, dispatch_config):
    endpoint = _endpoint(db)
    client = FakeWebhookClient(delay=0.01)
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=client)

    await asyncio.gather(*(coordinator.test_endpoint(db, endpoint.id, CYCLE_TIME) for _ in range(4)))

    assert [body for _, body, _ in client.posts] == [TEST_MESSAGE] * 4
    assert client.max_in_flight == 1


def test_execution_updates_move_forward_only(db):
    request = ExecutionRequest(user_id="user-1", symbol="AAPL", strategy_id="VCP", status=ExecutionStatus.SENT)
    db.add(request)
    db.commit()

    DispatchCoordinator.apply_execution_update(db, request.id, ExecutionStatus.ACKED, external_reference="ord-1")
    DispatchCoordinator.apply_execution_update(db, request.id, ExecutionStatus.EXECUTED)
    assert request.status == ExecutionStatus.EXECUTED
    assert request.external_reference == "ord-1"

    with pytest.raises(InvalidStatusTransition):
        DispatchCoordinator.apply_execution_update(db, request.id, ExecutionStatus.ACKED)
    with pytest.raises(LookupError):
        DispatchCoordinator.apply_execution_update(db, 999, ExecutionStatus.ACKED)


@given(
    current=st.sampled_from(list(ExecutionStatus)),
    requested=st.sampled_from(list(ExecutionStatus)),
)
def test_status_transitions_never_go_backwards(current, requested):
    request = ExecutionRequest(status=current)
    if can_transition(current, requested):
        transition(request, requested)
        assert current not in TERMINAL_STATUSES
        assert STATUS_RANK[requested] > STATUS_RANK[current]
        assert request.status == requested
    else:
        with pytest.raises(InvalidStatusTransition):
            transition(request, requested)
        assert request.status == current


def test_secret_cipher_rejects_tampering_and_wrong_keys():
    cipher = SecretCipher(generate_key())
    sealed = cipher.encrypt("s3cret")
    assert cipher.decrypt(sealed) == "s3cret"

    tampered = type(sealed)(ciphertext=sealed.ciphertext[:-4] + "AAA=", iv=sealed.iv, auth_tag=sealed.auth_tag)
    with pytest.raises(SecretDecryptionError):
        cipher.decrypt(tampered)
    with pytest.raises(SecretDecryptionError):
        SecretCipher(generate_key()).decrypt(sealed)
    with pytest.raises(ValueError):
        SecretCipher("c2hvcnQ=")


@pytest.mark.asyncio
async def test_retry_policy_reraises_last_dispatch_error():
    calls = []

    async def always_down():
        calls.append(1)
        raise DispatchError("down")

    with pytest.raises(DispatchError):
        async for attempt in NO_WAIT.retrying():
            with attempt:
                await always_down()
    assert len(calls) == 3


class HangingWebhookClient:
    async def post(self, url, body, secret=None):
        await asyncio.sleep(10)


@pytest.mark.asyncio
async def test_cancelled_delivery_fails_the_request(db, dispatch_config):
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=HangingWebhookClient(), retry_policy=NO_WAIT)
    fired = _fired(db, endpoint=_endpoint(db))

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(coordinator.dispatch(db, fired), 0.2)

    request = db.query(ExecutionRequest).one()
    assert request.status == ExecutionStatus.FAILED
    assert request.attempts == 1
    assert request.error_message.startswith("abandoned")


@pytest.mark.asyncio
async def test_request_cancelled_while_queued_on_endpoint_fails(db, dispatch_config):
    endpoint = _endpoint(db)
    client = FakeWebhookClient(delay=0.5)
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=client, retry_policy=NO_WAIT)
    busy = asyncio.create_task(coordinator.test_endpoint(db, endpoint.id, CYCLE_TIME))
    await asyncio.sleep(0)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(coordinator.dispatch(db, _fired(db, endpoint=endpoint)), 0.1)
    assert await busy is True

    request = db.query(ExecutionRequest).one()
    assert request.status == ExecutionStatus.FAILED
    assert request.attempts == 0
    assert [body for _, body, _ in client.posts] == [TEST_MESSAGE]


def _profile(db, endpoint, mode=AutomationMode.AUTO, guardrails=None, user_id="user-1", enabled=True):
    profile = AutomationProfile(
        user_id=user_id, name="default", automation_endpoint_id=endpoint.id,
        mode=mode, guardrails=guardrails, is_enabled=enabled,
    )
    db.add(profile)
    db.commit()
    return profile


def _decisions(db):
    return db.query(AutomationDecision).order_by(AutomationDecision.id).all()


@pytest.mark.asyncio
async def test_auto_profile_forwards_to_its_endpoint_and_records_decision(db, dispatch_config):
    client = FakeWebhookClient()
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=client, retry_policy=NO_WAIT)
    endpoint = _endpoint(db)
    profile = _profile(db, endpoint)

    request = await coordinator.dispatch(db, _fired(db, profile=profile, score=80.0))

    assert request.status == ExecutionStatus.SENT
    assert request.automation_endpoint_id == endpoint.id
    decision = _decisions(db)[0]
    assert decision.action == AutomationAction.SEND
    assert decision.profile_id == profile.id
    assert decision.execution_request_id == request.id


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", [AutomationMode.OFF, AutomationMode.NOTIFY_ONLY])
async def test_non_sending_profiles_skip_without_a_request(db, dispatch_config, mode):
    client = FakeWebhookClient()
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=client)
    profile = _profile(db, _endpoint(db), mode=mode)

    assert await coordinator.dispatch(db, _fired(db, profile=profile)) is None

    assert client.posts == []
    assert db.query(ExecutionRequest).count() == 0
    assert [d.action for d in _decisions(db)] == [AutomationAction.SKIP]


@pytest.mark.asyncio
async def test_guardrails_block_low_scores(db, dispatch_config):
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=FakeWebhookClient())
    profile = _profile(db, _endpoint(db), guardrails={"min_score": 90})

    assert await coordinator.dispatch(db, _fired(db, profile=profile, score=80.0)) is None

    decision = _decisions(db)[0]
    assert decision.action == AutomationAction.BLOCKED
    assert decision.reason == "Score 80 below minimum 90"
    assert db.query(ExecutionRequest).count() == 0


@pytest.mark.asyncio
async def test_symbol_cooldown_and_daily_limit(db, dispatch_config):
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=FakeWebhookClient(), retry_policy=NO_WAIT)
    endpoint = _endpoint(db)
    cooling = _profile(db, endpoint, guardrails={"cooldown_minutes": 30})

    assert await coordinator.dispatch(db, _fired(db, profile=cooling)) is not None
    assert await coordinator.dispatch(db, _fired(db, profile=cooling)) is None
    assert _decisions(db)[-1].reason == "Symbol AAPL in cooldown (30min remaining)"

    capped = _profile(db, endpoint, guardrails={"max_per_day": 1})
    assert await coordinator.dispatch(db, _fired(db, profile=capped)) is not None
    assert await coordinator.dispatch(db, _fired(db, profile=capped)) is None
    assert _decisions(db)[-1].reason == "Daily limit reached (1/1)"
    assert db.query(ExecutionRequest).count() == 2


@pytest.mark.asyncio
async def test_user_profile_governs_rules_without_one(db, dispatch_config):
    client = FakeWebhookClient()
    coordinator = DispatchCoordinator(dispatch_config, webhook_client=client)
    rule_endpoint = _endpoint(db)
    _profile(db, _endpoint(db), guardrails={"allowed_time_window": {"start": "09:30", "end": "09:45"}})

    # 10:00 in New York
    assert await coordinator.dispatch(db, _fired(db, endpoint=rule_endpoint)) is None
    assert _decisions(db)[0].reason == "Outside allowed time window (09:30-09:45)"
    assert client.posts == []


def test_guardrail_lists_are_case_insensitive(db, clock):
    profile = _profile(db, _endpoint(db), guardrails={
        "allowed_strategies": ["vcp"],
        "allowed_symbols": ["aapl"],
        "allowed_watchlists": [3],
    })

    def check(**overrides):
        fields = dict(user_id="user-1", symbol="AAPL", strategy_id="VCP", watchlist_id=3)
        fields.update(overrides)
        return check_guardrails(db, profile, AlertContext(**fields), CYCLE_TIME, clock)

    assert check() is None
    assert check(watchlist_id=None) is None
    assert check(strategy_id="ORB5") == "Strategy ORB5 not in allowed list"
    assert check(symbol="MSFT") == "Symbol MSFT not in allowed list"
    assert check(watchlist_id=4) == "Watchlist not in allowed list"


@pytest.mark.parametrize("window, now, inside", [
    (None, time(3, 0), True),
    ((time(9, 30), time(16, 0)), time(9, 30), True),
    ((time(9, 30), time(16, 0)), time(16, 1), False),
    ((time(22, 0), time(2, 0)), time(23, 30), True),
    ((time(22, 0), time(2, 0)), time(1, 0), True),
    ((time(22, 0), time(2, 0)), time(12, 0), False),
])
def test_time_windows_may_wrap_midnight(window, now, inside):
    assert within_time_window(window, now) is inside
