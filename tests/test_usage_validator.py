from __future__ import annotations

from datetime import datetime

import pytest

from voice_billing.db.memory import InMemoryDBManager
from voice_billing.logging.ledger_logger import LedgerLogger
from voice_billing.models.assistant import Assistant
from voice_billing.models.credit import CreditTransactionType
from voice_billing.models.subscription import Subscription
from voice_billing.notifications.queue import InMemoryNotificationQueue
from voice_billing.policy import UNLIMITED, PlanType
from voice_billing.services.notification_service import NotificationService
from voice_billing.services.pricing_service import PricingService
from voice_billing.services.usage_validator import UsageValidator, snapshot_from_document


USER = "user-1"


def _validator(tmp_path, db=None, queue=None):
    db = db or InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    notifications = NotificationService(db=db, queue=queue) if queue is not None else None
    validator = UsageValidator(
        db=db, pricing=PricingService(db=db), ledger=ledger, notifications=notifications
    )
    return db, validator


def _starter(**overrides) -> Subscription:
    values = dict(
        user_id=USER,
        plan_type=PlanType.STARTER,
        plan_name="Starter",
        monthly_price=49.0,
        monthly_minute_limit=500,
        assistant_limit=3,
    )
    values.update(overrides)
    return Subscription(**values)


def _trial(**overrides) -> Subscription:
    values = dict(
        user_id=USER,
        plan_type=PlanType.TRIAL,
        plan_name="Free Trial",
        monthly_minute_limit=10,
        monthly_call_limit=3,
        assistant_limit=1,
        is_trial=True,
    )
    values.update(overrides)
    return Subscription(**values)


@pytest.mark.asyncio
async def test_no_subscription_blocks_assistant_creation(tmp_path):
    _, validator = _validator(tmp_path)

    result = await validator.can_create_assistant(USER)

    assert result.can_create is False
    assert result.can_call is False
    assert result.upgrade_required is True
    assert result.reason == (
        "Payment required to create assistants. "
        "Pay $25.00 for Pay-as-you-go or choose a monthly plan."
    )


@pytest.mark.asyncio
async def test_no_subscription_blocks_calls_with_estimate(tmp_path):
    _, validator = _validator(tmp_path)

    result = await validator.can_make_call(USER, estimated_minutes=3)

    assert result.can_call is False
    assert result.can_create is False
    assert result.upgrade_required is True
    assert result.reason.startswith("Payment required to make calls.")
    assert result.overage.minutes == 3
    assert result.overage.cost == 0.21


@pytest.mark.asyncio
async def test_payg_assistant_charged_from_credits(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=25.0))

    result = await validator.can_create_assistant(USER)

    assert result.can_create is True
    assert result.reason == "Will charge $20.00 from credits"


@pytest.mark.asyncio
async def test_payg_assistant_denied_when_balance_short(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=10.0))

    result = await validator.can_create_assistant(USER)

    assert result.can_create is False
    assert result.upgrade_required is True
    assert result.reason == (
        "Insufficient credits. Need $20.00 to create assistant (current balance: $10.00)"
    )


@pytest.mark.asyncio
async def test_quota_plan_assistant_limit_counts_active_assistants(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(_starter(assistant_limit=1))
    await db.add_assistant(Assistant(user_id=USER, name="Receptionist"))
    await db.add_assistant(Assistant(user_id=USER, name="Old", is_active=False))

    result = await validator.can_create_assistant(USER)

    assert result.can_create is False
    assert result.reason == (
        "Assistant limit reached (1/1). Top up with $20.00 or upgrade your plan."
    )


@pytest.mark.asyncio
async def test_quota_plan_within_limits_uses_quota(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(_starter(minutes_used=100))

    assistant = await validator.can_create_assistant(USER)
    call = await validator.can_make_call(USER, estimated_minutes=5)

    assert assistant.can_create is True
    assert assistant.reason == "Using plan quota"
    assert call.can_call is True
    assert call.reason == "Using plan quota"


@pytest.mark.asyncio
async def test_payg_call_denied_keeps_assistant_access(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=0.10))

    result = await validator.can_make_call(USER, estimated_minutes=2)

    assert result.can_call is False
    assert result.can_create is True
    assert result.upgrade_required is True
    assert result.reason == (
        "Insufficient credits. Need $0.14 for 2 minutes (current balance: $0.10)"
    )
    assert result.overage.cost == 0.14


@pytest.mark.asyncio
async def test_exhausted_quota_plan_falls_back_to_credits(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(_starter(monthly_minute_limit=100, minutes_used=100))

    denied = await validator.can_make_call(USER, estimated_minutes=1)
    assert denied.can_call is False
    assert denied.reason == (
        "Not enough minutes remaining (0/100). Top up with credits or upgrade your plan."
    )

    await db.add_to_balance(USER, 1.0)
    allowed = await validator.can_make_call(USER, estimated_minutes=1)
    assert allowed.can_call is True
    assert allowed.reason == "Will charge $0.07 from credits"


@pytest.mark.asyncio
async def test_trial_call_limit(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(_trial(calls_used=3))

    result = await validator.can_make_call(USER, estimated_minutes=1)

    assert result.can_call is False
    assert result.reason == "Trial call limit reached (3/3). Upgrade to keep making calls."


@pytest.mark.asyncio
async def test_track_payg_call_deducts_and_records_credit(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=10.0))

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300, call_id="abc")

    subscription = await db.get_active_subscription(USER)
    assert subscription.credit_balance == 9.65
    assert subscription.minutes_used == 5
    assert subscription.calls_used == 1

    credits = list(await db.get_credits(USER))
    assert len(credits) == 1
    row = credits[0]
    assert row.transaction_type == CreditTransactionType.USAGE.value
    assert row.amount == -0.35
    assert row.balance_before == 10.0
    assert row.balance_after == 9.65
    assert row.reference == "call-abc"

    usage = await db.find_or_create_usage_for_month(USER)
    assert usage.total_minutes_used == 5
    assert usage.total_calls == 1
    assert usage.total_cost == 0.35
    assert usage.overage_cost == 0.0
    assert usage.assistant_usage[0].assistant_id == "asst-1"


@pytest.mark.asyncio
async def test_track_call_bills_only_overage_minutes(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(_starter(minutes_used=498, credit_balance=10.0))

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300)

    subscription = await db.get_active_subscription(USER)
    assert subscription.minutes_used == 503
    assert subscription.credit_balance == 9.85

    row = list(await db.get_credits(USER))[0]
    assert row.amount == -0.15
    assert row.metadata["billable_minutes"] == 3
    assert row.reference.startswith("call-asst-1-")

    usage = await db.find_or_create_usage_for_month(USER)
    assert usage.overage_cost == 0.15


@pytest.mark.asyncio
async def test_track_call_within_quota_charges_nothing(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(_starter(credit_balance=10.0))

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 61)

    subscription = await db.get_active_subscription(USER)
    assert subscription.minutes_used == 2
    assert subscription.credit_balance == 10.0
    assert list(await db.get_credits(USER)) == []


@pytest.mark.asyncio
async def test_underfunded_call_clamps_balance_at_zero(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=0.02))

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300)

    subscription = await db.get_active_subscription(USER)
    assert subscription.credit_balance == 0.0

    row = list(await db.get_credits(USER))[0]
    assert row.amount == -0.02
    assert row.balance_before == 0.02
    assert row.balance_after == 0.0
    assert row.metadata["computed_cost"] == 0.35
    assert row.metadata["shortfall"] == 0.33

    # The monthly rollup keeps the full price of the call
    usage = await db.find_or_create_usage_for_month(USER)
    assert usage.total_cost == 0.35


@pytest.mark.asyncio
async def test_track_call_without_subscription_is_ignored(tmp_path):
    db, validator = _validator(tmp_path)

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 120)

    assert list(await db.get_credits(USER)) == []
    assert db._usage == {}


@pytest.mark.asyncio
async def test_low_balance_notification_sent_once_when_crossing_minimum(tmp_path):
    queue = InMemoryNotificationQueue()
    db, validator = _validator(tmp_path, queue=queue)
    await db.add_subscription(Subscription.payg(USER, credit_balance=5.20))

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300)
    await validator.track_call_usage(USER, "asst-1", "Receptionist", 60)

    assert len(queue.messages) == 1
    message = queue.messages[0]
    assert message["type"] == "low_balance"
    assert message["payload"]["credit_balance"] == 4.85
    assert len(db._notifications) == 1


@pytest.mark.asyncio
async def test_malformed_subscription_recovers_from_raw_fields(tmp_path):
    db, validator = _validator(tmp_path)
    # plan_name and limits missing: the model rejects this document
    db._subscriptions["broken"] = {
        "id": "broken",
        "user_id": USER,
        "plan_type": "payg",
        "credit_balance": 30.0,
        "is_active": True,
        "created_at": datetime.utcnow(),
    }

    result = await validator.can_create_assistant(USER)

    assert result.can_create is True
    assert result.reason == "Will charge $20.00 from credits"


@pytest.mark.asyncio
async def test_malformed_quota_plan_recovers_with_zero_limits(tmp_path):
    db, validator = _validator(tmp_path)
    db._subscriptions["broken"] = {
        "id": "broken",
        "user_id": USER,
        "plan_type": "starter",
        "is_active": True,
    }

    result = await validator.can_create_assistant(USER)

    assert result.can_create is False
    assert result.reason.startswith("Assistant limit reached (0/0)")


@pytest.mark.asyncio
async def test_unreadable_subscription_fails_closed(tmp_path):
    db, validator = _validator(tmp_path)
    db._subscriptions["broken"] = {
        "id": "broken",
        "user_id": USER,
        "plan_type": "starter",
        "monthly_minute_limit": "lots",
        "is_active": True,
    }

    assistant = await validator.can_create_assistant(USER)
    call = await validator.can_make_call(USER, estimated_minutes=1)

    assert assistant.can_create is False
    assert assistant.upgrade_required is True
    assert assistant.reason.startswith("Validation error: ")
    assert assistant.reason.endswith("Please try again or contact support.")
    assert call.can_call is False
    assert call.reason == "Validation error. Please try again or contact support."


def test_snapshot_from_document_defaults():
    snapshot = snapshot_from_document({"plan_type": "trial", "monthly_minute_limit": 10}, 2)

    assert snapshot.plan_type == PlanType.TRIAL
    assert snapshot.minute_limit == 10
    assert snapshot.assistant_limit == 0
    assert snapshot.assistants_active == 2
    assert snapshot.call_limit == UNLIMITED
    assert snapshot.credit_balance == 0.0


@pytest.mark.asyncio
async def test_usage_summary_without_subscription(tmp_path):
    _, validator = _validator(tmp_path)

    summary = await validator.get_current_usage(USER)

    assert summary.plan_type == "none"
    assert summary.plan_name == "No Plan (Payment Required)"
    assert summary.is_over_limit is True
    assert summary.needs_topup is True
    assert summary.credit_balance == 0.0


@pytest.mark.asyncio
async def test_usage_summary_for_quota_plan(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(_starter(minutes_used=498, credit_balance=10.0, extra_minutes=0))
    await db.add_assistant(Assistant(user_id=USER, name="Receptionist"))
    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300)

    summary = await validator.get_current_usage(USER)

    assert summary.plan_type == "starter"
    assert summary.minutes_used == 503
    assert summary.minute_limit == 500
    assert summary.minutes_remaining == 0
    assert summary.minutes_overage == 3
    assert summary.assistants_created == 1
    assert summary.assistants_remaining == 2
    assert summary.is_over_limit is True
    assert summary.is_pay_as_you_go is False
    assert summary.current_period_cost == 0.15
    assert summary.overage_cost == 0.15
    assert summary.credit_balance == 9.85


@pytest.mark.asyncio
async def test_upgrade_options(tmp_path):
    db, validator = _validator(tmp_path)

    options = await validator.get_upgrade_options(USER)
    assert len(options) == 1
    assert options[0].plan_type == "payg"
    assert options[0].minute_limit == UNLIMITED

    await db.add_subscription(Subscription.payg(USER))
    assert await validator.get_upgrade_options(USER) == []


@pytest.mark.asyncio
async def test_reset_billing_period_keeps_balance(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(_starter(minutes_used=120, calls_used=7, credit_balance=3.5))

    await validator.reset_billing_period(USER)

    subscription = await db.get_active_subscription(USER)
    assert subscription.minutes_used == 0
    assert subscription.calls_used == 0
    assert subscription.credit_balance == 3.5
    assert subscription.current_period_end > subscription.current_period_start


@pytest.mark.asyncio
async def test_pricing_overrides_change_call_estimate(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=1.0))
    await validator._pricing.update_pricing({"cost_per_minute_payg": 0.1}, updated_by="admin")

    result = await validator.can_make_call(USER, estimated_minutes=3)

    assert result.can_call is True
    assert result.reason == "Will charge $0.30 from credits"


async def _unavailable(*args, **kwargs):
    raise RuntimeError("database unavailable")


@pytest.mark.asyncio
async def test_trial_minutes_past_limit_are_charged_at_overage_rate(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(_trial(minutes_used=9, credit_balance=10.0))

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300)

    subscription = await db.get_active_subscription(USER)
    assert subscription.minutes_used == 14
    assert subscription.credit_balance == 9.8

    row = list(await db.get_credits(USER))[0]
    assert row.amount == -0.2
    assert row.metadata["billable_minutes"] == 4


@pytest.mark.asyncio
async def test_redelivered_call_is_billed_once(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=10.0))

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300, call_id="abc")
    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300, call_id="abc")

    subscription = await db.get_active_subscription(USER)
    assert subscription.credit_balance == 9.65
    assert subscription.minutes_used == 5
    assert len(list(await db.get_credits(USER))) == 1
    assert (await db.find_or_create_usage_for_month(USER)).total_calls == 1


@pytest.mark.asyncio
async def test_rollup_failure_does_not_escape_tracking(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=10.0))
    db.record_call_usage = _unavailable

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300)

    assert (await db.get_active_subscription(USER)).credit_balance == 9.65
    assert len(list(await db.get_credits(USER))) == 1


@pytest.mark.asyncio
async def test_balance_failure_does_not_escape_tracking(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=10.0))
    db.deduct_from_balance = _unavailable

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300)

    subscription = await db.get_active_subscription(USER)
    assert subscription.minutes_used == 5
    assert subscription.credit_balance == 10.0
    assert list(await db.get_credits(USER)) == []


@pytest.mark.asyncio
async def test_credit_row_failure_is_recorded_in_ledger(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=10.0))
    db.add_credit = _unavailable

    await validator.track_call_usage(USER, "asst-1", "Receptionist", 300, call_id="abc")

    assert (await db.get_active_subscription(USER)).credit_balance == 9.65
    entry = db._ledger[-1]
    assert entry.event_type == "error"
    assert entry.message == "Call charged without a credit row"
    assert entry.correlation_id == "call-abc"
    assert entry.details["balance_after"] == 9.65
    assert (await db.find_or_create_usage_for_month(USER)).total_cost == 0.35


@pytest.mark.asyncio
async def test_usage_summary_on_storage_error(tmp_path):
    db, validator = _validator(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=10.0))
    db.count_active_assistants = _unavailable

    summary = await validator.get_current_usage(USER)

    assert summary.plan_type == "none"
    assert summary.plan_name == "Usage unavailable"
    assert summary.minute_limit == 0
    assert summary.assistants_created == 0
    assert summary.is_over_limit is False
    assert summary.is_pay_as_you_go is False
    assert summary.credit_balance == 0.0


@pytest.mark.asyncio
async def test_upgrade_options_on_storage_error(tmp_path):
    db, validator = _validator(tmp_path)
    db.get_active_subscription_document = _unavailable

    assert await validator.get_upgrade_options(USER) == []


@pytest.mark.asyncio
async def test_upgrade_options_offered_for_active_plan_without_type(tmp_path):
    db, validator = _validator(tmp_path)
    db._subscriptions["legacy"] = {
        "id": "legacy",
        "user_id": USER,
        "plan_type": "none",
        "is_active": True,
    }

    options = await validator.get_upgrade_options(USER)

    assert [o.plan_type for o in options] == ["payg"]
