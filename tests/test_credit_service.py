from __future__ import annotations

import json

import pytest

from voice_billing.db.memory import InMemoryDBManager
from voice_billing.exceptions import InsufficientCreditsError, NotFoundError, ValidationError
from voice_billing.logging.ledger_logger import LedgerLogger
from voice_billing.models.assistant import Assistant
from voice_billing.models.credit import CreditTransactionType
from voice_billing.models.subscription import Subscription
from voice_billing.policy import PlanType
from voice_billing.services.credit_service import CreditService
from voice_billing.services.pricing_service import PricingService


USER = "user-1"


def _service(tmp_path):
    db = InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    return db, CreditService(db=db, ledger=ledger, pricing=PricingService(db=db))


@pytest.mark.asyncio
async def test_add_credits_records_topup_and_ledger(tmp_path):
    db, service = _service(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=5.0))

    credit = await service.add_credits(USER, 20.0, "Credit top-up: $20.00", reference="ORDER-1")

    assert credit.transaction_type == CreditTransactionType.TOPUP.value
    assert credit.amount == 20.0
    assert credit.balance_before == 5.0
    assert credit.balance_after == 25.0
    assert await service.get_balance(USER) == 25.0

    assert db._ledger[-1].message == "Credits added"
    assert db._ledger[-1].details["balance_after"] == 25.0
    lines = (tmp_path / "ledger.log").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["correlation_id"] == "ORDER-1"


@pytest.mark.asyncio
async def test_add_credits_requires_subscription(tmp_path):
    _, service = _service(tmp_path)

    with pytest.raises(NotFoundError):
        await service.add_credits(USER, 10.0, "Top-up", reference="ORDER-1")


@pytest.mark.asyncio
async def test_add_credits_rejects_non_credit_types(tmp_path):
    db, service = _service(tmp_path)
    await db.add_subscription(Subscription.payg(USER))

    with pytest.raises(ValidationError):
        await service.add_credits(
            USER, 10.0, "Usage", reference="x", transaction_type=CreditTransactionType.USAGE
        )
    with pytest.raises(ValidationError):
        await service.add_credits(USER, 0, "Nothing", reference="x")


@pytest.mark.asyncio
async def test_refund_row(tmp_path):
    db, service = _service(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=1.0))

    credit = await service.add_credits(
        USER, 0.35, "Dropped call refund", reference="call-abc",
        transaction_type=CreditTransactionType.REFUND,
    )

    assert credit.transaction_type == CreditTransactionType.REFUND.value
    assert credit.balance_after == 1.35


@pytest.mark.asyncio
async def test_admin_adjustment_creates_payg_subscription(tmp_path):
    db, service = _service(tmp_path)

    credit = await service.adjust_credits(USER, 15.0, reason="Goodwill", admin_id="admin-7")

    subscription = await db.get_active_subscription(USER)
    assert subscription.plan_type == PlanType.PAYG.value
    assert subscription.credit_balance == 15.0
    assert credit.transaction_type == CreditTransactionType.ADJUSTMENT.value
    assert credit.description == "Admin credit: Goodwill"
    assert credit.reference.startswith("admin-admin-7-")
    assert credit.metadata == {"admin_id": "admin-7", "reason": "Goodwill"}


@pytest.mark.asyncio
async def test_admin_removal_cannot_exceed_balance(tmp_path):
    db, service = _service(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=3.0))

    with pytest.raises(InsufficientCreditsError, match=r"Cannot remove \$5.00. User only has \$3.00"):
        await service.adjust_credits(USER, -5.0, reason="Chargeback", admin_id="admin-7")
    assert await service.get_balance(USER) == 3.0

    credit = await service.adjust_credits(USER, -2.5, reason="Chargeback", admin_id="admin-7")
    assert credit.amount == -2.5
    assert credit.balance_after == 0.5
    assert credit.description == "Admin debit: Chargeback"


@pytest.mark.asyncio
async def test_admin_adjustment_rejects_zero(tmp_path):
    _, service = _service(tmp_path)

    with pytest.raises(ValidationError, match="Amount cannot be zero"):
        await service.adjust_credits(USER, 0, reason="Oops", admin_id="admin-7")


@pytest.mark.asyncio
async def test_payg_assistant_purchase_is_charged_once(tmp_path):
    db, service = _service(tmp_path)
    await db.add_subscription(Subscription.payg(USER, credit_balance=25.0))
    assistant = await db.add_assistant(Assistant(user_id=USER, name="Receptionist"))

    first = await service.charge_assistant_creation(USER, assistant.id, assistant.name)
    second = await service.charge_assistant_creation(USER, assistant.id, assistant.name)

    assert first.transaction_type == CreditTransactionType.ASSISTANT_PURCHASE.value
    assert first.amount == -20.0
    assert first.reference == f"assistant-{assistant.id}"
    assert second.id == first.id
    assert await service.get_balance(USER) == 5.0


@pytest.mark.asyncio
async def test_quota_plan_assistant_is_free_until_limit(tmp_path):
    db, service = _service(tmp_path)
    await db.add_subscription(
        Subscription(
            user_id=USER,
            plan_type=PlanType.STARTER,
            plan_name="Starter",
            monthly_minute_limit=500,
            assistant_limit=1,
            credit_balance=10.0,
        )
    )
    first = await db.add_assistant(Assistant(user_id=USER, name="One"))
    assert await service.charge_assistant_creation(USER, first.id, first.name) is None

    second = await db.add_assistant(Assistant(user_id=USER, name="Two"))
    with pytest.raises(InsufficientCreditsError, match="Need \\$20.00 to create assistant"):
        await service.charge_assistant_creation(USER, second.id, second.name)
    assert await service.get_balance(USER) == 10.0


@pytest.mark.asyncio
async def test_credit_history_newest_first(tmp_path):
    db, service = _service(tmp_path)
    await db.add_subscription(Subscription.payg(USER))
    await service.add_credits(USER, 10.0, "First", reference="ORDER-1")
    await service.add_credits(USER, 5.0, "Second", reference="ORDER-2")

    history = await service.get_credit_history(USER, limit=1)

    assert [c.reference for c in history] == ["ORDER-2"]
    assert await service.get_balance("someone-else") == 0.0
