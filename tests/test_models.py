from __future__ import annotations

import json
import logging
from datetime import datetime

import pytest
from pydantic import ValidationError

from voice_billing.db.memory import InMemoryDBManager
from voice_billing.logging.ledger_logger import LedgerLogger
from voice_billing.logging.setup import configure_logging
from voice_billing.models.credit import Credit, CreditTransactionType
from voice_billing.models.usage import UsageTracking, month_key
from voice_billing.schema_generator import generate_logical_schema, main


def test_credit_rejects_inconsistent_balance_snapshot():
    with pytest.raises(ValidationError):
        Credit(
            user_id="user-1",
            transaction_type=CreditTransactionType.USAGE,
            amount=-0.35,
            description="Call usage",
            balance_before=10.0,
            balance_after=9.70,
        )


def test_credit_constructors_sign_amounts():
    usage = Credit.usage("user-1", 0.35, "Call usage", "call-1", balance_before=10.0)
    topup = Credit.topup("user-1", -20, "Top-up", "ORDER-1", balance_before=0.0)

    assert usage.amount == -0.35
    assert usage.balance_after == 9.65
    assert topup.amount == 20.0
    assert topup.balance_after == 20.0


def test_usage_rollup_per_assistant_and_day():
    moment = datetime(2024, 5, 14, 9, 30)
    usage = UsageTracking.for_month("user-1", moment)

    usage.add_call_usage("a-1", "Front desk", 3, 0.21, now=moment)
    usage.add_call_usage("a-1", "Front desk v2", 2, 0.14, now=moment.replace(hour=17))
    usage.add_call_usage("a-2", "Sales", 10, 0.70, now=moment.replace(day=15))
    usage.add_overage_cost(0.1)

    assert usage.month == "2024-05"
    assert usage.year == 2024
    assert usage.total_minutes_used == 15
    assert usage.total_calls == 3
    assert usage.total_cost == 1.05
    assert usage.overage_cost == 0.1

    front_desk = usage.assistant_usage[0]
    assert front_desk.calls_made == 2
    assert front_desk.cost == 0.35
    assert front_desk.assistant_name == "Front desk v2"

    assert [d.minutes for d in usage.daily_usage] == [5, 10]
    assert usage.get_top_assistants(limit=1)[0].assistant_id == "a-2"
    assert usage.get_daily_average() == 7.5


def test_month_key_is_zero_padded():
    assert month_key(datetime(2024, 3, 2)) == "2024-03"


def test_logical_schema_lists_collections_and_indexes():
    schema = generate_logical_schema()

    assert {"subscriptions", "credits", "usage_tracking", "phone_providers"} <= set(schema)
    credits = schema["credits"]
    assert "amount" in credits["required"]
    assert credits["properties"]["amount"]["type"] == "number"
    usage_indexes = schema["usage_tracking"]["indexes"]
    assert {"keys": [["user_id", 1], ["month", 1]], "options": {"unique": True}} in usage_indexes


def test_schema_generator_cli_filters_collections(capsys):
    main(["--collection", "credits"])

    printed = json.loads(capsys.readouterr().out)
    assert list(printed) == ["credits"]


@pytest.mark.asyncio
async def test_ledger_logger_writes_db_and_file(tmp_path):
    db = InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "audit" / "ledger.log")

    await ledger.log_transaction("user-1", "Credits added", {"amount": 5.0}, correlation_id="ORDER-1")
    await ledger.log_error("Capture failed", {"order_id": "ORDER-2"})

    assert [e.event_type for e in db._ledger] == ["transaction", "error"]
    lines = (tmp_path / "audit" / "ledger.log").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["details"] == {"amount": 5.0}


@pytest.mark.asyncio
async def test_ledger_file_failure_does_not_fail_caller(tmp_path):
    db = InMemoryDBManager()
    # A directory where the file should be makes every append fail
    target = tmp_path / "ledger.log"
    target.mkdir()
    ledger = LedgerLogger(db=db, file_path=target)

    await ledger.log_transaction("user-1", "Credits added", {"amount": 5.0})

    assert len(db._ledger) == 1


def test_configure_logging_quiets_http_clients():
    configure_logging("debug")

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING
    assert len(logging.getLogger().handlers) == 1
