from datetime import UTC, datetime

import pytest

from job_engine.budget import (
    LlmQuota,
    calculate_per_run_limit,
    calculate_remaining_run_slots,
    get_serpapi_run_budget,
    start_of_month_utc,
    start_of_next_month_utc,
)
from job_engine.config import SerpApiBudgetOptions
from job_engine.models import LlmOptions

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


# --- SerpAPI divider ---


@pytest.mark.parametrize(
    "cap,used,reserve,slots,expected",
    [
        (250, 245, 10, 2, 0),
        (250, 50, 10, 19, 10),
        (250, 0, 10, 1, 240),
        (250, 300, 10, 5, 0),
        (100, 0, 0, 0, 100),
    ],
)
def test_per_run_limit(cap, used, reserve, slots, expected):
    assert calculate_per_run_limit(cap, used, reserve, slots) == expected


def test_remaining_run_slots_counts_until_month_end():
    # 12.5 days left in October at daily cadence
    assert calculate_remaining_run_slots(NOW, 1440) == 13


def test_remaining_run_slots_is_at_least_one():
    last_second = datetime(2026, 10, 31, 23, 59, 59, tzinfo=UTC)
    assert calculate_remaining_run_slots(last_second, 1440) == 1


def test_month_boundaries_roll_over_december():
    december = datetime(2026, 12, 15, tzinfo=UTC)
    assert start_of_month_utc(december) == datetime(2026, 12, 1, tzinfo=UTC)
    assert start_of_next_month_utc(december) == datetime(2027, 1, 1, tzinfo=UTC)


def test_run_budget_reads_this_months_ledger(db):
    db.record_serpapi_usage(1, 40, now=datetime(2026, 9, 28, tzinfo=UTC))
    db.record_serpapi_usage(2, 50, now=datetime(2026, 10, 3, tzinfo=UTC))

    budget = get_serpapi_run_budget(db, SerpApiBudgetOptions(), now=NOW)

    assert budget.used_this_month == 50
    assert budget.remaining_run_slots == 13
    assert budget.per_run_limit == (250 - 50 - 10) // 13
    assert budget.remaining_budget == 200


# --- LLM quota ---


def test_quota_allows_until_daily_cap(db):
    quota = LlmQuota(db, LlmOptions(daily_cap=2, max_per_run=10))
    assert quota.check(run_id=1, now=NOW) is None
    quota.record(1, now=NOW)
    quota.record(2, now=NOW)
    assert quota.check(run_id=3, now=NOW) == "daily_cap_reached"


def test_quota_ignores_yesterdays_calls(db):
    quota = LlmQuota(db, LlmOptions(daily_cap=1, max_per_run=10))
    quota.record(1, now=datetime(2026, 10, 18, 23, 0, tzinfo=UTC))
    assert quota.check(run_id=1, now=NOW) is None


def test_quota_per_run_cap(db):
    quota = LlmQuota(db, LlmOptions(daily_cap=100, max_per_run=2))
    quota.record(7, calls=2, now=NOW)
    assert quota.check(run_id=7, now=NOW) == "run_cap_reached"
    assert quota.check(run_id=8, now=NOW) is None
    assert quota.check(run_id=None, now=NOW) is None
