import logging
import math
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel

from job_engine.config import SerpApiBudgetOptions
from job_engine.db import Database
from job_engine.models import LlmOptions

logger = logging.getLogger(__name__)


class SerpApiRunBudget(BaseModel):
    monthly_cap: int
    reserve: int
    used_this_month: int
    remaining_run_slots: int
    per_run_limit: int
    remaining_budget: int


def _utc(now: datetime | None) -> datetime:
    now = now or datetime.now(tz=UTC)
    return now if now.tzinfo else now.replace(tzinfo=UTC)


def start_of_month_utc(now: datetime | None = None) -> datetime:
    now = _utc(now).astimezone(UTC)
    return datetime(now.year, now.month, 1, tzinfo=UTC)


def start_of_next_month_utc(now: datetime | None = None) -> datetime:
    now = _utc(now).astimezone(UTC)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=UTC)
    return datetime(now.year, now.month + 1, 1, tzinfo=UTC)


def start_of_day_utc(now: datetime | None = None) -> datetime:
    now = _utc(now).astimezone(UTC)
    return datetime(now.year, now.month, now.day, tzinfo=UTC)


def calculate_remaining_run_slots(now: datetime | None = None, interval_minutes: int = 1440) -> int:
    """Scheduled runs left before the month rolls over. Never less than 1."""
    now = _utc(now)
    step = timedelta(minutes=max(1, interval_minutes))
    remaining = start_of_next_month_utc(now) - now
    return max(1, math.ceil(remaining / step))


def calculate_per_run_limit(
    monthly_cap: int = 250,
    used_this_month: int = 0,
    reserve: int = 10,
    remaining_run_slots: int = 1,
) -> int:
    """Evenly divide what is left of the monthly quota across the remaining runs."""
    available = max(0, max(0, monthly_cap) - max(0, used_this_month) - max(0, reserve))
    return available // max(1, remaining_run_slots)


def get_serpapi_run_budget(
    db: Database, options: SerpApiBudgetOptions, now: datetime | None = None
) -> SerpApiRunBudget:
    now = _utc(now)
    used = db.serpapi_queries_between(start_of_month_utc(now), start_of_next_month_utc(now))
    slots = calculate_remaining_run_slots(now, options.interval_minutes)
    return SerpApiRunBudget(
        monthly_cap=options.monthly_cap,
        reserve=options.reserve,
        used_this_month=used,
        remaining_run_slots=slots,
        per_run_limit=calculate_per_run_limit(options.monthly_cap, used, options.reserve, slots),
        remaining_budget=max(0, options.monthly_cap - used),
    )


class LlmQuota:
    """
    Daily and per-run caps on synchronous classification calls.

    Both counters are read from the usage ledger and accumulated after each
    call; nothing is reserved up front. Cache hits never reach this check.
    """

    def __init__(self, db: Database, options: LlmOptions):
        self.db = db
        self.options = options

    def check(self, run_id: int | None, now: datetime | None = None) -> str | None:
        """Return a skip reason if a cap is reached, else None."""
        now = _utc(now)
        day_start = start_of_day_utc(now)
        used_today = self.db.llm_calls_between(day_start, day_start + timedelta(days=1))
        if used_today >= self.options.daily_cap:
            logger.info(f"LLM daily cap reached ({used_today}/{self.options.daily_cap})")
            return "daily_cap_reached"

        if run_id is not None:
            used_in_run = self.db.llm_calls_for_run(run_id)
            if used_in_run >= self.options.max_per_run:
                logger.info(f"LLM per-run cap reached for run {run_id} ({used_in_run})")
                return "run_cap_reached"

        return None

    def record(
        self,
        run_id: int | None,
        calls: int = 1,
        tokens_prompt: int = 0,
        tokens_completion: int = 0,
        now: datetime | None = None,
    ) -> None:
        self.db.record_llm_usage(run_id, calls, tokens_prompt, tokens_completion, now=now)
