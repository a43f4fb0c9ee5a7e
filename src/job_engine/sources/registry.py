import logging
from dataclasses import dataclass, field
from datetime import datetime

from job_engine.budget import SerpApiRunBudget, get_serpapi_run_budget
from job_engine.config import SourceSettings
from job_engine.db import Database
from job_engine.models import RunFamily

# Adapter modules register themselves on import.
from job_engine.sources import greenhouse, lever, serpapi  # noqa: F401
from job_engine.sources.base import SourceTask
from job_engine.transforms import (
    Transform,
    chain,
    freshness_filter,
    geography_filter,
    tag_bigtech,
)

logger = logging.getLogger(__name__)


@dataclass
class RunPlan:
    tasks: list[SourceTask] = field(default_factory=list)
    transform: Transform = field(default_factory=lambda: chain())
    serpapi_budget: SerpApiRunBudget | None = None


def build_run_plan(
    family: RunFamily,
    settings: SourceSettings,
    db: Database,
    now: datetime | None = None,
) -> RunPlan:
    """Source tasks and the post-fetch transform for one run family."""
    fresh = freshness_filter(settings.freshness_hours, settings.allow_unknown_date, now)

    if family == RunFamily.CORE:
        tasks = []
        if settings.greenhouse_boards:
            tasks.append(SourceTask("greenhouse", "greenhouse", settings.greenhouse_boards))
        if settings.lever_boards:
            tasks.append(SourceTask("lever", "lever", settings.lever_boards))
        return RunPlan(tasks=tasks, transform=fresh)

    if family == RunFamily.BIGTECH:
        tasks = []
        if settings.bigtech_greenhouse_boards:
            tasks.append(
                SourceTask("bigtech-greenhouse", "greenhouse", settings.bigtech_greenhouse_boards)
            )
        if settings.bigtech_lever_boards:
            tasks.append(SourceTask("bigtech-lever", "lever", settings.bigtech_lever_boards))
        return RunPlan(
            tasks=tasks,
            transform=chain(fresh, tag_bigtech, geography_filter(settings.bigtech_locations)),
        )

    if family == RunFamily.EXTERNAL:
        budget = get_serpapi_run_budget(db, settings.serpapi_budget, now)
        queries = settings.serpapi_queries[: budget.per_run_limit]
        if len(queries) < len(settings.serpapi_queries):
            logger.info(
                f"SerpAPI budget allows {budget.per_run_limit} queries this run, "
                f"deferring {len(settings.serpapi_queries) - len(queries)}"
            )
        tasks = []
        if queries and settings.serpapi_key:
            tasks.append(
                SourceTask(
                    "serpapi",
                    "serpapi",
                    queries,
                    {"location": settings.serpapi_location, "api_key": settings.serpapi_key},
                )
            )
        return RunPlan(tasks=tasks, transform=fresh, serpapi_budget=budget)

    return RunPlan()
