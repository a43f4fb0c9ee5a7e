import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from job_engine.models import NormalizedJob

logger = logging.getLogger(__name__)

DAY_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class TransformResult:
    jobs: list[NormalizedJob]
    dropped: dict[str, int] = field(default_factory=dict)

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())


Transform = Callable[[list[NormalizedJob]], TransformResult]


def parse_posted_at(value: str | None) -> tuple[datetime, bool] | None:
    """
    Parse a post date. Returns ``(moment, day_granularity)`` or None.
    Bare ``YYYY-MM-DD`` values are day-granular; naive timestamps are UTC.
    """
    if not value:
        return None
    text = value.strip()
    if DAY_ONLY.match(text):
        try:
            return datetime.strptime(text, "%Y-%m-%d").replace(tzinfo=UTC), True
        except ValueError:
            return None
    try:
        moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment, False


def is_fresh_within_hours(value: str | None, hours: int, now: datetime | None = None) -> bool:
    parsed = parse_posted_at(value)
    if parsed is None:
        return False
    moment, day_granular = parsed
    cutoff = (now or datetime.now(tz=UTC)) - timedelta(hours=hours)
    if day_granular:
        return moment.date() >= cutoff.astimezone(UTC).date()
    return moment >= cutoff


def freshness_filter(
    hours: int, allow_unknown_date: bool, now: datetime | None = None
) -> Transform:
    def apply(jobs: list[NormalizedJob]) -> TransformResult:
        kept: list[NormalizedJob] = []
        dropped_old = 0
        dropped_unknown = 0
        for job in jobs:
            if not job.post_date:
                if allow_unknown_date:
                    kept.append(job)
                else:
                    dropped_unknown += 1
            elif is_fresh_within_hours(job.post_date, hours, now):
                kept.append(job)
            else:
                dropped_old += 1
        return TransformResult(
            jobs=kept, dropped={"old": dropped_old, "unknown_date": dropped_unknown}
        )

    return apply


def tag_bigtech(jobs: list[NormalizedJob]) -> TransformResult:
    return TransformResult(jobs=[job.model_copy(update={"is_bigtech": True}) for job in jobs])


def geography_filter(locations: Iterable[str]) -> Transform:
    """Keep jobs whose location contains any target substring. Unknown locations are kept."""
    targets = [loc.strip().lower() for loc in locations if loc.strip()]

    def apply(jobs: list[NormalizedJob]) -> TransformResult:
        if not targets:
            return TransformResult(jobs=list(jobs))
        kept = [
            job
            for job in jobs
            if not job.location or any(t in job.location.lower() for t in targets)
        ]
        return TransformResult(jobs=kept, dropped={"geography": len(jobs) - len(kept)})

    return apply


def chain(*transforms: Transform) -> Transform:
    def apply(jobs: list[NormalizedJob]) -> TransformResult:
        dropped: dict[str, int] = {}
        for transform in transforms:
            result = transform(jobs)
            jobs = result.jobs
            for reason, count in result.dropped.items():
                dropped[reason] = dropped.get(reason, 0) + count
        return TransformResult(jobs=jobs, dropped=dropped)

    return apply


def identity_transform(jobs: list[NormalizedJob]) -> TransformResult:
    return TransformResult(jobs=list(jobs))
