import asyncio
import logging
from datetime import UTC, datetime
from urllib.parse import urlsplit

from job_engine.models import NormalizedJob
from job_engine.sources.base import register_source
from job_engine.sources.http import MAX_JD_CHARS, fetch_json, strip_html

logger = logging.getLogger(__name__)

API_URL = "https://api.lever.co/v0/postings/{company}"


def extract_company_slug(target: str) -> str | None:
    """jobs.lever.co/acme -> acme. Bare slugs pass through."""
    target = target.strip()
    if "://" not in target:
        return target or None
    try:
        parts = urlsplit(target)
    except ValueError:
        return None
    if not (parts.hostname or "").endswith("lever.co"):
        return None
    segments = [s for s in parts.path.split("/") if s]
    return segments[0] if segments else None


def _created_date(created_at: object) -> str | None:
    if not isinstance(created_at, (int, float)):
        return None
    return datetime.fromtimestamp(created_at / 1000, tz=UTC).strftime("%Y-%m-%d")


async def fetch_jobs(target: str, **kwargs) -> list[NormalizedJob]:
    company = extract_company_slug(target)
    if not company:
        logger.error(f"Invalid Lever board: {target}")
        return []

    data = await fetch_json(API_URL.format(company=company), params={"mode": "json"}, **kwargs)
    if not isinstance(data, list):
        return []

    jobs: list[NormalizedJob] = []
    for posting in data:
        if not isinstance(posting, dict):
            continue
        categories = posting.get("categories") or {}
        plain = posting.get("descriptionPlain")
        jobs.append(
            NormalizedJob(
                company=company,
                title=posting.get("text"),
                location=categories.get("location") if isinstance(categories, dict) else None,
                post_date=_created_date(posting.get("createdAt")),
                source="lever",
                url=posting.get("hostedUrl") or posting.get("applyUrl"),
                jd_text=plain[:MAX_JD_CHARS] if plain else strip_html(posting.get("description")),
            )
        )

    logger.info(f"Fetched {len(jobs)} Lever jobs from {company}")
    return jobs


@register_source("lever")
async def fetch_all(targets: list[str], **kwargs) -> list[NormalizedJob]:
    results = await asyncio.gather(*(fetch_jobs(t, **kwargs) for t in targets))
    return [job for jobs in results for job in jobs]
