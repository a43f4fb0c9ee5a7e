import asyncio
import logging
import re
from datetime import UTC, datetime, timedelta
from urllib.parse import urlsplit

from job_engine.models import NormalizedJob
from job_engine.sources.base import SourceBatch, register_source
from job_engine.sources.http import MAX_JD_CHARS, fetch_json

logger = logging.getLogger(__name__)

SEARCH_URL = "https://serpapi.com/search.json"

ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")
RELATIVE_AGE = re.compile(r"(\d+)\+?\s*(minute|hour|day|week|month)s?\s+ago")
GOOGLE_HOST = re.compile(r"(^|\.)google\.[a-z.]+$")

_AGE_UNITS = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
}


def normalize_posted_at(value: str | None, now: datetime | None = None) -> str | None:
    """
    Turn Google Jobs' relative ages ("3 days ago", "yesterday") into a
    YYYY-MM-DD date. ISO dates pass through; anything else is unknown.
    """
    if not value:
        return None
    text = value.strip().lower()
    if ISO_DATE.match(text):
        return text[:10]

    now = now or datetime.now(tz=UTC)
    if text in ("today", "just posted", "just now"):
        return now.strftime("%Y-%m-%d")
    if text == "yesterday":
        return (now - timedelta(days=1)).strftime("%Y-%m-%d")

    match = RELATIVE_AGE.search(text)
    if not match:
        return None
    age = int(match.group(1)) * _AGE_UNITS[match.group(2)]
    return (now - age).strftime("%Y-%m-%d")


def _is_google(link: str) -> bool:
    try:
        host = urlsplit(link).hostname or ""
    except ValueError:
        return True
    return bool(GOOGLE_HOST.search(host))


def pick_direct_url(posting: dict) -> str | None:
    """Prefer an employer apply link over Google's own redirect and share pages."""
    for key in ("apply_options", "related_links"):
        options = posting.get(key)
        if not isinstance(options, list):
            continue
        for option in options:
            link = option.get("link") if isinstance(option, dict) else None
            if link and not _is_google(link):
                return link
    return posting.get("share_link")


async def fetch_jobs(query: str, location: str, api_key: str, **kwargs) -> list[NormalizedJob]:
    data = await fetch_json(
        SEARCH_URL,
        params={"engine": "google_jobs", "q": query, "location": location, "api_key": api_key},
        **kwargs,
    )
    if not isinstance(data, dict):
        return []

    jobs: list[NormalizedJob] = []
    for posting in data.get("jobs_results") or []:
        if not isinstance(posting, dict):
            continue
        extensions = posting.get("detected_extensions") or {}
        posted_at = extensions.get("posted_at") if isinstance(extensions, dict) else None
        description = posting.get("description")
        jobs.append(
            NormalizedJob(
                company=posting.get("company_name"),
                title=posting.get("title"),
                location=posting.get("location"),
                post_date=normalize_posted_at(posted_at),
                source="serpapi",
                url=pick_direct_url(posting),
                jd_text=description[:MAX_JD_CHARS] if description else None,
            )
        )
    return jobs


@register_source("serpapi")
async def fetch_all(
    queries: list[str],
    location: str = "Toronto, ON, Canada",
    api_key: str = "",
    **kwargs,
) -> SourceBatch:
    """Run each search query. meta.queries_used counts the paid requests issued."""
    if not api_key:
        logger.warning("SERPAPI_KEY is not set, skipping search queries")
        return SourceBatch(jobs=[], meta={"queries_used": 0})

    results = await asyncio.gather(
        *(fetch_jobs(q, location, api_key, **kwargs) for q in queries)
    )
    jobs = [job for batch in results for job in batch]
    logger.info(f"Fetched {len(jobs)} SerpAPI jobs from {len(queries)} queries")
    return SourceBatch(jobs=jobs, meta={"queries_used": len(queries)})
