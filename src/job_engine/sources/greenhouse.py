import asyncio
import html
import logging
import re

from job_engine.models import NormalizedJob
from job_engine.sources.base import register_source
from job_engine.sources.http import fetch_json, strip_html

logger = logging.getLogger(__name__)

API_URL = "https://boards-api.greenhouse.io/v1/boards/{token}/jobs"
BOARD_URL = re.compile(r"greenhouse\.io/(?:v1/boards/)?([A-Za-z0-9-]+)")
BARE_TOKEN = re.compile(r"^[A-Za-z0-9-]+$")


def extract_board_token(target: str) -> str | None:
    """Accept a board URL (boards.greenhouse.io/acme) or a bare token (acme)."""
    target = target.strip()
    match = BOARD_URL.search(target)
    if match:
        return match.group(1)
    return target if BARE_TOKEN.match(target) else None


async def fetch_jobs(target: str, **kwargs) -> list[NormalizedJob]:
    token = extract_board_token(target)
    if not token:
        logger.error(f"Invalid Greenhouse board: {target}")
        return []

    data = await fetch_json(API_URL.format(token=token), params={"content": "true"}, **kwargs)
    if not isinstance(data, dict) or not isinstance(data.get("jobs"), list):
        logger.warning(f"No Greenhouse jobs found for {token}")
        return []

    jobs: list[NormalizedJob] = []
    for posting in data["jobs"]:
        if not isinstance(posting, dict):
            continue
        location = posting.get("location") or {}
        content = posting.get("content")
        jobs.append(
            NormalizedJob(
                company=token,
                title=posting.get("title"),
                location=location.get("name") if isinstance(location, dict) else None,
                post_date=(posting.get("updated_at") or "")[:10] or None,
                source="greenhouse",
                url=posting.get("absolute_url"),
                # content arrives HTML-escaped
                jd_text=strip_html(html.unescape(content)) if content else None,
            )
        )

    logger.info(f"Fetched {len(jobs)} Greenhouse jobs from {token}")
    return jobs


@register_source("greenhouse")
async def fetch_all(targets: list[str], **kwargs) -> list[NormalizedJob]:
    results = await asyncio.gather(*(fetch_jobs(t, **kwargs) for t in targets))
    return [job for jobs in results for job in jobs]
