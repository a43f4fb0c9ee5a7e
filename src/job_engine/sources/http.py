import asyncio
import logging
from typing import Any

import httpx
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF = 2  # seconds
HTTP_TIMEOUT = 20.0  # seconds
MAX_JD_CHARS = 2000
BROWSER_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
}


async def fetch_json(
    url: str,
    params: dict[str, str] | None = None,
    max_retries: int = MAX_RETRIES,
    initial_backoff: float = INITIAL_BACKOFF,
) -> Any | None:
    """
    GET a JSON document, retrying transport and HTTP errors with exponential
    backoff. Returns None once retries are exhausted or the body is not JSON.
    """
    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(
                timeout=HTTP_TIMEOUT,
                headers=BROWSER_HEADERS,
                follow_redirects=True,
            ) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
            return response.json()

        except httpx.HTTPError as e:
            if attempt == max_retries:
                logger.error(f"HTTP error after {max_retries} attempts fetching {url}: {e}")
            else:
                backoff = initial_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"Fetch attempt {attempt}/{max_retries} failed: {e}. Retrying in {backoff}s..."
                )
                await asyncio.sleep(backoff)
        except ValueError as e:
            logger.error(f"Non-JSON response from {url}: {e}")
            break

    return None


def strip_html(html: str | None, limit: int = MAX_JD_CHARS) -> str | None:
    """Flatten an HTML fragment to whitespace-collapsed text."""
    if not html:
        return None
    text = BeautifulSoup(html, "html.parser").get_text(" ")
    text = " ".join(text.split())
    return text[:limit] or None
