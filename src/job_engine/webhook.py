import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF = 2  # seconds
HTTP_TIMEOUT = 10.0  # seconds


async def send_webhook(
    url: str,
    payload: dict[str, Any],
    token: str | None = None,
    max_retries: int = MAX_RETRIES,
    initial_backoff: float = INITIAL_BACKOFF,
) -> None:
    """
    POST a JSON payload to the personal-dashboard webhook with retry logic.

    Retries on transport errors and non-success statuses using exponential
    backoff, and re-raises the last error once retries are exhausted.
    """
    headers = {"Authorization": f"Bearer {token}"} if token else {}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, headers=headers) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
            logger.info("Webhook delivered successfully.")
            return
        except httpx.HTTPError as e:
            if attempt == max_retries:
                logger.error(f"Failed to deliver webhook after {max_retries} attempts: {e}")
                raise
            backoff = initial_backoff * (2 ** (attempt - 1))
            logger.warning(
                f"Webhook attempt {attempt}/{max_retries} failed: {e}. Retrying in {backoff}s..."
            )
            await asyncio.sleep(backoff)
