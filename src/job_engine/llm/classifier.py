import json
import logging

import httpx

from job_engine.budget import LlmQuota
from job_engine.db import Database
from job_engine.exceptions import LlmApiError
from job_engine.llm.client import LlmClient
from job_engine.llm.fit import (
    build_cache_key,
    build_chat_request_body,
    build_prompt,
    extract_message_content,
    extract_usage,
    normalize_fit_payload,
    parse_json_safe,
)
from job_engine.models import FitResult, LlmOptions, LlmSkip, NormalizedJob, Profile

logger = logging.getLogger(__name__)


class FitClassifier:
    """
    Synchronous LLM fit classification with a write-through cache and
    daily/per-run call caps.

    Never raises for provider trouble: a timeout, a non-success status or
    an unparseable answer comes back as an LlmSkip, and the caller keeps
    the deterministic gate's decision.
    """

    def __init__(
        self,
        db: Database,
        options: LlmOptions,
        client: LlmClient | None = None,
    ):
        self.db = db
        self.options = options
        self.client = client or LlmClient(options)
        self.quota = LlmQuota(db, options)

    async def classify(
        self, job: NormalizedJob, profile: Profile, run_id: int | None = None
    ) -> FitResult | LlmSkip:
        cache_key = build_cache_key(job, profile)
        cached = self.db.get_cached_fit(cache_key)
        if cached is not None:
            logger.debug(f"LLM cache hit for '{job.title}'")
            return cached

        if not self.options.active:
            return LlmSkip(reason="disabled_or_missing_key", cache_key=cache_key)

        cap_reason = self.quota.check(run_id)
        if cap_reason:
            return LlmSkip(reason=cap_reason, cache_key=cache_key)

        body = build_chat_request_body(self.options.model, build_prompt(job, profile))
        try:
            response = await self.client.chat_completion(body)
        except (TimeoutError, httpx.TimeoutException):
            logger.warning(f"LLM request timed out for '{job.title}'")
            return LlmSkip(reason="llm_timeout", cache_key=cache_key)
        except LlmApiError as e:
            return LlmSkip(reason=str(e), cache_key=cache_key)
        except json.JSONDecodeError:
            # Answered calls count against the caps
            self.quota.record(run_id, 1)
            logger.warning(f"LLM returned an undecodable body for '{job.title}'")
            return LlmSkip(reason="llm_invalid_json", cache_key=cache_key)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"LLM request failed for '{job.title}': {e}")
            return LlmSkip(reason="llm_request_failed", cache_key=cache_key)

        tokens_prompt, tokens_completion = extract_usage(response)
        self.quota.record(run_id, 1, tokens_prompt, tokens_completion)

        payload = parse_json_safe(extract_message_content(response))
        if not isinstance(payload, dict):
            logger.warning(f"LLM returned unparseable content for '{job.title}'")
            return LlmSkip(reason="llm_invalid_json", cache_key=cache_key)

        fit = normalize_fit_payload(payload, cache_key=cache_key)
        self.db.set_cached_fit(cache_key, fit)
        logger.info(
            f"LLM classified '{job.title}' as {fit.fit_label} ({fit.fit_score}, "
            f"confidence {fit.confidence:.2f})"
        )
        return fit
