import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from job_engine.db import Database
from job_engine.exceptions import LlmApiError
from job_engine.llm.client import LlmClient
from job_engine.llm.fit import (
    CHAT_COMPLETIONS_PATH,
    build_cache_key,
    build_chat_request_body,
    build_prompt,
    extract_message_content,
    extract_usage,
    is_admitted,
    normalize_fit_payload,
    parse_json_safe,
    stable_hash,
)
from job_engine.models import (
    FAILED_BATCH_STATUSES,
    BatchFlushResult,
    BatchItemState,
    BatchStatus,
    FitResult,
    JobEventType,
    LlmOptions,
    LlmSkip,
    NormalizedJob,
    PollResult,
    Profile,
)

logger = logging.getLogger(__name__)

MAX_BATCHES_PER_POLL = 30


@dataclass
class PendingRequest:
    custom_id: str
    cache_key: str
    job_id: int
    request_body: dict[str, Any]


@dataclass
class PendingBatch:
    model: str
    items: list[PendingRequest] = field(default_factory=list)


class BatchClassifier:
    """
    Provider-side bulk classification.

    Requests are queued per run into an in-memory bucket, flushed as one
    JSONL upload plus batch creation at the end of the run, and reconciled
    later by an independent poller that applies each output line to its
    job exactly as the synchronous path would.
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
        self._pending: dict[int, PendingBatch] = {}

    @property
    def model(self) -> str:
        return self.options.batch_model or self.options.model

    def pending_count(self, run_id: int) -> int:
        bucket = self._pending.get(run_id)
        return len(bucket.items) if bucket else 0

    def queue(
        self, job: NormalizedJob, job_id: int, profile: Profile, run_id: int
    ) -> FitResult | LlmSkip:
        """
        Buffer one classification request for this run's batch.

        A cached verdict is returned directly. A job already queued in this
        run reuses its existing item instead of creating a second one.
        """
        cache_key = build_cache_key(job, profile)
        cached = self.db.get_cached_fit(cache_key)
        if cached is not None:
            return cached

        if not self.options.active:
            return LlmSkip(reason="disabled_or_missing_key", cache_key=cache_key)

        existing = self.db.find_queued_batch_item(run_id, job_id)
        if existing is not None:
            return LlmSkip(
                reason="batch_queued",
                cache_key=cache_key,
                custom_id=existing["custom_id"],
                batch_queued=True,
            )

        suffix = stable_hash({"cache_key": cache_key, "t": time.time_ns()})[:10]
        custom_id = f"run_{run_id}_job_{job_id}_{suffix}"
        self.db.insert_batch_item(run_id, job_id, cache_key, custom_id)

        bucket = self._pending.setdefault(run_id, PendingBatch(model=self.model))
        bucket.items.append(
            PendingRequest(
                custom_id=custom_id,
                cache_key=cache_key,
                job_id=job_id,
                request_body=build_chat_request_body(self.model, build_prompt(job, profile)),
            )
        )
        return LlmSkip(
            reason="batch_queued", cache_key=cache_key, custom_id=custom_id, batch_queued=True
        )

    @staticmethod
    def build_jsonl(items: list[PendingRequest]) -> str:
        lines = [
            json.dumps(
                {
                    "custom_id": item.custom_id,
                    "method": "POST",
                    "url": CHAT_COMPLETIONS_PATH,
                    "body": item.request_body,
                }
            )
            for item in items
        ]
        return "\n".join(lines) + "\n"

    def _fail_items(self, items: list[PendingRequest], error: str) -> None:
        for item in items:
            self.db.fail_batch_item(item.custom_id, error)

    def discard(self, run_id: int, error: str) -> int:
        """Drop a run's unsubmitted bucket, failing its items so they can be requeued."""
        bucket = self._pending.pop(run_id, None)
        if bucket is None:
            return 0
        self._fail_items(bucket.items, error)
        return len(bucket.items)

    async def flush(self, run_id: int) -> BatchFlushResult | None:
        """Submit this run's buffered requests. Returns None if nothing was queued."""
        bucket = self._pending.pop(run_id, None)
        if bucket is None or not bucket.items:
            return None

        if not self.options.api_key:
            self._fail_items(bucket.items, "missing_api_key")
            return BatchFlushResult(error="missing_api_key", submitted=0)

        try:
            input_file_id = await self.client.upload_batch_file(
                self.build_jsonl(bucket.items), f"run-{run_id}-llm-batch.jsonl"
            )
            batch = await self.client.create_batch(
                input_file_id, {"run_id": str(run_id), "source": "job-engine"}
            )
            batch_id = batch["id"]
        except (LlmApiError, httpx.HTTPError, KeyError, ValueError) as e:
            error = str(e) or type(e).__name__
            logger.error(f"Batch submission for run {run_id} failed: {error}")
            self._fail_items(bucket.items, error)
            return BatchFlushResult(error=error, submitted=0)

        self.db.insert_batch(
            run_id,
            batch_id,
            batch.get("status") or BatchStatus.VALIDATING.value,
            bucket.model,
            input_file_id,
        )
        for item in bucket.items:
            self.db.attach_item_to_batch(batch_id, run_id, item.custom_id, item.job_id)

        logger.info(f"Submitted batch {batch_id} with {len(bucket.items)} request(s) for run {run_id}")
        return BatchFlushResult(batch_id=batch_id, submitted=len(bucket.items))

    def apply_result(self, item: dict[str, Any], payload: dict[str, Any], run_id: int | None) -> FitResult:
        """Apply one parsed classification to its job, the same way the sync path does."""
        fit = normalize_fit_payload(payload, cache_key=item["cache_key"])
        if item["cache_key"]:
            self.db.set_cached_fit(item["cache_key"], fit)
        admitted = is_admitted(fit, self.options.admit_threshold)

        self.db.apply_llm_decision(item["job_id"], fit, admitted, run_id)
        self.db.complete_batch_item(item["id"])
        self.db.add_job_event(
            item["job_id"],
            JobEventType.LLM_BATCH_COMPLETED,
            f"Applied batch LLM fit (label={fit.fit_label}, score={fit.fit_score})",
            {"fit_label": fit.fit_label.value, "fit_score": fit.fit_score, "admitted": admitted},
            run_id=run_id,
        )
        return fit

    def reconcile_output(self, batch_row: dict[str, Any], output_text: str) -> int:
        """
        Match each output line to its batch item by custom_id and apply it.

        A line with no usable payload fails only its own item. Items that
        got no line at all are failed once the whole file is processed.
        Returns the number of items applied.
        """
        batch_id = batch_row["batch_id"]
        run_id = batch_row["run_id"]
        items = {item["custom_id"]: item for item in self.db.list_batch_items(batch_id)}
        applied = 0
        tokens_prompt = 0
        tokens_completion = 0

        for line in (raw.strip() for raw in output_text.splitlines()):
            if not line:
                continue
            parsed = parse_json_safe(line)
            if not isinstance(parsed, dict):
                logger.warning(f"Skipping unparseable output line in batch {batch_id}")
                continue
            item = items.get(str(parsed.get("custom_id") or ""))
            if item is None:
                logger.warning(
                    f"Batch {batch_id} returned unknown custom_id {parsed.get('custom_id')!r}"
                )
                continue
            if item["state"] != BatchItemState.QUEUED:
                continue

            response = parsed.get("response")
            body = response.get("body") if isinstance(response, dict) else None
            payload = parse_json_safe(extract_message_content(body))
            if not isinstance(payload, dict):
                self.db.fail_batch_item(item["custom_id"], "invalid_batch_response")
                self.db.mark_job_llm_failed(item["job_id"], "invalid_batch_response")
                item["state"] = BatchItemState.FAILED.value
                continue

            self.apply_result(item, payload, run_id)
            item["state"] = BatchItemState.COMPLETED.value
            applied += 1
            prompt, completion = extract_usage(body)
            tokens_prompt += prompt
            tokens_completion += completion

        for item in items.values():
            if item["state"] == BatchItemState.QUEUED:
                self.db.fail_batch_item(item["custom_id"], "missing_batch_response")
                self.db.mark_job_llm_failed(item["job_id"], "missing_batch_response")

        self.db.record_llm_usage(run_id, applied, tokens_prompt, tokens_completion)
        return applied

    async def poll_and_reconcile(self) -> PollResult:
        """Check every active batch once. A provider error on one batch leaves the others unaffected."""
        if not self.options.api_key:
            return PollResult()

        active = self.db.list_active_batches(MAX_BATCHES_PER_POLL)
        completed = 0
        failed = 0

        for row in active:
            batch_id = row["batch_id"]
            try:
                batch = await self.client.retrieve_batch(batch_id)
                status = batch.get("status") or row["status"]
                # A completed batch stays active until its results are stored
                stored_status = row["status"] if status == BatchStatus.COMPLETED else status
                self.db.update_batch_status(
                    batch_id, stored_status, batch.get("output_file_id"), batch.get("error_file_id")
                )

                if status == BatchStatus.COMPLETED:
                    output_text = ""
                    if batch.get("output_file_id"):
                        output_text = await self.client.download_file(batch["output_file_id"])
                    applied = self.reconcile_output(row, output_text)
                    self.db.complete_batch(batch_id)
                    logger.info(f"Batch {batch_id} completed, applied {applied} result(s)")
                    completed += 1
                elif status in FAILED_BATCH_STATUSES:
                    errors = batch.get("errors")
                    self.db.fail_batch(batch_id, status, json.dumps(errors) if errors else None)
                    logger.warning(f"Batch {batch_id} ended with status '{status}'")
                    failed += 1
            except (LlmApiError, httpx.HTTPError, ValueError, KeyError) as e:
                logger.warning(f"Polling batch {batch_id} failed: {e}")
            except sqlite3.Error:
                self.db.connection.rollback()
                logger.exception(f"Storing results of batch {batch_id} failed")

        return PollResult(checked=len(active), completed=completed, failed=failed)
