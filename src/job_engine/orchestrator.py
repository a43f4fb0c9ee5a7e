import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable
from typing import Any

import httpx

from job_engine.config import SourceSettings
from job_engine.db import Database, utc_timestamp
from job_engine.exceptions import JobNotFoundError, RunAlreadyActiveError
from job_engine.formatter import RunFormatter
from job_engine.identity import DedupEngine
from job_engine.llm.batch import BatchClassifier
from job_engine.llm.classifier import FitClassifier
from job_engine.llm.fit import is_admitted
from job_engine.models import (
    TERMINAL_STATUSES,
    WORKFLOW_STATUSES,
    CleanupCounters,
    FitResult,
    GateOptions,
    GateResult,
    JobEventType,
    JobRecord,
    JobStatus,
    LlmMode,
    LlmOptions,
    LlmReviewState,
    LlmSkip,
    NormalizedJob,
    PollResult,
    Profile,
    ProgressSnapshot,
    QualityBucket,
    RunFamily,
    RunStatus,
    RunSummary,
    SourceReport,
)
from job_engine.quality_gate import QualityGate
from job_engine.sources.base import SourceTask
from job_engine.sources.registry import RunPlan, build_run_plan
from job_engine.webhook import send_webhook

logger = logging.getLogger(__name__)

REQUEUE = "requeue"
SYNC_ROUTE = "sync"
BATCH_ROUTE = "batch"
PROGRESS_FLUSH_EVERY = 25

PlanBuilder = Callable[[RunFamily, SourceSettings, Database], RunPlan]


class Orchestrator:
    """
    Owns the per-family run flags and the per-run batch buffer, and drives one
    ingestion run end to end: fan out to sources, transform, then resolve,
    gate, classify and persist each job in order.
    """

    def __init__(
        self,
        db: Database,
        profile: Profile,
        gate_options: GateOptions | None = None,
        llm_options: LlmOptions | None = None,
        source_settings: SourceSettings | None = None,
        default_llm_mode: LlmMode = LlmMode.AUTO,
        classifier: FitClassifier | None = None,
        batch: BatchClassifier | None = None,
        plan_builder: PlanBuilder = build_run_plan,
        webhook_url: str = "",
        webhook_token: str = "",
    ):
        self.db = db
        self.profile = profile
        self.gate = QualityGate(profile, gate_options)
        self.dedup = DedupEngine(db)
        self.llm_options = llm_options or LlmOptions()
        self.source_settings = source_settings or SourceSettings()
        self.default_llm_mode = default_llm_mode
        self.classifier = classifier or FitClassifier(db, self.llm_options)
        self.batch = batch or BatchClassifier(db, self.llm_options)
        self.plan_builder = plan_builder
        self.webhook_url = webhook_url
        self.webhook_token = webhook_token
        self._running: set[str] = set()
        self._progress: dict[int, ProgressSnapshot] = {}
        self._background: set[asyncio.Task] = set()

    def is_running(self, family: str) -> bool:
        return family in self._running

    def _acquire(self, family: str) -> None:
        if family in self._running:
            raise RunAlreadyActiveError(family)
        self._running.add(family)

    async def trigger_run(
        self,
        family: RunFamily | str,
        llm_mode: LlmMode | str | None = None,
        trigger_type: str = "manual",
    ) -> RunSummary:
        """
        Execute one run of a family. Raises RunAlreadyActiveError if a run of
        the same family is in progress; other families may run concurrently.
        """
        family = RunFamily(family)
        self._acquire(family)
        try:
            if family == RunFamily.CLEANUP:
                return self._run_cleanup(trigger_type)
            plan = self.plan_builder(family, self.source_settings, self.db)
            mode = LlmMode(llm_mode) if llm_mode else self.default_llm_mode
            return await self._run_ingestion(family, plan, mode, trigger_type)
        finally:
            self._running.discard(family)

    # --- ingestion ---

    async def _run_ingestion(
        self, family: RunFamily, plan: RunPlan, llm_mode: LlmMode, trigger_type: str
    ) -> RunSummary:
        run_id = self.db.create_run(trigger_type, family, llm_mode)
        summary = RunSummary(
            run_id=run_id,
            family=family,
            trigger_type=trigger_type,
            llm_mode=llm_mode,
            started_at=utc_timestamp(),
        )
        progress = ProgressSnapshot(
            run_id=run_id, family=family, status=RunStatus.RUNNING, started_at=summary.started_at
        )
        self._progress[run_id] = progress
        logger.info(f"Run {run_id} [{family}] started ({len(plan.tasks)} source task(s))")

        error_text = None
        try:
            jobs = await self._fetch_sources(plan.tasks, run_id, summary)
            transformed = plan.transform(jobs)
            summary.dropped_by_transform = transformed.dropped_total
            progress.total = len(transformed.jobs)

            await self._process_jobs(transformed.jobs, run_id, llm_mode, summary, progress)

            summary.batch = await self.batch.flush(run_id)
            if summary.batch and summary.batch.error:
                summary.errors.append(f"batch: {summary.batch.error}")
            status = self._final_status(summary)
        except Exception as e:
            logger.exception(f"Run {run_id} [{family}] failed")
            self.batch.discard(run_id, f"run_failed: {e}")
            summary.errors.append(str(e))
            error_text = str(e)
            status = RunStatus.FAILED

        return self._finish(summary, progress, status, error_text)

    def _finish(
        self,
        summary: RunSummary,
        progress: ProgressSnapshot,
        status: RunStatus,
        error_text: str | None = None,
    ) -> RunSummary:
        summary.status = status
        summary.finished_at = utc_timestamp()
        if error_text is None and summary.errors:
            error_text = "; ".join(summary.errors)
        self.db.finalize_run(summary.run_id, status, summary.model_dump(mode="json"), error_text)

        progress.status = status
        progress.totals = summary.totals
        progress.quality = summary.quality
        progress.finished_at = summary.finished_at
        # Finished runs are served from the ingestion_runs row
        self._progress.pop(summary.run_id, None)
        logger.info(RunFormatter.format_summary(summary))
        return summary

    @staticmethod
    def _final_status(summary: RunSummary) -> RunStatus:
        if not summary.errors:
            return RunStatus.SUCCESS
        if summary.totals.inserted + summary.totals.deduped > 0:
            return RunStatus.PARTIAL
        return RunStatus.FAILED

    async def _fetch_sources(
        self, tasks: list[SourceTask], run_id: int, summary: RunSummary
    ) -> list[NormalizedJob]:
        """Run every task concurrently; results are kept in task order."""
        results = await asyncio.gather(*(task.run() for task in tasks), return_exceptions=True)

        jobs: list[NormalizedJob] = []
        for task, result in zip(tasks, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(f"Source '{task.name}' failed: {result}")
                summary.errors.append(f"{task.name}: {result}")
                summary.sources.append(SourceReport(name=task.name, error=str(result)))
                continue

            summary.sources.append(
                SourceReport(name=task.name, fetched=len(result.jobs), meta=result.meta or None)
            )
            jobs.extend(result.jobs)

            queries_used = int(result.meta.get("queries_used") or 0)
            if queries_used:
                self.db.record_serpapi_usage(run_id, queries_used, notes=task.name)

        summary.totals.fetched = len(jobs)
        return jobs

    def _plan_llm_routes(self, gates: list[GateResult | None], llm_mode: LlmMode) -> dict[int, str]:
        """
        Decide once per run which escalated jobs go synchronous and which go
        to the batch. In auto mode, small volumes stay synchronous; larger
        ones send the first few synchronously and batch the rest.
        """
        escalated = [i for i, gate in enumerate(gates) if gate is not None and gate.needs_llm]
        if llm_mode == LlmMode.REALTIME:
            return {i: SYNC_ROUTE for i in escalated}
        if llm_mode == LlmMode.BATCH:
            return {i: BATCH_ROUTE for i in escalated}

        if len(escalated) < self.llm_options.batch_threshold:
            return {i: SYNC_ROUTE for i in escalated}
        fallback = self.llm_options.batch_realtime_fallback_count
        return {
            i: SYNC_ROUTE if position < fallback else BATCH_ROUTE
            for position, i in enumerate(escalated)
        }

    async def _process_jobs(
        self,
        jobs: list[NormalizedJob],
        run_id: int,
        llm_mode: LlmMode,
        summary: RunSummary,
        progress: ProgressSnapshot,
    ) -> None:
        gates = [self.gate.evaluate(job) if job.title else None for job in jobs]
        routes = self._plan_llm_routes(gates, llm_mode)

        for index, (job, gate) in enumerate(zip(jobs, gates, strict=True)):
            if gate is None:
                summary.totals.skipped += 1
            else:
                try:
                    await self._process_job(job, gate, routes.get(index), run_id, summary)
                except (sqlite3.Error, ValueError) as e:
                    logger.error(f"Failed to process job '{job.title}' ({job.source}): {e}")
                    summary.totals.failed += 1
                    summary.errors.append(f"job '{job.title}': {e}")

            progress.processed = index + 1
            progress.totals = summary.totals
            progress.quality = summary.quality
            if progress.processed % PROGRESS_FLUSH_EVERY == 0:
                self.db.update_run_summary(run_id, summary.model_dump(mode="json"))

    async def _process_job(
        self,
        job: NormalizedJob,
        gate: GateResult,
        route: str | None,
        run_id: int,
        summary: RunSummary,
    ) -> None:
        candidate = JobStatus.INBOX if gate.admitted_to_inbox else JobStatus.FILTERED
        resolved = self.dedup.resolve(job, run_id, candidate)
        if resolved.deduped:
            summary.totals.deduped += 1
            logger.debug(f"Deduped '{job.title}' via {resolved.fingerprint.reason}")
        else:
            summary.totals.inserted += 1

        outcome: FitResult | LlmSkip | None = None
        if route == SYNC_ROUTE:
            outcome = await self.classifier.classify(job, self.profile, run_id)
        elif route == BATCH_ROUTE:
            outcome = self.batch.queue(job, resolved.job_id, self.profile, run_id)

        self._apply_outcome(resolved.job_id, gate, outcome, run_id, summary, route)

        if resolved.previous_status is not None:
            record = self.db.get_job(resolved.job_id)
            if record is not None and record.status != resolved.previous_status:
                self.db.add_job_event(
                    resolved.job_id,
                    JobEventType.STATUS_CHANGED,
                    f"Status {resolved.previous_status} -> {record.status}",
                    {"from": resolved.previous_status.value, "to": record.status.value},
                    run_id=run_id,
                )

    def _apply_outcome(
        self,
        job_id: int,
        gate: GateResult,
        outcome: FitResult | LlmSkip | None,
        run_id: int,
        summary: RunSummary,
        route: str | None = None,
    ) -> None:
        quality = summary.quality

        if isinstance(outcome, FitResult):
            admitted = is_admitted(outcome, self.llm_options.admit_threshold)
            self.db.apply_llm_decision(job_id, outcome, admitted, run_id)
            if outcome.cached:
                quality.llm_cached += 1
            elif route == SYNC_ROUTE:
                quality.llm_calls += 1
            if admitted:
                quality.llm_admitted += 1
                quality.high += 1
            else:
                quality.filtered += 1
            return

        if isinstance(outcome, LlmSkip) and outcome.batch_queued:
            status = (
                JobStatus.INBOX if self.llm_options.batch_optimistic_admit else JobStatus.FILTERED
            )
            self.db.mark_job_pending_llm(job_id, gate, outcome.custom_id or "", status, run_id)
            quality.pending_llm += 1
            quality.batch_queued += 1
            return

        if isinstance(outcome, LlmSkip):
            logger.debug(f"LLM skipped for job {job_id}: {outcome.reason}")
            quality.llm_skipped += 1

        status = JobStatus.INBOX if gate.admitted_to_inbox else JobStatus.FILTERED
        self.db.apply_gate_decision(job_id, gate, status, run_id)
        if gate.quality_bucket == QualityBucket.HIGH:
            quality.high += 1
        elif gate.quality_bucket == QualityBucket.BORDERLINE:
            quality.borderline += 1
        else:
            quality.filtered += 1

    # --- inbox cleanup ---

    def _should_keep(self, record: JobRecord, gate: GateResult) -> bool:
        if gate.admitted_to_inbox or gate.needs_llm:
            return True
        return record.fit_source == "llm" and record.quality_bucket == QualityBucket.HIGH

    def _run_cleanup(self, trigger_type: str) -> RunSummary:
        """Re-evaluate inbox jobs against the current profile and filter the ones that no longer fit."""
        run_id = self.db.create_run(trigger_type, RunFamily.CLEANUP)
        summary = RunSummary(
            run_id=run_id,
            family=RunFamily.CLEANUP,
            trigger_type=trigger_type,
            started_at=utc_timestamp(),
            cleanup=CleanupCounters(),
        )
        progress = ProgressSnapshot(
            run_id=run_id,
            family=RunFamily.CLEANUP,
            status=RunStatus.RUNNING,
            started_at=summary.started_at,
        )
        self._progress[run_id] = progress
        counters = summary.cleanup

        try:
            inbox = self.db.list_jobs(JobStatus.INBOX)
            progress.total = len(inbox)
            for record in inbox:
                counters.examined += 1
                progress.processed += 1
                if record.llm_review_state == LlmReviewState.PENDING:
                    counters.pending_skipped += 1
                    continue

                gate = self.gate.evaluate(record.to_normalized())
                if self._should_keep(record, gate):
                    counters.kept += 1
                    self.db.add_job_event(
                        record.id,
                        JobEventType.CLEANUP_KEPT,
                        f"Kept in inbox (score {gate.fit_score})",
                        {"fit_score": gate.fit_score, "bucket": gate.quality_bucket.value},
                        run_id=run_id,
                    )
                elif self.db.filter_inbox_job(record.id, gate.reason_codes):
                    counters.filtered += 1
                    self.db.add_job_event(
                        record.id,
                        JobEventType.CLEANUP_FILTERED,
                        f"Filtered by cleanup (score {gate.fit_score})",
                        {"fit_score": gate.fit_score, "reason_codes": gate.reason_codes},
                        run_id=run_id,
                    )
            status = RunStatus.SUCCESS
            error_text = None
        except Exception as e:
            logger.exception(f"Cleanup run {run_id} failed")
            summary.errors.append(str(e))
            status = RunStatus.FAILED
            error_text = str(e)

        return self._finish(summary, progress, status, error_text)

    # --- requeue ---

    async def requeue_failed_batch_items(self) -> dict[str, int]:
        """
        Give failed batch items another chance in a fresh run. Jobs that no
        longer need the LLM get the gate's decision instead.
        """
        items = self.db.list_requeueable_items()
        if not items:
            return {"queued": 0}

        self._acquire(REQUEUE)
        try:
            run_id = self.db.create_run(REQUEUE, REQUEUE, LlmMode.BATCH)
            summary = RunSummary(
                run_id=run_id,
                family=REQUEUE,
                trigger_type=REQUEUE,
                llm_mode=LlmMode.BATCH,
                started_at=utc_timestamp(),
            )
            progress = ProgressSnapshot(
                run_id=run_id,
                family=REQUEUE,
                status=RunStatus.RUNNING,
                total=len(items),
                started_at=summary.started_at,
            )
            self._progress[run_id] = progress

            error_text = None
            try:
                await self._requeue_items(items, run_id, summary, progress)
                status = RunStatus.SUCCESS
                if summary.batch and summary.batch.error:
                    summary.errors.append(f"batch: {summary.batch.error}")
                    status = RunStatus.FAILED
            except Exception as e:
                logger.exception(f"Requeue run {run_id} failed")
                self.batch.discard(run_id, f"run_failed: {e}")
                summary.errors.append(str(e))
                error_text = str(e)
                status = RunStatus.FAILED

            self._finish(summary, progress, status, error_text)
            logger.info(f"Requeued {summary.quality.batch_queued} failed batch item(s)")
            return {"queued": summary.quality.batch_queued if status == RunStatus.SUCCESS else 0}
        finally:
            self._running.discard(REQUEUE)

    async def _requeue_items(
        self,
        items: list[dict[str, Any]],
        run_id: int,
        summary: RunSummary,
        progress: ProgressSnapshot,
    ) -> None:
        seen: set[int] = set()
        for item in items:
            progress.processed += 1
            job_id = item["job_id"]
            if job_id in seen:
                continue
            seen.add(job_id)
            record = self.db.get_job(job_id)
            if record is None or record.status in TERMINAL_STATUSES:
                summary.totals.skipped += 1
                continue

            job = record.to_normalized()
            gate = self.gate.evaluate(job)
            outcome = self.batch.queue(job, job_id, self.profile, run_id) if gate.needs_llm else None
            self._apply_outcome(job_id, gate, outcome, run_id, summary, BATCH_ROUTE)
            summary.totals.fetched += 1

        self.db.mark_items_requeued([item["id"] for item in items])
        summary.batch = await self.batch.flush(run_id)

    # --- batch polling ---

    async def poll_batches(self) -> PollResult:
        result = await self.batch.poll_and_reconcile()
        if result.checked:
            logger.info(
                f"Polled {result.checked} batch(es): {result.completed} completed, "
                f"{result.failed} failed"
            )
        return result

    # --- run queries ---

    def get_run_progress(self, run_id: int) -> ProgressSnapshot | None:
        snapshot = self._progress.get(run_id)
        if snapshot is not None:
            return snapshot

        row = self.db.get_run(run_id)
        if row is None:
            return None
        summary = self._summary_from_row(row)
        totals = summary.totals
        if summary.cleanup is not None:
            processed = total = summary.cleanup.examined
        else:
            processed = totals.inserted + totals.deduped + totals.failed + totals.skipped
            total = max(0, totals.fetched - summary.dropped_by_transform)
        return ProgressSnapshot(
            run_id=run_id,
            family=summary.family,
            status=summary.status,
            processed=processed,
            total=total,
            totals=summary.totals,
            quality=summary.quality,
            started_at=summary.started_at,
            finished_at=summary.finished_at,
        )

    def list_runs(self, limit: int = 20) -> list[RunSummary]:
        return [self._summary_from_row(row) for row in self.db.list_runs(limit)]

    @staticmethod
    def _summary_from_row(row: dict[str, Any]) -> RunSummary:
        data: dict[str, Any] = {}
        if row.get("summary_json"):
            try:
                data = json.loads(row["summary_json"])
            except json.JSONDecodeError:
                logger.warning(f"Run {row['id']} has an unreadable summary")
        data.update(
            run_id=row["id"],
            family=row.get("family") or data.get("family") or "unknown",
            trigger_type=row.get("trigger_type") or "manual",
            llm_mode=row.get("llm_mode"),
            status=row.get("status") or RunStatus.RUNNING,
            started_at=row.get("started_at"),
            finished_at=row.get("finished_at"),
        )
        return RunSummary.model_validate(data)

    # --- human status changes ---

    async def set_job_status(self, job_id: int, status: JobStatus | str) -> JobRecord:
        """
        Apply a reviewer's status change. Approving a job also fires a
        best-effort dashboard sync that never fails the status change.
        """
        status = JobStatus(status)
        if status not in WORKFLOW_STATUSES:
            raise ValueError(f"'{status}' is not a reviewer status")

        previous = self.db.set_job_status(job_id, status)
        if previous is None:
            raise JobNotFoundError(job_id)

        self.db.add_job_event(
            job_id,
            JobEventType.STATUS_CHANGED,
            f"Status {previous} -> {status} (manual)",
            {"from": previous.value, "to": status.value, "actor": "human"},
        )
        record = self.db.get_job(job_id)

        if status == JobStatus.APPROVED and self.webhook_url and record is not None:
            task = asyncio.create_task(self._sync_dashboard(record))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return record

    async def _sync_dashboard(self, record: JobRecord) -> None:
        try:
            await send_webhook(
                self.webhook_url, RunFormatter.dashboard_payload(record), self.webhook_token
            )
        except httpx.HTTPError as e:
            logger.warning(f"Dashboard sync failed for job {record.id}: {e}")
            self.db.add_job_event(
                record.id, JobEventType.SYNC_FAILED, str(e), {"webhook": self.webhook_url}
            )

    async def drain(self) -> None:
        """Wait for outstanding fire-and-forget tasks."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
