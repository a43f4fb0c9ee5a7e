import json
import sqlite3
from unittest.mock import patch

import pytest
from conftest import chat_response

from job_engine.identity import DedupEngine
from job_engine.llm.batch import BatchClassifier
from job_engine.llm.fit import build_cache_key
from job_engine.models import (
    FitLabel,
    FitResult,
    GateResult,
    JobEventType,
    JobStatus,
    LlmOptions,
    LlmReviewState,
    LlmSkip,
    QualityBucket,
)

BASE = "https://llm.test/v1"


def _pending_gate():
    return GateResult(
        fit_score=40,
        fit_label=FitLabel.MEDIUM,
        quality_bucket=QualityBucket.BORDERLINE,
        admitted_to_inbox=False,
        needs_llm=True,
    )


def _queue_job(db, batch, job, profile, run_id=1):
    """Persist the job and queue it the way the orchestrator does."""
    job_id = DedupEngine(db).resolve(job, run_id=run_id).job_id
    result = batch.queue(job, job_id, profile, run_id)
    db.mark_job_pending_llm(job_id, _pending_gate(), result.custom_id, JobStatus.INBOX, run_id)
    return job_id, result


def _mock_submission(httpx_mock, batch_id="batch_abc"):
    httpx_mock.add_response(url=f"{BASE}/files", method="POST", json={"id": "file_in"})
    httpx_mock.add_response(
        url=f"{BASE}/batches", method="POST", json={"id": batch_id, "status": "validating"}
    )


def _output_line(custom_id, payload, prompt_tokens=100, completion_tokens=20):
    return json.dumps(
        {
            "custom_id": custom_id,
            "response": {
                "status_code": 200,
                "body": chat_response(payload, prompt_tokens, completion_tokens),
            },
        }
    )


# --- Queueing ---


def test_queue_creates_item_and_buffers(db, llm_options, borderline_job, profile):
    batch = BatchClassifier(db, llm_options)
    job_id, result = _queue_job(db, batch, borderline_job, profile)

    assert isinstance(result, LlmSkip)
    assert result.batch_queued is True
    assert result.custom_id.startswith(f"run_1_job_{job_id}_")
    assert batch.pending_count(1) == 1
    assert db.get_batch_item(result.custom_id)["state"] == "queued"


def test_queue_reuses_existing_item_within_run(db, llm_options, borderline_job, profile):
    batch = BatchClassifier(db, llm_options)
    job_id, first = _queue_job(db, batch, borderline_job, profile)

    second = batch.queue(borderline_job, job_id, profile, run_id=1)

    assert second.custom_id == first.custom_id
    assert batch.pending_count(1) == 1


def test_queue_returns_cached_verdict(db, llm_options, borderline_job, profile):
    db.set_cached_fit(
        build_cache_key(borderline_job, profile),
        FitResult(fit_label=FitLabel.HIGH, fit_score=80, confidence=0.9),
    )
    batch = BatchClassifier(db, llm_options)

    result = batch.queue(borderline_job, 1, profile, run_id=1)

    assert isinstance(result, FitResult)
    assert result.cached is True
    assert batch.pending_count(1) == 0


def test_queue_skips_when_disabled(db, borderline_job, profile):
    batch = BatchClassifier(db, LlmOptions(enabled=False, api_key="k"))
    result = batch.queue(borderline_job, 1, profile, run_id=1)
    assert result.reason == "disabled_or_missing_key"
    assert result.batch_queued is False


def test_build_jsonl_lines(db, llm_options, borderline_job, profile):
    batch = BatchClassifier(db, llm_options)
    _queue_job(db, batch, borderline_job, profile)

    jsonl = batch.build_jsonl(batch._pending[1].items)

    assert jsonl.endswith("\n")
    line = json.loads(jsonl.splitlines()[0])
    assert line["method"] == "POST"
    assert line["url"] == "/v1/chat/completions"
    assert line["body"]["model"] == "gpt-test"


def test_batch_model_overrides_model(db, llm_options):
    options = llm_options.model_copy(update={"batch_model": "gpt-batch"})
    assert BatchClassifier(db, options).model == "gpt-batch"
    assert BatchClassifier(db, llm_options).model == "gpt-test"


# --- Flushing ---


@pytest.mark.asyncio
async def test_flush_with_nothing_queued_returns_none(db, llm_options):
    assert await BatchClassifier(db, llm_options).flush(run_id=1) is None


@pytest.mark.asyncio
async def test_flush_submits_and_records_batch(httpx_mock, db, llm_options, borderline_job, profile):
    _mock_submission(httpx_mock)
    batch = BatchClassifier(db, llm_options)
    job_id, queued = _queue_job(db, batch, borderline_job, profile)

    result = await batch.flush(run_id=1)

    assert result.batch_id == "batch_abc"
    assert result.submitted == 1
    assert result.error is None
    assert batch.pending_count(1) == 0

    row = db.get_batch("batch_abc")
    assert row["input_file_id"] == "file_in"
    assert row["model"] == "gpt-test"
    assert db.get_batch_item(queued.custom_id)["batch_id"] == "batch_abc"
    assert db.get_job(job_id).llm_pending_batch_id == "batch_abc"

    create_request = httpx_mock.get_requests(url=f"{BASE}/batches")[0]
    create_body = json.loads(create_request.content)
    assert create_body["input_file_id"] == "file_in"
    assert create_body["endpoint"] == "/v1/chat/completions"
    assert create_body["completion_window"] == "24h"
    assert create_body["metadata"]["run_id"] == "1"


@pytest.mark.asyncio
async def test_flush_failure_marks_items_failed(httpx_mock, db, llm_options, borderline_job, profile):
    httpx_mock.add_response(url=f"{BASE}/files", method="POST", status_code=500)
    batch = BatchClassifier(db, llm_options)
    _, queued = _queue_job(db, batch, borderline_job, profile)

    result = await batch.flush(run_id=1)

    assert result.error == "file_upload_500"
    assert result.submitted == 0
    item = db.get_batch_item(queued.custom_id)
    assert item["state"] == "failed"
    assert item["error_text"] == "file_upload_500"


def test_discard_fails_buffered_items(db, llm_options, borderline_job, profile):
    batch = BatchClassifier(db, llm_options)
    _, queued = _queue_job(db, batch, borderline_job, profile)

    assert batch.discard(1, "run_failed") == 1
    assert batch.pending_count(1) == 0
    assert db.get_batch_item(queued.custom_id)["error_text"] == "run_failed"


# --- Reconciliation ---


@pytest.mark.asyncio
async def test_reconcile_applies_results(httpx_mock, db, llm_options, borderline_job, profile):
    _mock_submission(httpx_mock)
    batch = BatchClassifier(db, llm_options)
    job_id, queued = _queue_job(db, batch, borderline_job, profile)
    await batch.flush(run_id=1)

    output = _output_line(queued.custom_id, {"fit_label": "low", "fit_score": 22, "confidence": 0.7})
    applied = batch.reconcile_output(db.get_batch("batch_abc"), output)

    assert applied == 1
    record = db.get_job(job_id)
    # Optimistic inbox admission is reversed by a disagreeing verdict
    assert record.status == JobStatus.FILTERED
    assert record.quality_bucket == QualityBucket.FILTERED
    assert record.fit_source == "llm"
    assert record.llm_review_state == LlmReviewState.COMPLETED
    assert record.llm_pending_batch_id is None
    assert db.get_batch_item(queued.custom_id)["state"] == "completed"
    assert db.get_cached_fit(queued.cache_key).fit_score == 22
    assert db.llm_calls_for_run(1) == 1

    events = [e["event_type"] for e in db.list_job_events(job_id)]
    assert JobEventType.LLM_BATCH_COMPLETED in events


@pytest.mark.asyncio
async def test_reconcile_never_reverts_terminal_status(httpx_mock, db, llm_options, borderline_job, profile):
    _mock_submission(httpx_mock)
    batch = BatchClassifier(db, llm_options)
    job_id, queued = _queue_job(db, batch, borderline_job, profile)
    await batch.flush(run_id=1)
    db.set_job_status(job_id, JobStatus.APPROVED)

    batch.reconcile_output(
        db.get_batch("batch_abc"),
        _output_line(queued.custom_id, {"fit_label": "low", "fit_score": 5, "confidence": 0.9}),
    )

    assert db.get_job(job_id).status == JobStatus.APPROVED


@pytest.mark.asyncio
async def test_reconcile_isolates_bad_lines(httpx_mock, db, llm_options, borderline_job, strong_job, profile):
    _mock_submission(httpx_mock)
    batch = BatchClassifier(db, llm_options)
    good_id, good = _queue_job(db, batch, borderline_job, profile)
    bad_id, bad = _queue_job(db, batch, strong_job, profile)
    await batch.flush(run_id=1)

    bad_line = json.dumps(
        {
            "custom_id": bad.custom_id,
            "response": {"body": {"choices": [{"message": {"content": "oops"}}]}},
        }
    )
    output = "\n".join(
        [
            bad_line,
            "this line is not json",
            _output_line(good.custom_id, {"fit_label": "high", "fit_score": 80, "confidence": 0.9}),
        ]
    )
    applied = batch.reconcile_output(db.get_batch("batch_abc"), output)

    assert applied == 1
    assert db.get_job(good_id).llm_review_state == LlmReviewState.COMPLETED
    assert db.get_job(good_id).status == JobStatus.INBOX
    assert db.get_batch_item(bad.custom_id)["error_text"] == "invalid_batch_response"
    assert db.get_job(bad_id).llm_review_state == LlmReviewState.FAILED


@pytest.mark.asyncio
async def test_reconcile_fails_items_without_output(httpx_mock, db, llm_options, borderline_job, profile):
    _mock_submission(httpx_mock)
    batch = BatchClassifier(db, llm_options)
    job_id, queued = _queue_job(db, batch, borderline_job, profile)
    await batch.flush(run_id=1)

    assert batch.reconcile_output(db.get_batch("batch_abc"), "") == 0
    assert db.get_batch_item(queued.custom_id)["error_text"] == "missing_batch_response"
    assert db.get_job(job_id).llm_review_error == "missing_batch_response"
    assert db.llm_calls_for_run(1) == 0


# --- Polling ---


@pytest.mark.asyncio
async def test_poll_completed_batch(httpx_mock, db, llm_options, borderline_job, profile):
    _mock_submission(httpx_mock)
    batch = BatchClassifier(db, llm_options)
    job_id, queued = _queue_job(db, batch, borderline_job, profile)
    await batch.flush(run_id=1)

    httpx_mock.add_response(
        url=f"{BASE}/batches/batch_abc",
        method="GET",
        json={"id": "batch_abc", "status": "completed", "output_file_id": "file_out"},
    )
    httpx_mock.add_response(
        url=f"{BASE}/files/file_out/content",
        method="GET",
        text=_output_line(queued.custom_id, {"fit_label": "high", "fit_score": 88, "confidence": 0.9}),
    )

    result = await batch.poll_and_reconcile()

    assert (result.checked, result.completed, result.failed) == (1, 1, 0)
    row = db.get_batch("batch_abc")
    assert row["status"] == "completed"
    assert row["output_file_id"] == "file_out"
    assert row["completed_at"] is not None
    assert db.get_job(job_id).fit_score == 88


@pytest.mark.asyncio
async def test_poll_expired_batch_fails_items(httpx_mock, db, llm_options, borderline_job, profile):
    _mock_submission(httpx_mock)
    batch = BatchClassifier(db, llm_options)
    job_id, queued = _queue_job(db, batch, borderline_job, profile)
    await batch.flush(run_id=1)

    httpx_mock.add_response(
        url=f"{BASE}/batches/batch_abc", method="GET", json={"id": "batch_abc", "status": "expired"}
    )

    result = await batch.poll_and_reconcile()

    assert result.failed == 1
    assert db.get_batch("batch_abc")["status"] == "expired"
    assert db.get_batch_item(queued.custom_id)["state"] == "failed"
    assert db.get_job(job_id).llm_review_state == LlmReviewState.FAILED


@pytest.mark.asyncio
async def test_poll_in_progress_leaves_batch_active(httpx_mock, db, llm_options):
    db.insert_batch(1, "batch_slow", "validating", "gpt-test", "file_in")
    httpx_mock.add_response(
        url=f"{BASE}/batches/batch_slow", method="GET", json={"id": "batch_slow", "status": "in_progress"}
    )

    result = await BatchClassifier(db, llm_options).poll_and_reconcile()

    assert (result.checked, result.completed, result.failed) == (1, 0, 0)
    assert db.get_batch("batch_slow")["status"] == "in_progress"


@pytest.mark.asyncio
async def test_poll_error_on_one_batch_does_not_block_others(httpx_mock, db, llm_options):
    db.insert_batch(1, "batch_a", "in_progress", "gpt-test", "f1")
    db.insert_batch(1, "batch_b", "in_progress", "gpt-test", "f2")
    httpx_mock.add_response(url=f"{BASE}/batches/batch_b", method="GET", status_code=503)
    httpx_mock.add_response(
        url=f"{BASE}/batches/batch_a", method="GET", json={"id": "batch_a", "status": "cancelled"}
    )

    result = await BatchClassifier(db, llm_options).poll_and_reconcile()

    assert result.checked == 2
    assert result.failed == 1
    assert db.get_batch("batch_b")["status"] == "in_progress"
    assert db.get_batch("batch_a")["status"] == "cancelled"


@pytest.mark.asyncio
async def test_poll_storage_error_on_one_batch_does_not_block_others(httpx_mock, db, llm_options):
    """A batch whose results cannot be stored stays active; later batches are still reconciled."""
    db.insert_batch(1, "batch_a", "in_progress", "gpt-test", "f1")
    db.insert_batch(1, "batch_b", "in_progress", "gpt-test", "f2")
    for batch_id in ("batch_a", "batch_b"):
        httpx_mock.add_response(
            url=f"{BASE}/batches/{batch_id}", method="GET", json={"id": batch_id, "status": "completed"}
        )
    real_complete = db.complete_batch

    def flaky_complete(batch_id):
        if batch_id == "batch_b":
            raise sqlite3.OperationalError("disk I/O error")
        real_complete(batch_id)

    with patch.object(db, "complete_batch", side_effect=flaky_complete):
        result = await BatchClassifier(db, llm_options).poll_and_reconcile()

    assert (result.checked, result.completed) == (2, 1)
    assert len(httpx_mock.get_requests()) == 2
    assert db.get_batch("batch_a")["status"] == "completed"
    assert db.get_batch("batch_b")["status"] == "in_progress"
    assert [b["batch_id"] for b in db.list_active_batches()] == ["batch_b"]


@pytest.mark.asyncio
async def test_poll_without_key_does_nothing(db):
    db.insert_batch(1, "batch_a", "in_progress", "gpt-test", "f1")
    result = await BatchClassifier(db, LlmOptions(enabled=True)).poll_and_reconcile()
    assert result.checked == 0
