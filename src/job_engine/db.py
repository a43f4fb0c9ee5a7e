import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from job_engine.models import (
    ACTIVE_BATCH_STATUSES,
    BatchItemState,
    FitLabel,
    FitResult,
    GateResult,
    JobRecord,
    JobStatus,
    LlmReviewState,
    QualityBucket,
    RunStatus,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Keeps approved/applied/skipped untouched; everything else takes the candidate.
_GUARDED_STATUS = (
    "status = CASE WHEN status IN ('approved', 'applied', 'skipped') THEN status ELSE ? END"
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS job_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    company TEXT NOT NULL,
    title TEXT NOT NULL,
    location TEXT,
    post_date TEXT,
    source TEXT,
    url TEXT,
    jd_text TEXT,
    score INTEGER DEFAULT 0,
    tier TEXT DEFAULT 'B',
    status TEXT DEFAULT 'inbox',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(company, title, url)
);

CREATE TABLE IF NOT EXISTS ingestion_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    trigger_type TEXT NOT NULL,
    family TEXT,
    llm_mode TEXT,
    status TEXT DEFAULT 'running',
    summary_json TEXT,
    error_text TEXT,
    started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    finished_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS job_sources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES job_queue(id),
    run_id INTEGER,
    source TEXT,
    source_job_key TEXT,
    raw_post_date TEXT,
    payload_hash TEXT,
    ingested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS job_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES job_queue(id),
    run_id INTEGER,
    event_type TEXT NOT NULL,
    message TEXT,
    payload_json TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS llm_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    calls INTEGER NOT NULL DEFAULT 0,
    tokens_prompt INTEGER NOT NULL DEFAULT 0,
    tokens_completion INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS serpapi_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    queries_used INTEGER NOT NULL DEFAULT 0,
    notes TEXT,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS llm_fit_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cache_key TEXT NOT NULL UNIQUE,
    fit_label TEXT,
    fit_score INTEGER DEFAULT 0,
    confidence REAL DEFAULT 0,
    reason_codes_json TEXT,
    missing_must_have_json TEXT,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS llm_batches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    batch_id TEXT NOT NULL UNIQUE,
    status TEXT DEFAULT 'validating',
    model TEXT,
    input_file_id TEXT,
    output_file_id TEXT,
    error_file_id TEXT,
    error_text TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    completed_at TIMESTAMP,
    failed_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS llm_batch_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    batch_id TEXT,
    job_id INTEGER,
    cache_key TEXT,
    custom_id TEXT NOT NULL UNIQUE,
    state TEXT DEFAULT 'queued',
    error_text TEXT,
    requeued_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

# Columns added to job_queue after the first schema; migrated onto older databases.
_JOB_QUEUE_ADDED_COLUMNS = {
    "is_bigtech": "INTEGER DEFAULT 0",
    "company_key": "TEXT",
    "title_key": "TEXT",
    "location_key": "TEXT",
    "post_date_key": "TEXT",
    "canonical_fingerprint": "TEXT",
    "dedup_reason": "TEXT",
    "first_seen_at": "TIMESTAMP",
    "last_seen_at": "TIMESTAMP",
    "last_run_id": "INTEGER",
    "fit_score": "INTEGER",
    "fit_label": "TEXT",
    "fit_source": "TEXT",
    "fit_reason_codes": "TEXT",
    "quality_bucket": "TEXT",
    "rejected_by_quality": "INTEGER DEFAULT 0",
    "llm_confidence": "REAL",
    "llm_missing_must_have": "TEXT",
    "llm_review_state": "TEXT DEFAULT 'none'",
    "llm_pending_batch_id": "TEXT",
    "llm_pending_custom_id": "TEXT",
    "llm_review_error": "TEXT",
    "llm_review_updated_at": "TIMESTAMP",
}

_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_job_queue_fingerprint
    ON job_queue(canonical_fingerprint) WHERE canonical_fingerprint IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_job_queue_company_title_loc_date
    ON job_queue(company_key, title_key, location_key, post_date_key);
CREATE INDEX IF NOT EXISTS idx_job_queue_status ON job_queue(status);
CREATE INDEX IF NOT EXISTS idx_job_queue_quality_bucket ON job_queue(quality_bucket);
CREATE INDEX IF NOT EXISTS idx_job_sources_job_id ON job_sources(job_id);
CREATE INDEX IF NOT EXISTS idx_job_sources_key ON job_sources(source, source_job_key);
CREATE INDEX IF NOT EXISTS idx_job_events_job_id ON job_events(job_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_job_events_run_id ON job_events(run_id);
CREATE INDEX IF NOT EXISTS idx_ingestion_runs_started_at ON ingestion_runs(started_at DESC);
CREATE INDEX IF NOT EXISTS idx_llm_usage_created_at ON llm_usage(created_at);
CREATE INDEX IF NOT EXISTS idx_llm_usage_run_id ON llm_usage(run_id);
CREATE INDEX IF NOT EXISTS idx_serpapi_usage_created_at ON serpapi_usage(created_at);
CREATE INDEX IF NOT EXISTS idx_llm_batches_status ON llm_batches(status);
CREATE INDEX IF NOT EXISTS idx_llm_batch_items_batch_id ON llm_batch_items(batch_id);
CREATE INDEX IF NOT EXISTS idx_llm_batch_items_run_job ON llm_batch_items(run_id, job_id);
"""


def utc_timestamp(moment: datetime | None = None) -> str:
    """Format a moment the way SQLite's CURRENT_TIMESTAMP does, in UTC."""
    moment = moment or datetime.now(tz=UTC)
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return moment.strftime(TIMESTAMP_FORMAT)


def _load_json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


class Database:
    """
    SQLite persistence for the ingestion and classification pipeline.

    Holds job records with their identity keys, provenance and audit trails,
    run rows, the LLM fit cache, usage ledgers and batch bookkeeping.
    Uses a single persistent connection and supports the context manager
    protocol for proper resource cleanup.
    """

    def __init__(self, db_path: str = "data/job-engine.db") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self.init_db()

    @property
    def connection(self) -> sqlite3.Connection:
        """Return the persistent database connection."""
        if self._conn is None:
            raise RuntimeError("Database connection is closed")
        return self._conn

    def init_db(self) -> None:
        """Create all tables and indexes if they don't exist."""
        self.connection.executescript(_SCHEMA)
        self._migrate_add_columns()
        self._backfill_identity_keys()
        self.connection.executescript(_INDEXES)
        self.connection.commit()
        logger.info(f"Database initialized at {self.db_path}")

    def _migrate_add_columns(self) -> None:
        """Add columns to job_queue tables created before the schema change."""
        cursor = self.connection.cursor()
        cursor.execute("PRAGMA table_info(job_queue)")
        existing_columns = {row[1] for row in cursor.fetchall()}

        for col_name, col_type in _JOB_QUEUE_ADDED_COLUMNS.items():
            if col_name not in existing_columns:
                cursor.execute(f"ALTER TABLE job_queue ADD COLUMN {col_name} {col_type}")
                logger.info(f"Migrated database: added column '{col_name}'")

        self.connection.commit()

    def _backfill_identity_keys(self) -> None:
        """Fill identity keys on rows written before they existed."""
        self.connection.executescript(
            """
            UPDATE job_queue SET company_key = lower(trim(company)) WHERE company_key IS NULL;
            UPDATE job_queue SET title_key = lower(trim(title)) WHERE title_key IS NULL;
            UPDATE job_queue SET location_key = lower(trim(COALESCE(location, '')))
                WHERE location_key IS NULL;
            UPDATE job_queue SET post_date_key = COALESCE(post_date, '') WHERE post_date_key IS NULL;
            UPDATE job_queue SET first_seen_at = COALESCE(first_seen_at, created_at);
            UPDATE job_queue SET last_seen_at = COALESCE(last_seen_at, updated_at);
            UPDATE job_queue SET llm_review_state = 'none' WHERE llm_review_state IS NULL;
            """
        )

    # --- ingestion runs ---

    def create_run(self, trigger_type: str, family: str, llm_mode: str | None = None) -> int:
        cursor = self.connection.execute(
            """
            INSERT INTO ingestion_runs (trigger_type, family, llm_mode, status)
            VALUES (?, ?, ?, ?)
            """,
            (trigger_type, family, llm_mode, RunStatus.RUNNING.value),
        )
        self.connection.commit()
        return int(cursor.lastrowid)

    def update_run_summary(self, run_id: int, summary: dict[str, Any]) -> None:
        self.connection.execute(
            "UPDATE ingestion_runs SET summary_json = ? WHERE id = ?",
            (json.dumps(summary), run_id),
        )
        self.connection.commit()

    def finalize_run(
        self,
        run_id: int,
        status: RunStatus,
        summary: dict[str, Any],
        error_text: str | None = None,
    ) -> None:
        self.connection.execute(
            """
            UPDATE ingestion_runs
            SET status = ?, summary_json = ?, error_text = ?, finished_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (status.value, json.dumps(summary), error_text, run_id),
        )
        self.connection.commit()

    def get_run(self, run_id: int) -> dict[str, Any] | None:
        row = self.connection.execute(
            "SELECT * FROM ingestion_runs WHERE id = ?", (run_id,)
        ).fetchone()
        return dict(row) if row else None

    def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            "SELECT * FROM ingestion_runs ORDER BY id DESC LIMIT ?", (max(1, limit),)
        ).fetchall()
        return [dict(row) for row in rows]

    # --- job identity ---

    def find_job_by_fingerprint(self, fingerprint: str) -> sqlite3.Row | None:
        return self.connection.execute(
            "SELECT id, status FROM job_queue WHERE canonical_fingerprint = ? LIMIT 1",
            (fingerprint,),
        ).fetchone()

    def find_job_by_composite(
        self, company_key: str, title_key: str, location_key: str, post_date_key: str
    ) -> sqlite3.Row | None:
        return self.connection.execute(
            """
            SELECT id, status FROM job_queue
            WHERE company_key = ? AND title_key = ? AND location_key = ? AND post_date_key = ?
            LIMIT 1
            """,
            (company_key, title_key, location_key, post_date_key),
        ).fetchone()

    def find_job_by_legacy_key(
        self, company: str, title: str, url: str | None
    ) -> sqlite3.Row | None:
        if not url:
            return None
        return self.connection.execute(
            "SELECT id, status FROM job_queue WHERE company = ? AND title = ? AND url = ? LIMIT 1",
            (company, title, url),
        ).fetchone()

    def insert_job(self, fields: dict[str, Any], status: JobStatus, run_id: int | None) -> int:
        """
        Insert a new job row. Raises sqlite3.IntegrityError when another row
        already holds the same identity; callers resolve that by re-lookup.
        """
        columns = list(fields)
        placeholders = ", ".join("?" for _ in columns)
        cursor = self.connection.execute(
            f"""
            INSERT INTO job_queue (
                {", ".join(columns)}, status, llm_review_state,
                first_seen_at, last_seen_at, last_run_id
            )
            VALUES ({placeholders}, ?, 'none', CURRENT_TIMESTAMP, CURRENT_TIMESTAMP, ?)
            """,
            (*fields.values(), status.value, run_id),
        )
        self.connection.commit()
        return int(cursor.lastrowid)

    def update_job_identity(
        self,
        job_id: int,
        fields: dict[str, Any],
        candidate_status: JobStatus,
        run_id: int | None,
    ) -> None:
        """Refresh mutable fields of an existing job. Terminal statuses are kept."""
        assignments = ", ".join(f"{col} = ?" for col in fields)
        self.connection.execute(
            f"""
            UPDATE job_queue
            SET {assignments}, {_GUARDED_STATUS},
                last_run_id = ?, last_seen_at = CURRENT_TIMESTAMP,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (*fields.values(), candidate_status.value, run_id, job_id),
        )
        self.connection.commit()

    # --- job records ---

    def get_job(self, job_id: int) -> JobRecord | None:
        row = self.connection.execute("SELECT * FROM job_queue WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def list_jobs(self, status: JobStatus | None = None) -> list[JobRecord]:
        if status is None:
            rows = self.connection.execute("SELECT * FROM job_queue ORDER BY id").fetchall()
        else:
            rows = self.connection.execute(
                "SELECT * FROM job_queue WHERE status = ? ORDER BY id", (status.value,)
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count_jobs(self) -> int:
        return int(self.connection.execute("SELECT COUNT(*) FROM job_queue").fetchone()[0])

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> JobRecord:
        data = dict(row)
        return JobRecord(
            id=data["id"],
            company=data["company"],
            title=data["title"],
            location=data["location"],
            post_date=data["post_date"],
            source=data["source"],
            url=data["url"],
            jd_text=data["jd_text"],
            is_bigtech=bool(data["is_bigtech"]),
            score=data["score"] or 0,
            tier=data["tier"] or "B",
            status=JobStatus(data["status"] or "inbox"),
            canonical_fingerprint=data["canonical_fingerprint"],
            dedup_reason=data["dedup_reason"],
            fit_score=data["fit_score"],
            fit_label=data["fit_label"],
            fit_source=data["fit_source"],
            reason_codes=_load_json_list(data["fit_reason_codes"]),
            quality_bucket=data["quality_bucket"],
            llm_confidence=data["llm_confidence"],
            llm_missing_must_have=_load_json_list(data["llm_missing_must_have"]),
            llm_review_state=LlmReviewState(data["llm_review_state"] or "none"),
            llm_pending_batch_id=data["llm_pending_batch_id"],
            llm_pending_custom_id=data["llm_pending_custom_id"],
            llm_review_error=data["llm_review_error"],
            first_seen_at=data["first_seen_at"],
            last_seen_at=data["last_seen_at"],
            last_run_id=data["last_run_id"],
        )

    def apply_gate_decision(
        self, job_id: int, gate: GateResult, status: JobStatus, run_id: int | None
    ) -> None:
        """Persist a deterministic-gate outcome (also used when the LLM was skipped)."""
        self.connection.execute(
            f"""
            UPDATE job_queue
            SET fit_score = ?, fit_label = ?, fit_source = ?, fit_reason_codes = ?,
                quality_bucket = ?, rejected_by_quality = ?, {_GUARDED_STATUS},
                last_run_id = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (
                gate.fit_score,
                gate.fit_label.value,
                gate.fit_source,
                json.dumps(gate.reason_codes),
                gate.quality_bucket.value,
                0 if gate.admitted_to_inbox else 1,
                status.value,
                run_id,
                job_id,
            ),
        )
        self.connection.commit()

    def apply_llm_decision(
        self,
        job_id: int,
        fit: FitResult,
        admitted: bool,
        run_id: int | None,
    ) -> None:
        """Persist an LLM verdict, clearing any pending batch markers."""
        bucket = QualityBucket.HIGH if admitted else QualityBucket.FILTERED
        status = JobStatus.INBOX if admitted else JobStatus.FILTERED
        self.connection.execute(
            f"""
            UPDATE job_queue
            SET fit_score = ?, fit_label = ?, fit_source = 'llm', fit_reason_codes = ?,
                quality_bucket = ?, rejected_by_quality = ?, llm_confidence = ?,
                llm_missing_must_have = ?, llm_review_state = 'completed',
                llm_pending_batch_id = NULL, llm_pending_custom_id = NULL,
                llm_review_error = NULL, llm_review_updated_at = CURRENT_TIMESTAMP,
                {_GUARDED_STATUS}, last_run_id = COALESCE(?, last_run_id),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (
                fit.fit_score,
                fit.fit_label.value,
                json.dumps(fit.reason_codes),
                bucket.value,
                0 if admitted else 1,
                fit.confidence,
                json.dumps(fit.missing_must_have),
                status.value,
                run_id,
                job_id,
            ),
        )
        self.connection.commit()

    def mark_job_pending_llm(
        self,
        job_id: int,
        gate: GateResult,
        custom_id: str,
        status: JobStatus,
        run_id: int | None,
    ) -> None:
        self.connection.execute(
            f"""
            UPDATE job_queue
            SET fit_score = ?, fit_label = ?, fit_source = 'rules', fit_reason_codes = ?,
                quality_bucket = ?, rejected_by_quality = 0, llm_review_state = 'pending',
                llm_pending_custom_id = ?, llm_pending_batch_id = NULL,
                llm_review_error = NULL, llm_review_updated_at = CURRENT_TIMESTAMP,
                {_GUARDED_STATUS}, last_run_id = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (
                gate.fit_score,
                gate.fit_label.value,
                json.dumps(gate.reason_codes),
                QualityBucket.PENDING_LLM.value,
                custom_id,
                status.value,
                run_id,
                job_id,
            ),
        )
        self.connection.commit()

    def mark_job_llm_failed(self, job_id: int, error: str) -> None:
        self.connection.execute(
            """
            UPDATE job_queue
            SET llm_review_state = 'failed', llm_review_error = ?,
                llm_review_updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (error, job_id),
        )
        self.connection.commit()

    def set_job_status(self, job_id: int, status: JobStatus) -> JobStatus | None:
        """Unconditionally set a status (human action). Returns the previous status."""
        row = self.connection.execute(
            "SELECT status FROM job_queue WHERE id = ?", (job_id,)
        ).fetchone()
        if row is None:
            return None
        self.connection.execute(
            "UPDATE job_queue SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (status.value, job_id),
        )
        self.connection.commit()
        return JobStatus(row["status"])

    def filter_inbox_job(self, job_id: int, reason_codes: list[str]) -> bool:
        """Move an inbox job to filtered. Returns False if it is no longer in inbox."""
        cursor = self.connection.execute(
            """
            UPDATE job_queue
            SET status = 'filtered', quality_bucket = 'filtered', rejected_by_quality = 1,
                fit_reason_codes = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND status = 'inbox'
            """,
            (json.dumps(reason_codes), job_id),
        )
        self.connection.commit()
        return cursor.rowcount > 0

    # --- provenance and audit ---

    def add_source_observation(
        self,
        job_id: int,
        run_id: int | None,
        source: str,
        source_job_key: str,
        raw_post_date: str | None,
        payload_hash: str,
    ) -> None:
        self.connection.execute(
            """
            INSERT INTO job_sources (job_id, run_id, source, source_job_key, raw_post_date, payload_hash)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, run_id, source, source_job_key, raw_post_date, payload_hash),
        )
        self.connection.commit()

    def list_source_observations(self, job_id: int) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            "SELECT * FROM job_sources WHERE job_id = ? ORDER BY id", (job_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    def add_job_event(
        self,
        job_id: int,
        event_type: str,
        message: str = "",
        payload: dict[str, Any] | None = None,
        run_id: int | None = None,
    ) -> None:
        self.connection.execute(
            """
            INSERT INTO job_events (job_id, run_id, event_type, message, payload_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (job_id, run_id, event_type, message, json.dumps(payload) if payload else None),
        )
        self.connection.commit()

    def list_job_events(self, job_id: int) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            "SELECT * FROM job_events WHERE job_id = ? ORDER BY id", (job_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    # --- usage ledgers ---

    def record_llm_usage(
        self,
        run_id: int | None,
        calls: int,
        tokens_prompt: int = 0,
        tokens_completion: int = 0,
        now: datetime | None = None,
    ) -> None:
        if calls <= 0:
            return
        self.connection.execute(
            """
            INSERT INTO llm_usage (run_id, calls, tokens_prompt, tokens_completion, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (run_id, calls, tokens_prompt, tokens_completion, utc_timestamp(now)),
        )
        self.connection.commit()

    def llm_calls_between(self, start: datetime, end: datetime) -> int:
        row = self.connection.execute(
            """
            SELECT COALESCE(SUM(calls), 0) FROM llm_usage
            WHERE created_at >= ? AND created_at < ?
            """,
            (utc_timestamp(start), utc_timestamp(end)),
        ).fetchone()
        return int(row[0])

    def llm_calls_for_run(self, run_id: int) -> int:
        row = self.connection.execute(
            "SELECT COALESCE(SUM(calls), 0) FROM llm_usage WHERE run_id = ?", (run_id,)
        ).fetchone()
        return int(row[0])

    def record_serpapi_usage(
        self,
        run_id: int | None,
        queries_used: int,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> None:
        if queries_used <= 0:
            return
        self.connection.execute(
            """
            INSERT INTO serpapi_usage (run_id, queries_used, notes, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (run_id, queries_used, notes, utc_timestamp(now)),
        )
        self.connection.commit()

    def serpapi_queries_between(self, start: datetime, end: datetime) -> int:
        row = self.connection.execute(
            """
            SELECT COALESCE(SUM(queries_used), 0) FROM serpapi_usage
            WHERE created_at >= ? AND created_at < ?
            """,
            (utc_timestamp(start), utc_timestamp(end)),
        ).fetchone()
        return int(row[0])

    # --- LLM fit cache ---

    def get_cached_fit(self, cache_key: str) -> FitResult | None:
        row = self.connection.execute(
            """
            SELECT fit_label, fit_score, confidence, reason_codes_json, missing_must_have_json
            FROM llm_fit_cache WHERE cache_key = ? LIMIT 1
            """,
            (cache_key,),
        ).fetchone()
        if row is None:
            return None
        label = row["fit_label"] if row["fit_label"] in FitLabel.__members__.values() else "low"
        return FitResult(
            fit_label=FitLabel(label),
            fit_score=row["fit_score"] or 0,
            confidence=row["confidence"] or 0.0,
            reason_codes=_load_json_list(row["reason_codes_json"]),
            missing_must_have=_load_json_list(row["missing_must_have_json"]),
            cached=True,
            cache_key=cache_key,
        )

    def set_cached_fit(self, cache_key: str, fit: FitResult) -> None:
        self.connection.execute(
            """
            INSERT INTO llm_fit_cache (
                cache_key, fit_label, fit_score, confidence,
                reason_codes_json, missing_must_have_json, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(cache_key) DO UPDATE SET
                fit_label = excluded.fit_label,
                fit_score = excluded.fit_score,
                confidence = excluded.confidence,
                reason_codes_json = excluded.reason_codes_json,
                missing_must_have_json = excluded.missing_must_have_json,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                cache_key,
                fit.fit_label.value,
                fit.fit_score,
                fit.confidence,
                json.dumps(fit.reason_codes),
                json.dumps(fit.missing_must_have),
            ),
        )
        self.connection.commit()

    # --- batch bookkeeping ---

    def find_queued_batch_item(self, run_id: int, job_id: int) -> sqlite3.Row | None:
        return self.connection.execute(
            """
            SELECT * FROM llm_batch_items
            WHERE run_id = ? AND job_id = ? AND state = 'queued' LIMIT 1
            """,
            (run_id, job_id),
        ).fetchone()

    def insert_batch_item(self, run_id: int, job_id: int, cache_key: str, custom_id: str) -> int:
        cursor = self.connection.execute(
            """
            INSERT INTO llm_batch_items (run_id, job_id, cache_key, custom_id, state)
            VALUES (?, ?, ?, ?, 'queued')
            """,
            (run_id, job_id, cache_key, custom_id),
        )
        self.connection.commit()
        return int(cursor.lastrowid)

    def insert_batch(
        self, run_id: int, batch_id: str, status: str, model: str, input_file_id: str
    ) -> None:
        self.connection.execute(
            """
            INSERT INTO llm_batches (run_id, batch_id, status, model, input_file_id)
            VALUES (?, ?, ?, ?, ?)
            """,
            (run_id, batch_id, status, model, input_file_id),
        )
        self.connection.commit()

    def attach_item_to_batch(self, batch_id: str, run_id: int, custom_id: str, job_id: int) -> None:
        """Stamp a queued item and its job (if still waiting on this item) with the batch id."""
        self.connection.execute(
            """
            UPDATE llm_batch_items SET batch_id = ?, updated_at = CURRENT_TIMESTAMP
            WHERE run_id = ? AND custom_id = ?
            """,
            (batch_id, run_id, custom_id),
        )
        self.connection.execute(
            """
            UPDATE job_queue
            SET llm_pending_batch_id = ?, llm_review_updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND llm_pending_custom_id = ?
            """,
            (batch_id, job_id, custom_id),
        )
        self.connection.commit()

    def fail_batch_item(self, custom_id: str, error: str) -> None:
        self.connection.execute(
            """
            UPDATE llm_batch_items
            SET state = 'failed', error_text = ?, updated_at = CURRENT_TIMESTAMP
            WHERE custom_id = ?
            """,
            (error, custom_id),
        )
        self.connection.commit()

    def complete_batch_item(self, item_id: int) -> None:
        self.connection.execute(
            """
            UPDATE llm_batch_items
            SET state = 'completed', error_text = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (item_id,),
        )
        self.connection.commit()

    def get_batch(self, batch_id: str) -> dict[str, Any] | None:
        row = self.connection.execute(
            "SELECT * FROM llm_batches WHERE batch_id = ?", (batch_id,)
        ).fetchone()
        return dict(row) if row else None

    def list_active_batches(self, limit: int = 30) -> list[dict[str, Any]]:
        placeholders = ", ".join("?" for _ in ACTIVE_BATCH_STATUSES)
        rows = self.connection.execute(
            f"""
            SELECT * FROM llm_batches WHERE status IN ({placeholders})
            ORDER BY id DESC LIMIT ?
            """,
            (*(s.value for s in ACTIVE_BATCH_STATUSES), limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def update_batch_status(
        self,
        batch_id: str,
        status: str,
        output_file_id: str | None = None,
        error_file_id: str | None = None,
    ) -> None:
        self.connection.execute(
            """
            UPDATE llm_batches
            SET status = ?, output_file_id = COALESCE(?, output_file_id),
                error_file_id = COALESCE(?, error_file_id), updated_at = CURRENT_TIMESTAMP
            WHERE batch_id = ?
            """,
            (status, output_file_id, error_file_id, batch_id),
        )
        self.connection.commit()

    def complete_batch(self, batch_id: str) -> None:
        self.connection.execute(
            """
            UPDATE llm_batches
            SET status = 'completed', completed_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE batch_id = ?
            """,
            (batch_id,),
        )
        self.connection.commit()

    def fail_batch(self, batch_id: str, status: str, error_text: str | None = None) -> None:
        """Mark a provider-terminated batch, its queued items and their jobs as failed."""
        self.connection.execute(
            """
            UPDATE llm_batches
            SET status = ?, error_text = COALESCE(?, error_text),
                failed_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE batch_id = ?
            """,
            (status, error_text, batch_id),
        )
        self.connection.execute(
            """
            UPDATE llm_batch_items
            SET state = 'failed', error_text = ?, updated_at = CURRENT_TIMESTAMP
            WHERE batch_id = ? AND state = 'queued'
            """,
            (status, batch_id),
        )
        self.connection.execute(
            """
            UPDATE job_queue
            SET llm_review_state = 'failed', llm_review_error = ?,
                llm_review_updated_at = CURRENT_TIMESTAMP
            WHERE llm_pending_batch_id = ?
            """,
            (status, batch_id),
        )
        self.connection.commit()

    def list_batch_items(
        self, batch_id: str, state: BatchItemState | None = None
    ) -> list[dict[str, Any]]:
        if state is None:
            rows = self.connection.execute(
                "SELECT * FROM llm_batch_items WHERE batch_id = ? ORDER BY id", (batch_id,)
            ).fetchall()
        else:
            rows = self.connection.execute(
                "SELECT * FROM llm_batch_items WHERE batch_id = ? AND state = ? ORDER BY id",
                (batch_id, state.value),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_batch_item(self, custom_id: str) -> dict[str, Any] | None:
        row = self.connection.execute(
            "SELECT * FROM llm_batch_items WHERE custom_id = ?", (custom_id,)
        ).fetchone()
        return dict(row) if row else None

    def list_requeueable_items(self) -> list[dict[str, Any]]:
        """Failed items that have not been requeued yet."""
        rows = self.connection.execute(
            """
            SELECT * FROM llm_batch_items
            WHERE state = 'failed' AND requeued_at IS NULL
            ORDER BY id
            """
        ).fetchall()
        return [dict(row) for row in rows]

    def mark_items_requeued(self, item_ids: list[int]) -> None:
        self.connection.executemany(
            "UPDATE llm_batch_items SET requeued_at = CURRENT_TIMESTAMP WHERE id = ?",
            [(item_id,) for item_id in item_ids],
        )
        self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "Database":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
