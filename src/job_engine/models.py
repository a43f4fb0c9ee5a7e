from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class JobStatus(StrEnum):
    INBOX = "inbox"
    APPROVED = "approved"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FILTERED = "filtered"


# Only a human action moves a job out of these.
TERMINAL_STATUSES = frozenset({JobStatus.APPROVED, JobStatus.APPLIED, JobStatus.SKIPPED})

# Statuses a reviewer may set by hand.
WORKFLOW_STATUSES = frozenset(
    {JobStatus.INBOX, JobStatus.APPROVED, JobStatus.SKIPPED, JobStatus.APPLIED}
)


class QualityBucket(StrEnum):
    HIGH = "high"
    BORDERLINE = "borderline"
    FILTERED = "filtered"
    PENDING_LLM = "pending_llm"


class FitLabel(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LlmReviewState(StrEnum):
    NONE = "none"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RunFamily(StrEnum):
    CORE = "core"
    EXTERNAL = "external"
    BIGTECH = "bigtech"
    CLEANUP = "cleanup"


class LlmMode(StrEnum):
    REALTIME = "realtime"
    BATCH = "batch"
    AUTO = "auto"


class BatchStatus(StrEnum):
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ACTIVE_BATCH_STATUSES = (
    BatchStatus.VALIDATING,
    BatchStatus.IN_PROGRESS,
    BatchStatus.FINALIZING,
)
FAILED_BATCH_STATUSES = (BatchStatus.FAILED, BatchStatus.EXPIRED, BatchStatus.CANCELLED)


class BatchItemState(StrEnum):
    QUEUED = "queued"
    COMPLETED = "completed"
    FAILED = "failed"


class JobEventType(StrEnum):
    INGESTED = "ingested"
    DEDUPED = "deduped"
    STATUS_CHANGED = "status_changed"
    CLEANUP_KEPT = "cleanup_kept"
    CLEANUP_FILTERED = "cleanup_filtered"
    LLM_BATCH_COMPLETED = "llm_batch_completed"
    SYNC_FAILED = "sync_failed"


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class NormalizedJob(BaseModel):
    """
    Common shape every source adapter maps its board's postings into.
    Adapters return a list of these (or an empty list), never raise.
    """

    company: str
    title: str
    location: str | None = None
    post_date: str | None = None
    source: str = "unknown"
    url: str | None = None
    jd_text: str | None = None
    is_bigtech: bool = False
    meta: dict[str, Any] | None = None

    @field_validator("company", mode="before")
    @classmethod
    def _default_company(cls, value: Any) -> str:
        return _clean(value) or "Unknown"

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: Any) -> str:
        return _clean(value) or ""

    @field_validator("location", "post_date", "url", "jd_text", mode="before")
    @classmethod
    def _strip_optional(cls, value: Any) -> str | None:
        return _clean(value)

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> str:
        return (_clean(value) or "unknown").lower()


class Fingerprint(BaseModel):
    value: str
    reason: str


class Profile(BaseModel):
    """Candidate profile the quality gate and the LLM classifier score against."""

    target_roles: list[str] = Field(default_factory=list)
    must_have_skills: list[str] = Field(default_factory=list)
    nice_to_have_skills: list[str] = Field(default_factory=list)
    location_preferences: list[str] = Field(default_factory=list)
    remote_policy: str = "hybrid_or_remote"
    hard_exclusions: list[str] = Field(default_factory=list)


class GateOptions(BaseModel):
    """Thresholds and weights for the deterministic quality gate."""

    min_inbox_score: int = 55
    borderline_min: int = 35
    borderline_max: int = 54
    allow_unknown_location: bool = False

    role_weight: int = 18
    must_have_weight: int = 12
    nice_to_have_weight: int = 5
    location_bonus: int = 10
    location_penalty: int = 10
    unknown_location_bonus: int = 4
    unknown_location_penalty: int = 0
    no_role_penalty: int = 15
    hard_exclusion_malus: int = 80

    @model_validator(mode="after")
    def _clamp_thresholds(self) -> "GateOptions":
        self.min_inbox_score = max(1, self.min_inbox_score)
        self.borderline_min = max(1, self.borderline_min)
        self.borderline_max = max(self.borderline_min, self.borderline_max)
        return self


class LlmOptions(BaseModel):
    """Settings for the LLM fit classifier, sync and batch."""

    enabled: bool = False
    api_key: str = ""
    endpoint: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-4o-mini"
    batch_model: str | None = None
    daily_cap: int = 120
    max_per_run: int = 30
    timeout_ms: int = 15000
    admit_threshold: int = 65
    batch_threshold: int = 20
    batch_realtime_fallback_count: int = 5
    batch_completion_window: str = "24h"
    batch_optimistic_admit: bool = True

    @model_validator(mode="after")
    def _clamp(self) -> "LlmOptions":
        self.daily_cap = max(1, self.daily_cap)
        self.max_per_run = max(1, self.max_per_run)
        self.timeout_ms = max(3000, self.timeout_ms)
        self.admit_threshold = max(1, self.admit_threshold)
        self.batch_threshold = max(1, self.batch_threshold)
        self.batch_realtime_fallback_count = max(0, self.batch_realtime_fallback_count)
        return self

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.api_key)

    @property
    def base_url(self) -> str:
        """API root derived from the chat-completions endpoint."""
        for marker in ("/chat/completions", "/batches"):
            idx = self.endpoint.find(marker)
            if idx >= 0:
                return self.endpoint[:idx]
        return "https://api.openai.com/v1"


class GateResult(BaseModel):
    fit_score: int
    fit_label: FitLabel
    fit_source: str = "rules"
    quality_bucket: QualityBucket
    admitted_to_inbox: bool
    needs_llm: bool
    reason_codes: list[str] = Field(default_factory=list)


class FitResult(BaseModel):
    """Normalized LLM classification for one (job, profile) pair."""

    skipped: Literal[False] = False
    fit_label: FitLabel
    fit_score: int
    confidence: float
    reason_codes: list[str] = Field(default_factory=list)
    missing_must_have: list[str] = Field(default_factory=list)
    cached: bool = False
    cache_key: str | None = None


class LlmSkip(BaseModel):
    """No verdict available; the deterministic gate decision stands."""

    skipped: Literal[True] = True
    reason: str
    cache_key: str | None = None
    custom_id: str | None = None
    batch_queued: bool = False


class JobRecord(BaseModel):
    id: int
    company: str
    title: str
    location: str | None = None
    post_date: str | None = None
    source: str | None = None
    url: str | None = None
    jd_text: str | None = None
    is_bigtech: bool = False
    score: int = 0
    tier: str = "B"
    status: JobStatus = JobStatus.INBOX
    canonical_fingerprint: str | None = None
    dedup_reason: str | None = None
    fit_score: int | None = None
    fit_label: str | None = None
    fit_source: str | None = None
    reason_codes: list[str] = Field(default_factory=list)
    quality_bucket: QualityBucket | None = None
    llm_confidence: float | None = None
    llm_missing_must_have: list[str] = Field(default_factory=list)
    llm_review_state: LlmReviewState = LlmReviewState.NONE
    llm_pending_batch_id: str | None = None
    llm_pending_custom_id: str | None = None
    llm_review_error: str | None = None
    first_seen_at: str | None = None
    last_seen_at: str | None = None
    last_run_id: int | None = None

    def to_normalized(self) -> NormalizedJob:
        return NormalizedJob(
            company=self.company,
            title=self.title,
            location=self.location,
            post_date=self.post_date,
            source=self.source,
            url=self.url,
            jd_text=self.jd_text,
            is_bigtech=self.is_bigtech,
        )


class ResolveResult(BaseModel):
    job_id: int
    deduped: bool
    fingerprint: Fingerprint
    previous_status: JobStatus | None = None


class RunTotals(BaseModel):
    fetched: int = 0
    inserted: int = 0
    deduped: int = 0
    failed: int = 0
    skipped: int = 0


class QualityCounters(BaseModel):
    high: int = 0
    borderline: int = 0
    filtered: int = 0
    pending_llm: int = 0
    llm_calls: int = 0
    llm_cached: int = 0
    llm_skipped: int = 0
    llm_admitted: int = 0
    batch_queued: int = 0


class SourceReport(BaseModel):
    name: str
    fetched: int = 0
    error: str | None = None
    meta: dict[str, Any] | None = None


class BatchFlushResult(BaseModel):
    batch_id: str | None = None
    submitted: int = 0
    error: str | None = None


class PollResult(BaseModel):
    checked: int = 0
    completed: int = 0
    failed: int = 0


class CleanupCounters(BaseModel):
    examined: int = 0
    kept: int = 0
    filtered: int = 0
    pending_skipped: int = 0


class RunSummary(BaseModel):
    run_id: int
    family: str
    trigger_type: str
    llm_mode: str | None = None
    status: RunStatus = RunStatus.RUNNING
    totals: RunTotals = Field(default_factory=RunTotals)
    quality: QualityCounters = Field(default_factory=QualityCounters)
    sources: list[SourceReport] = Field(default_factory=list)
    dropped_by_transform: int = 0
    cleanup: CleanupCounters | None = None
    errors: list[str] = Field(default_factory=list)
    batch: BatchFlushResult | None = None
    started_at: str | None = None
    finished_at: str | None = None


class ProgressSnapshot(BaseModel):
    run_id: int
    family: str
    status: RunStatus
    processed: int = 0
    total: int = 0
    totals: RunTotals = Field(default_factory=RunTotals)
    quality: QualityCounters = Field(default_factory=QualityCounters)
    started_at: str | None = None
    finished_at: str | None = None
