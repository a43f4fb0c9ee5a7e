import hashlib
import json
import logging
import sqlite3
from urllib.parse import urlsplit

from job_engine.db import Database
from job_engine.models import (
    Fingerprint,
    JobEventType,
    JobStatus,
    NormalizedJob,
    ResolveResult,
)

logger = logging.getLogger(__name__)

URL_REASON = "url"
COMPOSITE_REASON = "company+title+location+post_date"

# Columns covered by a unique index. Left untouched when refreshing them would
# collide with a different row.
IDENTITY_COLUMNS = frozenset(
    {
        "company",
        "title",
        "url",
        "location",
        "post_date",
        "company_key",
        "title_key",
        "location_key",
        "post_date_key",
        "canonical_fingerprint",
        "dedup_reason",
    }
)


def normalize_text(value: str | None) -> str:
    return (value or "").strip().lower()


def parse_url_parts(raw_url: str | None) -> str | None:
    """
    Reduce a URL to ``host/path``: lower-cased host without ``www.``,
    path without trailing slashes. Query string and fragment are dropped.
    Returns None when the URL has no host or no path.
    """
    if not raw_url:
        return None
    try:
        parts = urlsplit(raw_url.strip())
        host = normalize_text(parts.hostname)
    except ValueError:
        return None
    host = host.removeprefix("www.")
    path = parts.path.rstrip("/")
    if not host or not path:
        return None
    return f"{host}{path}"


def build_fingerprint(job: NormalizedJob) -> Fingerprint:
    url_key = parse_url_parts(job.url)
    if url_key:
        return Fingerprint(value=f"url:{url_key}", reason=URL_REASON)

    date_bucket = (job.post_date or "")[:10]
    composite = "|".join(
        [
            normalize_text(job.company),
            normalize_text(job.title),
            normalize_text(job.location),
            date_bucket,
        ]
    )
    return Fingerprint(value=f"composite:{composite}", reason=COMPOSITE_REASON)


def build_source_job_key(job: NormalizedJob) -> str:
    """Per-source identity of a raw sighting, kept for provenance."""
    if job.url:
        return f"{job.source}:{job.url}"
    return (
        f"{job.source}:{normalize_text(job.company)}|{normalize_text(job.title)}"
        f"|{job.post_date or ''}"
    )


def payload_hash(job: NormalizedJob) -> str:
    payload = json.dumps(job.model_dump(mode="json"), sort_keys=True)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def identity_fields(job: NormalizedJob, fingerprint: Fingerprint) -> dict[str, object]:
    """Mutable job_queue columns refreshed on every sighting."""
    return {
        "company": job.company,
        "title": job.title,
        "location": job.location,
        "post_date": job.post_date,
        "source": job.source,
        "url": job.url,
        "jd_text": job.jd_text,
        "is_bigtech": 1 if job.is_bigtech else 0,
        "company_key": normalize_text(job.company),
        "title_key": normalize_text(job.title),
        "location_key": normalize_text(job.location),
        "post_date_key": job.post_date or "",
        "canonical_fingerprint": fingerprint.value,
        "dedup_reason": fingerprint.reason,
    }


class DedupEngine:
    """
    Resolves a normalized posting to exactly one job_queue row.

    Lookup precedence, first hit wins: canonical fingerprint, then the
    normalized company/title/location/post_date composite, then the legacy
    exact company+title+url triple. A unique-constraint violation on insert
    means another writer got there first; it is resolved by looking the row
    up again and updating it instead.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def _lookup(self, job: NormalizedJob, fingerprint: Fingerprint) -> sqlite3.Row | None:
        row = self.db.find_job_by_fingerprint(fingerprint.value)
        if row is None:
            row = self.db.find_job_by_composite(
                normalize_text(job.company),
                normalize_text(job.title),
                normalize_text(job.location),
                job.post_date or "",
            )
        if row is None:
            row = self.db.find_job_by_legacy_key(job.company, job.title, job.url)
        return row

    def _update_existing(
        self,
        job_id: int,
        fields: dict[str, object],
        candidate_status: JobStatus,
        run_id: int | None,
    ) -> None:
        try:
            self.db.update_job_identity(job_id, fields, candidate_status, run_id)
        except sqlite3.IntegrityError as e:
            self.db.connection.rollback()
            logger.warning(
                f"Identity of job {job_id} collides with another row ({e}), keeping its current keys"
            )
            kept = {col: value for col, value in fields.items() if col not in IDENTITY_COLUMNS}
            self.db.update_job_identity(job_id, kept, candidate_status, run_id)

    def resolve(
        self,
        job: NormalizedJob,
        run_id: int | None = None,
        candidate_status: JobStatus = JobStatus.INBOX,
    ) -> ResolveResult:
        fingerprint = build_fingerprint(job)
        fields = identity_fields(job, fingerprint)

        existing = self._lookup(job, fingerprint)
        if existing is None:
            try:
                job_id = self.db.insert_job(fields, candidate_status, run_id)
                deduped = False
                previous_status = None
            except sqlite3.IntegrityError:
                self.db.connection.rollback()
                existing = self._lookup(job, fingerprint)
                if existing is None:
                    raise
                logger.info(f"Insert race on {fingerprint.value}, updating existing row instead")

        if existing is not None:
            job_id = existing["id"]
            deduped = True
            previous_status = JobStatus(existing["status"] or JobStatus.INBOX)
            self._update_existing(job_id, fields, candidate_status, run_id)

        source_key = build_source_job_key(job)
        self.db.add_source_observation(
            job_id, run_id, job.source, source_key, job.post_date, payload_hash(job)
        )
        self.db.add_job_event(
            job_id,
            JobEventType.DEDUPED if deduped else JobEventType.INGESTED,
            "Matched existing job" if deduped else "Inserted as new job",
            {
                "fingerprint": fingerprint.value,
                "dedup_reason": fingerprint.reason,
                "source": job.source,
                "source_job_key": source_key,
            },
            run_id=run_id,
        )

        return ResolveResult(
            job_id=job_id,
            deduped=deduped,
            fingerprint=fingerprint,
            previous_status=previous_status,
        )
