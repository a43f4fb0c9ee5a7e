from typing import Any

from job_engine.models import JobRecord, ProgressSnapshot, RunSummary


class RunFormatter:
    """
    Renders run summaries and job records for the CLI and the dashboard sync.
    """

    @staticmethod
    def format_summary(summary: RunSummary) -> str:
        totals = summary.totals
        quality = summary.quality
        lines = [
            f"Run #{summary.run_id} [{summary.family}] {summary.status}",
            (
                f"  fetched={totals.fetched} inserted={totals.inserted} "
                f"deduped={totals.deduped} failed={totals.failed} skipped={totals.skipped}"
            ),
            (
                f"  high={quality.high} borderline={quality.borderline} "
                f"filtered={quality.filtered} pending_llm={quality.pending_llm}"
            ),
            (
                f"  llm_calls={quality.llm_calls} cached={quality.llm_cached} "
                f"llm_skipped={quality.llm_skipped} batch_queued={quality.batch_queued}"
            ),
        ]
        if summary.dropped_by_transform:
            lines.append(f"  dropped_by_transform={summary.dropped_by_transform}")
        for source in summary.sources:
            line = f"  - {source.name}: {source.fetched} fetched"
            if source.error:
                line += f" (error: {source.error})"
            lines.append(line)
        if summary.batch:
            if summary.batch.error:
                lines.append(f"  batch: failed ({summary.batch.error})")
            else:
                lines.append(
                    f"  batch: {summary.batch.batch_id} ({summary.batch.submitted} submitted)"
                )
        return "\n".join(lines)

    @staticmethod
    def format_progress(snapshot: ProgressSnapshot) -> str:
        return (
            f"Run #{snapshot.run_id} [{snapshot.family}] {snapshot.status}: "
            f"{snapshot.processed}/{snapshot.total} processed"
        )

    @staticmethod
    def format_run_row(row: dict[str, Any]) -> str:
        finished = row.get("finished_at") or "-"
        return (
            f"#{row['id']:<5} {row.get('family') or '-':<9} {row.get('trigger_type') or '-':<9} "
            f"{row.get('status') or '-':<8} started {row.get('started_at')} finished {finished}"
        )

    @staticmethod
    def dashboard_payload(job: JobRecord) -> dict[str, Any]:
        """Body POSTed to the personal-dashboard webhook when a job is approved."""
        notes = (
            f"Auto-synced from Job Engine. Fit {job.fit_label or 'unknown'} "
            f"({job.fit_score if job.fit_score is not None else '-'}). "
            f"Source: {job.source or 'unknown'}."
        )
        return {
            "event": "job_approved",
            "job_id": job.id,
            "company": job.company,
            "position": job.title,
            "location": job.location,
            "url": job.url,
            "status": job.status.value,
            "notes": notes,
        }
