import sqlite3
from unittest.mock import patch

from job_engine.identity import (
    COMPOSITE_REASON,
    URL_REASON,
    DedupEngine,
    build_fingerprint,
    build_source_job_key,
    parse_url_parts,
    payload_hash,
)
from job_engine.models import JobEventType, JobStatus, NormalizedJob


def _job(**overrides):
    fields = {
        "company": "Acme",
        "title": "Software Engineer",
        "location": "Toronto",
        "post_date": "2026-10-18",
        "source": "greenhouse",
        "url": "https://acme.com/jobs/5",
        "jd_text": "Build things.",
    }
    fields.update(overrides)
    return NormalizedJob(**fields)


# --- Fingerprints ---


def test_fingerprint_ignores_www_query_and_trailing_slash():
    a = build_fingerprint(_job(url="https://www.acme.com/jobs/5?x=1"))
    b = build_fingerprint(_job(url="https://acme.com/jobs/5/"))
    assert a == b
    assert a.value == "url:acme.com/jobs/5"
    assert a.reason == URL_REASON


def test_fingerprint_ignores_fragment_and_host_case():
    fp = build_fingerprint(_job(url="https://WWW.Acme.com/jobs/5#apply"))
    assert fp.value == "url:acme.com/jobs/5"


def test_fingerprint_falls_back_to_composite_without_url():
    fp = build_fingerprint(
        _job(url=None, company=" ACME ", title="Software Engineer ", post_date="2026-10-18T09:30:00Z")
    )
    assert fp.value == "composite:acme|software engineer|toronto|2026-10-18"
    assert fp.reason == COMPOSITE_REASON


def test_fingerprint_falls_back_when_url_has_no_path():
    fp = build_fingerprint(_job(url="https://acme.com/"))
    assert fp.value.startswith("composite:")


def test_fingerprint_falls_back_on_unparseable_url():
    assert parse_url_parts("not a url") is None
    assert parse_url_parts("http://[::1") is None
    assert build_fingerprint(_job(url="not a url")).reason == COMPOSITE_REASON


def test_fingerprint_is_stable_for_identical_inputs():
    assert build_fingerprint(_job()) == build_fingerprint(_job())


def test_source_job_key_prefers_url():
    assert build_source_job_key(_job()) == "greenhouse:https://acme.com/jobs/5"
    assert (
        build_source_job_key(_job(url=None, company="Acme", post_date=None))
        == "greenhouse:acme|software engineer|"
    )


def test_payload_hash_changes_with_content():
    assert payload_hash(_job()) == payload_hash(_job())
    assert payload_hash(_job()) != payload_hash(_job(jd_text="Different."))


# --- Dedup engine ---


def test_resolve_inserts_then_dedupes(db):
    engine = DedupEngine(db)
    first = engine.resolve(_job(), run_id=1)
    second = engine.resolve(_job(), run_id=2)

    assert first.deduped is False
    assert second.deduped is True
    assert first.job_id == second.job_id
    assert db.count_jobs() == 1

    record = db.get_job(first.job_id)
    assert record.last_run_id == 2
    assert record.canonical_fingerprint == "url:acme.com/jobs/5"
    assert record.dedup_reason == URL_REASON


def test_resolve_never_reverts_approved_status(db):
    engine = DedupEngine(db)
    first = engine.resolve(_job(), run_id=1)
    db.set_job_status(first.job_id, JobStatus.APPROVED)

    second = engine.resolve(_job(), run_id=2, candidate_status=JobStatus.INBOX)

    assert second.previous_status == JobStatus.APPROVED
    assert db.get_job(first.job_id).status == JobStatus.APPROVED


def test_resolve_moves_non_terminal_status(db):
    engine = DedupEngine(db)
    first = engine.resolve(_job(), run_id=1, candidate_status=JobStatus.INBOX)
    engine.resolve(_job(), run_id=2, candidate_status=JobStatus.FILTERED)
    assert db.get_job(first.job_id).status == JobStatus.FILTERED


def test_resolve_matches_url_variants(db):
    engine = DedupEngine(db)
    first = engine.resolve(_job(url="https://www.acme.com/jobs/5?utm=x"))
    second = engine.resolve(_job(url="https://acme.com/jobs/5/"))
    assert second.deduped is True
    assert second.job_id == first.job_id


def test_resolve_matches_composite_when_url_changes(db):
    engine = DedupEngine(db)
    first = engine.resolve(_job(url=None))
    second = engine.resolve(_job(url="https://acme.com/jobs/5"))

    assert second.deduped is True
    assert second.job_id == first.job_id
    # The row picks up the better identity
    assert db.get_job(first.job_id).canonical_fingerprint == "url:acme.com/jobs/5"


def test_resolve_appends_observation_and_event_every_time(db):
    engine = DedupEngine(db)
    result = engine.resolve(_job(), run_id=1)
    engine.resolve(_job(source="lever"), run_id=2)

    observations = db.list_source_observations(result.job_id)
    assert [o["source"] for o in observations] == ["greenhouse", "lever"]
    assert observations[0]["source_job_key"] == "greenhouse:https://acme.com/jobs/5"

    events = [e["event_type"] for e in db.list_job_events(result.job_id)]
    assert events == [JobEventType.INGESTED, JobEventType.DEDUPED]


def test_first_seen_is_kept_while_last_seen_refreshes(db):
    engine = DedupEngine(db)
    result = engine.resolve(_job(), run_id=1)
    db.connection.execute(
        "UPDATE job_queue SET first_seen_at = '2026-01-01 00:00:00', "
        "last_seen_at = '2026-01-01 00:00:00' WHERE id = ?",
        (result.job_id,),
    )
    engine.resolve(_job(), run_id=2)

    record = db.get_job(result.job_id)
    assert record.first_seen_at == "2026-01-01 00:00:00"
    assert record.last_seen_at != "2026-01-01 00:00:00"


def test_resolve_recovers_from_insert_race(db):
    """A concurrent writer inserting first turns our insert into an update."""
    engine = DedupEngine(db)
    job = _job()
    real_insert = db.insert_job

    def racing_insert(fields, status, run_id):
        real_insert(fields, status, run_id)
        raise sqlite3.IntegrityError("UNIQUE constraint failed: job_queue.canonical_fingerprint")

    with patch.object(db, "insert_job", side_effect=racing_insert):
        result = engine.resolve(job, run_id=1)

    assert result.deduped is True
    assert db.count_jobs() == 1


def test_resolve_keeps_keys_when_refresh_collides_with_another_row(db):
    """Refreshing a match onto identity keys another row holds still records the sighting."""
    engine = DedupEngine(db)
    with_url = engine.resolve(_job(url="https://acme.com/jobs/1", location="Toronto"), run_id=1)
    without_url = engine.resolve(_job(url=None, location="Remote"), run_id=1)
    assert with_url.job_id != without_url.job_id

    result = engine.resolve(
        _job(url="https://acme.com/jobs/1", location="Remote", source="lever", jd_text="Updated."),
        run_id=2,
    )

    assert result.deduped is True
    assert result.job_id == with_url.job_id
    assert db.count_jobs() == 2

    record = db.get_job(with_url.job_id)
    assert record.location == "Toronto"
    assert record.source == "lever"
    assert record.jd_text == "Updated."
    assert record.last_run_id == 2

    observations = db.list_source_observations(with_url.job_id)
    assert [o["source"] for o in observations] == ["greenhouse", "lever"]
