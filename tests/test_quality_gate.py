import pytest

from job_engine.models import FitLabel, GateOptions, NormalizedJob, Profile, QualityBucket
from job_engine.quality_gate import QualityGate, evaluate


def _job(title="Software Engineer", jd_text="", location="Toronto, ON"):
    return NormalizedJob(company="Acme", title=title, jd_text=jd_text, location=location)


@pytest.fixture
def gate(profile, gate_options):
    return QualityGate(profile, gate_options)


# --- Hard exclusions ---


def test_hard_exclusion_rejects_regardless_of_score(gate, senior_job):
    result = gate.evaluate(senior_job)
    assert result.quality_bucket == QualityBucket.FILTERED
    assert result.fit_label == FitLabel.LOW
    assert result.admitted_to_inbox is False
    assert result.needs_llm is False
    assert "hard_exclusion:senior" in result.reason_codes
    assert result.fit_score == 0


def test_hard_exclusion_matches_whole_words_only(profile):
    profile = profile.model_copy(update={"hard_exclusions": ["lead"]})
    gate = QualityGate(profile)
    result = gate.evaluate(_job(jd_text="You will be mislead by nothing. node and sql."))
    assert not any(code.startswith("hard_exclusion") for code in result.reason_codes)


def test_min_years_exclusion_keyword(profile):
    profile = profile.model_copy(update={"hard_exclusions": ["5+ years"]})
    gate = QualityGate(profile)

    excluded = gate.evaluate(_job(jd_text="Requires 7 years of node experience"))
    kept = gate.evaluate(_job(jd_text="Requires 2+ years of node experience"))

    assert "hard_exclusion:5+ years" in excluded.reason_codes
    assert excluded.quality_bucket == QualityBucket.FILTERED
    assert not any(code.startswith("hard_exclusion") for code in kept.reason_codes)


@pytest.mark.parametrize(
    "keyword,expected",
    [("8+ years", 8), ("3 + yrs", 3), ("10+ year", 10), ("senior", None), ("8 years", None)],
)
def test_parse_min_years(keyword, expected):
    assert QualityGate.parse_min_years(keyword) == expected


# --- Scoring bands ---


def test_strong_job_is_admitted(gate, strong_job):
    result = gate.evaluate(strong_job)
    assert result.fit_score == 88
    assert result.fit_label == FitLabel.HIGH
    assert result.quality_bucket == QualityBucket.HIGH
    assert result.admitted_to_inbox is True
    assert result.needs_llm is False
    assert "location:preferred" in result.reason_codes


def test_new_grad_backend_scenario_is_admitted(profile):
    job = NormalizedJob(
        company="Acme",
        title="Backend Software Engineer, New Grad",
        jd_text="node and sql apis",
        location="Toronto, ON",
    )
    result = evaluate(job, profile, GateOptions(min_inbox_score=55))
    assert result.fit_label == FitLabel.HIGH
    assert result.admitted_to_inbox is True


def test_borderline_job_needs_llm(gate, borderline_job):
    result = gate.evaluate(borderline_job)
    assert result.fit_score == 40
    assert result.fit_label == FitLabel.MEDIUM
    assert result.quality_bucket == QualityBucket.BORDERLINE
    assert result.admitted_to_inbox is False
    assert result.needs_llm is True


def test_no_role_match_is_filtered(gate):
    result = gate.evaluate(_job(title="Office Coordinator", jd_text="Scheduling and travel."))
    assert result.quality_bucket == QualityBucket.FILTERED
    assert "role:no_match" in result.reason_codes
    assert "must_skill:none" in result.reason_codes
    assert result.fit_score == 0


def test_raising_inbox_threshold_only_affects_jobs_it_crosses(profile, strong_job, borderline_job):
    """Moving min_inbox_score past one job's score flips that job alone."""
    baseline = GateOptions()
    strong_before = evaluate(strong_job, profile, baseline)
    other_before = evaluate(borderline_job, profile, baseline)
    assert strong_before.admitted_to_inbox is True

    at_score = GateOptions(min_inbox_score=strong_before.fit_score)
    assert evaluate(strong_job, profile, at_score).admitted_to_inbox is True

    above = GateOptions(min_inbox_score=strong_before.fit_score + 1)
    strong_after = evaluate(strong_job, profile, above)
    other_after = evaluate(borderline_job, profile, above)

    assert strong_after.fit_score == strong_before.fit_score
    assert strong_after.admitted_to_inbox is False
    assert other_after.quality_bucket == other_before.quality_bucket
    assert other_after.needs_llm == other_before.needs_llm
    assert other_after.fit_score == other_before.fit_score


def test_role_weight_counts_each_role_once(gate):
    once = gate.evaluate(_job(jd_text=""))
    repeated = gate.evaluate(_job(jd_text="software engineer software engineer"))
    assert once.fit_score == repeated.fit_score


def test_location_mismatch_penalized(gate):
    here = gate.evaluate(_job(jd_text="node sql", location="Toronto"))
    there = gate.evaluate(_job(jd_text="node sql", location="Berlin, Germany"))
    assert here.fit_score - there.fit_score == 20
    assert "location:mismatch" in there.reason_codes


def test_unknown_location_neutral_by_default(gate):
    result = gate.evaluate(_job(jd_text="node sql", location=None))
    assert result.fit_score == 18 + 12 + 12
    assert not any(code.startswith("location:") for code in result.reason_codes)


def test_unknown_location_bonus_when_allowed(profile):
    gate = QualityGate(profile, GateOptions(allow_unknown_location=True))
    result = gate.evaluate(_job(jd_text="node sql", location=None))
    assert result.fit_score == 18 + 12 + 12 + 4
    assert "location:unknown_allowed" in result.reason_codes


def test_unknown_location_penalty_is_configurable(profile):
    gate = QualityGate(profile, GateOptions(unknown_location_penalty=5))
    result = gate.evaluate(_job(jd_text="node sql", location=None))
    assert result.fit_score == 18 + 12 + 12 - 5
    assert "location:unknown" in result.reason_codes


def test_stylized_unicode_title_is_matched(gate):
    # Fullwidth letters decompose to ASCII under NFKD
    result = gate.evaluate(_job(title="Ｓｏｆｔｗａｒｅ Ｅｎｇｉｎｅｅｒ", jd_text="node sql"))
    assert "role_match:software engineer" in result.reason_codes


def test_adding_a_matching_skill_never_lowers_score(profile):
    job = _job(jd_text="node and react")
    before = evaluate(job, profile)
    richer = profile.model_copy(update={"nice_to_have_skills": ["react", "typescript"]})
    after = evaluate(job.model_copy(update={"jd_text": "node and react and typescript"}), richer)
    assert after.fit_score >= before.fit_score


def test_empty_profile_filters_everything():
    result = evaluate(_job(jd_text="node"), Profile())
    assert result.quality_bucket == QualityBucket.FILTERED
    assert "role:no_match" in result.reason_codes


def test_thresholds_are_clamped():
    options = GateOptions(min_inbox_score=0, borderline_min=40, borderline_max=10)
    assert options.min_inbox_score == 1
    assert options.borderline_max == 40
