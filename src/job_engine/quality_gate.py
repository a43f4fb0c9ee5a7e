import re
import unicodedata

from job_engine.models import (
    FitLabel,
    GateOptions,
    GateResult,
    NormalizedJob,
    Profile,
    QualityBucket,
)

MIN_YEARS_KEYWORD = re.compile(r"^(\d+)\s*\+\s*(?:years?|yrs?)$")
YEARS_MENTION = re.compile(r"\b(\d{1,2})\s*\+?\s*(?:years?|yrs?)\b", re.IGNORECASE)


class QualityGate:
    """
    Deterministic admission rules evaluated before any paid classification.

    Scores a posting against the profile's target roles, skills and
    location preferences. A hard exclusion rejects outright. Otherwise the
    score lands in one of three bands: admitted, borderline (escalated to
    the LLM) or filtered.

    Handles Unicode stylized text by normalizing to NFKD form before matching.
    """

    def __init__(self, profile: Profile, options: GateOptions | None = None):
        self.profile = profile
        self.options = options or GateOptions()
        self._patterns: dict[str, re.Pattern[str]] = {}

    @staticmethod
    def normalize_text(text: str) -> str:
        return unicodedata.normalize("NFKD", text).lower()

    def _pattern(self, keyword: str) -> re.Pattern[str]:
        pattern = self._patterns.get(keyword)
        if pattern is None:
            pattern = re.compile(r"\b" + re.escape(keyword) + r"\b", re.IGNORECASE)
            self._patterns[keyword] = pattern
        return pattern

    def count_matches(self, text: str, keyword: str) -> int:
        if not text or not keyword:
            return 0
        return len(self._pattern(keyword).findall(text))

    @staticmethod
    def parse_min_years(keyword: str) -> int | None:
        """'8+ years' -> 8; anything else -> None."""
        match = MIN_YEARS_KEYWORD.match(keyword.strip().lower())
        return int(match.group(1)) if match else None

    @staticmethod
    def has_min_years(text: str, min_years: int) -> bool:
        return any(int(m.group(1)) >= min_years for m in YEARS_MENTION.finditer(text))

    def is_hard_excluded(self, text: str, keyword: str) -> bool:
        min_years = self.parse_min_years(keyword)
        if min_years is not None:
            return self.has_min_years(text, min_years)
        return self.count_matches(text, keyword) > 0

    def evaluate(self, job: NormalizedJob) -> GateResult:
        opts = self.options
        text = self.normalize_text(f"{job.title or ''}\n{job.jd_text or ''}")
        location = (job.location or "").lower()
        reason_codes: list[str] = []
        score = 0

        hard_rejected = False
        for keyword in self.profile.hard_exclusions:
            if self.is_hard_excluded(text, keyword):
                reason_codes.append(f"hard_exclusion:{keyword}")
                hard_rejected = True

        role_hits = 0
        for role in self.profile.target_roles:
            count = self.count_matches(text, role)
            if count:
                role_hits += count
                score += opts.role_weight
                reason_codes.append(f"role_match:{role}")

        must_hits = 0
        for skill in self.profile.must_have_skills:
            if self.count_matches(text, skill):
                must_hits += 1
                score += opts.must_have_weight
                reason_codes.append(f"must_skill:{skill}")

        for skill in self.profile.nice_to_have_skills:
            if self.count_matches(text, skill):
                score += opts.nice_to_have_weight
                reason_codes.append(f"nice_skill:{skill}")

        if not location:
            if opts.allow_unknown_location:
                score += opts.unknown_location_bonus
                reason_codes.append("location:unknown_allowed")
            elif opts.unknown_location_penalty:
                score -= opts.unknown_location_penalty
                reason_codes.append("location:unknown")
        elif any(pref in location for pref in self.profile.location_preferences):
            score += opts.location_bonus
            reason_codes.append("location:preferred")
        else:
            score -= opts.location_penalty
            reason_codes.append("location:mismatch")

        if role_hits == 0:
            score -= opts.no_role_penalty
            reason_codes.append("role:no_match")

        if self.profile.must_have_skills and must_hits == 0:
            reason_codes.append("must_skill:none")

        if hard_rejected:
            return GateResult(
                fit_score=max(0, score - opts.hard_exclusion_malus),
                fit_label=FitLabel.LOW,
                quality_bucket=QualityBucket.FILTERED,
                admitted_to_inbox=False,
                needs_llm=False,
                reason_codes=reason_codes,
            )

        if score >= opts.min_inbox_score:
            return GateResult(
                fit_score=score,
                fit_label=FitLabel.HIGH,
                quality_bucket=QualityBucket.HIGH,
                admitted_to_inbox=True,
                needs_llm=False,
                reason_codes=reason_codes,
            )

        if opts.borderline_min <= score <= opts.borderline_max:
            return GateResult(
                fit_score=score,
                fit_label=FitLabel.MEDIUM,
                quality_bucket=QualityBucket.BORDERLINE,
                admitted_to_inbox=False,
                needs_llm=True,
                reason_codes=reason_codes,
            )

        return GateResult(
            fit_score=max(0, score),
            fit_label=FitLabel.LOW,
            quality_bucket=QualityBucket.FILTERED,
            admitted_to_inbox=False,
            needs_llm=False,
            reason_codes=reason_codes,
        )


def evaluate(job: NormalizedJob, profile: Profile, options: GateOptions | None = None) -> GateResult:
    return QualityGate(profile, options).evaluate(job)
