import hashlib
import json
from typing import Any

from job_engine.models import FitLabel, FitResult, NormalizedJob, Profile

SYSTEM_PROMPT = "You are a strict JSON classifier for job fit. Output JSON only."
CHAT_COMPLETIONS_PATH = "/v1/chat/completions"

MAX_DESCRIPTION_CHARS = 7000
CACHE_KEY_DESCRIPTION_CHARS = 6000
MAX_LIST_ENTRIES = 20


def stable_hash(obj: Any) -> str:
    payload = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def parse_json_safe(text: str | None) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def build_cache_key(job: NormalizedJob, profile: Profile) -> str:
    """Stable key for a (job, profile) pair; the same pair is never classified twice."""
    job_key = stable_hash(
        {
            "title": job.title or "",
            "location": job.location or "",
            "jd_text": (job.jd_text or "")[:CACHE_KEY_DESCRIPTION_CHARS],
            "source": job.source or "",
            "url": job.url or "",
        }
    )
    return f"{job_key}:{stable_hash(profile.model_dump())}"


def build_prompt(job: NormalizedJob, profile: Profile) -> dict[str, Any]:
    return {
        "task": "Classify job fit for candidate profile",
        "rules": "Return strict JSON only",
        "profile": profile.model_dump(),
        "job": {
            "title": job.title or "",
            "company": job.company or "",
            "location": job.location or "",
            "description": (job.jd_text or "")[:MAX_DESCRIPTION_CHARS],
        },
        "output_schema": {
            "fit_label": "high|medium|low",
            "fit_score": "integer 0-100",
            "confidence": "float 0-1",
            "reason_codes": ["short_code"],
            "missing_must_have": ["skill"],
        },
    }


def build_chat_request_body(model: str, prompt: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": model,
        "temperature": 0,
        "response_format": {"type": "json_object"},
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(prompt)},
        ],
    }


def extract_message_content(body: Any) -> str | None:
    """Pull ``choices[0].message.content`` out of a chat-completions response body."""
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


def extract_usage(body: Any) -> tuple[int, int]:
    usage = body.get("usage") if isinstance(body, dict) else None
    if not isinstance(usage, dict):
        return 0, 0
    return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)


def _as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value[:MAX_LIST_ENTRIES]]


def normalize_fit_payload(payload: dict[str, Any], cache_key: str | None = None) -> FitResult:
    """
    Coerce a model answer into a FitResult: label into high/medium/low
    (default low), score clamped to [0, 100], confidence to [0, 1],
    and list fields capped at 20 entries.
    """
    raw_label = str(payload.get("fit_label") or "").strip().lower()
    label = FitLabel(raw_label) if raw_label in {lbl.value for lbl in FitLabel} else FitLabel.LOW
    return FitResult(
        fit_label=label,
        fit_score=max(0, min(100, _as_int(payload.get("fit_score")))),
        confidence=max(0.0, min(1.0, _as_float(payload.get("confidence")))),
        reason_codes=_as_str_list(payload.get("reason_codes")),
        missing_must_have=_as_str_list(payload.get("missing_must_have")),
        cache_key=cache_key,
    )


def is_admitted(fit: FitResult, admit_threshold: int) -> bool:
    return fit.fit_label == FitLabel.HIGH or fit.fit_score >= admit_threshold
