import json
import logging
from pathlib import Path
from typing import Any

from job_engine.models import Profile

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = Profile(
    target_roles=[
        "software engineer",
        "backend engineer",
        "full stack engineer",
        "new grad",
        "entry level",
    ],
    location_preferences=["toronto", "ontario", "canada", "remote"],
    remote_policy="hybrid_or_remote",
    hard_exclusions=["senior", "staff", "principal", "manager", "director"],
)


def normalize_list(value: Any) -> list[str]:
    """Trim and lower-case every entry, dropping empties. Non-lists become []."""
    if not isinstance(value, list):
        return []
    return [str(v).strip().lower() for v in value if v is not None and str(v).strip()]


def load_profile(path: str | Path) -> Profile:
    """
    Load the candidate profile from a JSON file.

    A missing file yields the default profile. An unparseable file is logged
    and also yields the default profile. Empty role, location and exclusion
    lists fall back to their defaults; skill lists may legitimately be empty.
    """
    path = Path(path)
    if not path.exists():
        return DEFAULT_PROFILE.model_copy(deep=True)

    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to parse profile config {path}: {e}")
        return DEFAULT_PROFILE.model_copy(deep=True)

    if not isinstance(parsed, dict):
        logger.warning(f"Profile config {path} is not a JSON object, using defaults")
        return DEFAULT_PROFILE.model_copy(deep=True)

    return Profile(
        target_roles=normalize_list(parsed.get("target_roles"))
        or list(DEFAULT_PROFILE.target_roles),
        must_have_skills=normalize_list(parsed.get("must_have_skills")),
        nice_to_have_skills=normalize_list(parsed.get("nice_to_have_skills")),
        location_preferences=normalize_list(parsed.get("location_preferences"))
        or list(DEFAULT_PROFILE.location_preferences),
        remote_policy=str(parsed.get("remote_policy") or DEFAULT_PROFILE.remote_policy).lower(),
        hard_exclusions=normalize_list(parsed.get("hard_exclusions"))
        or list(DEFAULT_PROFILE.hard_exclusions),
    )
