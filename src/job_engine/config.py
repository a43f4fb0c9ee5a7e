import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from job_engine.models import GateOptions, LlmMode, LlmOptions

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

_ENV_DEFAULTS: dict[str, str] = {
    "DB_PATH": "data/job-engine.db",
    "SCRAPE_INTERVAL": "360",
    "BATCH_POLL_INTERVAL": "10",
    "PROFILE_PATH": "config/profile.json",
    "SOURCES_PATH": "config/sources.json",
    "QUALITY_MIN_INBOX_SCORE": "55",
    "QUALITY_BORDERLINE_MIN": "35",
    "QUALITY_BORDERLINE_MAX": "54",
    "QUALITY_ALLOW_UNKNOWN_LOCATION": "false",
    "LLM_ENABLED": "false",
    "LLM_ENDPOINT": "https://api.openai.com/v1/chat/completions",
    "LLM_MODEL": "gpt-4o-mini",
    "LLM_BATCH_MODEL": "",
    "LLM_DAILY_CAP": "120",
    "LLM_MAX_PER_RUN": "30",
    "LLM_TIMEOUT_MS": "15000",
    "LLM_ADMIT_THRESHOLD": "65",
    "LLM_BATCH_THRESHOLD": "20",
    "LLM_BATCH_REALTIME_FALLBACK": "5",
    "LLM_BATCH_COMPLETION_WINDOW": "24h",
    "LLM_BATCH_OPTIMISTIC_ADMIT": "true",
    "LLM_MODE": "auto",
    "SERPAPI_KEY": "",
    "SERPAPI_LOCATION": "Toronto, ON, Canada",
    "SERPAPI_QUERIES": "",
    "SERPAPI_MONTHLY_QUERY_CAP": "250",
    "SERPAPI_BUDGET_SAFETY_RESERVE": "10",
    "SERPAPI_FETCH_INTERVAL_MIN": "1440",
    "GREENHOUSE_BOARDS": "",
    "LEVER_BOARDS": "",
    "BIGTECH_GREENHOUSE_BOARDS": "",
    "BIGTECH_LEVER_BOARDS": "",
    "BIGTECH_LOCATIONS": "",
    "FRESHNESS_HOURS": "72",
    "ALLOW_UNKNOWN_DATE": "true",
    "PD_WEBHOOK_URL": "",
    "PD_WEBHOOK_TOKEN": "",
}


class SerpApiBudgetOptions(BaseModel):
    monthly_cap: int = 250
    reserve: int = 10
    interval_minutes: int = 1440


class SourceSettings(BaseModel):
    """Board lists and fetch options per run family."""

    greenhouse_boards: list[str] = Field(default_factory=list)
    lever_boards: list[str] = Field(default_factory=list)
    bigtech_greenhouse_boards: list[str] = Field(default_factory=list)
    bigtech_lever_boards: list[str] = Field(default_factory=list)
    bigtech_locations: list[str] = Field(default_factory=list)
    serpapi_key: str = ""
    serpapi_location: str = "Toronto, ON, Canada"
    serpapi_queries: list[str] = Field(default_factory=list)
    serpapi_budget: SerpApiBudgetOptions = Field(default_factory=SerpApiBudgetOptions)
    freshness_hours: int = 72
    allow_unknown_date: bool = True


def get_config() -> dict[str, str]:
    """
    Load raw configuration values from environment variables.
    Called lazily to avoid crashing on import.
    """
    config = {key: os.getenv(key, default) for key, default in _ENV_DEFAULTS.items()}
    config["LLM_API_KEY"] = os.getenv("OPENAI_API_KEY") or os.getenv("LLM_API_KEY", "")
    return config


def load_sources_config(path: str | Path) -> dict[str, Any]:
    """Read the optional sources.json overlay. Missing or broken files yield {}."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to parse sources config {path}: {e}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def normalize_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return []


def get_list_setting(env_value: str | None, config_value: Any, fallback: Any = None) -> list[str]:
    """Resolve a list setting: env (comma-separated) wins, then the config file, then fallback."""
    if isinstance(env_value, str) and env_value.strip():
        return normalize_list(env_value)
    from_config = normalize_list(config_value)
    if from_config:
        return from_config
    return normalize_list(fallback or [])


def parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_positive_int(name: str, raw: str) -> int:
    """Parse a positive integer setting, naming the variable in the error."""
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be a positive integer, got '{raw}'") from None
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value}")
    return value


def parse_non_negative_int(name: str, raw: str) -> int:
    """Like parse_positive_int, but zero is allowed. An empty value means 0."""
    if not raw.strip():
        return 0
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be a non-negative integer, got '{raw}'") from None
    if value < 0:
        raise ValueError(f"{name} must be a non-negative integer, got {value}")
    return value


class _Config:
    """Lazy configuration that only validates when values are actually accessed."""

    def __init__(self) -> None:
        self._config: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._config is None:
            self._config = get_config()
        return self._config

    def _int(self, name: str) -> int:
        return parse_positive_int(name, self._load()[name])

    @property
    def DB_PATH(self) -> str:
        return self._load()["DB_PATH"]

    @property
    def SCRAPE_INTERVAL(self) -> int:
        """Run interval in minutes for the scheduled loop."""
        return self._int("SCRAPE_INTERVAL")

    @property
    def BATCH_POLL_INTERVAL(self) -> int:
        """Batch polling interval in minutes, independent of the run interval."""
        return self._int("BATCH_POLL_INTERVAL")

    @property
    def PROFILE_PATH(self) -> str:
        return self._load()["PROFILE_PATH"]

    @property
    def SOURCES_PATH(self) -> str:
        return self._load()["SOURCES_PATH"]

    @property
    def GATE_OPTIONS(self) -> GateOptions:
        cfg = self._load()
        return GateOptions(
            min_inbox_score=self._int("QUALITY_MIN_INBOX_SCORE"),
            borderline_min=self._int("QUALITY_BORDERLINE_MIN"),
            borderline_max=self._int("QUALITY_BORDERLINE_MAX"),
            allow_unknown_location=parse_bool(cfg["QUALITY_ALLOW_UNKNOWN_LOCATION"]),
        )

    @property
    def LLM_OPTIONS(self) -> LlmOptions:
        cfg = self._load()
        return LlmOptions(
            enabled=parse_bool(cfg["LLM_ENABLED"]),
            api_key=cfg["LLM_API_KEY"],
            endpoint=cfg["LLM_ENDPOINT"],
            model=cfg["LLM_MODEL"],
            batch_model=cfg["LLM_BATCH_MODEL"] or None,
            daily_cap=self._int("LLM_DAILY_CAP"),
            max_per_run=self._int("LLM_MAX_PER_RUN"),
            timeout_ms=self._int("LLM_TIMEOUT_MS"),
            admit_threshold=self._int("LLM_ADMIT_THRESHOLD"),
            batch_threshold=self._int("LLM_BATCH_THRESHOLD"),
            batch_realtime_fallback_count=parse_non_negative_int(
                "LLM_BATCH_REALTIME_FALLBACK", cfg["LLM_BATCH_REALTIME_FALLBACK"]
            ),
            batch_completion_window=cfg["LLM_BATCH_COMPLETION_WINDOW"],
            batch_optimistic_admit=parse_bool(cfg["LLM_BATCH_OPTIMISTIC_ADMIT"]),
        )

    @property
    def LLM_MODE(self) -> LlmMode:
        raw = self._load()["LLM_MODE"].strip().lower()
        try:
            return LlmMode(raw)
        except ValueError:
            raise ValueError(
                f"LLM_MODE must be one of realtime, batch, auto, got '{raw}'"
            ) from None

    @property
    def SOURCE_SETTINGS(self) -> SourceSettings:
        cfg = self._load()
        file_cfg = load_sources_config(cfg["SOURCES_PATH"])
        return SourceSettings(
            greenhouse_boards=get_list_setting(
                cfg["GREENHOUSE_BOARDS"], file_cfg.get("greenhouse_boards")
            ),
            lever_boards=get_list_setting(cfg["LEVER_BOARDS"], file_cfg.get("lever_boards")),
            bigtech_greenhouse_boards=get_list_setting(
                cfg["BIGTECH_GREENHOUSE_BOARDS"], file_cfg.get("bigtech_greenhouse_boards")
            ),
            bigtech_lever_boards=get_list_setting(
                cfg["BIGTECH_LEVER_BOARDS"], file_cfg.get("bigtech_lever_boards")
            ),
            bigtech_locations=[
                loc.lower()
                for loc in get_list_setting(
                    cfg["BIGTECH_LOCATIONS"], file_cfg.get("bigtech_locations")
                )
            ],
            serpapi_key=cfg["SERPAPI_KEY"],
            serpapi_location=cfg["SERPAPI_LOCATION"],
            serpapi_queries=get_list_setting(
                cfg["SERPAPI_QUERIES"], file_cfg.get("serpapi_queries")
            ),
            serpapi_budget=SerpApiBudgetOptions(
                monthly_cap=self._int("SERPAPI_MONTHLY_QUERY_CAP"),
                reserve=self._int("SERPAPI_BUDGET_SAFETY_RESERVE"),
                interval_minutes=self._int("SERPAPI_FETCH_INTERVAL_MIN"),
            ),
            freshness_hours=self._int("FRESHNESS_HOURS"),
            allow_unknown_date=parse_bool(cfg["ALLOW_UNKNOWN_DATE"]),
        )

    @property
    def PD_WEBHOOK_URL(self) -> str:
        return self._load()["PD_WEBHOOK_URL"]

    @property
    def PD_WEBHOOK_TOKEN(self) -> str:
        return self._load()["PD_WEBHOOK_TOKEN"]


_cfg = _Config()

# Module-level type declarations for mypy.
# The actual values come from __getattr__ below.
DB_PATH: str
SCRAPE_INTERVAL: int
BATCH_POLL_INTERVAL: int
PROFILE_PATH: str
SOURCES_PATH: str
GATE_OPTIONS: GateOptions
LLM_OPTIONS: LlmOptions
LLM_MODE: LlmMode
SOURCE_SETTINGS: SourceSettings
PD_WEBHOOK_URL: str
PD_WEBHOOK_TOKEN: str

_EXPORTED = frozenset(
    {
        "DB_PATH",
        "SCRAPE_INTERVAL",
        "BATCH_POLL_INTERVAL",
        "PROFILE_PATH",
        "SOURCES_PATH",
        "GATE_OPTIONS",
        "LLM_OPTIONS",
        "LLM_MODE",
        "SOURCE_SETTINGS",
        "PD_WEBHOOK_URL",
        "PD_WEBHOOK_TOKEN",
    }
)


# Module-level lazy access using __getattr__ (PEP 562).
# `from job_engine.config import DB_PATH` resolves the value on first access,
# not at import time.
def __getattr__(name: str) -> Any:
    if name in _EXPORTED:
        return getattr(_cfg, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
