import json
import os

import pytest

# Set environment variables for tests before any imports happen
os.environ["DB_PATH"] = ":memory:"
os.environ["PROFILE_PATH"] = "tests/does-not-exist/profile.json"
os.environ["SOURCES_PATH"] = "tests/does-not-exist/sources.json"
os.environ["LLM_ENABLED"] = "false"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("LLM_API_KEY", None)

from job_engine.db import Database  # noqa: E402
from job_engine.models import GateOptions, LlmOptions, NormalizedJob, Profile  # noqa: E402


@pytest.fixture
def db():
    """In-memory database, closed after the test."""
    with Database(db_path=":memory:") as test_db:
        yield test_db


@pytest.fixture
def profile():
    """A new-grad backend profile used across gate and orchestrator tests."""
    return Profile(
        target_roles=["software engineer", "backend engineer", "new grad"],
        must_have_skills=["node", "sql"],
        nice_to_have_skills=["react"],
        location_preferences=["toronto", "canada", "remote"],
        hard_exclusions=["senior", "staff", "principal", "manager"],
    )


@pytest.fixture
def gate_options():
    return GateOptions()


@pytest.fixture
def llm_options():
    """LLM enabled with a fake key; no request leaves the test process."""
    return LlmOptions(
        enabled=True,
        api_key="test-key",
        endpoint="https://llm.test/v1/chat/completions",
        model="gpt-test",
        daily_cap=5,
        max_per_run=3,
        batch_threshold=3,
        batch_realtime_fallback_count=1,
    )


@pytest.fixture
def strong_job():
    """Clears the inbox threshold on rules alone."""
    return NormalizedJob(
        company="Acme",
        title="Backend Software Engineer, New Grad",
        location="Toronto, ON, Canada",
        source="greenhouse",
        url="https://boards.greenhouse.io/acme/jobs/1",
        jd_text="Looking for new grad backend engineer with node and sql skills",
        post_date="2026-10-18",
    )


@pytest.fixture
def borderline_job():
    """Lands in the borderline band with default thresholds."""
    return NormalizedJob(
        company="Globex",
        title="Software Engineer",
        location="Toronto, ON",
        source="lever",
        url="https://jobs.lever.co/globex/abc",
        jd_text="Build internal tools in node with a collaborative product team.",
        post_date="2026-10-18",
    )


@pytest.fixture
def senior_job():
    return NormalizedJob(
        company="Initech",
        title="Senior Software Engineer",
        location="Toronto, ON, Canada",
        source="greenhouse",
        url="https://boards.greenhouse.io/initech/jobs/9",
        jd_text="We need a senior engineer with 8+ years experience in node and sql",
    )


def chat_response(payload: dict, prompt_tokens: int = 100, completion_tokens: int = 20) -> dict:
    """Minimal chat-completions response body wrapping a JSON answer."""
    return {
        "choices": [{"message": {"role": "assistant", "content": json.dumps(payload)}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }
