from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from job_engine.exceptions import UnknownSourceError
from job_engine.models import NormalizedJob


class SourceBatch(BaseModel):
    """Adapter output when it has something to report besides jobs."""

    jobs: list[NormalizedJob] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)


# fetch_all(targets, **options) -> jobs. Must return [] rather than raise.
FetchAll = Callable[..., Awaitable[list[NormalizedJob] | SourceBatch]]

SOURCE_REGISTRY: dict[str, FetchAll] = {}


def register_source(name: str) -> Callable[[FetchAll], FetchAll]:
    """Register an adapter's fetch_all under a name usable in SourceTask.adapter."""

    def decorator(fetch_all: FetchAll) -> FetchAll:
        SOURCE_REGISTRY[name] = fetch_all
        return fetch_all

    return decorator


@dataclass
class SourceTask:
    """One adapter invocation within a run."""

    name: str
    adapter: str
    targets: list[str]
    options: dict[str, Any] = field(default_factory=dict)

    async def run(self) -> SourceBatch:
        fetch_all = SOURCE_REGISTRY.get(self.adapter)
        if fetch_all is None:
            raise UnknownSourceError(f"No source adapter registered as '{self.adapter}'")
        result = await fetch_all(self.targets, **self.options)
        if isinstance(result, SourceBatch):
            return result
        return SourceBatch(jobs=list(result))
