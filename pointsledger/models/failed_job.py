"""Dead-letter: failed ARQ jobs for inspection."""

from typing import Any

from pydantic import Field

from pointsledger.models.base import Entity


class FailedJob(Entity):
    job_name: str
    job_id: str
    args: list[Any] = Field(default_factory=list)
    kwargs: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    retries: int = 0
