"""Cron types (Pydantic models with camelCase JSON aliases)."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CronSchedule(_Model):
    """Schedule definition for a cron job. Exactly one of every_ms / expr is set."""

    kind: Literal["every", "cron"]
    every_ms: int | None = None
    expr: str | None = None  # standard 5-field cron expression

    @classmethod
    def every(cls, seconds: float) -> "CronSchedule":
        return cls(kind="every", every_ms=int(seconds * 1000))

    @classmethod
    def cron(cls, expr: str) -> "CronSchedule":
        return cls(kind="cron", expr=expr)

    def describe(self) -> str:
        """Human readable form, e.g. 'every 900s' or '0 7 * * *'."""
        if self.kind == "every" and self.every_ms is not None:
            return f"every {self.every_ms // 1000}s"
        return self.expr or "?"


class CronJobState(_Model):
    """Runtime state of a job."""

    next_run_at_ms: int | None = None
    last_run_at_ms: int | None = None
    last_status: Literal["ok", "error"] | None = None
    last_result: str | None = None
    last_error: str | None = None
    run_count: int = 0


class CronJob(_Model):
    """A scheduled job."""

    id: str
    name: str
    schedule: CronSchedule
    message: str
    deliver: bool = False
    channel: str | None = None
    to: str | None = None
    enabled: bool = True
    state: CronJobState = Field(default_factory=CronJobState)
    created_at_ms: int = 0
    updated_at_ms: int = 0


class CronStore(_Model):
    """Persistent store for cron jobs."""

    version: int = 1
    jobs: list[CronJob] = Field(default_factory=list)
