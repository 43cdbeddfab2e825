"""Cron tool for scheduling reminders and recurring tasks."""

from contextvars import ContextVar
from datetime import datetime
from typing import Any

from crabgate.agent.tools.base import Tool
from crabgate.cron.service import CronService
from crabgate.cron.types import CronSchedule
from crabgate.errors import ValidationError


class CronTool(Tool):
    """Tool to schedule, list and remove recurring agent tasks."""

    def __init__(self, cron_service: CronService):
        self._cron = cron_service
        # Task-local, so concurrent sessions each see their own conversation
        self._origin: ContextVar[tuple[str, str]] = ContextVar(f"cron_origin_{id(self)}", default=("", ""))

    def set_context(self, channel: str, chat_id: str) -> None:
        """Set the conversation that new jobs deliver to."""
        self._origin.set((channel, chat_id))

    @property
    def name(self) -> str:
        return "cron"

    @property
    def description(self) -> str:
        return (
            "Schedule recurring tasks. Actions: add, list, remove. "
            "Use every_seconds for fixed intervals or cron_expr (5-field, e.g. '0 9 * * *') for calendar times."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["add", "list", "remove"],
                    "description": "Action to perform",
                },
                "message": {
                    "type": "string",
                    "description": "Instruction the agent runs when the job fires (for add)",
                },
                "name": {
                    "type": "string",
                    "description": "Optional short job name (for add)",
                },
                "every_seconds": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Interval in seconds (for recurring tasks)",
                },
                "cron_expr": {
                    "type": "string",
                    "description": "Cron expression like '0 9 * * *'",
                },
                "deliver": {
                    "type": "boolean",
                    "description": "Send the result back to this conversation (default true)",
                },
                "job_id": {
                    "type": "string",
                    "description": "Job ID (for remove)",
                },
            },
            "required": ["action"],
        }

    async def execute(
        self,
        action: str,
        message: str = "",
        name: str | None = None,
        every_seconds: int | None = None,
        cron_expr: str | None = None,
        deliver: bool = True,
        job_id: str | None = None,
        **kwargs: Any,
    ) -> str:
        if action == "add":
            return self._add_job(message, name, every_seconds, cron_expr, deliver)
        if action == "list":
            return self._list_jobs()
        if action == "remove":
            return self._remove_job(job_id)
        raise ValidationError(f"Unknown action: {action}")

    def _add_job(
        self,
        message: str,
        name: str | None,
        every_seconds: int | None,
        cron_expr: str | None,
        deliver: bool,
    ) -> str:
        if not message:
            raise ValidationError("message is required for add")
        if (every_seconds is None) == (not cron_expr):
            raise ValidationError("Provide exactly one of every_seconds or cron_expr")
        channel, chat_id = self._origin.get()
        if deliver and not (channel and chat_id):
            raise ValidationError("No conversation context to deliver to")

        if every_seconds is not None:
            schedule = CronSchedule.every(every_seconds)
        else:
            schedule = CronSchedule.cron(cron_expr)

        job = self._cron.add_job(
            name=name or message[:30],
            schedule=schedule,
            message=message,
            deliver=deliver,
            channel=channel or None,
            to=chat_id or None,
        )
        return f"Created job '{job.name}' (id: {job.id}, {schedule.describe()})"

    def _list_jobs(self) -> str:
        jobs = self._cron.list_jobs(include_disabled=True)
        if not jobs:
            return "No scheduled jobs."
        lines = []
        for j in jobs:
            status = "enabled" if j.enabled else "disabled"
            next_run = (
                datetime.fromtimestamp(j.state.next_run_at_ms / 1000).strftime("%Y-%m-%d %H:%M")
                if j.state.next_run_at_ms else "-"
            )
            lines.append(f"- {j.name} (id: {j.id}, {j.schedule.describe()}, {status}, next: {next_run})")
        return "Scheduled jobs:\n" + "\n".join(lines)

    def _remove_job(self, job_id: str | None) -> str:
        if not job_id:
            raise ValidationError("job_id is required for remove")
        if self._cron.remove_job(job_id):
            return f"Removed job {job_id}"
        return f"Job {job_id} not found"
