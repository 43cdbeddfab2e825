"""Cron service for scheduling agent tasks."""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from croniter import croniter
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from crabgate.bus.events import Envelope
from crabgate.cron.types import CronJob, CronSchedule, CronStore
from crabgate.errors import PersistenceError, ValidationError
from crabgate.utils.helpers import now_ms

if TYPE_CHECKING:
    from crabgate.bus.queue import MessageBus

JobHandler = Callable[[CronJob], Awaitable[str | None]]

_RESULT_MAX_CHARS = 2000


def validate_schedule(schedule: CronSchedule) -> None:
    """Raise ValidationError unless exactly one schedule field is set and matches the kind."""
    has_every = schedule.every_ms is not None
    has_expr = bool(schedule.expr and schedule.expr.strip())
    if has_every == has_expr:
        raise ValidationError("Exactly one of every_ms or expr must be set")

    if schedule.kind == "every":
        if not has_every:
            raise ValidationError("Schedule kind 'every' requires every_ms")
        if schedule.every_ms <= 0:
            raise ValidationError(f"every_ms must be positive, got {schedule.every_ms}")
    else:
        if not has_expr:
            raise ValidationError("Schedule kind 'cron' requires expr")
        # Standard 5-field dialect only (no seconds / year fields)
        if len(schedule.expr.split()) != 5 or not croniter.is_valid(schedule.expr):
            raise ValidationError(f"Invalid cron expression: {schedule.expr!r}")


def compute_next_run(schedule: CronSchedule, after_ms: int) -> int:
    """
    Next run time strictly after ``after_ms``.

    "every" schedules are relative to the reference time; cron expressions are
    evaluated in local time.
    """
    if schedule.kind == "every":
        return after_ms + schedule.every_ms

    base = datetime.fromtimestamp(after_ms / 1000).astimezone()
    itr = croniter(schedule.expr, base)
    next_ms = int(itr.get_next(datetime).timestamp() * 1000)
    while next_ms <= after_ms:
        next_ms = int(itr.get_next(datetime).timestamp() * 1000)
    return next_ms


class CronService:
    """
    Service for managing and executing scheduled jobs.

    Jobs live in memory and are written through to a JSON file on every
    mutation. A tick loop runs due jobs on a bounded set of tasks; a job is
    never run twice at the same time. Management calls are synchronous and
    serialized with post-run state updates by a single store lock.
    """

    def __init__(
        self,
        store_path: Path,
        on_job: JobHandler | None = None,
        bus: MessageBus | None = None,
        tick_interval_s: float = 1.0,
        max_concurrent_jobs: int = 4,
        clock: Callable[[], int] | None = None,
    ):
        self.store_path = store_path
        self.on_job = on_job
        self.bus = bus
        self.tick_interval_s = tick_interval_s
        self.max_concurrent_jobs = max_concurrent_jobs
        self._clock = clock or now_ms
        self._lock = threading.RLock()
        self._semaphore = asyncio.Semaphore(max_concurrent_jobs)
        self._in_flight: dict[str, asyncio.Task] = {}
        self._running = False
        self._task: asyncio.Task | None = None
        self._store = self._load_store()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_store(self) -> CronStore:
        """Load jobs from disk. A missing file is an empty store."""
        if not self.store_path.exists():
            return CronStore()

        try:
            data = json.loads(self.store_path.read_text(encoding="utf-8"))
            store = CronStore.model_validate(data)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            backup = self.store_path.with_suffix(self.store_path.suffix + ".bak")
            logger.warning("Failed to load cron store {} ({}); starting empty, old file kept at {}",
                           self.store_path, e, backup)
            try:
                shutil.copy2(self.store_path, backup)
            except OSError as copy_err:
                logger.error("Could not back up cron store: {}", copy_err)
            return CronStore()

        now = self._clock()
        for job in store.jobs:
            if not job.enabled:
                continue
            try:
                validate_schedule(job.schedule)
            except ValidationError as e:
                logger.error("Cron: job '{}' ({}) has an invalid schedule, disabling it: {}", job.name, job.id, e)
                job.enabled = False
                job.state.next_run_at_ms = None
                job.state.last_status = "error"
                job.state.last_error = f"Invalid schedule: {e}"
                continue
            if job.state.next_run_at_ms is None:
                job.state.next_run_at_ms = compute_next_run(job.schedule, now)
        logger.debug("Loaded {} cron jobs from {}", len(store.jobs), self.store_path)
        return store

    def _save_store(self) -> None:
        """Write the full job set atomically. Raises PersistenceError."""
        data = self._store.model_dump(by_alias=True)
        tmp = self.store_path.with_suffix(self.store_path.suffix + ".tmp")
        try:
            self.store_path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self.store_path)
        except OSError as e:
            raise PersistenceError(f"Failed to write cron store {self.store_path}: {e}") from e

    def _persist(self) -> None:
        # The next mutation rewrites the whole set, so a failed write is retried then
        try:
            self._save_store()
        except PersistenceError as e:
            logger.error("{}", e)

    # ------------------------------------------------------------------
    # Management API
    # ------------------------------------------------------------------

    def _find(self, job_id: str) -> CronJob | None:
        return next((j for j in self._store.jobs if j.id == job_id), None)

    def _new_id(self) -> str:
        ids = {j.id for j in self._store.jobs}
        while True:
            job_id = uuid.uuid4().hex[:8]
            if job_id not in ids:
                return job_id

    def add_job(
        self,
        name: str,
        schedule: CronSchedule,
        message: str,
        deliver: bool = False,
        channel: str | None = None,
        to: str | None = None,
    ) -> CronJob:
        """
        Add a new job.

        Jobs are not deduplicated by name; callers wanting an upsert should
        look up by name and remove the stale job first.

        Raises:
            ValidationError: Empty name/message or a malformed schedule.
        """
        if not name or not name.strip():
            raise ValidationError("Job name is required")
        if not message or not message.strip():
            raise ValidationError("Job message is required")
        validate_schedule(schedule)

        with self._lock:
            now = self._clock()
            job = CronJob(
                id=self._new_id(),
                name=name.strip(),
                schedule=schedule.model_copy(),
                message=message,
                deliver=deliver,
                channel=channel or None,
                to=to or None,
                enabled=True,
                created_at_ms=now,
                updated_at_ms=now,
            )
            job.state.next_run_at_ms = compute_next_run(job.schedule, now)
            self._store.jobs.append(job)
            self._persist()

        logger.info("Cron: added job '{}' ({}), {}", job.name, job.id, job.schedule.describe())
        return job.model_copy(deep=True)

    def remove_job(self, job_id: str) -> bool:
        """Remove a job by ID. Returns True if it existed."""
        with self._lock:
            before = len(self._store.jobs)
            self._store.jobs = [j for j in self._store.jobs if j.id != job_id]
            removed = len(self._store.jobs) < before
            if removed:
                self._persist()

        if removed:
            logger.info("Cron: removed job {}", job_id)
        return removed

    def enable_job(self, job_id: str, enabled: bool = True) -> CronJob | None:
        """
        Enable or disable a job. Returns the updated job, or None if not found.

        Raises:
            ValidationError: Enabling a job whose stored schedule is malformed.
        """
        with self._lock:
            job = self._find(job_id)
            if job is None:
                return None

            now = self._clock()
            if enabled and not job.enabled:
                validate_schedule(job.schedule)
                job.state.next_run_at_ms = compute_next_run(job.schedule, now)
            elif not enabled:
                job.state.next_run_at_ms = None
            job.enabled = enabled
            job.updated_at_ms = now
            self._persist()
            snapshot = job.model_copy(deep=True)

        logger.info("Cron: job '{}' {}", snapshot.name, "enabled" if enabled else "disabled")
        return snapshot

    def get_job(self, job_id: str) -> CronJob | None:
        with self._lock:
            job = self._find(job_id)
            return job.model_copy(deep=True) if job else None

    def find_jobs(self, name: str) -> list[CronJob]:
        """All jobs with the given name, in insertion order."""
        with self._lock:
            return [j.model_copy(deep=True) for j in self._store.jobs if j.name == name]

    def list_jobs(self, include_disabled: bool = False) -> list[CronJob]:
        """Snapshot of the jobs, soonest next run first."""
        with self._lock:
            jobs = [
                j.model_copy(deep=True)
                for j in self._store.jobs
                if include_disabled or j.enabled
            ]
        return sorted(jobs, key=lambda j: (j.state.next_run_at_ms is None, j.state.next_run_at_ms or 0))

    def set_on_job(self, handler: JobHandler) -> None:
        """Register the handler invoked for each due job."""
        self.on_job = handler

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the tick loop."""
        if self._running:
            logger.warning("Cron service already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="cron-tick")
        logger.info("Cron service started with {} jobs (tick every {}s)",
                    len(self._store.jobs), self.tick_interval_s)

    def stop(self) -> None:
        """Stop the tick loop and cancel jobs still running."""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        for task in list(self._in_flight.values()):
            if not task.done():
                task.cancel()
        logger.info("Cron service stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        """Main tick loop."""
        while self._running:
            try:
                self._tick()
            except Exception as e:
                logger.error("Cron tick error: {}", e)
            await asyncio.sleep(self.tick_interval_s)

    def _tick(self) -> list[str]:
        """Dispatch every due job that is not already running. Returns dispatched ids."""
        now = self._clock()
        with self._lock:
            due = [
                j.id for j in self._store.jobs
                if j.enabled
                and j.state.next_run_at_ms is not None
                and j.state.next_run_at_ms <= now
                and j.id not in self._in_flight
            ]

        for job_id in due:
            task = asyncio.create_task(self._run_bounded(job_id), name=f"cron:{job_id}")
            self._in_flight[job_id] = task
            task.add_done_callback(lambda t, jid=job_id: self._on_job_done(jid, t))
        return due

    def _on_job_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(job_id) is task:
            del self._in_flight[job_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Cron: job {} crashed: {}", job_id, exc)

    async def _run_bounded(self, job_id: str) -> None:
        async with self._semaphore:
            await self._execute_job(job_id)

    async def _execute_job(self, job_id: str, force: bool = False) -> None:
        """Run one job through the handler and record the outcome."""
        with self._lock:
            job = self._find(job_id)
            # Removed or disabled while waiting for a worker slot
            if job is None or (not job.enabled and not force):
                return
            snapshot = job.model_copy(deep=True)

        started_ms = self._clock()
        logger.info("Cron: executing job '{}' ({})", snapshot.name, snapshot.id)

        result: str | None = None
        error: str | None = None
        try:
            if self.on_job is None:
                logger.warning("Cron: no handler set, job '{}' skipped", snapshot.name)
            else:
                result = await self.on_job(snapshot)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning("Cron: job '{}' failed: {}", snapshot.name, error)

        with self._lock:
            job = self._find(job_id)
            if job is not None:
                # Work out the next slot before touching state so a bad schedule
                # cannot leave a past next_run behind
                next_run: int | None = None
                schedule_error: str | None = None
                if job.enabled:
                    try:
                        validate_schedule(job.schedule)
                        next_run = compute_next_run(job.schedule, started_ms)
                    except ValueError as e:
                        schedule_error = f"Invalid schedule: {e}"
                        logger.error("Cron: job '{}' has an invalid schedule, disabling it: {}", job.name, e)
                        job.enabled = False

                state = job.state
                state.last_run_at_ms = started_ms
                state.run_count += 1
                state.last_status = "error" if error or schedule_error else "ok"
                state.last_error = error or schedule_error
                state.last_result = None if error else (result or "")[:_RESULT_MAX_CHARS]
                state.next_run_at_ms = next_run
                job.updated_at_ms = self._clock()
                self._persist()

        if error is None:
            logger.info("Cron: job '{}' completed", snapshot.name)
            if snapshot.deliver and result and self.bus is not None:
                await self.bus.publish_outbound(Envelope.outbound(
                    channel=snapshot.channel or "cli",
                    chat_id=snapshot.to or "direct",
                    text=result,
                    session_key=f"cron:{snapshot.id}",
                    sender="cron",
                ))

    async def run_job(self, job_id: str, force: bool = False) -> bool:
        """
        Run a job immediately.

        Args:
            job_id: Job to run.
            force: Run even if the job is disabled.

        Returns:
            True if the job ran; False if unknown, disabled, already running
            or cancelled by ``stop()``.
        """
        with self._lock:
            job = self._find(job_id)
            if job is None or (not job.enabled and not force) or job_id in self._in_flight:
                return False
            # Own task, so stop() cancels the job and not the caller
            task = asyncio.create_task(self._execute_job(job_id, force=force), name=f"cron:{job_id}")
            self._in_flight[job_id] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._in_flight.get(job_id) is task:
                del self._in_flight[job_id]
        if task.cancelled():
            return False
        task.result()
        return True

    def status(self) -> dict[str, Any]:
        """Get service status."""
        with self._lock:
            pending = [
                j.state.next_run_at_ms for j in self._store.jobs
                if j.enabled and j.state.next_run_at_ms is not None
            ]
            return {
                "enabled": self._running,
                "jobs": len(self._store.jobs),
                "running_jobs": sorted(self._in_flight),
                "next_wake_at_ms": min(pending) if pending else None,
            }
