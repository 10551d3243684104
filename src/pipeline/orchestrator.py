"""Orchestrator: pulls queued jobs and drives them to a terminal status.

Data flow per job:
  1. mark_running (pending -> running)
  2. run_with_retries under the job deadline, a fresh session per attempt
  3. merge_result (job identity fields win over journey echoes)
  4. save result + execution log (isolated, always runs)
"""

import asyncio
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Protocol

from pydantic import AliasChoices

from src.core.config import Settings
from src.core.db import (
    fail_stale_jobs,
    fetch_pending_jobs,
    insert_execution_logs,
    mark_running,
    save_job_result,
)
from src.core.errors import PersistenceError
from src.core.schemas import (
    IDENTITY_FIELDS,
    ErrorInfo,
    ErrorKind,
    Job,
    JobParams,
    JobStatus,
    JourneyResult,
)
from src.core.timing import Timing, random_sleep

logger = logging.getLogger(__name__)


class JourneyRunner(Protocol):
    async def run(self, raw_params: dict[str, Any]) -> JourneyResult: ...


def _identity_keys() -> set[str]:
    """Identity field names plus every alias a job payload may use for them."""
    keys: set[str] = set()
    for name in IDENTITY_FIELDS:
        keys.add(name)
        alias = JobParams.model_fields[name].validation_alias
        if isinstance(alias, AliasChoices):
            keys.update(c for c in alias.choices if isinstance(c, str))
    return keys


_IDENTITY_KEYS = _identity_keys()


def merge_result(params: dict[str, Any], result: JourneyResult) -> dict[str, Any]:
    """Build the persisted result payload.

    Journey outcome fields override the job's parameters, except identity
    fields (keyword, target, device, ...) where the job's own value wins.
    The step list is stored separately in ``execution_logs``.
    """
    merged: dict[str, Any] = dict(params)
    merged.update(result.model_dump(mode="json", exclude={"steps", "outcome"}))
    merged.update(result.outcome)
    merged.update({k: v for k, v in params.items() if k in _IDENTITY_KEYS})
    merged["step_count"] = len(result.steps)
    return merged


def job_timeout_s(params: dict[str, Any], default_s: float) -> float:
    """Per-job deadline: ``timeout_ms`` from the payload, else the worker default."""
    raw = params.get("timeout_ms", params.get("timeoutMs"))
    if isinstance(raw, (int, float)) and not isinstance(raw, bool) and raw > 0:
        return raw / 1000
    return default_s


class Orchestrator:
    """Capacity-bounded job loop around a journey runner.

    Args:
        conn: Queue database connection.
        settings: Loaded settings (``worker`` section drives this class).
        runner: Object whose ``run(params)`` executes one journey attempt on
            a fresh session and returns a JourneyResult.
        timing: Random source for retry backoff.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Settings,
        runner: JourneyRunner,
        timing: Timing | None = None,
    ) -> None:
        self._conn = conn
        self._settings = settings
        self._runner = runner
        self._timing = timing or Timing()
        self.active_jobs = 0
        self.last_job_id: int | None = None
        self._running: set[asyncio.Task[None]] = set()
        self._abandoned: set[asyncio.Task[JourneyResult]] = set()

    @property
    def capacity(self) -> int:
        return max(self._settings.worker.max_concurrent - self.active_jobs, 0)

    @property
    def abandoned(self) -> int:
        """Timed-out executions still finishing their teardown."""
        return len(self._abandoned)

    def recover_stale(self) -> list[int]:
        """Force-fail jobs left running by a previous worker."""
        minutes = self._settings.worker.stale_after_minutes
        ids = fail_stale_jobs(self._conn, timedelta(minutes=minutes))
        if ids:
            logger.warning("Failed %d stale job(s): %s", len(ids), ids)
        return ids

    async def poll_once(self) -> int:
        """Start as many due jobs as there is free capacity. Returns the count started."""
        capacity = self.capacity
        if capacity == 0:
            logger.debug("At capacity (%d active)", self.active_jobs)
            return 0
        jobs = fetch_pending_jobs(self._conn, capacity)
        for job in jobs:
            self.active_jobs += 1
            task = asyncio.create_task(self._track(job), name=f"job-{job.id}")
            self._running.add(task)
            task.add_done_callback(self._running.discard)
        if jobs:
            logger.info("Started %d job(s), %d active", len(jobs), self.active_jobs)
        return len(jobs)

    async def drain(self) -> None:
        """Wait for every started job to reach a terminal status.

        Also waits for timed-out executions to finish tearing down their
        sessions, so a shutdown right after never cuts a teardown short.
        """
        while self._running or self._abandoned:
            await asyncio.gather(*self._running, *self._abandoned, return_exceptions=True)

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Poll until ``stop`` is set. A failing cycle never ends the loop."""
        stop = stop or asyncio.Event()
        self.recover_stale()
        interval = self._settings.worker.poll_interval_s
        logger.info(
            "Worker started: max_concurrent=%d, poll every %.0fs",
            self._settings.worker.max_concurrent, interval,
        )
        while not stop.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Poll cycle failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        await self.drain()
        logger.info("Worker stopped")

    async def _track(self, job: Job) -> None:
        try:
            await self.process_job(job)
        finally:
            self.active_jobs -= 1

    async def process_job(self, job: Job) -> None:
        """Run one job and persist its result, whatever happens during execution."""
        if not mark_running(self._conn, job.id):
            logger.warning("Job %d is no longer pending, skipping", job.id)
            return
        self.last_job_id = job.id
        logger.info("Job %d started", job.id)

        try:
            result = await self._run_with_deadline(job)
        except Exception as e:
            logger.exception("Job %d crashed", job.id)
            result = JourneyResult(
                success=False,
                error=ErrorInfo(kind=ErrorKind.UNEXPECTED, message=str(e) or type(e).__name__),
                journey_type=str(job.params.get("journey_type") or ""),
            )

        try:
            self._save(job, result)
        except PersistenceError as e:
            logger.error("%s", e)
            return
        status = "completed" if result.error is None else f"failed ({result.error.kind.value})"
        logger.info(
            "Job %d %s: found=%s rank=%d in %.1fs",
            job.id,
            status,
            result.found,
            result.clicked_rank,
            result.duration_ms / 1000,
        )

    async def run_with_retries(self, params: dict[str, Any]) -> JourneyResult:
        """Attempt the journey until an attempt ends without a retryable failure.

        CAPTCHA failures and provisioning failures are retryable. Each attempt
        runs on a brand-new session; the previous one is fully torn down
        before the next starts.
        """
        worker = self._settings.worker
        low, high = worker.retry_backoff_s
        attempt = 1
        result = await self._runner.run(params)
        while result.retryable:
            kind = result.error.kind.value if result.error else "unknown"
            logger.warning(
                "Retryable %s failure on attempt %d/%d (session %s)",
                kind, attempt, worker.max_attempts, result.session_id or "-",
            )
            if attempt >= worker.max_attempts:
                break
            await random_sleep(low, high, self._timing)
            attempt += 1
            result = await self._runner.run(params)
        return result

    async def _run_with_deadline(self, job: Job) -> JourneyResult:
        timeout = job_timeout_s(job.params, self._settings.worker.job_timeout_s)
        task = asyncio.create_task(self.run_with_retries(job.params), name=f"exec-{job.id}")
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()

        # Cancelled, not awaited: the session teardown finishes in the background.
        task.cancel()
        self._abandoned.add(task)
        task.add_done_callback(self._forget)
        logger.warning("Job %d timed out after %.0fs", job.id, timeout)
        return JourneyResult(
            success=False,
            duration_ms=int(timeout * 1000),
            error=ErrorInfo(kind=ErrorKind.TIMEOUT, message=f"job timed out after {timeout:.0f}s"),
            journey_type=str(job.params.get("journey_type") or ""),
        )

    def _forget(self, task: asyncio.Task[JourneyResult]) -> None:
        self._abandoned.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Abandoned execution ended with: %r", task.exception())

    def _save(self, job: Job, result: JourneyResult) -> None:
        status = JobStatus.COMPLETED if result.success else JobStatus.FAILED
        error = f"{result.error.kind.value}: {result.error.message}" if result.error else None
        try:
            save_job_result(self._conn, job.id, status, merge_result(job.params, result), error)
            insert_execution_logs(self._conn, job.id, result.steps)
        except sqlite3.Error as e:
            msg = f"could not save result of job {job.id}: {e}"
            raise PersistenceError(msg) from e
