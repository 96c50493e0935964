"""Named, database-backed job queues with per-queue asyncio workers.

Jobs live in the ``jobs`` table. Workers claim the oldest due job with
``FOR UPDATE SKIP LOCKED`` (PostgreSQL), run the handler in a thread and
record the outcome. Failed attempts are retried with exponential backoff
until ``max_attempts``; terminal jobs are kept for inspection up to the
retention caps. A job left ``active`` longer than ``stalled_after_seconds``
belongs to a worker that died and is claimed again.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatdesk.config import Settings
from chatdesk.logging_config import get_logger
from chatdesk.models import Job
from chatdesk.models.job import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_DELAYED,
    JOB_FAILED,
    JOB_STATES,
    JOB_WAITING,
)
from chatdesk.services.alert_service import alert_error
from chatdesk.services.conversation_service import utcnow

logger = get_logger("queue")

TEST_JOB_TYPE = "queue-test"
DEFAULT_CLEAN_AGE_MS = 24 * 60 * 60 * 1000


class QueueNotFoundError(Exception):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Queue not found: {name}")


class UnknownJobTypeError(Exception):
    pass


class JobStalledError(Exception):
    pass


@dataclass(frozen=True)
class JobHandle:
    """Immutable snapshot of a job handed to handlers."""

    id: object
    queue_name: str
    job_type: str
    payload: dict
    attempts: int
    max_attempts: int
    state: str = JOB_WAITING

    @classmethod
    def from_model(cls, job: Job) -> "JobHandle":
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            job_type=job.job_type,
            payload=dict(job.payload or {}),
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            state=job.state,
        )


JobHandler = Callable[[JobHandle], Optional[dict]]


def _queue_test_handler(job: JobHandle) -> dict:
    return {"ok": True, "echo": job.payload}


@dataclass
class QueueDefinition:
    name: str
    handlers: dict = field(default_factory=dict)
    concurrency: int = 1
    max_attempts: int = 3


def _job_to_dict(job: Job) -> dict:
    return {
        "id": str(job.id),
        "queue": job.queue_name,
        "type": job.job_type,
        "state": job.state,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "payload": job.payload,
        "result": job.result,
        "last_error": job.last_error,
        "run_at": job.run_at.isoformat() if job.run_at else None,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
    }


class JobQueueManager:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        poll_interval: float = 1.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 300.0,
        keep_completed: int = 100,
        keep_failed: int = 50,
        stalled_after_seconds: float = 600.0,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.poll_interval = max(poll_interval, 0.05)
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.stalled_after_seconds = stalled_after_seconds
        self.clock = clock
        self._queues: dict[str, QueueDefinition] = {}
        self._paused: set[str] = set()
        self._tasks: dict[str, list[asyncio.Task]] = {}
        self._running = False

    @classmethod
    def from_settings(cls, session_factory: Callable[[], Session], cfg: Settings) -> "JobQueueManager":
        return cls(
            session_factory,
            poll_interval=cfg.queue_poll_interval_seconds,
            max_attempts=cfg.queue_max_attempts,
            backoff_base_seconds=cfg.queue_backoff_base_seconds,
            backoff_max_seconds=cfg.queue_backoff_max_seconds,
            keep_completed=cfg.queue_keep_completed,
            keep_failed=cfg.queue_keep_failed,
            stalled_after_seconds=cfg.queue_stalled_after_seconds,
        )

    # --- registration ---

    def register_queue(
        self,
        name: str,
        handlers: Optional[dict] = None,
        *,
        concurrency: int = 1,
        max_attempts: Optional[int] = None,
    ) -> QueueDefinition:
        if name in self._queues:
            raise ValueError(f"Queue already registered: {name}")
        definition = QueueDefinition(
            name=name,
            handlers={TEST_JOB_TYPE: _queue_test_handler, **(handlers or {})},
            concurrency=max(1, concurrency),
            max_attempts=max_attempts or self.max_attempts,
        )
        self._queues[name] = definition
        return definition

    def queue_names(self) -> list[str]:
        return list(self._queues)

    def _get_queue(self, name: str) -> QueueDefinition:
        definition = self._queues.get(name)
        if definition is None:
            raise QueueNotFoundError(name)
        return definition

    # --- producing ---

    def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: Optional[dict] = None,
        *,
        max_attempts: Optional[int] = None,
        delay_seconds: float = 0.0,
    ) -> JobHandle:
        definition = self._get_queue(queue_name)
        now = self.clock()
        job = Job(
            queue_name=queue_name,
            job_type=job_type,
            payload=payload or {},
            state=JOB_DELAYED if delay_seconds > 0 else JOB_WAITING,
            attempts=0,
            max_attempts=max_attempts or definition.max_attempts,
            run_at=now + timedelta(seconds=max(delay_seconds, 0)),
            created_at=now,
        )
        db = self.session_factory()
        try:
            db.add(job)
            db.commit()
            handle = JobHandle.from_model(job)
        finally:
            db.close()

        logger.info(
            "Job added",
            extra={"context": {"queue": queue_name, "job_id": str(handle.id), "type": job_type}},
        )
        return handle

    # --- consuming ---

    def backoff_seconds(self, attempts: int) -> float:
        return min(self.backoff_base_seconds * (2 ** max(attempts - 1, 0)), self.backoff_max_seconds)

    def _claim(self, db: Session, queue_name: str) -> Optional[Job]:
        """Lock the next due job, including ``active`` jobs whose worker went away."""
        now = self.clock()
        stalled_cutoff = now - timedelta(seconds=self.stalled_after_seconds)
        while True:
            job = (
                db.query(Job)
                .filter(
                    Job.queue_name == queue_name,
                    or_(
                        Job.state == JOB_WAITING,
                        and_(Job.state == JOB_DELAYED, Job.run_at <= now),
                        and_(Job.state == JOB_ACTIVE, Job.started_at <= stalled_cutoff),
                    ),
                )
                .order_by(Job.run_at, Job.created_at)
                .with_for_update(skip_locked=True)
                .first()
            )
            if job is None:
                return None
            if job.state != JOB_ACTIVE:
                break
            logger.warning(
                "Stalled job reclaimed",
                extra={"context": {"queue": queue_name, "job_id": str(job.id), "attempts": job.attempts}},
            )
            if job.attempts < job.max_attempts:
                break
            stalled = JobStalledError(f"Worker did not finish within {self.stalled_after_seconds:g}s")
            self._mark_failed(db, job, stalled, retry=False)

        job.state = JOB_ACTIVE
        job.attempts = job.attempts + 1
        job.started_at = now
        db.commit()
        return job

    def process_next(self, queue_name: str) -> bool:
        """Claim and run one due job. Returns False when paused or idle."""
        definition = self._get_queue(queue_name)
        if queue_name in self._paused:
            return False

        db = self.session_factory()
        try:
            job = self._claim(db, queue_name)
            if job is None:
                return False

            handle = JobHandle.from_model(job)
            try:
                handler = definition.handlers.get(handle.job_type)
                if handler is None:
                    raise UnknownJobTypeError(f"No handler for job type {handle.job_type} on queue {queue_name}")
                result = handler(handle)
            except UnknownJobTypeError as exc:
                self._mark_failed(db, job, exc, retry=False)
            except Exception as exc:
                self._mark_failed(db, job, exc, retry=True)
            else:
                self._mark_completed(db, job, result)
            return True
        finally:
            db.close()

    def _mark_completed(self, db: Session, job: Job, result: Optional[dict]) -> None:
        job.state = JOB_COMPLETED
        job.result = result if isinstance(result, dict) else None
        job.last_error = None
        job.finished_at = self.clock()
        db.commit()
        logger.info(
            "Job completed",
            extra={"context": {"queue": job.queue_name, "job_id": str(job.id), "attempts": job.attempts}},
        )
        self._prune(db, job.queue_name, JOB_COMPLETED, self.keep_completed)

    def _mark_failed(self, db: Session, job: Job, exc: Exception, *, retry: bool) -> None:
        now = self.clock()
        context = {
            "queue": job.queue_name,
            "job_id": str(job.id),
            "type": job.job_type,
            "attempts": job.attempts,
            "error": str(exc),
        }
        job.last_error = f"{type(exc).__name__}: {exc}"[:2000]

        if retry and job.attempts < job.max_attempts:
            delay = self.backoff_seconds(job.attempts)
            job.state = JOB_DELAYED
            job.run_at = now + timedelta(seconds=delay)
            db.commit()
            logger.warning("Job failed, retry scheduled", extra={"context": {**context, "retry_in_seconds": delay}})
            return

        job.state = JOB_FAILED
        job.finished_at = now
        db.commit()
        logger.error("Job failed permanently", extra={"context": context})
        alert_error("Job failed permanently", context)
        self._prune(db, job.queue_name, JOB_FAILED, self.keep_failed)

    def _prune(self, db: Session, queue_name: str, state: str, keep: int) -> int:
        stale_ids = [
            row.id
            for row in db.query(Job.id)
            .filter(Job.queue_name == queue_name, Job.state == state)
            .order_by(Job.finished_at.desc(), Job.created_at.desc())
            .offset(keep)
            .all()
        ]
        if not stale_ids:
            return 0
        db.query(Job).filter(Job.id.in_(stale_ids)).delete(synchronize_session=False)
        db.commit()
        return len(stale_ids)

    # --- control ---

    def pause(self, queue_name: str) -> None:
        """Stop claiming new jobs. Jobs already running finish normally."""
        self._get_queue(queue_name)
        self._paused.add(queue_name)
        logger.info("Queue paused", extra={"context": {"queue": queue_name}})

    def resume(self, queue_name: str) -> None:
        self._get_queue(queue_name)
        self._paused.discard(queue_name)
        logger.info("Queue resumed", extra={"context": {"queue": queue_name}})

    def is_paused(self, queue_name: str) -> bool:
        self._get_queue(queue_name)
        return queue_name in self._paused

    def pause_all(self) -> list[str]:
        for name in self._queues:
            self.pause(name)
        return self.queue_names()

    def resume_all(self) -> list[str]:
        for name in self._queues:
            self.resume(name)
        return self.queue_names()

    def clean(self, queue_name: str, state: str = JOB_COMPLETED, older_than_ms: int = DEFAULT_CLEAN_AGE_MS) -> int:
        """Delete jobs in ``state`` older than the cutoff. Active jobs are never cleaned."""
        self._get_queue(queue_name)
        if state not in JOB_STATES:
            raise ValueError(f"Unknown job state: {state}")
        if state == JOB_ACTIVE:
            raise ValueError("Active jobs cannot be cleaned")

        cutoff = self.clock() - timedelta(milliseconds=max(older_than_ms, 0))
        age_column = Job.finished_at if state in (JOB_COMPLETED, JOB_FAILED) else Job.created_at
        db = self.session_factory()
        try:
            removed = (
                db.query(Job)
                .filter(Job.queue_name == queue_name, Job.state == state, age_column <= cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        logger.info("Queue cleaned", extra={"context": {"queue": queue_name, "state": state, "removed": removed}})
        return removed

    def clean_all(self, state: str = JOB_COMPLETED, older_than_ms: int = DEFAULT_CLEAN_AGE_MS) -> dict:
        return {name: self.clean(name, state, older_than_ms) for name in self._queues}

    # --- inspection ---

    def status(self, queue_name: str) -> dict:
        definition = self._get_queue(queue_name)
        db = self.session_factory()
        try:
            rows = (
                db.query(Job.state, func.count(Job.id))
                .filter(Job.queue_name == queue_name)
                .group_by(Job.state)
                .all()
            )
        finally:
            db.close()

        counts = {state: 0 for state in JOB_STATES}
        for state, count in rows:
            counts[state] = count
        return {
            "name": queue_name,
            **counts,
            "paused": queue_name in self._paused,
            "concurrency": definition.concurrency,
        }

    def status_all(self) -> list[dict]:
        return [self.status(name) for name in self._queues]

    def list_jobs(self, queue_name: str, state: Optional[str] = None, limit: int = 20) -> list[dict]:
        self._get_queue(queue_name)
        if state is not None and state not in JOB_STATES:
            raise ValueError(f"Unknown job state: {state}")
        db = self.session_factory()
        try:
            query = db.query(Job).filter(Job.queue_name == queue_name)
            if state is not None:
                query = query.filter(Job.state == state)
            return [_job_to_dict(job) for job in query.order_by(Job.created_at.desc()).limit(limit).all()]
        finally:
            db.close()

    def metrics(self) -> dict:
        queues = self.status_all()
        totals = {state: sum(q[state] for q in queues) for state in JOB_STATES}
        finished = totals[JOB_COMPLETED] + totals[JOB_FAILED]
        success_rate = round(totals[JOB_COMPLETED] / finished * 100, 2) if finished else 0.0
        failure_rate = round(totals[JOB_FAILED] / finished * 100, 2) if finished else 0.0
        return {
            "overview": {
                "total_jobs": sum(totals.values()),
                **totals,
                "success_rate": success_rate,
                "failure_rate": failure_rate,
            },
            "queues": queues,
            "timestamp": self.clock().isoformat(),
        }

    def workers(self) -> list[dict]:
        return [
            {"queue": name, "worker": index, "is_running": not task.done()}
            for name in self._queues
            for index, task in enumerate(self._tasks.get(name, []))
        ]

    def health_check(self) -> dict:
        timestamp = self.clock().isoformat()
        try:
            queues = self.status_all()
        except SQLAlchemyError as exc:
            logger.error("Queue health check failed", extra={"context": {"error": str(exc)}})
            return {"healthy": False, "details": {"error": str(exc), "timestamp": timestamp}}

        workers = self.workers()
        live = {w["queue"] for w in workers if w["is_running"]}
        healthy = all(name in live for name in self._queues)
        return {
            "healthy": healthy,
            "details": {
                "queues": queues,
                "workers": workers,
                "running": self._running,
                "timestamp": timestamp,
            },
        }

    # --- worker lifecycle ---

    async def _worker_loop(self, queue_name: str, index: int) -> None:
        while self._running:
            try:
                processed = await asyncio.to_thread(self.process_next, queue_name)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error(
                    "Queue worker iteration failed",
                    extra={"context": {"queue": queue_name, "worker": index, "error": str(exc)}},
                )
                processed = False
            if not processed:
                try:
                    await asyncio.sleep(self.poll_interval)
                except asyncio.CancelledError:
                    break

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for name, definition in self._queues.items():
            self._tasks[name] = [
                asyncio.create_task(self._worker_loop(name, index)) for index in range(definition.concurrency)
            ]
        logger.info(
            "Queue workers started",
            extra={"context": {name: d.concurrency for name, d in self._queues.items()}},
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop claiming; in-flight jobs get ``timeout`` seconds to finish."""
        self._running = False
        tasks = [task for tasks in self._tasks.values() for task in tasks]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = {}
        logger.info("Queue workers stopped")
