import asyncio
from unittest.mock import patch

import pytest

from chatdesk.models import Job
from chatdesk.services.queue_service import TEST_JOB_TYPE, JobQueueManager, QueueNotFoundError


@pytest.fixture
def manager(session_factory, clock):
    return JobQueueManager(session_factory, poll_interval=0.05, clock=clock)


@pytest.fixture(autouse=True)
def no_alerts():
    with patch("chatdesk.services.queue_service.alert_error") as alert:
        yield alert


def _job(session_factory, job_id):
    db = session_factory()
    try:
        return db.get(Job, job_id)
    finally:
        db.close()


class TestAddAndProcess:
    def test_job_completes_with_result(self, manager, session_factory):
        seen = []
        manager.register_queue("emails", {"send": lambda job: seen.append(job.payload) or {"sent": True}})

        handle = manager.add_job("emails", "send", {"to": "a@example.com"})
        assert manager.process_next("emails") is True

        job = _job(session_factory, handle.id)
        assert job.state == "completed"
        assert job.attempts == 1
        assert job.result == {"sent": True}
        assert seen == [{"to": "a@example.com"}]

    def test_idle_queue(self, manager):
        manager.register_queue("emails")
        assert manager.process_next("emails") is False

    def test_unknown_queue(self, manager):
        with pytest.raises(QueueNotFoundError):
            manager.add_job("nope", "send")

    def test_duplicate_registration(self, manager):
        manager.register_queue("emails")
        with pytest.raises(ValueError):
            manager.register_queue("emails")

    def test_oldest_job_first(self, manager, clock):
        order = []
        manager.register_queue("emails", {"send": lambda job: order.append(job.payload["n"])})
        manager.add_job("emails", "send", {"n": 1})
        clock.advance(1)
        manager.add_job("emails", "send", {"n": 2})

        manager.process_next("emails")
        manager.process_next("emails")

        assert order == [1, 2]

    def test_test_job_type_on_every_queue(self, manager, session_factory):
        manager.register_queue("notifications")
        handle = manager.add_job("notifications", TEST_JOB_TYPE, {"ping": 1})

        manager.process_next("notifications")

        assert _job(session_factory, handle.id).result == {"ok": True, "echo": {"ping": 1}}

    def test_delayed_job_waits(self, manager, clock):
        manager.register_queue("emails", {"send": lambda job: None})
        manager.add_job("emails", "send", delay_seconds=30)

        assert manager.process_next("emails") is False
        clock.advance(30)
        assert manager.process_next("emails") is True


class TestRetries:
    def test_backoff_is_exponential_and_capped(self, session_factory):
        manager = JobQueueManager(session_factory, backoff_base_seconds=2, backoff_max_seconds=10)
        assert [manager.backoff_seconds(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 10]

    def test_retries_then_fails_permanently(self, manager, session_factory, clock, no_alerts):
        def flaky(job):
            raise ConnectionError("provider down")

        manager.register_queue("emails", {"send": flaky})
        handle = manager.add_job("emails", "send")

        assert manager.process_next("emails") is True
        job = _job(session_factory, handle.id)
        assert job.state == "delayed"
        assert job.attempts == 1
        assert "provider down" in job.last_error

        # not due yet
        assert manager.process_next("emails") is False
        clock.advance(2)
        assert manager.process_next("emails") is True
        assert _job(session_factory, handle.id).attempts == 2

        clock.advance(4)
        manager.process_next("emails")

        job = _job(session_factory, handle.id)
        assert job.state == "failed"
        assert job.attempts == 3
        no_alerts.assert_called_once()

    def test_retry_can_succeed(self, manager, session_factory, clock):
        calls = []

        def second_time_lucky(job):
            calls.append(job.attempts)
            if len(calls) == 1:
                raise TimeoutError("slow")
            return {"ok": True}

        manager.register_queue("emails", {"send": second_time_lucky})
        handle = manager.add_job("emails", "send")

        manager.process_next("emails")
        clock.advance(2)
        manager.process_next("emails")

        assert calls == [1, 2]
        assert _job(session_factory, handle.id).state == "completed"

    def test_unknown_job_type_fails_immediately(self, manager, session_factory):
        manager.register_queue("emails")
        handle = manager.add_job("emails", "mystery")

        manager.process_next("emails")

        job = _job(session_factory, handle.id)
        assert job.state == "failed"
        assert job.attempts == 1
        assert "UnknownJobTypeError" in job.last_error


class TestStalledJobs:
    def _crash_mid_job(self, session_factory, clock, max_attempts=3):
        def dies(job):
            raise SystemExit("worker killed")

        crashed = JobQueueManager(session_factory, stalled_after_seconds=600, clock=clock)
        crashed.register_queue("emails", {"send": dies})
        handle = crashed.add_job("emails", "send", {"to": "a@example.com"}, max_attempts=max_attempts)
        with pytest.raises(SystemExit):
            crashed.process_next("emails")
        return handle

    def test_restarted_manager_reclaims_abandoned_job(self, session_factory, clock):
        handle = self._crash_mid_job(session_factory, clock)
        assert _job(session_factory, handle.id).state == "active"

        restarted = JobQueueManager(session_factory, stalled_after_seconds=600, clock=clock)
        restarted.register_queue("emails", {"send": lambda job: {"attempt": job.attempts}})

        # still within the stall window: another worker may own it
        clock.advance(300)
        assert restarted.process_next("emails") is False

        clock.advance(301)
        assert restarted.process_next("emails") is True

        job = _job(session_factory, handle.id)
        assert job.state == "completed"
        assert job.attempts == 2
        assert job.result == {"attempt": 2}

    def test_abandoned_job_at_ceiling_fails(self, session_factory, clock, no_alerts):
        handle = self._crash_mid_job(session_factory, clock, max_attempts=1)

        restarted = JobQueueManager(session_factory, stalled_after_seconds=600, clock=clock)
        ran = []
        restarted.register_queue("emails", {"send": lambda job: ran.append(job.id)})
        clock.advance(24 * 60 * 60)

        assert restarted.process_next("emails") is False

        job = _job(session_factory, handle.id)
        assert job.state == "failed"
        assert job.attempts == 1
        assert "JobStalledError" in job.last_error
        assert ran == []
        no_alerts.assert_called_once()
        assert restarted.status("emails")["active"] == 0

    def test_stall_timeout_comes_from_settings(self, session_factory, test_settings):
        test_settings.queue_stalled_after_seconds = 45
        manager = JobQueueManager.from_settings(session_factory, test_settings)
        assert manager.stalled_after_seconds == 45


class TestPauseResume:
    def test_paused_queue_keeps_jobs_waiting(self, manager, session_factory):
        manager.register_queue("emails", {"send": lambda job: None})
        handle = manager.add_job("emails", "send")

        manager.pause("emails")

        assert manager.is_paused("emails") is True
        assert manager.process_next("emails") is False
        assert _job(session_factory, handle.id).state == "waiting"
        assert manager.status("emails")["paused"] is True

        manager.resume("emails")
        assert manager.process_next("emails") is True
        assert _job(session_factory, handle.id).state == "completed"

    def test_pause_during_run_lets_job_finish(self, manager, session_factory, clock):
        def pausing(job):
            manager.pause("emails")
            return {"done": True}

        manager.register_queue("emails", {"send": pausing})
        first = manager.add_job("emails", "send")
        clock.advance(1)
        second = manager.add_job("emails", "send")

        manager.process_next("emails")

        assert _job(session_factory, first.id).state == "completed"
        assert manager.process_next("emails") is False
        assert _job(session_factory, second.id).state == "waiting"

    def test_pause_all_and_resume_all(self, manager):
        manager.register_queue("a")
        manager.register_queue("b")

        assert manager.pause_all() == ["a", "b"]
        assert manager.is_paused("a") and manager.is_paused("b")
        manager.resume_all()
        assert not manager.is_paused("a") and not manager.is_paused("b")


class TestCleanAndRetention:
    def test_clean_removes_old_completed(self, manager, clock):
        manager.register_queue("emails", {"send": lambda job: None})
        manager.add_job("emails", "send")
        manager.process_next("emails")

        assert manager.clean("emails", "completed", older_than_ms=60_000) == 0
        clock.advance(120)
        assert manager.clean("emails", "completed", older_than_ms=60_000) == 1
        assert manager.status("emails")["completed"] == 0

    def test_clean_rejects_active_and_unknown_state(self, manager):
        manager.register_queue("emails")
        with pytest.raises(ValueError):
            manager.clean("emails", "active")
        with pytest.raises(ValueError):
            manager.clean("emails", "archived")

    def test_clean_all(self, manager, clock):
        manager.register_queue("a")
        manager.register_queue("b")
        manager.add_job("a", TEST_JOB_TYPE)
        manager.process_next("a")
        clock.advance(10)

        assert manager.clean_all("completed", older_than_ms=0) == {"a": 1, "b": 0}

    def test_retention_keeps_newest_completed(self, session_factory, clock):
        manager = JobQueueManager(session_factory, keep_completed=2, clock=clock)
        manager.register_queue("emails", {"send": lambda job: None})
        for _ in range(4):
            manager.add_job("emails", "send")
            manager.process_next("emails")
            clock.advance(1)

        assert manager.status("emails")["completed"] == 2


class TestInspection:
    def test_status_counts(self, manager, clock):
        manager.register_queue("emails", {"send": lambda job: None, "boom": lambda job: 1 / 0})
        manager.add_job("emails", "send")
        clock.advance(1)
        manager.add_job("emails", "boom", max_attempts=1)
        clock.advance(1)
        manager.add_job("emails", "send")
        manager.process_next("emails")
        manager.process_next("emails")

        status = manager.status("emails")

        assert status["completed"] == 1
        assert status["failed"] == 1
        assert status["waiting"] == 1
        assert status["active"] == 0

    def test_metrics_rates(self, manager):
        manager.register_queue("emails", {"send": lambda job: None, "boom": lambda job: 1 / 0})
        for job_type in ("send", "send", "send", "boom"):
            manager.add_job("emails", job_type, max_attempts=1)
        for _ in range(4):
            manager.process_next("emails")

        overview = manager.metrics()["overview"]

        assert overview["total_jobs"] == 4
        assert overview["success_rate"] == 75.0
        assert overview["failure_rate"] == 25.0

    def test_list_jobs_by_state(self, manager):
        manager.register_queue("emails", {"send": lambda job: None})
        manager.add_job("emails", "send", {"n": 1})
        manager.add_job("emails", "send", {"n": 2})
        manager.process_next("emails")

        waiting = manager.list_jobs("emails", "waiting")

        assert len(waiting) == 1
        assert waiting[0]["state"] == "waiting"
        with pytest.raises(ValueError):
            manager.list_jobs("emails", "archived")

    def test_health_requires_running_workers(self, manager):
        manager.register_queue("emails")
        assert manager.health_check()["healthy"] is False


class TestWorkers:
    @pytest.mark.asyncio
    async def test_workers_drain_queue(self, session_factory):
        manager = JobQueueManager(session_factory, poll_interval=0.05)
        manager.register_queue("emails", {"send": lambda job: {"sent": job.payload["n"]}})
        handles = [manager.add_job("emails", "send", {"n": n}) for n in range(3)]

        await manager.start()
        try:
            assert manager.health_check()["healthy"] is True
            for _ in range(100):
                if manager.status("emails")["completed"] == 3:
                    break
                await asyncio.sleep(0.05)
        finally:
            await manager.stop(timeout=5)

        assert manager.status("emails")["completed"] == 3
        assert {_job(session_factory, h.id).state for h in handles} == {"completed"}
        assert manager.workers() == []
        assert manager.health_check()["healthy"] is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, session_factory):
        manager = JobQueueManager(session_factory, poll_interval=0.05)
        manager.register_queue("emails")

        await manager.start()
        await manager.start()
        try:
            assert len(manager.workers()) == 1
        finally:
            await manager.stop(timeout=5)
