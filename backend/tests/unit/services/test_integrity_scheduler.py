"""Unit tests for the periodic job scheduler."""

from unittest.mock import Mock

import pytest

from app.services.integrity_scheduler import IntegrityScheduler


@pytest.fixture
def scheduler(clock):
    return IntegrityScheduler(clock)


class TestRunDue:
    def test_jobs_run_once_their_interval_passes(self, scheduler, clock):
        job = Mock(return_value=None)
        scheduler.add_job("drain", 60, job)

        assert scheduler.run_due() == []

        clock.advance(seconds=60)
        assert scheduler.run_due() == ["drain"]
        assert scheduler.run_due() == []
        assert job.call_count == 1

    def test_run_immediately(self, scheduler):
        job = Mock()
        scheduler.add_job("health_check", 60, job, run_immediately=True)

        assert scheduler.run_due() == ["health_check"]
        job.assert_called_once_with()

    def test_only_due_jobs_run(self, scheduler, clock):
        fast, slow = Mock(), Mock()
        scheduler.add_job("fast", 60, fast)
        scheduler.add_job("slow", 3600, slow)

        clock.advance(minutes=5)

        assert scheduler.run_due() == ["fast"]
        slow.assert_not_called()

    def test_failing_job_is_rescheduled(self, scheduler, clock):
        job = Mock(side_effect=[RuntimeError("queue store offline"), "ok"])
        scheduled = scheduler.add_job("drain", 60, job)

        clock.advance(seconds=60)
        scheduler.run_due()

        assert scheduled.failures == 1
        assert scheduled.last_error == "queue store offline"
        assert scheduled.next_run == clock.now() + scheduled.interval

        clock.advance(seconds=60)
        scheduler.run_due()

        assert scheduled.runs == 2
        assert scheduled.last_error is None


class TestManagement:
    def test_run_job_returns_the_result(self, scheduler):
        scheduler.add_job("prune", 3600, lambda: {"transitions": 3})

        assert scheduler.run_job("prune") == {"transitions": 3}

    def test_run_unknown_job(self, scheduler):
        with pytest.raises(KeyError):
            scheduler.run_job("missing")

    def test_remove_job(self, scheduler):
        scheduler.add_job("sweep", 60, Mock())

        assert scheduler.remove_job("sweep") is True
        assert scheduler.remove_job("sweep") is False
        assert scheduler.jobs() == []

    def test_payload(self, scheduler, clock):
        scheduler.add_job("sweep", 60, Mock())

        payload = scheduler.jobs()[0].to_payload()

        assert payload["name"] == "sweep"
        assert payload["interval_seconds"] == 60.0
        assert payload["last_run"] is None
