"""
Job Registry Unit Tests
=======================
"""

import re
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from harborscan.exceptions import DuplicateScanJobException
from harborscan.jobs import JobRegistry, ScanJob, ScanPhase, generate_request_id
from harborscan.models import ScanStatus


def make_job(request_id: str = "20261019-120000-abcd1234", **overrides) -> ScanJob:
    return ScanJob(
        request_id=request_id,
        scan_id=uuid.uuid4(),
        image_id=uuid.uuid4(),
        image="nginx:1.27",
        **overrides,
    )


def set_progress(value: int, step: str = "working"):
    return lambda job: replace(job, progress=value, step=step)


def finish(status: ScanStatus):
    return lambda job: replace(job, status=status, phase=ScanPhase.DONE)


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry(success_retention=5, failure_retention=30)


class TestRequestId:

    def test_format(self):
        now = datetime(2026, 10, 19, 8, 5, 3, tzinfo=timezone.utc)
        request_id = generate_request_id(now)
        assert re.fullmatch(r"20261019-080503-[0-9a-f]{8}", request_id)

    def test_unique(self):
        assert len({generate_request_id() for _ in range(50)}) == 50


class TestRegistration:

    def test_register_and_get(self, registry):
        job = registry.register(make_job())
        assert registry.get(job.request_id) == job
        assert job.status is ScanStatus.RUNNING
        assert job.progress == 0
        assert job.phase is ScanPhase.QUEUED

    def test_duplicate_rejected(self, registry):
        registry.register(make_job())
        with pytest.raises(DuplicateScanJobException):
            registry.register(make_job())

    def test_list_all_ordered_by_creation(self, registry):
        base = datetime(2026, 10, 19, tzinfo=timezone.utc)
        registry.register(make_job("b", created_at=base + timedelta(seconds=1)))
        registry.register(make_job("a", created_at=base + timedelta(seconds=2)))
        registry.register(make_job("c", created_at=base))
        assert [j.request_id for j in registry.list_all()] == ["c", "b", "a"]

    def test_unknown_job(self, registry):
        assert registry.get("missing") is None
        assert registry.update("missing", set_progress(10)) is None


class TestUpdate:

    def test_update_returns_event(self, registry):
        job = registry.register(make_job())
        event = registry.update(job.request_id, set_progress(25, "Connecting to registry"))
        assert event.progress == 25
        assert event.step == "Connecting to registry"
        assert event.status is ScanStatus.RUNNING
        assert registry.get(job.request_id).progress == 25

    def test_progress_never_moves_backwards(self, registry):
        job = registry.register(make_job())
        registry.update(job.request_id, set_progress(40))
        assert registry.update(job.request_id, set_progress(30)) is None
        assert registry.get(job.request_id).progress == 40

    def test_equal_progress_allowed_for_step_change(self, registry):
        job = registry.register(make_job())
        registry.update(job.request_id, set_progress(55, "Starting security scans"))
        event = registry.update(job.request_id, set_progress(55, "Running trivy scan"))
        assert event is not None
        assert event.step == "Running trivy scan"

    def test_progress_clamped(self, registry):
        job = registry.register(make_job())
        event = registry.update(job.request_id, set_progress(140))
        assert event.progress == 100

    def test_declined_mutation(self, registry):
        job = registry.register(make_job())
        assert registry.update(job.request_id, lambda current: None) is None
        assert registry.get(job.request_id) == job

    def test_identity_fields_preserved(self, registry):
        job = registry.register(make_job())
        registry.update(
            job.request_id,
            lambda current: replace(current, scan_id=uuid.uuid4(), progress=5),
        )
        assert registry.get(job.request_id).scan_id == job.scan_id


class TestTerminalTransitions:

    def test_terminal_sets_finished_at(self, registry):
        job = registry.register(make_job())
        event = registry.update(job.request_id, finish(ScanStatus.FAILED))
        assert event.is_terminal
        assert registry.get(job.request_id).finished_at is not None

    @pytest.mark.parametrize("status", [ScanStatus.SUCCESS, ScanStatus.FAILED, ScanStatus.CANCELLED])
    def test_at_most_one_terminal_transition(self, registry, status):
        job = registry.register(make_job())
        assert registry.update(job.request_id, finish(status)) is not None
        assert registry.update(job.request_id, finish(ScanStatus.SUCCESS)) is None
        assert registry.update(job.request_id, set_progress(100)) is None
        assert registry.get(job.request_id).status is status

    def test_terminal_may_keep_lower_progress(self, registry):
        job = registry.register(make_job())
        registry.update(job.request_id, set_progress(60))
        event = registry.update(
            job.request_id,
            lambda current: replace(current, status=ScanStatus.CANCELLED, progress=60),
        )
        assert event.progress == 60


class TestRetention:

    def test_success_expires_before_failure(self, registry):
        ok = registry.register(make_job("ok"))
        bad = registry.register(make_job("bad"))
        registry.update(ok.request_id, finish(ScanStatus.SUCCESS))
        registry.update(bad.request_id, finish(ScanStatus.FAILED))

        finished = registry.get("ok").finished_at
        removed = registry.sweep(now=finished + timedelta(seconds=6))
        assert removed == ["ok"]
        assert registry.get("bad") is not None

        removed = registry.sweep(now=finished + timedelta(seconds=31))
        assert removed == ["bad"]

    def test_running_jobs_never_swept(self, registry):
        registry.register(make_job("running"))
        far_future = datetime.now(timezone.utc) + timedelta(days=1)
        assert registry.sweep(now=far_future) == []
        assert registry.get("running") is not None

    def test_remove(self, registry):
        job = registry.register(make_job())
        assert registry.remove(job.request_id) == job
        assert registry.remove(job.request_id) is None


class TestSerialization:

    def test_job_to_dict(self):
        job = make_job(progress=42, step="Downloading image layers", phase=ScanPhase.ACQUISITION)
        data = job.to_dict()
        assert data["status"] == "RUNNING"
        assert data["phase"] == "acquisition"
        assert data["progress"] == 42
        assert data["finished_at"] is None
        assert data["scan_id"] == str(job.scan_id)

    def test_event_to_dict(self):
        event = make_job(progress=10).to_event()
        data = event.to_dict()
        assert data["progress"] == 10
        assert data["status"] == "RUNNING"
        assert "timestamp" in data
