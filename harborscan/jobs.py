"""
Job Registry - In-process Table of Active Scans
===============================================
Holds one immutable ScanJob snapshot per request id. All writes go through
JobRegistry.update, which linearizes mutations under a lock and enforces:

- progress never decreases while a job is RUNNING
- a terminal status is reached exactly once; later mutations are rejected

Readers always receive frozen snapshots, so status queries never observe a
half-applied update.
"""

import asyncio
import enum
import logging
import secrets
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from harborscan.exceptions import DuplicateScanJobException
from harborscan.models import ScanStatus

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_request_id(now: datetime | None = None) -> str:
    """Build an opaque request id: ``YYYYMMDD-HHMMSS-<8 hex>``."""
    now = now or utcnow()
    return f"{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(4)}"


class ScanPhase(str, enum.Enum):
    """Pipeline stage a running job is in."""
    QUEUED = "queued"
    SETUP = "setup"
    ACQUISITION = "acquisition"
    SCANNING = "scanning"
    AGGREGATION = "aggregation"
    DONE = "done"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class ProgressEvent:
    """One broadcast unit; immutable once constructed."""

    request_id: str
    scan_id: UUID
    status: ScanStatus
    progress: int
    step: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "scan_id": str(self.scan_id),
            "status": self.status.value,
            "progress": self.progress,
            "step": self.step,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ScanJob:
    """In-memory state of one in-flight or recently finished scan."""

    request_id: str
    scan_id: UUID
    image_id: UUID
    image: str
    status: ScanStatus = ScanStatus.RUNNING
    progress: int = 0
    step: str | None = None
    error: str | None = None
    phase: ScanPhase = ScanPhase.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_event(self) -> ProgressEvent:
        return ProgressEvent(
            request_id=self.request_id,
            scan_id=self.scan_id,
            status=self.status,
            progress=self.progress,
            step=self.step,
            error=self.error,
            timestamp=self.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "scan_id": str(self.scan_id),
            "image_id": str(self.image_id),
            "image": self.image,
            "status": self.status.value,
            "progress": self.progress,
            "step": self.step,
            "error": self.error,
            "phase": self.phase.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# A mutation receives the current snapshot and returns the replacement,
# or None to leave the job untouched.
JobMutation = Callable[[ScanJob], ScanJob | None]


# =============================================================================
# REGISTRY
# =============================================================================

class JobRegistry:
    """
    Concurrency-safe table mapping request_id -> ScanJob.

    Args:
        success_retention: How long SUCCESS jobs stay visible after finishing
        failure_retention: How long FAILED/CANCELLED jobs stay visible
    """

    def __init__(
        self,
        success_retention: float = 5.0,
        failure_retention: float = 30.0,
    ):
        self.success_retention = timedelta(seconds=success_retention)
        self.failure_retention = timedelta(seconds=failure_retention)
        self._jobs: dict[str, ScanJob] = {}
        self._lock = threading.RLock()

    def register(self, job: ScanJob) -> ScanJob:
        with self._lock:
            if job.request_id in self._jobs:
                raise DuplicateScanJobException(job.request_id)
            self._jobs[job.request_id] = job
        logger.debug(f"Registered job {job.request_id}")
        return job

    def get(self, request_id: str) -> ScanJob | None:
        with self._lock:
            return self._jobs.get(request_id)

    def list_all(self) -> list[ScanJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda j: j.created_at)

    def remove(self, request_id: str) -> ScanJob | None:
        with self._lock:
            return self._jobs.pop(request_id, None)

    def update(self, request_id: str, mutation: JobMutation) -> ProgressEvent | None:
        """
        Apply a mutation atomically.

        Returns the ProgressEvent describing the new state, or None when the
        update was rejected (unknown job, terminal job, declined mutation, or
        progress moving backwards).
        """
        with self._lock:
            current = self._jobs.get(request_id)
            if current is None or current.is_terminal:
                return None

            candidate = mutation(current)
            if candidate is None:
                return None

            progress = max(0, min(100, candidate.progress))
            if candidate.status is ScanStatus.RUNNING and progress < current.progress:
                return None

            now = utcnow()
            candidate = replace(
                candidate,
                request_id=current.request_id,
                scan_id=current.scan_id,
                progress=progress,
                updated_at=now,
                finished_at=now if candidate.status.is_terminal else None,
            )
            self._jobs[request_id] = candidate
            return candidate.to_event()

    # =========================================================================
    # RETENTION
    # =========================================================================

    def is_expired(self, job: ScanJob, now: datetime) -> bool:
        if not job.is_terminal or job.finished_at is None:
            return False
        if job.status is ScanStatus.SUCCESS:
            return now - job.finished_at >= self.success_retention
        return now - job.finished_at >= self.failure_retention

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Drop terminal jobs whose grace window has passed."""
        now = now or utcnow()
        with self._lock:
            expired = [rid for rid, job in self._jobs.items() if self.is_expired(job, now)]
            for rid in expired:
                del self._jobs[rid]
        if expired:
            logger.debug(f"Retention sweep removed {len(expired)} job(s)")
        return expired

    async def run_sweeper(self, interval: float) -> None:
        """Background loop calling sweep() until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.sweep()
