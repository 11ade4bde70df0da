"""
Scan Orchestrator - Pipeline Driver and Job Lifecycle Owner
===========================================================
Architecture Decisions:

1. PHASES (strict sequence, progress bands in brackets):
   SETUP [0-10] -> ACQUISITION [10-55] -> SCANNING [55-95]
   -> AGGREGATION [95-100] -> SUCCESS

   Setup and acquisition failures are fatal (FAILED). A scanner failure is
   captured in that tool's report slot and the scan continues.

2. SINGLE WRITER:
   Every job mutation goes through JobRegistry.update and the resulting
   event is published right away, so subscribers see the registry's order.

3. COOPERATIVE CANCELLATION:
   cancel_scan() moves the job to CANCELLED immediately. The scan task
   notices at its next checkpoint (between phases and between tools) and
   stops; a tool already running finishes but its result can no longer
   touch the job. Aggregation is not cancellable: the result is being
   persisted.

4. INJECTED STATE:
   Registry, broadcaster, estimator, store, resolver and runners are owned
   by the orchestrator instance; nothing is module-global.
"""

import asyncio
import enum
import json
import logging
import shutil
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Mapping
from uuid import UUID

from harborscan.aggregator import ResultAggregator, RiskWeights, evaluate_policy
from harborscan.broadcaster import EventBroadcaster
from harborscan.config import Settings
from harborscan.exceptions import (
    ArtifactAcquisitionException,
    ArtifactAcquisitionTimeoutException,
    InvalidScanRequestException,
    ScanJobNotFoundException,
    ScanRecordNotFoundException,
    ScanSetupException,
)
from harborscan.jobs import (
    JobRegistry,
    ProgressEvent,
    ScanJob,
    ScanPhase,
    generate_request_id,
    utcnow,
)
from harborscan.log import scan_logger
from harborscan.models import ImageSource, ScanStatus
from harborscan.progress import (
    ACQUIRED_MILESTONE,
    ACQUISITION_BAND,
    AGGREGATION_BAND,
    DOWNLOAD_STEPS,
    SCANNING_BAND,
    SETUP_BAND,
    ProgressEstimator,
    scanner_milestone,
)
from harborscan.resolver import DefaultImageResolver, ImageResolver, ResolvedImage
from harborscan.scanners import (
    ScannerRunner,
    build_scanners,
    error_placeholder,
    is_error_placeholder,
    resolve_template,
)
from harborscan.schemas import ScanRequest
from harborscan.store import ScanRecordStore

logger = logging.getLogger(__name__)


class ScanInterrupted(Exception):
    """Raised at a checkpoint when the job is no longer RUNNING."""


class CancelOutcome(str, enum.Enum):
    CANCELLED = "cancelled"
    ALREADY_TERMINAL = "already_terminal"
    FINALIZING = "finalizing"
    NOT_FOUND = "not_found"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class StartedScan:
    request_id: str
    scan_id: UUID


@dataclass(frozen=True)
class ScanWorkspace:
    """Per-scan directories plus the cache environment for the tools."""

    reports_dir: Path
    images_dir: Path
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ScanTiming:
    """Timing metrics for scan phases (monotonic clock)."""

    total_start: float = field(default_factory=time.monotonic)
    acquisition_start: float | None = None
    acquisition_end: float | None = None
    scan_start: float | None = None
    scan_end: float | None = None

    @property
    def acquisition_duration(self) -> float | None:
        if self.acquisition_start and self.acquisition_end:
            return round(self.acquisition_end - self.acquisition_start, 3)
        return None

    @property
    def scan_duration(self) -> float | None:
        if self.scan_start and self.scan_end:
            return round(self.scan_end - self.scan_start, 3)
        return None

    @property
    def total_duration(self) -> float:
        return round(time.monotonic() - self.total_start, 3)

    def to_dict(self) -> dict[str, float | None]:
        return {
            "acquisition_seconds": self.acquisition_duration,
            "scanning_seconds": self.scan_duration,
            "total_seconds": self.total_duration,
        }


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class ScanOrchestrator:
    """Accepts scans, runs their pipelines and answers status queries."""

    def __init__(
        self,
        config: Settings,
        store: ScanRecordStore,
        resolver: ImageResolver,
        scanners: Mapping[str, ScannerRunner] | None = None,
        registry: JobRegistry | None = None,
        broadcaster: EventBroadcaster | None = None,
        aggregator: ResultAggregator | None = None,
    ):
        self.config = config
        self.store = store
        self.resolver = resolver
        self.scanners = dict(scanners) if scanners is not None else build_scanners(config)
        self.registry = registry or JobRegistry(
            success_retention=config.job_retention_success_seconds,
            failure_retention=config.job_retention_failed_seconds,
        )
        self.broadcaster = broadcaster or EventBroadcaster()
        self.aggregator = aggregator or ResultAggregator(RiskWeights.from_settings(config))
        self.estimator = ProgressEstimator(
            advance=self._advance_synthetic,
            is_running=self._is_running,
            tick_seconds=config.progress_tick_seconds,
        )
        self._slots = asyncio.Semaphore(config.max_concurrent_scans)
        self._tasks: dict[str, asyncio.Task] = {}
        self._sweeper: asyncio.Task | None = None

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def start_scan(self, request: ScanRequest) -> StartedScan:
        """
        Accept a scan and launch it in the background.

        Raises:
            InvalidScanRequestException: unknown template or no usable tools
            ImageResolutionException: the image could not be resolved
        """
        tools = [t for t in resolve_template(request.template, self.config) if t in self.scanners]
        if not tools:
            raise InvalidScanRequestException(
                f"no scanners available for template '{request.template or 'default'}'",
                field="template",
            )

        resolved = await self.resolver.resolve(request)
        request_id = generate_request_id()
        record = await self.store.create_scan_record(
            request_id, resolved, request.template or "default"
        )

        job = ScanJob(
            request_id=request_id,
            scan_id=record.scan_id,
            image_id=record.image_id,
            image=resolved.reference,
            step="Scan queued",
        )
        self.registry.register(job)

        task = asyncio.create_task(
            self._execute(job, request, resolved, tools), name=f"scan-{request_id}"
        )
        self._tasks[request_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(request_id, None))

        logger.info(
            f"Accepted scan {request_id} for {resolved.reference} "
            f"({resolved.digest}) with tools: {', '.join(tools)}"
        )
        return StartedScan(request_id=request_id, scan_id=record.scan_id)

    def get_job(self, request_id: str) -> ScanJob:
        job = self.registry.get(request_id)
        if job is None:
            raise ScanJobNotFoundException(request_id)
        return job

    def list_jobs(self) -> list[ScanJob]:
        return self.registry.list_all()

    async def cancel_scan(self, request_id: str) -> CancelOutcome:
        """Idempotent: cancelling an unknown or finished job is a no-op."""
        job = self.registry.get(request_id)
        if job is None:
            return CancelOutcome.NOT_FOUND
        if job.is_terminal:
            return CancelOutcome.ALREADY_TERMINAL

        event = self._finish(
            request_id,
            ScanStatus.CANCELLED,
            "Scan cancelled",
            guard=lambda current: current.phase is not ScanPhase.AGGREGATION,
        )
        if event is None:
            current = self.registry.get(request_id)
            if current is None:
                return CancelOutcome.NOT_FOUND
            if current.is_terminal:
                return CancelOutcome.ALREADY_TERMINAL
            return CancelOutcome.FINALIZING

        log = scan_logger(logger, request_id)
        log.info(f"Scan cancelled at {event.progress}%")
        await self._persist_terminal(
            job.scan_id,
            {"status": ScanStatus.CANCELLED, "finished_at": utcnow()},
            log,
        )
        return CancelOutcome.CANCELLED

    async def watch(
        self,
        request_id: str,
        heartbeat: float | None = None,
    ) -> AsyncIterator[ProgressEvent | None]:
        """
        Current snapshot followed by live events until a terminal event.

        Yields None when ``heartbeat`` seconds pass without an event. Live
        events below the snapshot's progress are dropped so a late
        subscriber never sees progress move backwards.
        """
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        subscription = self.broadcaster.subscribe(request_id, queue.put_nowait)
        try:
            job = self.registry.get(request_id)
            if job is None:
                raise ScanJobNotFoundException(request_id)

            high_water = job.progress
            yield job.to_event()
            if job.is_terminal:
                return

            while True:
                try:
                    if heartbeat:
                        event = await asyncio.wait_for(queue.get(), timeout=heartbeat)
                    else:
                        event = await queue.get()
                except asyncio.TimeoutError:
                    yield None
                    continue

                if event.status is ScanStatus.RUNNING and event.progress < high_water:
                    continue
                high_water = max(high_water, event.progress)
                yield event
                if event.is_terminal:
                    return
        finally:
            self.broadcaster.unsubscribe(subscription)

    async def get_scan_record(self, scan_id: str) -> dict[str, Any]:
        try:
            key = UUID(scan_id)
        except ValueError:
            raise ScanRecordNotFoundException(scan_id)
        return await self.store.get_scan_record(key)

    async def wait(self, request_id: str) -> None:
        """Block until the scan task for ``request_id`` has finished."""
        task = self._tasks.get(request_id)
        if task is not None:
            await asyncio.wait({task})

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start the background retention sweeper."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(
                self.registry.run_sweeper(self.config.retention_sweep_interval_seconds),
                name="job-retention-sweeper",
            )

    async def shutdown(self) -> None:
        """Cancel running scans, let finalizing ones persist, stop the sweeper."""
        for request_id in list(self._tasks):
            await self.cancel_scan(request_id)

        # Refused cancels are in AGGREGATION; give them one persistence window
        finalizing = [
            task for request_id, task in self._tasks.items()
            if self._is_running(request_id)
        ]
        if finalizing:
            await asyncio.wait(finalizing, timeout=self.config.persistence_timeout_seconds)

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

    # =========================================================================
    # JOB STATE HELPERS
    # =========================================================================

    def _is_running(self, request_id: str) -> bool:
        job = self.registry.get(request_id)
        return job is not None and job.status is ScanStatus.RUNNING

    def _checkpoint(self, request_id: str) -> None:
        if not self._is_running(request_id):
            raise ScanInterrupted(request_id)

    def _apply(
        self,
        request_id: str,
        mutation: Callable[[ScanJob], ScanJob | None],
    ) -> ProgressEvent | None:
        event = self.registry.update(request_id, mutation)
        if event is not None:
            self.broadcaster.publish(event)
        return event

    def _set_progress(
        self,
        request_id: str,
        progress: int,
        step: str,
        phase: ScanPhase | None = None,
    ) -> bool:
        """Real milestone: progress becomes at least ``progress``."""
        def mutation(job: ScanJob) -> ScanJob:
            return replace(
                job,
                progress=max(job.progress, progress),
                step=step,
                phase=phase or job.phase,
            )
        return self._apply(request_id, mutation) is not None

    def _advance_synthetic(self, request_id: str, progress: int, step: str | None) -> bool:
        """Synthetic tick: only ever moves progress forward."""
        def mutation(job: ScanJob) -> ScanJob | None:
            if progress <= job.progress:
                return None
            return replace(job, progress=progress, step=step or job.step)
        return self._apply(request_id, mutation) is not None

    def _finish(
        self,
        request_id: str,
        status: ScanStatus,
        step: str,
        error: str | None = None,
        guard: Callable[[ScanJob], bool] | None = None,
    ) -> ProgressEvent | None:
        """Terminal transition; returns None if another path got there first."""
        def mutation(job: ScanJob) -> ScanJob | None:
            if guard is not None and not guard(job):
                return None
            return replace(
                job,
                status=status,
                step=step,
                error=error,
                phase=ScanPhase.DONE,
                progress=100 if status is ScanStatus.SUCCESS else job.progress,
            )
        event = self._apply(request_id, mutation)
        if event is not None:
            self.estimator.cancel_all(request_id)
        return event

    # =========================================================================
    # PIPELINE
    # =========================================================================

    async def _execute(
        self,
        job: ScanJob,
        request: ScanRequest,
        resolved: ResolvedImage,
        tools: list[str],
    ) -> None:
        """
        Run one scan end-to-end.

        Never raises except on task cancellation; every failure is recorded
        on the job and the scan record.
        """
        request_id = job.request_id
        log = scan_logger(logger, request_id)
        timing = ScanTiming()
        workspace: ScanWorkspace | None = None
        succeeded = False

        try:
            if self._slots.locked():
                self._set_progress(request_id, 0, "Waiting for a free scan slot")
            async with self._slots:
                self._checkpoint(request_id)
                workspace = self._setup(job, tools, log)

                self._checkpoint(request_id)
                artifact = await self._acquire(job, resolved, workspace, timing, log)

                self._checkpoint(request_id)
                reports = await self._run_scanners(job, artifact, workspace, tools, timing, log)

                self._checkpoint(request_id)
                succeeded = await self._finalize(job, request, resolved, reports, tools, timing, log)

        except ScanInterrupted:
            log.info("Scan stopped at checkpoint: job is no longer running")

        except (ScanSetupException, ArtifactAcquisitionException) as e:
            log.error(f"Scan FAILED: {e.message}")
            await self._fail(job, e.message, log)

        except asyncio.CancelledError:
            log.warning("Scan task cancelled")
            message = "Scan interrupted by shutdown"
            if self._finish(request_id, ScanStatus.FAILED, "Scan failed", error=message) is not None:
                await asyncio.shield(self._persist_terminal(
                    job.scan_id,
                    {"status": ScanStatus.FAILED, "error_message": message, "finished_at": utcnow()},
                    log,
                ))
            raise

        except Exception as e:
            log.exception(f"Scan FAILED: Unexpected error - {type(e).__name__}: {e}")
            await self._fail(job, f"Unexpected error: {type(e).__name__}: {str(e)[:500]}", log)

        finally:
            self.estimator.cancel_all(request_id)
            if workspace is not None:
                self._cleanup(workspace, keep_reports=succeeded and self.config.keep_reports, log=log)

    def _setup(self, job: ScanJob, tools: list[str], log) -> ScanWorkspace:
        request_id = job.request_id
        self._set_progress(request_id, SETUP_BAND.start, "Setting up scan environment", ScanPhase.SETUP)

        reports_dir = self.config.reports_root / request_id
        images_dir = self.config.images_root / request_id
        try:
            reports_dir.mkdir(parents=True, exist_ok=True)
            images_dir.mkdir(parents=True, exist_ok=True)
            for tool in tools:
                cache_dir = self.scanners[tool].cache_dir
                if cache_dir is not None:
                    cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._cleanup(ScanWorkspace(reports_dir, images_dir), keep_reports=False, log=log)
            raise ScanSetupException(request_id, f"cannot create working directories: {e}")

        env: dict[str, str] = {}
        for tool in tools:
            env.update(self.scanners[tool].environment())

        self._set_progress(request_id, SETUP_BAND.end, "Scan environment ready")
        log.info(f"Workspace ready at {reports_dir}")
        return ScanWorkspace(reports_dir=reports_dir, images_dir=images_dir, env=env)

    async def _acquire(
        self,
        job: ScanJob,
        resolved: ResolvedImage,
        workspace: ScanWorkspace,
        timing: ScanTiming,
        log,
    ) -> Path:
        request_id = job.request_id
        local = resolved.source is ImageSource.LOCAL
        self._set_progress(
            request_id,
            ACQUISITION_BAND.start,
            "Exporting image from local daemon" if local else "Starting image download",
            ScanPhase.ACQUISITION,
        )
        expected = (
            self.config.export_expected_seconds if local
            else self.config.download_expected_seconds
        )
        timeout = self.config.acquisition_timeout_seconds

        timing.acquisition_start = time.monotonic()
        async with self.estimator.track(
            request_id, ACQUISITION_BAND, expected, steps=() if local else DOWNLOAD_STEPS
        ):
            try:
                artifact = await asyncio.wait_for(
                    self.resolver.export(resolved, workspace.images_dir), timeout=timeout
                )
            except asyncio.TimeoutError:
                raise ArtifactAcquisitionTimeoutException(resolved.reference, timeout)
            except OSError as e:
                raise ArtifactAcquisitionException(resolved.reference, str(e))
        timing.acquisition_end = time.monotonic()

        self._set_progress(request_id, ACQUIRED_MILESTONE, "Image download completed")
        log.info(f"Artifact acquired in {timing.acquisition_duration}s: {artifact}")
        self._write_metadata(workspace, resolved, log)
        return artifact

    async def _run_scanners(
        self,
        job: ScanJob,
        artifact: Path,
        workspace: ScanWorkspace,
        tools: list[str],
        timing: ScanTiming,
        log,
    ) -> dict[str, dict[str, Any]]:
        request_id = job.request_id
        self._set_progress(request_id, SCANNING_BAND.start, "Starting security scans", ScanPhase.SCANNING)

        reports: dict[str, dict[str, Any]] = {}
        timing.scan_start = time.monotonic()
        async with self.estimator.track(
            request_id, SCANNING_BAND, self.config.scan_sweep_expected_seconds
        ):
            for index, tool in enumerate(tools):
                self._checkpoint(request_id)
                self._set_progress(request_id, SCANNING_BAND.start, f"Running {tool} scan")

                runner = self.scanners[tool]
                output_path = workspace.reports_dir / runner.report_filename
                try:
                    payload = await runner.run(artifact, output_path, env=workspace.env, log=log)
                except Exception as e:
                    log.exception(f"{tool} runner raised unexpectedly")
                    payload = error_placeholder(tool, f"{type(e).__name__}: {e}")
                reports[tool] = payload

                self._checkpoint(request_id)
                await self._flush_report(job.scan_id, tool, payload, log)

                failed = is_error_placeholder(payload)
                self._set_progress(
                    request_id,
                    scanner_milestone(index, len(tools)),
                    f"{tool} scan {'failed' if failed else 'completed'}",
                )
        timing.scan_end = time.monotonic()
        return reports

    async def _finalize(
        self,
        job: ScanJob,
        request: ScanRequest,
        resolved: ResolvedImage,
        reports: dict[str, dict[str, Any]],
        tools: list[str],
        timing: ScanTiming,
        log,
    ) -> bool:
        request_id = job.request_id

        def enter_aggregation(current: ScanJob) -> ScanJob:
            return replace(
                current,
                progress=max(current.progress, AGGREGATION_BAND.start),
                step="Processing scan results",
                phase=ScanPhase.AGGREGATION,
            )

        if self._apply(request_id, enter_aggregation) is None:
            raise ScanInterrupted(request_id)

        versions = await self._collect_versions(tools)
        result = self.aggregator.aggregate(reports)
        policy = evaluate_policy(
            result, request.policy.model_dump() if request.policy else None
        )

        raw_reports = {
            **reports,
            "metadata": {
                "image": resolved.reference,
                "digest": resolved.digest,
                "platform": resolved.platform,
                "size_bytes": resolved.size_bytes,
                "timings": timing.to_dict(),
            },
        }
        fields = {
            **result.to_record_fields(),
            "status": ScanStatus.SUCCESS,
            "error_message": None,
            "finished_at": utcnow(),
            "reports": raw_reports,
            "scanner_versions": versions,
            "policy_passed": policy.passed,
            "policy_violations": policy.violations,
        }

        try:
            await asyncio.wait_for(
                self.store.update_scan_record(job.scan_id, fields),
                timeout=self.config.persistence_timeout_seconds,
            )
        except Exception as e:
            message = f"Failed to persist scan results: {getattr(e, 'message', None) or type(e).__name__}"
            log.error(message)
            self._finish(request_id, ScanStatus.FAILED, "Scan failed", error=message)
            return False

        if result.tool_errors:
            step = f"Scan completed with warnings from: {', '.join(result.tool_errors)}"
            log.warning(f"Tool errors: {result.warnings}")
        else:
            step = "Scan completed successfully"
        self._finish(request_id, ScanStatus.SUCCESS, step)

        log.info(
            f"Scan COMPLETED in {timing.total_duration}s - "
            f"vulns={result.counts.total}, critical={result.counts.critical}, "
            f"high={result.counts.high}, risk_score={result.risk_score}, "
            f"grade={result.compliance_grade}"
        )
        return True

    async def _fail(self, job: ScanJob, message: str, log) -> None:
        event = self._finish(job.request_id, ScanStatus.FAILED, "Scan failed", error=message)
        if event is None:
            return
        await self._persist_terminal(
            job.scan_id,
            {"status": ScanStatus.FAILED, "error_message": message, "finished_at": utcnow()},
            log,
        )

    # =========================================================================
    # STORE & FILESYSTEM HELPERS
    # =========================================================================

    async def _persist_terminal(self, scan_id: UUID, fields: dict[str, Any], log) -> None:
        try:
            await asyncio.wait_for(
                self.store.update_scan_record(scan_id, fields),
                timeout=self.config.persistence_timeout_seconds,
            )
        except Exception as e:
            log.error(f"Could not persist {fields['status'].value} status: {type(e).__name__}: {e}")

    async def _flush_report(self, scan_id: UUID, tool: str, payload: dict[str, Any], log) -> None:
        try:
            await asyncio.wait_for(
                self.store.save_scanner_report(scan_id, tool, payload),
                timeout=self.config.persistence_timeout_seconds,
            )
        except Exception as e:
            log.warning(f"Could not flush {tool} report: {type(e).__name__}: {e}")

    async def _collect_versions(self, tools: list[str]) -> dict[str, str]:
        results = await asyncio.gather(
            *(self.scanners[tool].get_version() for tool in tools),
            return_exceptions=True,
        )
        return {
            tool: version if isinstance(version, str) else "unknown"
            for tool, version in zip(tools, results)
        }

    @staticmethod
    def _write_metadata(workspace: ScanWorkspace, resolved: ResolvedImage, log) -> None:
        try:
            (workspace.reports_dir / "metadata.json").write_text(
                json.dumps(resolved.metadata, default=str), encoding="utf-8"
            )
        except OSError as e:
            log.warning(f"Could not write image metadata: {e}")

    @staticmethod
    def _cleanup(workspace: ScanWorkspace, keep_reports: bool, log) -> None:
        targets = [workspace.images_dir]
        if not keep_reports:
            targets.append(workspace.reports_dir)
        for target in targets:
            if not target.exists():
                continue
            try:
                shutil.rmtree(target)
            except OSError as e:
                log.warning(f"Failed to cleanup {target}: {e}")


def build_orchestrator(config: Settings, store: ScanRecordStore) -> ScanOrchestrator:
    """Production wiring: skopeo/docker resolver and the configured scanners."""
    return ScanOrchestrator(
        config=config,
        store=store,
        resolver=DefaultImageResolver.from_settings(config),
    )
