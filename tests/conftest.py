"""
Pytest Configuration and Shared Fixtures
========================================
Test doubles for the orchestrator's seams (resolver, scanner runners,
record store) plus realistic tool reports for nginx:1.27.
"""

import asyncio
import hashlib
import json
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable
from uuid import UUID

import pytest

from harborscan.config import SCANNER_ORDER, Settings
from harborscan.exceptions import ScannerExecutionException, ScanRecordNotFoundException
from harborscan.models import ScanStatus
from harborscan.orchestrator import ScanOrchestrator
from harborscan.resolver import ImageResolver, ResolvedImage
from harborscan.scanners import ScannerRunner
from harborscan.schemas import ScanRequest
from harborscan.store import CreatedRecord, ScanRecordStore


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio as the async backend."""
    return "asyncio"


# =============================================================================
# HELPERS
# =============================================================================

async def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll until predicate() holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


# =============================================================================
# TEST DOUBLES
# =============================================================================

class FakeResolver(ImageResolver):
    """Resolves any request; export writes a placeholder tarball."""

    def __init__(self, resolve_error=None, export_error=None, export_gate=None):
        self.resolve_error = resolve_error
        self.export_error = export_error
        self.export_gate = export_gate
        self.export_calls = 0

    async def resolve(self, request: ScanRequest) -> ResolvedImage:
        if self.resolve_error is not None:
            raise self.resolve_error
        reference = request.full_image_reference
        digest = "sha256:" + hashlib.sha256(reference.encode()).hexdigest()
        return ResolvedImage(
            reference=reference,
            name=request.image,
            tag=request.tag,
            registry=request.registry,
            source=request.source,
            digest=digest,
            platform="linux/amd64",
            size_bytes=67_108_864,
            metadata={"Digest": digest, "Os": "linux", "Architecture": "amd64"},
        )

    async def export(self, image: ResolvedImage, destination: Path) -> Path:
        self.export_calls += 1
        if self.export_gate is not None:
            await self.export_gate.wait()
        if self.export_error is not None:
            raise self.export_error
        artifact = destination / image.archive_name
        artifact.write_bytes(b"docker-archive")
        return artifact


class FakeScanner(ScannerRunner):
    """
    Writes a canned report instead of running a binary.

    ``gate`` blocks execution until set; ``version_gate`` blocks the version
    lookup, which happens during aggregation.
    """

    def __init__(self, name, report=None, error=None, crash=None, gate=None, version_gate=None):
        super().__init__(binary=name, timeout=5)
        self.name = name
        self.report = report if report is not None else {}
        self.error = error
        self.crash = crash
        self.gate = gate
        self.version_gate = version_gate
        self.started = asyncio.Event()
        self.calls = 0

    def build_command(self, artifact_path, output_path):
        return [self.binary, str(artifact_path), str(output_path)]

    async def execute(self, artifact_path, output_path, env=None, log=None):
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.crash is not None:
            raise self.crash
        if self.error is not None:
            raise ScannerExecutionException(self.name, self.error, exit_code=2)
        output_path.write_text(json.dumps(self.report), encoding="utf-8")

    async def get_version(self):
        if self.version_gate is not None:
            await self.version_gate.wait()
        return f"{self.name} 0.0.0-test"


class InMemoryScanRecordStore(ScanRecordStore):
    """Dict-backed store recording every write for assertions."""

    def __init__(self, fail_updates_with: Exception | None = None):
        self.fail_updates_with = fail_updates_with
        self.records: dict[UUID, dict[str, Any]] = {}
        self.reports: dict[UUID, dict[str, dict]] = defaultdict(dict)
        self.status_writes: dict[UUID, list[str]] = defaultdict(list)
        self.update_attempts = 0

    async def create_scan_record(self, request_id, image, template) -> CreatedRecord:
        scan_id = uuid.uuid4()
        image_id = uuid.uuid5(uuid.NAMESPACE_URL, image.digest)
        self.records[scan_id] = {
            "id": str(scan_id),
            "request_id": request_id,
            "image_id": str(image_id),
            "template": template,
            "status": ScanStatus.RUNNING.value,
        }
        return CreatedRecord(scan_id=scan_id, image_id=image_id)

    async def update_scan_record(self, scan_id, fields) -> None:
        self.update_attempts += 1
        if self.fail_updates_with is not None:
            raise self.fail_updates_with
        if scan_id not in self.records:
            raise ScanRecordNotFoundException(str(scan_id))
        record = self.records[scan_id]
        record.update(fields)
        if "status" in fields:
            record["status"] = ScanStatus(fields["status"]).value
            self.status_writes[scan_id].append(record["status"])

    async def save_scanner_report(self, scan_id, tool, payload) -> None:
        self.reports[scan_id][tool] = payload

    async def get_scan_record(self, scan_id) -> dict[str, Any]:
        if scan_id not in self.records:
            raise ScanRecordNotFoundException(str(scan_id))
        return dict(self.records[scan_id])


# =============================================================================
# FIXTURES - Sample Tool Reports (nginx:1.27)
# =============================================================================

@pytest.fixture
def trivy_report():
    return {
        "SchemaVersion": 2,
        "ArtifactName": "nginx:1.27",
        "Results": [
            {
                "Target": "nginx:1.27 (debian 12.6)",
                "Class": "os-pkgs",
                "Type": "debian",
                "Vulnerabilities": [
                    {
                        "VulnerabilityID": "CVE-2023-44487",
                        "PkgName": "libnghttp2-14",
                        "InstalledVersion": "1.52.0-1",
                        "FixedVersion": "1.52.0-1+deb12u1",
                        "Severity": "HIGH",
                        "CVSS": {"nvd": {"V3Score": 7.5}},
                    },
                    {
                        "VulnerabilityID": "CVE-2023-45853",
                        "PkgName": "zlib1g",
                        "InstalledVersion": "1:1.2.13.dfsg-1",
                        "FixedVersion": "",
                        "Severity": "CRITICAL",
                        "CVSS": {"nvd": {"V3Score": 9.8}},
                    },
                    {
                        "VulnerabilityID": "CVE-2024-2511",
                        "PkgName": "openssl",
                        "InstalledVersion": "3.0.11-1~deb12u2",
                        "Severity": "LOW",
                        "CVSS": {"redhat": {"V3Score": 3.7}},
                    },
                ],
            },
        ],
    }


@pytest.fixture
def grype_report():
    return {
        "matches": [
            {
                "vulnerability": {
                    "id": "CVE-2023-44487",
                    "severity": "High",
                    "fix": {"versions": [], "state": "unknown"},
                    "cvss": [{"metrics": {"baseScore": 7.5}}],
                },
                "artifact": {"name": "libnghttp2-14", "version": "1.52.0-1"},
            },
            {
                "vulnerability": {
                    "id": "CVE-2023-52425",
                    "severity": "Medium",
                    "fix": {"versions": ["2.5.0-1+deb12u1"], "state": "fixed"},
                    "cvss": [{"metrics": {"baseScore": 5.4}}],
                },
                "artifact": {"name": "libexpat1", "version": "2.5.0-1"},
            },
        ],
    }


@pytest.fixture
def syft_report():
    return {
        "artifacts": [
            {"name": "libexpat1", "version": "2.5.0-1", "type": "deb"},
            {"name": "libnghttp2-14", "version": "1.52.0-1", "type": "deb"},
            {"name": "zlib1g", "version": "1:1.2.13.dfsg-1", "type": "deb"},
        ],
        "distro": {"name": "debian", "version": "12"},
    }


@pytest.fixture
def osv_report():
    return {
        "results": [
            {
                "packages": [
                    {
                        "package": {"name": "libexpat1", "version": "2.5.0-1", "ecosystem": "Debian"},
                        "vulnerabilities": [
                            {
                                "id": "DEBIAN-CVE-2023-52425",
                                "aliases": ["CVE-2023-52425"],
                                "severity": [
                                    {"type": "CVSS_V3", "score": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:N/I:N/A:L"}
                                ],
                                "database_specific": {"severity": "MODERATE"},
                                "affected": [
                                    {"ranges": [{"events": [{"introduced": "0"}, {"fixed": "2.5.0-1+deb12u1"}]}]}
                                ],
                            },
                        ],
                    },
                ],
            },
        ],
    }


@pytest.fixture
def dockle_report():
    return {
        "summary": {"fatal": 0, "warn": 1, "info": 2, "pass": 17},
        "details": [
            {"code": "CIS-DI-0001", "title": "Create a user for the container", "level": "WARN"},
        ],
    }


@pytest.fixture
def dive_report():
    return {
        "image": {
            "sizeBytes": 67_108_864,
            "inefficientBytes": 1_234_567,
            "efficiencyScore": 0.98,
        },
        "layer": [],
    }


@pytest.fixture
def tool_reports(trivy_report, grype_report, syft_report, osv_report, dockle_report, dive_report):
    return {
        "trivy": trivy_report,
        "grype": grype_report,
        "syft": syft_report,
        "osv": osv_report,
        "dockle": dockle_report,
        "dive": dive_report,
    }


# =============================================================================
# FIXTURES - Engine Wiring
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Tiny timings so synthetic progress is observable within a test."""
    return Settings(
        scanner_workdir=tmp_path / "workspace",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'harborscan.db'}",
        progress_tick_seconds=0.01,
        download_expected_seconds=0.5,
        export_expected_seconds=0.5,
        scan_sweep_expected_seconds=1.0,
        acquisition_timeout_seconds=5,
        persistence_timeout_seconds=5,
        job_retention_success_seconds=60,
        job_retention_failed_seconds=60,
        retention_sweep_interval_seconds=60,
        sse_heartbeat_seconds=0.05,
    )


@pytest.fixture
def store() -> InMemoryScanRecordStore:
    return InMemoryScanRecordStore()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def scanners(tool_reports) -> dict[str, FakeScanner]:
    return {tool: FakeScanner(tool, report=tool_reports[tool]) for tool in SCANNER_ORDER}


@pytest.fixture
async def orchestrator(settings, store, resolver, scanners):
    engine = ScanOrchestrator(settings, store=store, resolver=resolver, scanners=scanners)
    yield engine
    await engine.shutdown()


@pytest.fixture
def scan_request() -> ScanRequest:
    return ScanRequest(image="nginx", tag="1.27")


@pytest.fixture
def wait_until():
    return _wait_until
