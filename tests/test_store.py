"""
Scan Record Store Tests
=======================
SqlScanRecordStore against a file-backed SQLite database (aiosqlite).
"""

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError

from harborscan.database import (
    close_db,
    create_db_engine,
    create_session_factory,
    health_check,
    init_db,
    session_scope,
)
from harborscan.exceptions import (
    DatabaseConnectionException,
    DatabaseTransactionException,
    ScanRecordNotFoundException,
)
from harborscan.models import ImageRecord, ImageSource, ScanStatus
from harborscan.repositories import AuditLogRepository, ScannerReportRepository, ScanRepository
from harborscan.resolver import ResolvedImage
from harborscan.store import SqlScanRecordStore, database_error

NGINX_DIGEST = "sha256:28402db69fec7c17e179ea87882667f1e054391138f77ffaf0c3eb388efc3ffb"


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
async def engine(settings):
    engine = create_db_engine(config=settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def sql_store(session_factory) -> SqlScanRecordStore:
    return SqlScanRecordStore(session_factory)


@pytest.fixture
def nginx() -> ResolvedImage:
    return ResolvedImage(
        reference="nginx:1.27",
        name="nginx",
        tag="1.27",
        registry=None,
        source=ImageSource.REGISTRY,
        digest=NGINX_DIGEST,
        platform="linux/amd64",
        size_bytes=67_108_864,
    )


# =============================================================================
# TESTS
# =============================================================================

class TestSqlScanRecordStore:

    async def test_create_scan_record(self, sql_store, nginx):
        created = await sql_store.create_scan_record("20261019-101500-ab12cd34", nginx, "default")

        record = await sql_store.get_scan_record(created.scan_id)
        assert record["id"] == str(created.scan_id)
        assert record["request_id"] == "20261019-101500-ab12cd34"
        assert record["status"] == "RUNNING"
        assert record["template"] == "default"
        assert record["image"]["digest"] == NGINX_DIGEST
        assert record["image"]["platform"] == "linux/amd64"
        assert record["started_at"] is not None
        assert record["finished_at"] is None

    async def test_same_digest_reuses_image(self, sql_store, nginx):
        first = await sql_store.create_scan_record("20261019-101500-aaaaaaaa", nginx, "default")
        retagged = ResolvedImage(
            reference="nginx:stable",
            name="nginx",
            tag="stable",
            registry=None,
            source=ImageSource.REGISTRY,
            digest=NGINX_DIGEST,
        )
        second = await sql_store.create_scan_record("20261019-101501-bbbbbbbb", retagged, "quick")

        assert first.image_id == second.image_id
        assert first.scan_id != second.scan_id
        record = await sql_store.get_scan_record(second.scan_id)
        assert record["image"]["tag"] == "stable"
        assert record["image"]["platform"] == "linux/amd64"

    async def test_registry_host_round_trip(self, sql_store):
        mirrored = ResolvedImage(
            reference="ghcr.io/library/nginx:1.27",
            name="library/nginx",
            tag="1.27",
            registry="ghcr.io",
            source=ImageSource.REGISTRY,
            digest="sha256:" + "ab" * 32,
        )
        created = await sql_store.create_scan_record("20261019-101502-cccccccc", mirrored, "default")

        record = await sql_store.get_scan_record(created.scan_id)
        assert record["image"]["registry"] == "ghcr.io"
        assert "registry" in ImageRecord.__table__.c
        assert ImageRecord.registry_host.key == "registry_host"

    async def test_complete_scan(self, sql_store, session_factory, nginx):
        created = await sql_store.create_scan_record("20261019-101500-ab12cd34", nginx, "default")
        await sql_store.update_scan_record(created.scan_id, {
            "status": ScanStatus.SUCCESS,
            "finished_at": datetime.now(timezone.utc),
            "critical_count": 1,
            "high_count": 1,
            "medium_count": 1,
            "low_count": 1,
            "total_vulnerabilities": 4,
            "fixable_count": 2,
            "risk_score": 72,
            "avg_cvss_score": 6.6,
            "max_cvss_score": 9.8,
            "compliance_grade": "B",
            "compliance_score": 85,
            "wasted_bytes": 1_234_567,
            "misconfiguration_count": 2,
            "secret_count": 1,
            "findings": [{
                "vulnerability_id": "CVE-2023-45853",
                "package_name": "zlib1g",
                "installed_version": "1:1.2.13.dfsg-1",
                "fixed_version": None,
                "severity": "CRITICAL",
                "cvss_score": 9.8,
                "source": "trivy",
            }],
            "warnings": [],
            "scanner_versions": {"trivy": "Version: 0.56.2"},
            "reports": {"trivy": {"Results": []}, "metadata": {"image": "nginx:1.27"}},
            "policy_passed": True,
            "policy_violations": [],
        })

        record = await sql_store.get_scan_record(created.scan_id)
        assert record["status"] == "SUCCESS"
        assert record["risk_score"] == 72
        assert record["vulnerability_counts"]["total"] == 4
        assert record["vulnerability_counts"]["fixable"] == 2
        assert record["compliance_grade"] == "B"
        assert record["scanner_versions"] == {"trivy": "Version: 0.56.2"}
        assert record["reports"]["metadata"] == {"image": "nginx:1.27"}
        assert record["wasted_bytes"] == 1_234_567
        assert record["misconfiguration_count"] == 2
        assert record["secret_count"] == 1
        assert [f["vulnerability_id"] for f in record["findings"]] == ["CVE-2023-45853"]
        assert record["findings"][0]["fixed_version"] is None
        assert record["finished_at"] is not None

        async with session_scope(session_factory) as session:
            entries = await AuditLogRepository(session).list_for_scan(created.scan_id)
        transitions = {(e.previous_status, e.new_status) for e in entries}
        assert transitions == {(None, ScanStatus.RUNNING), (ScanStatus.RUNNING, ScanStatus.SUCCESS)}
        success = next(e for e in entries if e.new_status is ScanStatus.SUCCESS)
        assert success.audit_data == {"risk_score": 72}

    async def test_failure_is_audited_with_message(self, sql_store, session_factory, nginx):
        created = await sql_store.create_scan_record("20261019-101500-ab12cd34", nginx, "default")
        await sql_store.update_scan_record(created.scan_id, {
            "status": ScanStatus.FAILED,
            "error_message": "Failed to acquire image 'nginx:1.27': manifest unknown",
            "finished_at": datetime.now(timezone.utc),
        })

        record = await sql_store.get_scan_record(created.scan_id)
        assert record["status"] == "FAILED"
        assert "manifest unknown" in record["error_message"]

        async with session_scope(session_factory) as session:
            entries = await AuditLogRepository(session).list_for_scan(created.scan_id)
        failed = next(e for e in entries if e.new_status is ScanStatus.FAILED)
        assert failed.message == record["error_message"]
        assert failed.audit_data is None

    async def test_update_without_status_is_not_audited(self, sql_store, session_factory, nginx):
        created = await sql_store.create_scan_record("20261019-101500-ab12cd34", nginx, "default")
        await sql_store.update_scan_record(created.scan_id, {"package_count": 143})

        async with session_scope(session_factory) as session:
            entries = await AuditLogRepository(session).list_for_scan(created.scan_id)
        assert len(entries) == 1

    async def test_update_missing_record(self, sql_store):
        with pytest.raises(ScanRecordNotFoundException):
            await sql_store.update_scan_record(uuid4(), {"status": ScanStatus.CANCELLED})

    async def test_get_missing_record(self, sql_store):
        with pytest.raises(ScanRecordNotFoundException) as exc_info:
            await sql_store.get_scan_record(uuid4())
        assert exc_info.value.http_status == 404

    async def test_scanner_report_upsert(self, sql_store, session_factory, nginx):
        created = await sql_store.create_scan_record("20261019-101500-ab12cd34", nginx, "default")
        await sql_store.save_scanner_report(created.scan_id, "trivy", {"error": "trivy timed out"})
        await sql_store.save_scanner_report(created.scan_id, "trivy", {"Results": []})
        await sql_store.save_scanner_report(created.scan_id, "dockle", {"summary": {"pass": 17}})

        async with session_scope(session_factory) as session:
            reports = await ScannerReportRepository(session).list_for_scan(created.scan_id)
        by_tool = {r.tool: r for r in reports}
        assert len(reports) == 2
        assert by_tool["trivy"].payload == {"Results": []}
        assert by_tool["trivy"].is_error is False

    async def test_lookup_by_request_id(self, sql_store, session_factory, nginx):
        created = await sql_store.create_scan_record("20261019-101500-ab12cd34", nginx, "default")
        async with session_scope(session_factory) as session:
            scan = await ScanRepository(session).get_by_request_id("20261019-101500-ab12cd34")
        assert scan.id == created.scan_id


class TestDatabaseErrors:

    def test_lost_connection(self):
        error = DBAPIError("SELECT 1", {}, ConnectionResetError(), connection_invalidated=True)
        mapped = database_error("get_scan_record", error)
        assert isinstance(mapped, DatabaseConnectionException)
        assert mapped.http_status == 503

    def test_other_errors_are_transaction_errors(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        mapped = database_error("create_scan_record", error)
        assert isinstance(mapped, DatabaseTransactionException)
        assert "UNIQUE constraint failed" in mapped.message


class TestDatabase:

    async def test_health_check(self, engine):
        assert await health_check(engine) == {"status": "healthy", "database": "connected"}

    async def test_session_scope_rolls_back(self, session_factory, sql_store, nginx):
        created = await sql_store.create_scan_record("20261019-101500-ab12cd34", nginx, "default")
        with pytest.raises(RuntimeError):
            async with session_scope(session_factory) as session:
                await ScanRepository(session).update_fields(created.scan_id, {"risk_score": 99})
                raise RuntimeError("abort")

        record = await sql_store.get_scan_record(created.scan_id)
        assert record["risk_score"] == 0
