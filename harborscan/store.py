"""
Scan Record Store
=================
Durable storage keyed by scan id, consumed by the orchestrator through the
ScanRecordStore interface. SqlScanRecordStore is the production
implementation on SQLAlchemy async sessions.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harborscan.database import session_scope
from harborscan.exceptions import (
    DatabaseConnectionException,
    DatabaseTransactionException,
    HarborScanException,
    ScanRecordNotFoundException,
)
from harborscan.models import ScanRecord, ScanStatus
from harborscan.repositories import (
    AuditLogRepository,
    ImageRepository,
    ScannerReportRepository,
    ScanRepository,
)
from harborscan.resolver import ResolvedImage

logger = logging.getLogger(__name__)


def database_error(operation: str, error: SQLAlchemyError) -> HarborScanException:
    """Map a driver error to the engine's exception taxonomy."""
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return DatabaseConnectionException(f"Database connection lost during {operation}")
    return DatabaseTransactionException(operation, str(error))


@dataclass(frozen=True)
class CreatedRecord:
    scan_id: UUID
    image_id: UUID


class ScanRecordStore(ABC):
    """Opaque durable store for scan results."""

    @abstractmethod
    async def create_scan_record(
        self,
        request_id: str,
        image: ResolvedImage,
        template: str,
    ) -> CreatedRecord:
        """Create the RUNNING skeleton for a newly accepted scan."""

    @abstractmethod
    async def update_scan_record(self, scan_id: UUID, fields: dict[str, Any]) -> None:
        """Write columns on an existing record."""

    @abstractmethod
    async def save_scanner_report(self, scan_id: UUID, tool: str, payload: dict[str, Any]) -> None:
        """Flush one tool's raw output as soon as it is available."""

    @abstractmethod
    async def get_scan_record(self, scan_id: UUID) -> dict[str, Any]:
        """Return the record as a dict; raises ScanRecordNotFoundException."""


class SqlScanRecordStore(ScanRecordStore):
    """SQLAlchemy-backed store. Each call runs in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_scan_record(
        self,
        request_id: str,
        image: ResolvedImage,
        template: str,
    ) -> CreatedRecord:
        try:
            async with session_scope(self.session_factory) as session:
                image_row = await ImageRepository(session).get_or_create(
                    digest=image.digest,
                    name=image.name,
                    tag=image.tag,
                    registry=image.registry,
                    source=image.source,
                    platform=image.platform,
                    size_bytes=image.size_bytes,
                )
                scan = await ScanRepository(session).create(
                    ScanRecord(
                        request_id=request_id,
                        image_id=image_row.id,
                        template=template,
                        status=ScanStatus.RUNNING,
                        started_at=datetime.now(timezone.utc),
                    )
                )
                await AuditLogRepository(session).record(
                    scan.id, None, ScanStatus.RUNNING, message=f"Scan accepted for {image.reference}"
                )
                return CreatedRecord(scan_id=scan.id, image_id=image_row.id)
        except SQLAlchemyError as e:
            raise database_error("create_scan_record", e)

    async def update_scan_record(self, scan_id: UUID, fields: dict[str, Any]) -> None:
        try:
            async with session_scope(self.session_factory) as session:
                scans = ScanRepository(session)
                previous = await scans.get_status(scan_id)
                if not await scans.update_fields(scan_id, fields):
                    raise ScanRecordNotFoundException(str(scan_id))
                new_status = fields.get("status")
                if new_status is not None and new_status != previous:
                    await AuditLogRepository(session).record(
                        scan_id,
                        previous,
                        new_status,
                        message=fields.get("error_message"),
                        audit_data={"risk_score": fields.get("risk_score")}
                        if "risk_score" in fields else None,
                    )
        except SQLAlchemyError as e:
            raise database_error("update_scan_record", e)

    async def save_scanner_report(self, scan_id: UUID, tool: str, payload: dict[str, Any]) -> None:
        try:
            async with session_scope(self.session_factory) as session:
                await ScannerReportRepository(session).upsert(
                    scan_id, tool, payload, is_error="error" in payload
                )
        except SQLAlchemyError as e:
            raise database_error("save_scanner_report", e)

    async def get_scan_record(self, scan_id: UUID) -> dict[str, Any]:
        try:
            async with session_scope(self.session_factory) as session:
                scan = await ScanRepository(session).get_by_id(scan_id)
                if scan is None:
                    raise ScanRecordNotFoundException(str(scan_id))
                return scan.to_summary_dict()
        except SQLAlchemyError as e:
            raise database_error("get_scan_record", e)
