"""
Repository Pattern - Data Access Layer
======================================
Encapsulates all SQL for the scan record store. Repositories work on a
caller-provided session; the caller owns the transaction.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from harborscan.models import (
    ImageRecord,
    ImageSource,
    ScanAuditLog,
    ScannerReportRecord,
    ScanRecord,
    ScanStatus,
)


class ImageRepository:
    """Images are unique per digest and shared by repeated scans."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_digest(self, digest: str) -> ImageRecord | None:
        result = await self.session.execute(
            select(ImageRecord).where(ImageRecord.digest == digest)
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        digest: str,
        name: str,
        tag: str,
        registry: str | None,
        source: ImageSource,
        platform: str | None = None,
        size_bytes: int | None = None,
    ) -> ImageRecord:
        image = await self.get_by_digest(digest)
        if image is not None:
            # Same content, possibly reached via a new tag
            image.tag = tag
            image.platform = platform or image.platform
            image.size_bytes = size_bytes or image.size_bytes
            return image

        image = ImageRecord(
            digest=digest,
            name=name,
            tag=tag,
            registry_host=registry,
            source=source,
            platform=platform,
            size_bytes=size_bytes,
        )
        self.session.add(image)
        await self.session.flush()
        return image


class ScanRepository:
    """All database access for scan records goes through this class."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, scan: ScanRecord) -> ScanRecord:
        self.session.add(scan)
        await self.session.flush()
        return scan

    async def get_by_id(self, scan_id: UUID) -> ScanRecord | None:
        return await self.session.get(ScanRecord, scan_id)

    async def get_by_request_id(self, request_id: str) -> ScanRecord | None:
        result = await self.session.execute(
            select(ScanRecord).where(ScanRecord.request_id == request_id)
        )
        return result.scalar_one_or_none()

    async def get_status(self, scan_id: UUID) -> ScanStatus | None:
        result = await self.session.execute(
            select(ScanRecord.status).where(ScanRecord.id == scan_id)
        )
        return result.scalar_one_or_none()

    async def update_fields(self, scan_id: UUID, fields: dict[str, Any]) -> bool:
        """
        Update columns on one scan.

        Returns True if a row was updated, False if the scan does not exist.
        """
        values = {**fields, "updated_at": datetime.now(timezone.utc)}
        result = await self.session.execute(
            update(ScanRecord).where(ScanRecord.id == scan_id).values(**values)
        )
        return result.rowcount > 0


class ScannerReportRepository:

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, scan_id: UUID, tool: str, payload: dict, is_error: bool) -> ScannerReportRecord:
        result = await self.session.execute(
            select(ScannerReportRecord).where(
                ScannerReportRecord.scan_id == scan_id,
                ScannerReportRecord.tool == tool,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = ScannerReportRecord(scan_id=scan_id, tool=tool)
            self.session.add(record)
        record.payload = payload
        record.is_error = is_error
        await self.session.flush()
        return record

    async def list_for_scan(self, scan_id: UUID) -> list[ScannerReportRecord]:
        result = await self.session.execute(
            select(ScannerReportRecord)
            .where(ScannerReportRecord.scan_id == scan_id)
            .order_by(ScannerReportRecord.created_at)
        )
        return list(result.scalars().all())


class AuditLogRepository:

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        scan_id: UUID,
        previous_status: ScanStatus | None,
        new_status: ScanStatus,
        message: str | None = None,
        audit_data: dict | None = None,
    ) -> ScanAuditLog:
        entry = ScanAuditLog(
            scan_id=scan_id,
            previous_status=previous_status,
            new_status=new_status,
            message=message,
            audit_data=audit_data,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_scan(self, scan_id: UUID) -> list[ScanAuditLog]:
        result = await self.session.execute(
            select(ScanAuditLog)
            .where(ScanAuditLog.scan_id == scan_id)
            .order_by(ScanAuditLog.created_at)
        )
        return list(result.scalars().all())
