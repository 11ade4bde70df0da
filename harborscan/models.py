"""
SQLAlchemy ORM Models - Scan Record Store Schema
================================================
Architecture Decisions:

1. HYBRID STORAGE PATTERN:
   - JSON column for raw per-tool reports (full data retention)
   - Scalar columns for aggregated metrics (query performance)

2. IMAGE IDENTITY:
   - Images are keyed by content digest; repeated scans of the same digest
     share one ImageRecord

3. STATE MACHINE:
   - Scan lifecycle tracked via ScanStatus
   - Terminal transitions written to ScanAuditLog
"""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from harborscan.database import Base


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# ENUMS
# =============================================================================

class ScanStatus(str, enum.Enum):
    """
    Scan Lifecycle State Machine

    State Transitions:
        RUNNING -> SUCCESS
           |
           +-----> FAILED
           |
           +-----> CANCELLED

    Terminal States: SUCCESS, FAILED, CANCELLED
    """
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not ScanStatus.RUNNING


class ImageSource(str, enum.Enum):
    """Where the image artifact is acquired from."""
    REGISTRY = "registry"
    LOCAL = "local"


# =============================================================================
# IMAGE
# =============================================================================

class ImageRecord(Base):
    """A resolved image, unique per content digest."""

    __tablename__ = "images"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    digest: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        nullable=False,
        comment="sha256 content digest",
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    tag: Mapped[str] = mapped_column(String(128), nullable=False, default="latest")
    registry_host: Mapped[str | None] = mapped_column("registry", String(255), nullable=True)
    source: Mapped[ImageSource] = mapped_column(
        Enum(ImageSource, name="image_source"),
        nullable=False,
        default=ImageSource.REGISTRY,
    )
    platform: Mapped[str | None] = mapped_column(String(64), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    scans: Mapped[list["ScanRecord"]] = relationship(back_populates="image")


# =============================================================================
# CORE MODEL: ScanRecord
# =============================================================================

class ScanRecord(Base):
    """
    Persisted result of one scan.

    Created as a RUNNING skeleton when the scan is accepted, then written once
    with the aggregate when the scan reaches a terminal status.
    """

    __tablename__ = "scans"

    # ==========================================================================
    # IDENTIFIERS
    # ==========================================================================

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    request_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        comment="External handle, YYYYMMDD-HHMMSS-<hex>",
    )

    image_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("images.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    template: Mapped[str] = mapped_column(String(32), nullable=False, default="default")

    # ==========================================================================
    # LIFECYCLE STATE
    # ==========================================================================

    status: Mapped[ScanStatus] = mapped_column(
        Enum(ScanStatus, name="scan_status"),
        nullable=False,
        default=ScanStatus.RUNNING,
        index=True,
    )

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # ==========================================================================
    # RAW DATA
    # ==========================================================================

    reports: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Per-tool raw reports; failed tools hold {'error': ...}",
    )

    scanner_versions: Mapped[dict[str, str] | None] = mapped_column(JSONType, nullable=True)

    # ==========================================================================
    # AGGREGATED METRICS
    # ==========================================================================

    critical_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    high_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    medium_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    low_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    info_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_vulnerabilities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fixable_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    max_cvss_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_cvss_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    compliance_grade: Mapped[str] = mapped_column(String(8), nullable=False, default="N/A")
    compliance_score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    package_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    efficiency: Mapped[float | None] = mapped_column(Float, nullable=True)
    wasted_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    misconfiguration_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    secret_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    findings: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Deduplicated findings across all tools",
    )

    policy_passed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    policy_violations: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)

    warnings: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)

    # ==========================================================================
    # AUDIT TIMESTAMPS
    # ==========================================================================

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    image: Mapped[ImageRecord] = relationship(back_populates="scans", lazy="joined")

    __table_args__ = (
        Index("ix_scans_image_history", "image_id", "created_at"),
    )

    def to_summary_dict(self) -> dict[str, Any]:
        """Export scan record for API responses."""
        return {
            "id": str(self.id),
            "request_id": self.request_id,
            "image_id": str(self.image_id),
            "image": {
                "name": self.image.name,
                "tag": self.image.tag,
                "registry": self.image.registry_host,
                "digest": self.image.digest,
                "platform": self.image.platform,
                "size_bytes": self.image.size_bytes,
            } if self.image is not None else None,
            "template": self.template,
            "status": self.status.value,
            "error_message": self.error_message,
            "vulnerability_counts": {
                "critical": self.critical_count,
                "high": self.high_count,
                "medium": self.medium_count,
                "low": self.low_count,
                "info": self.info_count,
                "total": self.total_vulnerabilities,
                "fixable": self.fixable_count,
            },
            "risk_score": self.risk_score,
            "max_cvss_score": self.max_cvss_score,
            "avg_cvss_score": self.avg_cvss_score,
            "compliance_grade": self.compliance_grade,
            "compliance_score": self.compliance_score,
            "package_count": self.package_count,
            "efficiency": self.efficiency,
            "wasted_bytes": self.wasted_bytes,
            "misconfiguration_count": self.misconfiguration_count,
            "secret_count": self.secret_count,
            "findings": self.findings or [],
            "policy_passed": self.policy_passed,
            "policy_violations": self.policy_violations or [],
            "warnings": self.warnings or [],
            "scanner_versions": self.scanner_versions or {},
            "reports": self.reports or {},
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<ScanRecord("
            f"id={self.id}, "
            f"request_id={self.request_id}, "
            f"status={self.status.value}, "
            f"risk_score={self.risk_score}"
            f")>"
        )


# =============================================================================
# SUPPORTING MODEL: ScannerReportRecord
# =============================================================================

class ScannerReportRecord(Base):
    """
    One tool's raw output, flushed as soon as the tool finishes.

    Lets a crashed scan be inspected or resumed without re-running tools that
    already completed.
    """

    __tablename__ = "scanner_reports"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    scan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tool: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    is_error: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("scan_id", "tool", name="uq_scanner_report_tool"),
    )


# =============================================================================
# AUDIT MODEL: ScanAuditLog
# =============================================================================

class ScanAuditLog(Base):
    """Audit trail for scan status transitions."""

    __tablename__ = "scan_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    scan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    previous_status: Mapped[ScanStatus | None] = mapped_column(
        Enum(ScanStatus, name="scan_status"),
        nullable=True,
    )
    new_status: Mapped[ScanStatus] = mapped_column(
        Enum(ScanStatus, name="scan_status"),
        nullable=False,
    )

    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    audit_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_audit_scan_timeline", "scan_id", "created_at"),
    )
