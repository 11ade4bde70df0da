"""
HarborScan Engine - Application Package
=======================================
Scan orchestration, progress tracking and result aggregation for container
image security scans.
"""

from harborscan.aggregator import (
    NormalizedResult,
    PolicyEvaluation,
    ResultAggregator,
    RiskWeights,
    calculate_risk_score,
    deduplicate,
    evaluate_policy,
)

from harborscan.broadcaster import EventBroadcaster, Subscription

from harborscan.config import Settings, get_settings

from harborscan.exceptions import (
    HarborScanException,
    ScanJobNotFoundException,
    ScanRecordNotFoundException,
    DuplicateScanJobException,
    InvalidScanRequestException,
    ImageResolutionException,
    ArtifactAcquisitionException,
    ArtifactAcquisitionTimeoutException,
    ScanSetupException,
    CommandTimeoutException,
    ScannerExecutionException,
    ScannerTimeoutException,
    DatabaseConnectionException,
    DatabaseTransactionException,
)

from harborscan.jobs import JobRegistry, ProgressEvent, ScanJob, ScanPhase

from harborscan.models import ImageSource, ScanStatus

from harborscan.orchestrator import (
    CancelOutcome,
    ScanOrchestrator,
    StartedScan,
    build_orchestrator,
)

from harborscan.progress import Band, ProgressEstimator, SyntheticProgress

from harborscan.resolver import DefaultImageResolver, ImageResolver, ResolvedImage

from harborscan.scanners import SCAN_TEMPLATES, ScannerRunner, build_scanners

from harborscan.schemas import ScanRequest

from harborscan.store import ScanRecordStore, SqlScanRecordStore

__all__ = [
    # Aggregation
    "NormalizedResult",
    "PolicyEvaluation",
    "ResultAggregator",
    "RiskWeights",
    "calculate_risk_score",
    "deduplicate",
    "evaluate_policy",
    # Events
    "EventBroadcaster",
    "Subscription",
    # Config
    "Settings",
    "get_settings",
    # Exceptions
    "HarborScanException",
    "ScanJobNotFoundException",
    "ScanRecordNotFoundException",
    "DuplicateScanJobException",
    "InvalidScanRequestException",
    "ImageResolutionException",
    "ArtifactAcquisitionException",
    "ArtifactAcquisitionTimeoutException",
    "ScanSetupException",
    "CommandTimeoutException",
    "ScannerExecutionException",
    "ScannerTimeoutException",
    "DatabaseConnectionException",
    "DatabaseTransactionException",
    # Jobs
    "JobRegistry",
    "ProgressEvent",
    "ScanJob",
    "ScanPhase",
    "ImageSource",
    "ScanStatus",
    # Orchestration
    "CancelOutcome",
    "ScanOrchestrator",
    "StartedScan",
    "build_orchestrator",
    # Progress
    "Band",
    "ProgressEstimator",
    "SyntheticProgress",
    # Resolution & scanners
    "DefaultImageResolver",
    "ImageResolver",
    "ResolvedImage",
    "SCAN_TEMPLATES",
    "ScannerRunner",
    "build_scanners",
    # Schemas & store
    "ScanRequest",
    "ScanRecordStore",
    "SqlScanRecordStore",
]

__version__ = "1.0.0"
