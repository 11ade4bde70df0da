"""
Result Aggregator - Unified Risk Model
======================================
Turns the per-tool raw reports of one scan into a NormalizedResult.

Deduplication:
    Findings are keyed by (vulnerability id, package name, installed version)
    across trivy, grype and osv. When two tools report the same finding the
    kept entry is, in order of preference:
        1. the one with a fixed version
        2. the one with the higher CVSS score
        3. the first one seen (tool order: trivy, grype, osv)

Risk Score:
    risk = min(cap, round(critical*Wc + high*Wh + medium*Wm + low*Wl
                          + avg_cvss*Wcvss))
    Defaults: Wc=25, Wh=10, Wm=3, Wl=1, Wcvss=5, cap=100.
    A fix being available does not exempt a finding from the score.

Compliance Grade:
    From the dockle summary: score = round(pass / total * 100);
    A >= 90, B >= 80, C >= 70, otherwise D. "N/A" when dockle is absent,
    failed, or reported no checks.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from harborscan.config import SCANNER_ORDER, Settings
from harborscan.reports import (
    SEVERITY_LEVELS,
    DiveReport,
    DockleReport,
    ErrorReport,
    Finding,
    SyftReport,
    TrivyReport,
    parse_report,
)

logger = logging.getLogger(__name__)

METADATA_KEY = "metadata"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class RiskWeights:
    critical: int = 25
    high: int = 10
    medium: int = 3
    low: int = 1
    cvss: float = 5.0
    cap: int = 100

    @classmethod
    def from_settings(cls, config: Settings) -> "RiskWeights":
        return cls(
            critical=config.risk_weight_critical,
            high=config.risk_weight_high,
            medium=config.risk_weight_medium,
            low=config.risk_weight_low,
            cvss=config.risk_weight_cvss,
            cap=config.risk_score_cap,
        )


@dataclass
class SeverityCounts:
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    info: int = 0
    fixable: int = 0

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low + self.info

    def add(self, finding: Finding) -> None:
        setattr(self, finding.severity, getattr(self, finding.severity) + 1)
        if finding.is_fixable:
            self.fixable += 1

    def to_dict(self) -> dict[str, int]:
        return {
            **{level: getattr(self, level) for level in SEVERITY_LEVELS},
            "total": self.total,
            "fixable": self.fixable,
        }


@dataclass
class NormalizedResult:
    """Everything persisted about a scan besides the raw reports."""

    counts: SeverityCounts = field(default_factory=SeverityCounts)
    findings: list[Finding] = field(default_factory=list)
    risk_score: int = 0
    avg_cvss_score: float | None = None
    max_cvss_score: float | None = None
    compliance_grade: str = "N/A"
    compliance_score: int | None = None
    package_count: int | None = None
    efficiency: float | None = None
    wasted_bytes: int | None = None
    misconfiguration_count: int = 0
    secret_count: int = 0
    tool_errors: dict[str, str] = field(default_factory=dict)

    @property
    def warnings(self) -> list[str]:
        return [f"{tool}: {error}" for tool, error in self.tool_errors.items()]

    def to_record_fields(self) -> dict[str, Any]:
        """Column values for the scan record."""
        return {
            "critical_count": self.counts.critical,
            "high_count": self.counts.high,
            "medium_count": self.counts.medium,
            "low_count": self.counts.low,
            "info_count": self.counts.info,
            "total_vulnerabilities": self.counts.total,
            "fixable_count": self.counts.fixable,
            "risk_score": self.risk_score,
            "avg_cvss_score": self.avg_cvss_score,
            "max_cvss_score": self.max_cvss_score,
            "compliance_grade": self.compliance_grade,
            "compliance_score": self.compliance_score,
            "package_count": self.package_count,
            "efficiency": self.efficiency,
            "wasted_bytes": self.wasted_bytes,
            "misconfiguration_count": self.misconfiguration_count,
            "secret_count": self.secret_count,
            "findings": [f.to_dict() for f in self.findings],
            "warnings": self.warnings,
        }


@dataclass(frozen=True)
class PolicyEvaluation:
    passed: bool
    violations: list[str] = field(default_factory=list)


# =============================================================================
# PURE HELPERS
# =============================================================================

def prefer(current: Finding, candidate: Finding) -> Finding:
    """Pick the finding to keep when two tools report the same issue."""
    if current.is_fixable != candidate.is_fixable:
        return current if current.is_fixable else candidate
    current_score = current.cvss_score if current.cvss_score is not None else -1.0
    candidate_score = candidate.cvss_score if candidate.cvss_score is not None else -1.0
    if candidate_score > current_score:
        return candidate
    return current


def deduplicate(findings: list[Finding]) -> list[Finding]:
    kept: dict[tuple[str, str, str], Finding] = {}
    for finding in findings:
        key = finding.identity
        kept[key] = prefer(kept[key], finding) if key in kept else finding
    return list(kept.values())


def calculate_risk_score(
    counts: SeverityCounts,
    avg_cvss: float | None,
    weights: RiskWeights,
) -> int:
    raw = (
        counts.critical * weights.critical
        + counts.high * weights.high
        + counts.medium * weights.medium
        + counts.low * weights.low
        + (avg_cvss or 0.0) * weights.cvss
    )
    return min(weights.cap, round(raw))


def evaluate_policy(result: NormalizedResult, policy: Mapping[str, Any] | None) -> PolicyEvaluation:
    """
    Check thresholds: max_critical, max_high, max_risk_score.

    Thresholds left as None are not enforced; no policy always passes.
    """
    if not policy:
        return PolicyEvaluation(passed=True)

    violations = []
    checks = (
        ("max_critical", result.counts.critical, "critical vulnerabilities"),
        ("max_high", result.counts.high, "high vulnerabilities"),
        ("max_risk_score", result.risk_score, "risk score"),
    )
    for key, actual, label in checks:
        limit = policy.get(key)
        if limit is not None and actual > limit:
            violations.append(f"{label} {actual} exceeds limit {limit}")
    return PolicyEvaluation(passed=not violations, violations=violations)


# =============================================================================
# AGGREGATOR
# =============================================================================

class ResultAggregator:
    """Stateless apart from its risk weights; safe to share across scans."""

    def __init__(self, weights: RiskWeights | None = None):
        self.weights = weights or RiskWeights()

    def aggregate(self, raw_reports: Mapping[str, Any]) -> NormalizedResult:
        result = NormalizedResult()
        findings: list[Finding] = []

        for tool in self._ordered_tools(raw_reports):
            try:
                report = parse_report(tool, raw_reports[tool])
                if isinstance(report, ErrorReport):
                    result.tool_errors[tool] = report.error
                    continue
                tool_findings = list(report.findings())
                self._collect_extras(report, result)
            except Exception as e:
                # One malformed report must not sink the others
                logger.warning(f"Could not aggregate {tool} report: {type(e).__name__}: {e}")
                result.tool_errors[tool] = f"malformed report: {e}"
                continue
            findings.extend(tool_findings)

        result.findings = deduplicate(findings)
        for finding in result.findings:
            result.counts.add(finding)

        scores = [f.cvss_score for f in result.findings if f.cvss_score is not None]
        if scores:
            result.avg_cvss_score = round(sum(scores) / len(scores), 2)
            result.max_cvss_score = max(scores)

        result.risk_score = calculate_risk_score(result.counts, result.avg_cvss_score, self.weights)
        return result

    @staticmethod
    def _ordered_tools(raw_reports: Mapping[str, Any]) -> list[str]:
        known = [tool for tool in SCANNER_ORDER if tool in raw_reports]
        extra = sorted(t for t in raw_reports if t not in SCANNER_ORDER and t != METADATA_KEY)
        return known + extra

    @staticmethod
    def _collect_extras(report, result: NormalizedResult) -> None:
        if isinstance(report, DockleReport):
            compliance = report.compliance()
            result.compliance_grade = compliance.grade
            result.compliance_score = compliance.score
        elif isinstance(report, SyftReport):
            result.package_count = report.package_count()
        elif isinstance(report, DiveReport):
            result.efficiency = report.efficiency()
            result.wasted_bytes = report.wasted_bytes()
        elif isinstance(report, TrivyReport):
            result.misconfiguration_count = report.misconfiguration_count()
            result.secret_count = report.secret_count()
