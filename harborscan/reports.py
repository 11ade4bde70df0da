"""
Scanner Reports - One Typed Variant per Tool
============================================
parse_report() turns a raw tool payload into exactly one of:

    TrivyReport | GrypeReport | OsvReport | SyftReport
    | DockleReport | DiveReport | ErrorReport

Each variant exposes total extraction methods: missing or oddly-typed fields
yield zero/absent values instead of raising.

Report Structures (abridged):
    trivy:  {"Results": [{"Vulnerabilities": [{"VulnerabilityID", "PkgName",
             "InstalledVersion", "FixedVersion", "Severity", "CVSS"}]}]}
    grype:  {"matches": [{"vulnerability": {"id", "severity", "fix": {"versions"},
             "cvss": [{"metrics": {"baseScore"}}]}, "artifact": {"name", "version"}}]}
    osv:    {"results": [{"packages": [{"package": {"name", "version"},
             "vulnerabilities": [{"id", "aliases", "severity": [{"type", "score"}]}]}]}]}
    syft:   {"artifacts": [...], "distro": {...}}
    dockle: {"summary": {"fatal", "warn", "info", "pass"}, "details": [...]}
    dive:   {"image": {"efficiencyScore", "sizeBytes", "inefficientBytes"}}
"""

from dataclasses import dataclass, field
from typing import Any, Iterator

SEVERITY_LEVELS: tuple[str, ...] = ("critical", "high", "medium", "low", "info")

_SEVERITY_ALIASES = {
    "critical": "critical",
    "high": "high",
    "important": "high",
    "medium": "medium",
    "moderate": "medium",
    "low": "low",
    "negligible": "info",
    "info": "info",
    "unknown": "info",
}


def normalize_severity(value: Any) -> str:
    if not isinstance(value, str):
        return "info"
    return _SEVERITY_ALIASES.get(value.strip().lower(), "info")


def severity_from_cvss(score: float) -> str:
    """Bucket a CVSS base score using the NVD v3 ranges."""
    if score >= 9.0:
        return "critical"
    if score >= 7.0:
        return "high"
    if score >= 4.0:
        return "medium"
    if score > 0:
        return "low"
    return "info"


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> int:
    number = _as_float(value)
    return int(number) if number is not None else 0


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


# =============================================================================
# FINDING
# =============================================================================

@dataclass(frozen=True)
class Finding:
    """One vulnerability reported by one tool, before deduplication."""

    vulnerability_id: str
    package_name: str
    installed_version: str | None
    fixed_version: str | None
    severity: str
    cvss_score: float | None
    source: str

    @property
    def identity(self) -> tuple[str, str, str]:
        return (
            self.vulnerability_id.upper(),
            self.package_name.lower(),
            self.installed_version or "",
        )

    @property
    def is_fixable(self) -> bool:
        return self.fixed_version is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "vulnerability_id": self.vulnerability_id,
            "package_name": self.package_name,
            "installed_version": self.installed_version,
            "fixed_version": self.fixed_version,
            "severity": self.severity,
            "cvss_score": self.cvss_score,
            "source": self.source,
        }


# =============================================================================
# REPORT VARIANTS
# =============================================================================

@dataclass(frozen=True)
class ScannerReport:
    """Common base; ``tool`` names the producing scanner."""

    tool: str

    def findings(self) -> Iterator[Finding]:
        return iter(())


@dataclass(frozen=True)
class ErrorReport(ScannerReport):
    error: str = "unknown error"


@dataclass(frozen=True)
class TrivyReport(ScannerReport):
    payload: dict = field(default_factory=dict)

    def findings(self) -> Iterator[Finding]:
        for result in _as_list(self.payload.get("Results")):
            for vuln in _as_list(_as_dict(result).get("Vulnerabilities")):
                vuln = _as_dict(vuln)
                vuln_id = _text(vuln.get("VulnerabilityID"))
                package = _text(vuln.get("PkgName"))
                if vuln_id is None or package is None:
                    continue
                yield Finding(
                    vulnerability_id=vuln_id,
                    package_name=package,
                    installed_version=_text(vuln.get("InstalledVersion")),
                    fixed_version=_text(vuln.get("FixedVersion")),
                    severity=normalize_severity(vuln.get("Severity")),
                    cvss_score=extract_cvss_score(vuln),
                    source=self.tool,
                )

    def misconfiguration_count(self) -> int:
        return sum(
            len(_as_list(_as_dict(r).get("Misconfigurations")))
            for r in _as_list(self.payload.get("Results"))
        )

    def secret_count(self) -> int:
        return sum(
            len(_as_list(_as_dict(r).get("Secrets")))
            for r in _as_list(self.payload.get("Results"))
        )


@dataclass(frozen=True)
class GrypeReport(ScannerReport):
    payload: dict = field(default_factory=dict)

    def findings(self) -> Iterator[Finding]:
        for match in _as_list(self.payload.get("matches")):
            match = _as_dict(match)
            vuln = _as_dict(match.get("vulnerability"))
            artifact = _as_dict(match.get("artifact"))
            vuln_id = _text(vuln.get("id"))
            package = _text(artifact.get("name"))
            if vuln_id is None or package is None:
                continue
            fix_versions = _as_list(_as_dict(vuln.get("fix")).get("versions"))
            scores = [
                s for s in (
                    _as_float(_as_dict(_as_dict(c).get("metrics")).get("baseScore"))
                    for c in _as_list(vuln.get("cvss"))
                ) if s is not None
            ]
            yield Finding(
                vulnerability_id=vuln_id,
                package_name=package,
                installed_version=_text(artifact.get("version")),
                fixed_version=_text(fix_versions[0]) if fix_versions else None,
                severity=normalize_severity(vuln.get("severity")),
                cvss_score=max(scores) if scores else None,
                source=self.tool,
            )


@dataclass(frozen=True)
class OsvReport(ScannerReport):
    payload: dict = field(default_factory=dict)

    def findings(self) -> Iterator[Finding]:
        for result in _as_list(self.payload.get("results")):
            for pkg in _as_list(_as_dict(result).get("packages")):
                pkg = _as_dict(pkg)
                package = _as_dict(pkg.get("package"))
                name = _text(package.get("name"))
                if name is None:
                    continue
                for vuln in _as_list(pkg.get("vulnerabilities")):
                    vuln = _as_dict(vuln)
                    vuln_id = self._preferred_id(vuln)
                    if vuln_id is None:
                        continue
                    score = self._cvss_score(vuln)
                    if score is not None:
                        severity = severity_from_cvss(score)
                    else:
                        severity = normalize_severity(
                            _as_dict(vuln.get("database_specific")).get("severity")
                        )
                    yield Finding(
                        vulnerability_id=vuln_id,
                        package_name=name,
                        installed_version=_text(package.get("version")),
                        fixed_version=self._fixed_version(vuln),
                        severity=severity,
                        cvss_score=score,
                        source=self.tool,
                    )

    @staticmethod
    def _preferred_id(vuln: dict) -> str | None:
        """CVE alias when present, so findings line up with other tools."""
        for alias in _as_list(vuln.get("aliases")):
            if isinstance(alias, str) and alias.upper().startswith("CVE-"):
                return alias
        return _text(vuln.get("id"))

    @staticmethod
    def _cvss_score(vuln: dict) -> float | None:
        for entry in _as_list(vuln.get("severity")):
            entry = _as_dict(entry)
            if str(entry.get("type", "")).startswith("CVSS"):
                score = _as_float(entry.get("score"))
                if score is not None:
                    return score
        return None

    @staticmethod
    def _fixed_version(vuln: dict) -> str | None:
        for affected in _as_list(vuln.get("affected")):
            for rng in _as_list(_as_dict(affected).get("ranges")):
                for event in _as_list(_as_dict(rng).get("events")):
                    fixed = _text(_as_dict(event).get("fixed"))
                    if fixed:
                        return fixed
        return None


@dataclass(frozen=True)
class SyftReport(ScannerReport):
    payload: dict = field(default_factory=dict)

    def package_count(self) -> int:
        return len(_as_list(self.payload.get("artifacts")))


@dataclass(frozen=True)
class ComplianceAssessment:
    fatal: int
    warn: int
    info: int
    passed: int

    @property
    def total(self) -> int:
        return self.fatal + self.warn + self.info + self.passed

    @property
    def score(self) -> int | None:
        if self.total == 0:
            return None
        return round(self.passed / self.total * 100)

    @property
    def grade(self) -> str:
        """A >= 90, B >= 80, C >= 70, otherwise D; N/A without checks."""
        score = self.score
        if score is None:
            return "N/A"
        if score >= 90:
            return "A"
        if score >= 80:
            return "B"
        if score >= 70:
            return "C"
        return "D"


@dataclass(frozen=True)
class DockleReport(ScannerReport):
    payload: dict = field(default_factory=dict)

    def compliance(self) -> ComplianceAssessment:
        summary = _as_dict(self.payload.get("summary"))
        return ComplianceAssessment(
            fatal=_as_int(summary.get("fatal")),
            warn=_as_int(summary.get("warn")),
            info=_as_int(summary.get("info")),
            passed=_as_int(summary.get("pass")),
        )


@dataclass(frozen=True)
class DiveReport(ScannerReport):
    payload: dict = field(default_factory=dict)

    def efficiency(self) -> float | None:
        return _as_float(_as_dict(self.payload.get("image")).get("efficiencyScore"))

    def wasted_bytes(self) -> int:
        return _as_int(_as_dict(self.payload.get("image")).get("inefficientBytes"))


REPORT_TYPES: dict[str, type[ScannerReport]] = {
    "trivy": TrivyReport,
    "grype": GrypeReport,
    "osv": OsvReport,
    "syft": SyftReport,
    "dockle": DockleReport,
    "dive": DiveReport,
}


def parse_report(tool: str, payload: Any) -> ScannerReport:
    """Classify a raw payload; never raises."""
    if not isinstance(payload, dict):
        return ErrorReport(tool=tool, error=f"{tool} report is not a JSON object")
    if "error" in payload:
        return ErrorReport(tool=tool, error=str(payload["error"]))
    report_type = REPORT_TYPES.get(tool)
    if report_type is None:
        return ErrorReport(tool=tool, error=f"No parser for tool '{tool}'")
    return report_type(tool=tool, payload=payload)


# =============================================================================
# CVSS EXTRACTION
# =============================================================================

def extract_cvss_score(vuln: dict) -> float | None:
    """
    Extract CVSS score from Trivy vulnerability data.

    Trivy provides CVSS per source. Priority order:
    1. CVSS v3 from NVD
    2. CVSS v3 from any vendor
    3. CVSS v2 from NVD
    4. CVSS v2 from any vendor
    5. None if no score available
    """
    cvss_data = _as_dict(vuln.get("CVSS"))

    nvd = _as_dict(cvss_data.get("nvd"))
    score = _as_float(nvd.get("V3Score"))
    if score is not None:
        return score

    for scores in cvss_data.values():
        score = _as_float(_as_dict(scores).get("V3Score"))
        if score is not None:
            return score

    score = _as_float(nvd.get("V2Score"))
    if score is not None:
        return score

    for scores in cvss_data.values():
        score = _as_float(_as_dict(scores).get("V2Score"))
        if score is not None:
            return score

    return None
