"""
Scanner Runners - One External Tool per Runner
==============================================
Each runner executes its tool against a local image tarball with a bounded
timeout and returns the tool's JSON report as a dict.

A runner never raises past run(): a non-zero exit, a timeout, a missing
binary or unreadable output is converted into an error placeholder
``{"error": "<reason>"}`` which is also written to the output path, so the
report slot on disk always holds something parseable.

Execution order is fixed: trivy, grype, syft, osv, dockle, dive.
osv consumes the CycloneDX SBOM that syft writes next to its report.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from harborscan.config import SCANNER_ORDER, Settings
from harborscan.exceptions import (
    CommandTimeoutException,
    InvalidScanRequestException,
    ScannerExecutionException,
    ScannerTimeoutException,
)
from harborscan.process import CommandResult, run_command

logger = logging.getLogger(__name__)

SBOM_FILENAME = "sbom.cdx.json"

# Tool subsets selectable per request
SCAN_TEMPLATES: dict[str, tuple[str, ...]] = {
    "default": SCANNER_ORDER,
    "vulnerability": ("trivy", "grype"),
    "sbom": ("syft", "osv"),
    "compliance": ("dockle",),
    "efficiency": ("dive",),
    "quick": ("trivy",),
}


def error_placeholder(tool: str, message: str) -> dict[str, Any]:
    """Report written in place of a failed tool's output."""
    payload: dict[str, Any] = {"error": message}
    if tool == "dive":
        payload["layer"] = []
    elif tool == "osv":
        payload["vulnerabilities"] = []
    return payload


def is_error_placeholder(payload: Any) -> bool:
    return isinstance(payload, dict) and isinstance(payload.get("error"), str)


# =============================================================================
# BASE RUNNER
# =============================================================================

class ScannerRunner(ABC):
    """
    Contract for one external analysis tool.

    Subclasses provide build_command(); tools that print their report to
    stdout set ``stdout_report`` and the runner writes it to the output path.
    """

    name: str = ""
    stdout_report: bool = False
    success_codes: tuple[int, ...] = (0,)
    cache_env_var: str | None = None

    def __init__(
        self,
        binary: str,
        timeout: float,
        cache_dir: Path | None = None,
        version_timeout: float = 10,
    ):
        self.binary = binary
        self.timeout = timeout
        self.cache_dir = cache_dir
        self.version_timeout = version_timeout

    @property
    def report_filename(self) -> str:
        return f"{self.name}.json"

    @abstractmethod
    def build_command(self, artifact_path: Path, output_path: Path) -> list[str]:
        """Return the argv that scans ``artifact_path``."""

    def environment(self) -> dict[str, str]:
        if self.cache_env_var and self.cache_dir is not None:
            return {self.cache_env_var: str(self.cache_dir)}
        return {}

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(
        self,
        artifact_path: Path,
        output_path: Path,
        env: dict[str, str] | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        """
        Run the tool; the report ends up at ``output_path``.

        Raises:
            ScannerTimeoutException: the tool exceeded its timeout
            ScannerExecutionException: unexpected exit code
            OSError: the binary could not be started
        """
        command = self.build_command(artifact_path, output_path)
        try:
            result = await run_command(
                command,
                timeout=self.timeout,
                env={**self.environment(), **(env or {})},
                log=log,
            )
        except CommandTimeoutException:
            raise ScannerTimeoutException(self.name, self.timeout)

        self.check_result(result)
        if self.stdout_report:
            output_path.write_bytes(result.stdout)

    def check_result(self, result: CommandResult) -> None:
        if result.returncode not in self.success_codes:
            raise ScannerExecutionException(
                self.name,
                result.describe_failure(),
                exit_code=result.returncode,
            )

    def load_report(self, output_path: Path) -> dict[str, Any]:
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise ScannerExecutionException(self.name, "tool did not produce a report")
        with open(output_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        if not isinstance(payload, dict):
            raise ScannerExecutionException(self.name, "report is not a JSON object")
        return payload

    async def run(
        self,
        artifact_path: Path,
        output_path: Path,
        env: dict[str, str] | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> dict[str, Any]:
        """Run the tool and return its report or an error placeholder."""
        log = log or logger
        log.info(f"Running {self.name}")
        try:
            await self.execute(artifact_path, output_path, env=env, log=log)
            payload = self.load_report(output_path)
        except ScannerExecutionException as e:
            message = e.message
        except OSError as e:
            message = f"{self.name} could not be executed: {e}"
        except ValueError as e:
            message = f"{self.name} produced invalid JSON: {e}"
        else:
            log.info(f"{self.name} completed")
            return payload

        log.warning(f"{self.name} failed: {message}")
        payload = error_placeholder(self.name, message)
        try:
            output_path.write_text(json.dumps(payload), encoding="utf-8")
        except OSError as e:
            log.warning(f"Could not write {self.name} error placeholder: {e}")
        return payload

    async def get_version(self) -> str:
        """First line of ``<tool> --version`` or "unknown"."""
        try:
            result = await run_command([self.binary, "--version"], timeout=self.version_timeout)
        except (CommandTimeoutException, OSError):
            return "unknown"
        if not result.ok:
            return "unknown"
        lines = result.stdout_text.splitlines()
        return lines[0].strip() if lines else "unknown"


# =============================================================================
# TOOL RUNNERS
# =============================================================================

class TrivyRunner(ScannerRunner):
    name = "trivy"
    cache_env_var = "TRIVY_CACHE_DIR"

    def build_command(self, artifact_path: Path, output_path: Path) -> list[str]:
        return [
            self.binary,
            "image",
            "--input", str(artifact_path),
            "--format", "json",
            "--output", str(output_path),
            "--scanners", "vuln,secret,misconfig",
            "--timeout", f"{int(self.timeout)}s",
            "--quiet",
        ]


class GrypeRunner(ScannerRunner):
    name = "grype"
    cache_env_var = "GRYPE_DB_CACHE_DIR"

    def build_command(self, artifact_path: Path, output_path: Path) -> list[str]:
        return [
            self.binary,
            f"docker-archive:{artifact_path}",
            "-o", "json",
            "--file", str(output_path),
            "-q",
        ]


class SyftRunner(ScannerRunner):
    """Writes the syft JSON report plus a CycloneDX SBOM for osv."""

    name = "syft"
    cache_env_var = "SYFT_CACHE_DIR"

    def build_command(self, artifact_path: Path, output_path: Path) -> list[str]:
        sbom_path = output_path.parent / SBOM_FILENAME
        return [
            self.binary,
            f"docker-archive:{artifact_path}",
            "-o", f"json={output_path}",
            "-o", f"cyclonedx-json@1.5={sbom_path}",
            "-q",
        ]


class OsvRunner(ScannerRunner):
    """
    Scans the SBOM produced by syft.

    Exit code 1 means vulnerabilities were found and still yields a report.
    """

    name = "osv"
    stdout_report = True
    success_codes = (0, 1)

    def build_command(self, artifact_path: Path, output_path: Path) -> list[str]:
        return [
            self.binary,
            "--format", "json",
            "--sbom", str(output_path.parent / SBOM_FILENAME),
        ]

    async def execute(
        self,
        artifact_path: Path,
        output_path: Path,
        env: dict[str, str] | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        if not (output_path.parent / SBOM_FILENAME).exists():
            raise ScannerExecutionException(self.name, "SBOM not found; syft must run first")
        await super().execute(artifact_path, output_path, env=env, log=log)

    def check_result(self, result: CommandResult) -> None:
        if result.returncode == 1 and not result.stdout.strip():
            raise ScannerExecutionException(
                self.name, result.describe_failure(), exit_code=result.returncode
            )
        super().check_result(result)


class DockleRunner(ScannerRunner):
    name = "dockle"
    cache_env_var = "DOCKLE_TMP_DIR"

    def build_command(self, artifact_path: Path, output_path: Path) -> list[str]:
        return [
            self.binary,
            "--input", str(artifact_path),
            "--format", "json",
            "--output", str(output_path),
            "--exit-code", "0",
        ]


class DiveRunner(ScannerRunner):
    name = "dive"

    def build_command(self, artifact_path: Path, output_path: Path) -> list[str]:
        return [
            self.binary,
            str(artifact_path),
            "--source", "docker-archive",
            "--json", str(output_path),
        ]


SCANNER_CLASSES: dict[str, type[ScannerRunner]] = {
    cls.name: cls
    for cls in (TrivyRunner, GrypeRunner, SyftRunner, OsvRunner, DockleRunner, DiveRunner)
}


# =============================================================================
# FACTORIES
# =============================================================================

def resolve_template(template: str | None, config: Settings) -> list[str]:
    """
    Tools selected by a template, in execution order.

    The default template honours ``enabled_scanners``; named templates are
    fixed subsets.

    Raises:
        InvalidScanRequestException: unknown template name
    """
    name = template or "default"
    if name not in SCAN_TEMPLATES:
        raise InvalidScanRequestException(
            f"Unknown template '{name}'. Available: {', '.join(SCAN_TEMPLATES)}",
            field="template",
        )
    if name == "default":
        return list(config.enabled_scanners)
    return [tool for tool in SCANNER_ORDER if tool in SCAN_TEMPLATES[name]]


def build_scanners(config: Settings) -> dict[str, ScannerRunner]:
    """Instantiate one runner per known tool from settings."""
    return {
        name: SCANNER_CLASSES[name](
            binary=config.scanner_binary(name),
            timeout=config.scanner_timeout(name),
            cache_dir=config.cache_root / name,
            version_timeout=config.version_check_timeout_seconds,
        )
        for name in SCANNER_ORDER
    }
