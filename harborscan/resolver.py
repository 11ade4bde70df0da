"""
Image Resolver - Digest Resolution and Artifact Export
======================================================
Turns a scan request into a content-addressable identity (resolve) and a
docker-archive tarball on local disk (export).

Backends:
- RegistryImageResolver: ``skopeo inspect`` / ``skopeo copy`` (no daemon)
- LocalDockerResolver:   ``docker image inspect`` / ``docker save``
- DefaultImageResolver:  dispatches on ScanRequest.source
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from harborscan.config import Settings
from harborscan.exceptions import (
    ArtifactAcquisitionException,
    ArtifactAcquisitionTimeoutException,
    CommandTimeoutException,
    ImageResolutionException,
)
from harborscan.models import ImageSource
from harborscan.process import run_command
from harborscan.schemas import ScanRequest

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class ResolvedImage:
    """Identity of the image a scan will run against."""

    reference: str
    name: str
    tag: str
    registry: str | None
    source: ImageSource
    digest: str
    platform: str | None = None
    size_bytes: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def archive_name(self) -> str:
        return f"{_UNSAFE_FILENAME.sub('_', f'{self.name}_{self.tag}')}.tar"


@dataclass(frozen=True)
class ExportedImage:
    digest: str
    artifact_path: Path
    platform: str | None
    size_bytes: int | None


class ImageResolver(ABC):
    """Contract consumed by the orchestrator."""

    @abstractmethod
    async def resolve(self, request: ScanRequest) -> ResolvedImage:
        """Raises ImageResolutionException if the image cannot be identified."""

    @abstractmethod
    async def export(self, image: ResolvedImage, destination: Path) -> Path:
        """Raises ArtifactAcquisitionException if no tarball could be produced."""

    async def resolve_and_export(
        self,
        request: ScanRequest,
        destination: Path,
    ) -> ExportedImage:
        image = await self.resolve(request)
        artifact = await self.export(image, destination)
        return ExportedImage(
            digest=image.digest,
            artifact_path=artifact,
            platform=image.platform,
            size_bytes=image.size_bytes,
        )


# =============================================================================
# REGISTRY (skopeo)
# =============================================================================

class RegistryImageResolver(ImageResolver):

    def __init__(self, binary: str = "skopeo", resolve_timeout: float = 60, export_timeout: float = 600):
        self.binary = binary
        self.resolve_timeout = resolve_timeout
        self.export_timeout = export_timeout

    async def resolve(self, request: ScanRequest) -> ResolvedImage:
        reference = request.full_image_reference
        command = [self.binary, "inspect", "--no-tags", f"docker://{reference}"]
        try:
            result = await run_command(command, timeout=self.resolve_timeout)
        except CommandTimeoutException as e:
            raise ImageResolutionException(reference, e.message)
        except OSError as e:
            raise ImageResolutionException(reference, f"skopeo unavailable: {e}")

        if not result.ok:
            raise ImageResolutionException(reference, result.describe_failure())

        try:
            inspect = json.loads(result.stdout)
        except ValueError as e:
            raise ImageResolutionException(reference, f"unreadable inspect output: {e}")

        digest = inspect.get("Digest") if isinstance(inspect, dict) else None
        if not digest:
            raise ImageResolutionException(reference, "registry returned no digest")

        layers = inspect.get("LayersData") or []
        size = sum(int(layer.get("Size") or 0) for layer in layers if isinstance(layer, dict))
        return ResolvedImage(
            reference=reference,
            name=request.image,
            tag=request.tag,
            registry=request.registry,
            source=ImageSource.REGISTRY,
            digest=digest,
            platform=_platform(inspect),
            size_bytes=size or None,
            metadata=inspect,
        )

    async def export(self, image: ResolvedImage, destination: Path) -> Path:
        artifact = destination / image.archive_name
        command = [
            self.binary, "copy",
            f"docker://{image.reference}",
            f"docker-archive:{artifact}:{image.name}:{image.tag}",
        ]
        await _export(command, image, artifact, self.export_timeout)
        return artifact


# =============================================================================
# LOCAL DAEMON (docker)
# =============================================================================

class LocalDockerResolver(ImageResolver):

    def __init__(self, binary: str = "docker", resolve_timeout: float = 60, export_timeout: float = 600):
        self.binary = binary
        self.resolve_timeout = resolve_timeout
        self.export_timeout = export_timeout

    async def resolve(self, request: ScanRequest) -> ResolvedImage:
        target = request.docker_image_id or f"{request.image}:{request.tag}"
        command = [self.binary, "image", "inspect", target]
        try:
            result = await run_command(command, timeout=self.resolve_timeout)
        except CommandTimeoutException as e:
            raise ImageResolutionException(target, e.message)
        except OSError as e:
            raise ImageResolutionException(target, f"docker unavailable: {e}")

        if not result.ok:
            raise ImageResolutionException(target, result.describe_failure())

        try:
            entries = json.loads(result.stdout)
        except ValueError as e:
            raise ImageResolutionException(target, f"unreadable inspect output: {e}")

        if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
            raise ImageResolutionException(target, "image not present in local daemon")
        inspect = entries[0]

        repo_digests = inspect.get("RepoDigests") or []
        digest = inspect.get("Id")
        if repo_digests and "@" in repo_digests[0]:
            digest = repo_digests[0].split("@", 1)[1]
        if not digest:
            raise ImageResolutionException(target, "daemon returned no image id")

        return ResolvedImage(
            reference=target,
            name=request.image,
            tag=request.tag,
            registry=None,
            source=ImageSource.LOCAL,
            digest=digest,
            platform=_platform(inspect),
            size_bytes=inspect.get("Size"),
            metadata=inspect,
        )

    async def export(self, image: ResolvedImage, destination: Path) -> Path:
        artifact = destination / image.archive_name
        command = [self.binary, "save", "-o", str(artifact), image.reference]
        await _export(command, image, artifact, self.export_timeout)
        return artifact


# =============================================================================
# DISPATCH
# =============================================================================

class DefaultImageResolver(ImageResolver):
    """Routes local-daemon requests to docker and everything else to skopeo."""

    def __init__(self, registry: ImageResolver, local: ImageResolver):
        self.registry = registry
        self.local = local

    @classmethod
    def from_settings(cls, config: Settings) -> "DefaultImageResolver":
        return cls(
            registry=RegistryImageResolver(
                config.skopeo_binary,
                config.resolve_timeout_seconds,
                config.acquisition_timeout_seconds,
            ),
            local=LocalDockerResolver(
                config.docker_binary,
                config.resolve_timeout_seconds,
                config.acquisition_timeout_seconds,
            ),
        )

    def _backend(self, source: ImageSource) -> ImageResolver:
        return self.local if source is ImageSource.LOCAL else self.registry

    async def resolve(self, request: ScanRequest) -> ResolvedImage:
        return await self._backend(request.source).resolve(request)

    async def export(self, image: ResolvedImage, destination: Path) -> Path:
        return await self._backend(image.source).export(image, destination)


# =============================================================================
# HELPERS
# =============================================================================

def _platform(inspect: dict) -> str | None:
    os_name = inspect.get("Os")
    arch = inspect.get("Architecture")
    if os_name and arch:
        return f"{os_name}/{arch}"
    return None


async def _export(command: list[str], image: ResolvedImage, artifact: Path, timeout: float) -> None:
    try:
        result = await run_command(command, timeout=timeout)
    except CommandTimeoutException:
        raise ArtifactAcquisitionTimeoutException(image.reference, timeout)
    except OSError as e:
        raise ArtifactAcquisitionException(image.reference, f"{command[0]} unavailable: {e}")

    if not result.ok:
        raise ArtifactAcquisitionException(image.reference, result.describe_failure())
    if not artifact.exists():
        raise ArtifactAcquisitionException(image.reference, f"no archive written to {artifact}")
    logger.info(f"Exported {image.reference} to {artifact} in {result.duration}s")
