"""
Pydantic v2 Schemas - API Data Transfer Objects
================================================
Architecture Decisions:

1. STRICT VALIDATION: a scan request is validated once, at entry; an
   unparsable image reference never creates a job
2. COMPUTED FIELDS: the full image reference is derived, not sent
3. ENUM ALIGNMENT: statuses reuse the ORM enums
"""

import re
from datetime import datetime
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from harborscan.models import ImageSource, ScanStatus


IMAGE_NAME_PATTERN = r"^[a-z0-9]([a-z0-9._/-]*[a-z0-9])?$"
TAG_PATTERN = r"^[\w][\w.-]{0,127}$"


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class PolicyThresholds(BaseModel):
    """Optional gate evaluated against the aggregated result."""

    model_config = ConfigDict(extra="forbid")

    max_critical: int | None = Field(default=None, ge=0)
    max_high: int | None = Field(default=None, ge=0)
    max_risk_score: int | None = Field(default=None, ge=0, le=100)


class ScanRequest(BaseModel):
    """
    API request to start a scan.

    Validation Rules:
    - image: required; ``name:tag`` is split when no explicit tag is given
    - tag: defaults to 'latest'
    - registry: optional registry host (docker.io when omitted)
    - docker_image_id: scan an image from the local daemon (implies source=local)
    - template: scanner subset, see SCAN_TEMPLATES
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra="forbid",
    )

    image: Annotated[str, Field(
        min_length=1,
        max_length=255,
        examples=["nginx", "library/python", "project/api"],
        description="Image name (without tag)",
    )]

    tag: Annotated[str, Field(
        default="latest",
        max_length=128,
        pattern=TAG_PATTERN,
        examples=["latest", "1.27", "3.11-slim"],
    )]

    registry: Annotated[str | None, Field(
        default=None,
        max_length=255,
        examples=["docker.io", "ghcr.io"],
    )]

    source: ImageSource = ImageSource.REGISTRY

    docker_image_id: Annotated[str | None, Field(
        default=None,
        max_length=128,
        pattern=r"^(sha256:)?[a-f0-9]{12,64}$",
    )]

    template: Annotated[str | None, Field(default=None, max_length=32)]

    policy: PolicyThresholds | None = None

    @model_validator(mode="before")
    @classmethod
    def split_inline_tag(cls, data: Any) -> Any:
        """Accept ``nginx:1.27`` in the image field."""
        if isinstance(data, dict):
            image = data.get("image")
            if isinstance(image, str) and not data.get("tag"):
                name, sep, tag = image.strip().rpartition(":")
                if sep and name and "/" not in tag:
                    data = {**data, "image": name, "tag": tag}
        return data

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        normalized = v.strip("/").lower()
        if not re.match(IMAGE_NAME_PATTERN, normalized):
            raise ValueError(f"'{v}' is not a valid image name")
        return normalized

    @model_validator(mode="after")
    def infer_source(self) -> "ScanRequest":
        if self.docker_image_id:
            self.source = ImageSource.LOCAL
        if self.source is ImageSource.LOCAL and self.registry not in (None, "local"):
            raise ValueError("registry cannot be set for local daemon images")
        return self

    @computed_field
    @property
    def full_image_reference(self) -> str:
        if self.registry and self.registry not in ("docker.io", "local"):
            return f"{self.registry}/{self.image}:{self.tag}"
        return f"{self.image}:{self.tag}"


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class ScanStartedResponse(BaseModel):
    request_id: str
    scan_id: str
    status: ScanStatus = ScanStatus.RUNNING
    message: str = "Scan started"


class ScanJobResponse(BaseModel):
    """Snapshot of one job from the registry."""

    request_id: str
    scan_id: str
    image_id: str
    image: str
    status: ScanStatus
    progress: int = Field(ge=0, le=100)
    step: str | None = None
    error: str | None = None
    phase: str
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None


class JobListResponse(BaseModel):
    jobs: list[ScanJobResponse]

    @computed_field
    @property
    def total(self) -> int:
        return len(self.jobs)


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool
    outcome: str


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthCheckResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
    active_jobs: int = 0
