from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.config import settings


class DeploymentStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


# PENDING is the only in-progress state; reconciliation scans for these.
IN_PROGRESS_STATUSES = (DeploymentStatus.PENDING,)

ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.ACTIVE, DeploymentStatus.FAILED},
    DeploymentStatus.ACTIVE: {DeploymentStatus.ROLLED_BACK, DeploymentStatus.FAILED},
    DeploymentStatus.ROLLED_BACK: {DeploymentStatus.ACTIVE},
    DeploymentStatus.FAILED: set(),
}


def can_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def slot_color(version: int) -> str:
    """Cosmetic slot tag, alternating per version. Never used for routing."""
    return "blue" if version % 2 == 1 else "green"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class ValidationConfig(CamelModel):
    timeout_seconds: float = Field(default_factory=lambda: settings.HEALTH_TIMEOUT_SECONDS, gt=0)
    max_retries: int = Field(default_factory=lambda: settings.HEALTH_MAX_RETRIES, ge=1)
    retry_delay_seconds: float = Field(default_factory=lambda: settings.HEALTH_RETRY_DELAY_SECONDS, ge=0)
    max_latency_ms: float = Field(default_factory=lambda: settings.HEALTH_MAX_LATENCY_MS, gt=0)


class Project(CamelModel):
    id: str
    name: str
    source_ref: str | None = None
    health_path: str = "/health"
    container_port: int = Field(default_factory=lambda: settings.DEFAULT_CONTAINER_PORT)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    created_at: datetime


class Deployment(CamelModel):
    id: str
    project_id: str
    version: int
    image_tag: str
    container_name: str
    port: int
    color: str
    status: DeploymentStatus
    created_at: datetime
    updated_at: datetime


class ValidationResult(CamelModel):
    success: bool
    latency_ms: float = 0.0
    diagnostic: str | None = None
    attempts: int = 0


class DeployResult(CamelModel):
    deployment: Deployment
    message: str


class RollbackResult(CamelModel):
    rolled_back_from: Deployment
    restored_to: Deployment
    message: str


class ReconciliationReport(CamelModel):
    deploying_fixed: int = 0
    active_invalidated: int = 0
