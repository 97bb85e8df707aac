"""
Pydantic schemas for Deployment.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import settings


class DeploymentStatus(str, Enum):
    """Status of a deployment."""
    PENDING = "pending"
    BUILDING = "building"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REMOVING = "removing"
    FAILED = "failed"
    REMOVED = "removed"


# Allowed predecessor statuses for each target status.
# Enforced by DeploymentRepository.transition_status with a conditional UPDATE.
ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "building": frozenset({"pending"}),
    "deploying": frozenset({"building", "running", "stopped"}),
    "running": frozenset({"deploying"}),
    "stopping": frozenset({"running"}),
    "stopped": frozenset({"stopping"}),
    "removing": frozenset({"running", "stopped", "failed"}),
    "failed": frozenset({"pending", "building", "deploying", "running", "stopping", "removing"}),
    "removed": frozenset({"removing"}),
}


class HealthStatus(str, Enum):
    """Health status of a container."""
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class SourceFile(BaseModel):
    """A single generated source file."""
    path: str = Field(..., min_length=1, max_length=1024)
    content: str = ""


class DeploymentCreate(BaseModel):
    """Schema for requesting a built-in deployment."""
    project_id: str = Field(..., min_length=1, max_length=64)
    project_name: str = Field(..., min_length=1, max_length=255)
    files: List[SourceFile] = Field(default_factory=list)
    cpu_limit: int = Field(default_factory=lambda: settings.DEFAULT_CPU_LIMIT, ge=100, le=8000)
    memory_limit: int = Field(default_factory=lambda: settings.DEFAULT_MEMORY_LIMIT, ge=64, le=16384)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BuildpackDetectRequest(BaseModel):
    files: List[SourceFile]


class BuildpackResponse(BaseModel):
    framework: str
    build_command: Optional[str] = None
    start_command: Optional[str] = None


class DeploymentResponse(BaseModel):
    """Schema for Deployment response."""
    id: UUID
    project_id: str
    project_name: str
    provider: str
    subdomain: str
    status: str
    framework: Optional[str] = None
    image_name: Optional[str] = None
    container_id: Optional[str] = None
    host_port: Optional[int] = None
    deployment_url: Optional[str] = None
    cpu_limit: int
    memory_limit: int
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    @classmethod
    def from_deployment(cls, deployment) -> "DeploymentResponse":
        """Convert a Deployment ORM instance to response schema."""
        return cls(
            id=deployment.id,
            project_id=deployment.project_id,
            project_name=deployment.project_name,
            provider=deployment.provider,
            subdomain=deployment.subdomain,
            status=deployment.status,
            framework=deployment.framework,
            image_name=deployment.image_name,
            container_id=deployment.container_id,
            host_port=deployment.host_port,
            deployment_url=deployment.deployment_url,
            cpu_limit=deployment.cpu_limit,
            memory_limit=deployment.memory_limit,
            error_message=deployment.error_message,
            created_at=deployment.created_at,
            started_at=deployment.started_at,
            completed_at=deployment.completed_at,
            stopped_at=deployment.stopped_at,
            metadata=deployment.meta_data or {},
        )


class ContainerHealthResponse(BaseModel):
    """Container health response."""
    deployment_id: UUID
    status: HealthStatus
    uptime: int = 0
    state: Optional[str] = None


class DeploymentLogsResponse(BaseModel):
    """Build log plus container log tail."""
    deployment_id: UUID
    status: str
    build_logs: str
    container_logs: Optional[str] = None
