"""
Deployment model for tracking built-in container deployments.
"""
import uuid
from datetime import datetime
from sqlalchemy import CheckConstraint, Column, String, DateTime, Integer, Text, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB

from app.core.database import Base

DEPLOYMENT_STATUSES = (
    "pending", "building", "deploying", "running", "stopping", "stopped",
    "removing", "failed", "removed",
)

# Statuses during which an external operation may still be running.
# removing is left out so tearing down an old deployment never blocks a redeploy.
IN_FLIGHT_STATUSES = ("pending", "building", "deploying", "stopping")


class Deployment(Base):
    """Deployment record."""

    __tablename__ = "deployments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(String(64), nullable=False, index=True)
    project_name = Column(String(255), nullable=False)
    provider = Column(String(50), nullable=False, default="builtin")
    subdomain = Column(String(63), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="pending", index=True)

    # Build / run results
    framework = Column(String(50), nullable=True)
    image_name = Column(String(255), nullable=True)
    container_id = Column(String(64), nullable=True, index=True)
    host_port = Column(Integer, nullable=True)
    deployment_url = Column(String(500), nullable=True)

    # Resource limits
    cpu_limit = Column(Integer, nullable=False, default=1000)  # millicores
    memory_limit = Column(Integer, nullable=False, default=512)  # MB

    logs = Column(Text, nullable=False, default="")
    error_message = Column(Text, nullable=True)
    meta_data = Column("metadata", JSONB, default=dict, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    stopped_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(status.in_(DEPLOYMENT_STATUSES), name="status"),
        # At most one in-flight deployment per project
        Index(
            "uq_deployments_project_in_flight",
            "project_id",
            unique=True,
            postgresql_where=status.in_(IN_FLIGHT_STATUSES),
        ),
    )

    def append_log(self, text: str) -> None:
        """Append a block of text to the deployment log."""
        if not text:
            return
        current = self.logs or ""
        separator = "" if not current or current.endswith("\n") else "\n"
        self.logs = f"{current}{separator}{text.rstrip()}\n"
