"""
Reservation tables for globally unique subdomains and host ports.

The primary key of each table is the claim: inserting a row either succeeds
and owns the value, or fails with an IntegrityError because another
deployment already holds it.
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, ForeignKey
from sqlalchemy.dialects.postgresql import UUID

from app.core.database import Base


class SubdomainReservation(Base):
    """A subdomain claimed by one deployment."""

    __tablename__ = "subdomain_reservations"

    subdomain = Column(String(63), primary_key=True)
    project_id = Column(String(64), nullable=False, index=True)
    deployment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("deployments.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PortReservation(Base):
    """A host port claimed by one deployment's container."""

    __tablename__ = "port_reservations"

    port = Column(Integer, primary_key=True, autoincrement=False)
    deployment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("deployments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
