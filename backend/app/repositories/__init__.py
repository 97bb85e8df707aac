"""
Repository layer for database access.
"""
from app.repositories.base import BaseRepository
from app.repositories.deployment_repository import DeploymentRepository
from app.repositories.reservation_repository import ReservationRepository

__all__ = [
    "BaseRepository",
    "DeploymentRepository",
    "ReservationRepository",
]
