"""
Application configuration using Pydantic Settings.
"""
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Application
    APP_NAME: str = "Catalyst Deploy"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "info"
    DEBUG: bool = False

    # Database Schema
    DB_SCHEMA: str = "catalyst"

    # Database
    DATABASE_URL: str

    # Task queue
    REDIS_URL: str = "redis://redis:6379/0"
    TASK_EXPIRY_HOURS: int = 4

    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost"

    # Image builds
    BUILD_DIR: str = "/tmp/builds"
    IMAGE_BUILDER: str = "docker"  # 'docker' or 'nixpacks'
    IMAGE_PREFIX: str = "catalyst"
    KEEP_FAILED_BUILD_WORKSPACES: bool = False
    BUILD_TIMEOUT: int = 900  # seconds

    # Container runtime
    DOCKER_BINARY: str = "docker"
    NIXPACKS_BINARY: str = "nixpacks"
    CONTAINER_PREFIX: str = "catalyst"
    DEPLOYMENT_CONTAINER_PORT: int = 3000  # Port the app listens on inside the container
    DEPLOYMENT_DOMAIN: str = "catalyst.app"
    DEFAULT_CPU_LIMIT: int = 1000  # millicores
    DEFAULT_MEMORY_LIMIT: int = 512  # MB
    RUN_TIMEOUT: int = 60
    COMMAND_TIMEOUT: int = 30
    LOG_TAIL_DEFAULT: int = 100

    # Allocation
    DEPLOYMENT_PORT_RANGE_START: int = 3000
    DEPLOYMENT_PORT_RANGE_END: int = 9000
    PORT_ALLOCATION_ATTEMPTS: int = 5
    SUBDOMAIN_ALLOCATION_ATTEMPTS: int = 5

    # Background maintenance
    CANCEL_POLL_INTERVAL: float = 2.0  # seconds between cancellation flag checks
    RECONCILE_INTERVAL: int = 60  # seconds
    RECONCILE_REMOVE_ORPHANS: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    def get_cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


settings = Settings()
