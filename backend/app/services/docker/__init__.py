"""
Image build services.

- BuildWorkspaceService: Build directory setup and source file staging
- ImageBuilder: Build tool invocation (docker build / nixpacks)
"""
from app.services.docker.workspace_service import BuildWorkspaceService, workspace_service
from app.services.docker.image_builder import (
    BuildContext,
    ImageBuildResult,
    ImageBuilder,
    image_builder,
)

__all__ = [
    "BuildWorkspaceService",
    "BuildContext",
    "ImageBuildResult",
    "ImageBuilder",
    # Singleton instances
    "workspace_service",
    "image_builder",
]
