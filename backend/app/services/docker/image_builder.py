"""
Image builder.

Materializes a project's source files into a scratch workspace and runs the
configured build tool (docker build or nixpacks) to produce a tagged image.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from app.core.config import settings
from app.core.exceptions import BuildError
from app.core.process import CancellationToken, run_command
from app.schemas.deployment import SourceFile
from app.services.deployment.buildpack import detect_buildpack, has_dockerfile, render_dockerfile
from app.services.deployment.subdomain import validate_subdomain
from app.services.docker.workspace_service import BuildWorkspaceService, workspace_service

logger = logging.getLogger(__name__)

SUPPORTED_BUILDERS = ("docker", "nixpacks")


@dataclass
class BuildContext:
    """Everything one build invocation needs. Never persisted."""

    project_id: str
    project_name: str
    subdomain: str
    source_files: List[SourceFile] = field(default_factory=list)


@dataclass
class ImageBuildResult:
    """Result of a successful image build."""

    image_name: str
    build_logs: str
    framework: Optional[str] = None


def image_name_for(subdomain: str) -> str:
    """Deterministic image tag for a deployment subdomain."""
    return f"{settings.IMAGE_PREFIX}-{subdomain}:latest"


class ImageBuilder:
    """
    Builds container images from generated source files.

    Responsibilities:
    - Create a unique workspace and write the source files
    - Add a buildpack Dockerfile when the project has none (docker builder)
    - Run the build tool with a deadline and optional cancellation
    """

    def __init__(
        self,
        workspace: Optional[BuildWorkspaceService] = None,
        builder: Optional[str] = None,
        timeout: Optional[int] = None,
        keep_failed_workspaces: Optional[bool] = None,
    ):
        self.workspace = workspace or workspace_service
        self.builder = builder or settings.IMAGE_BUILDER
        self.timeout = timeout or settings.BUILD_TIMEOUT
        self.keep_failed_workspaces = (
            settings.KEEP_FAILED_BUILD_WORKSPACES
            if keep_failed_workspaces is None
            else keep_failed_workspaces
        )
        if self.builder not in SUPPORTED_BUILDERS:
            raise ValueError(f"Unknown image builder: {self.builder}")

    def build_command(self, image_name: str, build_dir: str) -> List[str]:
        """Construct the build tool invocation."""
        if self.builder == "nixpacks":
            return [settings.NIXPACKS_BINARY, "build", build_dir, "--name", image_name]
        return [settings.DOCKER_BINARY, "build", "-t", image_name, build_dir]

    async def build(
        self,
        context: BuildContext,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ImageBuildResult:
        """
        Build an image for a deployment.

        Args:
            context: Build inputs
            timeout: Deadline in seconds (default BUILD_TIMEOUT)
            cancel: Optional cancellation token

        Returns:
            ImageBuildResult with the image tag and combined build output

        Raises:
            InvalidNameError: If the subdomain is not a valid label
            InvalidSourcePathError / WorkspaceError: Materialization failed
            BuildError: The build tool exited non-zero or could not start
            CommandTimeoutError / OperationCancelledError: Build was killed
        """
        subdomain = validate_subdomain(context.subdomain)
        image_name = image_name_for(subdomain)
        buildpack = detect_buildpack(context.source_files)

        build_dir = self.workspace.create_workspace(subdomain)
        succeeded = False
        try:
            files = list(context.source_files)
            if self.builder == "docker" and not has_dockerfile(files):
                files.append(SourceFile(path="Dockerfile", content=render_dockerfile(buildpack)))
            self.workspace.write_files(build_dir, files)

            cmd = self.build_command(image_name, build_dir)
            logger.info(f"Building image {image_name} for project {context.project_id}")

            try:
                result = await run_command(
                    cmd,
                    timeout=timeout or self.timeout,
                    cancel=cancel,
                    merge_stderr=True,
                )
            except OSError as e:
                raise BuildError(image_name, str(e))

            if not result.ok:
                logger.error(f"Image build failed for {image_name} (exit {result.return_code})")
                raise BuildError(
                    image_name,
                    f"{self.builder} exited with code {result.return_code}",
                    result.output,
                )

            logger.info(f"Image {image_name} built successfully")
            succeeded = True
            return ImageBuildResult(
                image_name=image_name,
                build_logs=result.output,
                framework=buildpack.framework,
            )
        finally:
            if succeeded or not self.keep_failed_workspaces:
                self.workspace.cleanup_workspace(build_dir)


image_builder = ImageBuilder()
