"""
Service for build workspace management.

Handles:
- Unique scratch directory creation and cleanup
- Writing generated source files (with parent directories)
- Rejecting paths that would escape the workspace
"""
import os
import shutil
import logging
import tempfile
from pathlib import PurePosixPath
from typing import Iterable, Optional

from app.core.config import settings
from app.core.exceptions import InvalidSourcePathError, WorkspaceError
from app.schemas.deployment import SourceFile

logger = logging.getLogger(__name__)


def safe_relative_path(path: str) -> str:
    """
    Validate a source file path and return it in normalized relative form.

    Raises:
        InvalidSourcePathError: For absolute paths, '..' segments, NUL bytes
            or paths that resolve to the workspace root
    """
    if not path or "\x00" in path:
        raise InvalidSourcePathError(path, "Empty or malformed path")

    normalized = path.replace("\\", "/")
    pure = PurePosixPath(normalized)

    if pure.is_absolute() or normalized.startswith("/"):
        raise InvalidSourcePathError(path, "Absolute paths are not allowed")
    if ".." in pure.parts:
        raise InvalidSourcePathError(path, "Parent directory references are not allowed")

    parts = [part for part in pure.parts if part not in ("", ".")]
    if not parts:
        raise InvalidSourcePathError(path, "Path does not name a file")

    return "/".join(parts)


class BuildWorkspaceService:
    """
    Service for build workspace management.

    Each build gets its own directory under BUILD_DIR so concurrent builds of
    different deployments never share files.
    """

    def __init__(self, build_dir_base: Optional[str] = None):
        self.build_dir_base = build_dir_base or settings.BUILD_DIR

    def create_workspace(self, prefix: str) -> str:
        """
        Create a uniquely named build directory.

        Args:
            prefix: Human-readable prefix (the deployment subdomain)

        Returns:
            Path to the new directory
        """
        try:
            os.makedirs(self.build_dir_base, exist_ok=True)
            build_dir = tempfile.mkdtemp(prefix=f"{prefix}-", dir=self.build_dir_base)
        except OSError as e:
            raise WorkspaceError("create_workspace", str(e))

        logger.info(f"Created build workspace: {build_dir}")
        return build_dir

    def write_files(self, build_dir: str, files: Iterable[SourceFile]) -> int:
        """
        Write source files into the workspace.

        Returns:
            Number of files written

        Raises:
            InvalidSourcePathError: If a path escapes the workspace
            WorkspaceError: On filesystem errors
        """
        root = os.path.realpath(build_dir)
        written = 0

        for source in files:
            relative = safe_relative_path(source.path)
            target = os.path.realpath(os.path.join(root, relative))
            if os.path.commonpath([root, target]) != root:
                raise InvalidSourcePathError(source.path, "Path escapes the build workspace")

            try:
                os.makedirs(os.path.dirname(target), exist_ok=True)
                with open(target, "w", encoding="utf-8") as f:
                    f.write(source.content)
            except OSError as e:
                raise WorkspaceError(f"write {relative}", str(e))
            written += 1

        logger.debug(f"Wrote {written} files to {build_dir}")
        return written

    def cleanup_workspace(self, build_dir: str) -> None:
        if os.path.exists(build_dir):
            shutil.rmtree(build_dir, ignore_errors=True)
            logger.info(f"Cleaned up build workspace: {build_dir}")


workspace_service = BuildWorkspaceService()
