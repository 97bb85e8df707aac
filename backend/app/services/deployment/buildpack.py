"""
Buildpack detection for generated projects.

Maps marker files at the project root to a framework tag and default
build/start commands, and renders a Dockerfile for projects that do not
ship their own.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from app.core.config import settings
from app.schemas.deployment import SourceFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildpackInfo:
    """Detected framework and its default commands."""

    framework: str
    build_command: Optional[str] = None
    start_command: Optional[str] = None


# Marker file -> buildpack, in priority order
BUILDPACKS = (
    (
        "package.json",
        BuildpackInfo(
            framework="node",
            build_command="npm install && npm run build",
            start_command="npm start",
        ),
    ),
    (
        "requirements.txt",
        BuildpackInfo(
            framework="python",
            build_command="pip install -r requirements.txt",
            start_command="python app.py",
        ),
    ),
    (
        "go.mod",
        BuildpackInfo(
            framework="go",
            build_command="go build -o main .",
            start_command="./main",
        ),
    ),
)

STATIC_BUILDPACK = BuildpackInfo(framework="static", start_command="npx serve -s .")

BASE_IMAGES = {
    "node": "node:20-alpine",
    "python": "python:3.12-slim",
    "go": "golang:1.22-alpine",
    "static": "node:20-alpine",
}


def _normalize(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def detect_buildpack(files: Iterable[SourceFile]) -> BuildpackInfo:
    """
    Detect the buildpack for a set of source files.

    Only files at the project root count as markers. Never fails: projects
    without a recognised marker are served as static files.
    """
    root_files = {_normalize(f.path) for f in files}

    for marker, info in BUILDPACKS:
        if marker in root_files:
            logger.debug(f"Detected {info.framework} buildpack from {marker}")
            return info

    return STATIC_BUILDPACK


def has_dockerfile(files: Iterable[SourceFile]) -> bool:
    return any(_normalize(f.path) == "Dockerfile" for f in files)


def render_dockerfile(info: BuildpackInfo, container_port: Optional[int] = None) -> str:
    """
    Render a Dockerfile that builds and starts the detected framework.

    The app is expected to listen on $PORT, which the container runner sets.
    """
    port = container_port or settings.DEPLOYMENT_CONTAINER_PORT
    lines = [
        f"FROM {BASE_IMAGES[info.framework]}",
        "WORKDIR /app",
        "COPY . .",
    ]

    if info.framework == "node":
        # Not every generated project has a build script
        lines.append("RUN npm install && (npm run build --if-present)")
    elif info.build_command:
        lines.append(f"RUN {info.build_command}")

    lines.extend([
        f"ENV PORT={port}",
        f"EXPOSE {port}",
    ])

    if info.framework == "static":
        lines.append(f'CMD ["sh", "-c", "npx --yes serve -s . -l {port}"]')
    else:
        lines.append(f'CMD ["sh", "-c", "{info.start_command}"]')

    return "\n".join(lines) + "\n"
