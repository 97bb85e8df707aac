"""
Deployment runtime services.

This package provides buildpack detection, subdomain and port allocation, and
container run/lifecycle control via the Docker CLI. The orchestrating
DeploymentService lives in app.services.deployment.deployment_service and is
imported from there directly (it depends on app.services.docker).
"""
from app.services.deployment.buildpack import BuildpackInfo, detect_buildpack
from app.services.deployment.container_runner import ContainerHandle, ContainerRunner, container_runner
from app.services.deployment.lifecycle import ContainerHealth, ContainerLifecycle, container_lifecycle
from app.services.deployment.port_allocator import PortAllocator, port_allocator
from app.services.deployment.subdomain import SubdomainAllocator, generate_subdomain, subdomain_allocator

__all__ = [
    "BuildpackInfo",
    "detect_buildpack",
    "ContainerHandle",
    "ContainerRunner",
    "ContainerHealth",
    "ContainerLifecycle",
    "PortAllocator",
    "SubdomainAllocator",
    "generate_subdomain",
    "container_runner",
    "container_lifecycle",
    "port_allocator",
    "subdomain_allocator",
]
