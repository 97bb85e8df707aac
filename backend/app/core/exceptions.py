"""
Custom exception hierarchy for domain-specific errors.

This module provides a clean separation between domain errors and HTTP concerns.
Services raise domain exceptions, and the exception handlers in main.py map them to HTTP responses.
"""
from typing import Optional, Dict, Any


class DomainException(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Not Found Errors (404)
# =============================================================================

class NotFoundError(DomainException):
    """Base class for resource not found errors."""
    pass


class DeploymentNotFoundError(NotFoundError):
    """Deployment does not exist."""

    def __init__(self, identifier: str):
        super().__init__(f"Deployment not found: {identifier}", {"identifier": identifier})


class ContainerNotFoundError(NotFoundError):
    """Container does not exist."""

    def __init__(self, container_id: str):
        super().__init__(f"Container not found: {container_id}", {"container_id": container_id})


# =============================================================================
# Conflict Errors (409)
# =============================================================================

class ConflictError(DomainException):
    """Base class for operations rejected because of concurrent state."""
    pass


class DeploymentInProgressError(ConflictError):
    """Project already has a deployment in flight."""

    def __init__(self, project_id: str):
        super().__init__(
            f"Project {project_id} already has a deployment in progress",
            {"project_id": project_id}
        )


class InvalidStatusTransitionError(ConflictError):
    """Deployment is not in a status that allows the requested operation."""

    def __init__(self, deployment_id: str, current_status: Optional[str], target_status: str):
        super().__init__(
            f"Deployment {deployment_id} cannot move from {current_status} to {target_status}",
            {
                "deployment_id": deployment_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


# =============================================================================
# Validation Errors (400/422)
# =============================================================================

class ValidationError(DomainException):
    """Base class for validation errors."""
    pass


class InvalidNameError(ValidationError):
    """A user-derived name is not safe for use in runtime invocations."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"Invalid name '{name}': {reason}", {"name": name, "reason": reason})


class InvalidSourcePathError(ValidationError):
    """Source file path is invalid or escapes the build workspace."""

    def __init__(self, path: str, reason: str = "Invalid source path"):
        super().__init__(f"{reason}: {path}", {"path": path, "reason": reason})


class InvalidResourceLimitError(ValidationError):
    """CPU or memory limit out of the accepted range."""

    def __init__(self, field: str, value: int, minimum: int, maximum: int):
        super().__init__(
            f"Invalid {field} {value}: must be between {minimum} and {maximum}",
            {"field": field, "value": value, "minimum": minimum, "maximum": maximum}
        )


# =============================================================================
# Operation Errors (500)
# =============================================================================

class OperationError(DomainException):
    """Base class for operation failures."""
    pass


class WorkspaceError(OperationError):
    """Materializing source files to the build workspace failed."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Workspace error during {operation}: {reason}", {"operation": operation, "reason": reason})


class BuildError(OperationError):
    """Image build failed."""

    def __init__(self, image_name: str, reason: str, output: str = ""):
        self.output = output
        message = f"Build failed ({image_name}): {reason}"
        if output:
            message = f"{message}\n{output}"
        super().__init__(message, {"image_name": image_name, "reason": reason})


class ContainerRuntimeError(OperationError):
    """A container runtime command exited with an error."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Container {operation} failed: {reason}", {"operation": operation, "reason": reason})


class PortAllocationError(OperationError):
    """No available ports in range."""

    def __init__(self, port_range_start: int, port_range_end: int, reason: str = "no available ports"):
        super().__init__(
            f"Port allocation failed in range {port_range_start}-{port_range_end}: {reason}",
            {"port_range_start": port_range_start, "port_range_end": port_range_end}
        )


class SubdomainAllocationError(OperationError):
    """Could not reserve a unique subdomain."""

    def __init__(self, project_name: str, attempts: int):
        super().__init__(
            f"Could not allocate a unique subdomain for '{project_name}' after {attempts} attempts",
            {"project_name": project_name, "attempts": attempts}
        )


class OperationCancelledError(OperationError):
    """An external operation was cancelled before it finished."""

    def __init__(self, command: str):
        super().__init__(f"Operation cancelled: {command}", {"command": command})


# =============================================================================
# Timeout (504)
# =============================================================================

class CommandTimeoutError(DomainException):
    """An external command exceeded its deadline and was killed."""

    def __init__(self, command: str, timeout: float):
        super().__init__(
            f"Command timed out after {timeout} seconds: {command}",
            {"command": command, "timeout": timeout}
        )


# =============================================================================
# Service Unavailable (503)
# =============================================================================

class ServiceUnavailableError(DomainException):
    """External service is unavailable."""

    def __init__(self, service: str, reason: str = "Service unavailable"):
        super().__init__(f"{service}: {reason}", {"service": service, "reason": reason})
