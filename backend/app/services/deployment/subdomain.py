"""
Subdomain generation, validation and allocation.

Subdomains are the third-level DNS label under DEPLOYMENT_DOMAIN and are
also embedded in container and image names, so they are restricted to a
strict allow-list before they reach any runtime invocation.
"""
import logging
import re
import secrets
import string
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidNameError, SubdomainAllocationError
from app.repositories.reservation_repository import ReservationRepository

logger = logging.getLogger(__name__)

SUFFIX_LENGTH = 6
SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
MAX_SLUG_LENGTH = 50
MAX_LABEL_LENGTH = 63

SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_DISALLOWED_RUN = re.compile(r"[^a-z0-9-]+")
_DISALLOWED_CHAR = re.compile(r"[^a-z0-9-]")
_DASH_RUN = re.compile(r"-{2,}")


def slugify(name: str) -> str:
    """
    Turn a project name into a DNS-safe slug.

    "My Test Project" -> "my-test-project"
    """
    slug = _DISALLOWED_RUN.sub("-", name.lower())
    slug = _DASH_RUN.sub("-", slug).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    return slug or "app"


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(length))


def generate_subdomain(project_name: str) -> str:
    """Slug of the project name plus a 6-character random base-36 suffix."""
    return f"{slugify(project_name)}-{random_suffix()}"


def normalize_subdomain(value: str) -> str:
    """
    Strip a user-supplied subdomain down to the allow-list.

    Disallowed characters are dropped (not replaced), dash runs collapse and
    edge dashes are trimmed: "test;rm -rf /" -> "testrm-rf".

    Raises:
        InvalidNameError: If nothing valid remains or the label is too long
    """
    cleaned = _DISALLOWED_CHAR.sub("", value.lower())
    cleaned = _DASH_RUN.sub("-", cleaned).strip("-")
    validate_subdomain(cleaned, original=value)
    return cleaned


def validate_subdomain(value: str, original: Optional[str] = None) -> str:
    """
    Check a subdomain against the strict allow-list.

    Raises:
        InvalidNameError: If the value is not a valid DNS label
    """
    shown = original if original is not None else value
    if not value:
        raise InvalidNameError(shown, "subdomain is empty after sanitizing")
    if len(value) > MAX_LABEL_LENGTH:
        raise InvalidNameError(shown, f"subdomain longer than {MAX_LABEL_LENGTH} characters")
    if not SUBDOMAIN_PATTERN.match(value) or "--" in value:
        raise InvalidNameError(shown, "subdomain must match [a-z0-9-] without leading, trailing or repeated dashes")
    return value


class SubdomainAllocator:
    """Allocates subdomains that are unique across all deployments."""

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or settings.SUBDOMAIN_ALLOCATION_ATTEMPTS

    async def allocate(self, db: AsyncSession, project_name: str, project_id: str) -> str:
        """
        Generate and reserve a subdomain.

        The reservation row's primary key is the uniqueness guarantee; a
        collision is retried with a fresh random suffix.

        Raises:
            SubdomainAllocationError: If every attempt collided
        """
        repo = ReservationRepository(db)

        for attempt in range(1, self.max_attempts + 1):
            candidate = generate_subdomain(project_name)
            if await repo.reserve_subdomain(candidate, project_id):
                logger.info(f"Reserved subdomain {candidate} for project {project_id}")
                return candidate
            logger.warning(
                f"Subdomain collision for project {project_id} "
                f"(attempt {attempt}/{self.max_attempts}): {candidate}"
            )

        raise SubdomainAllocationError(project_name, self.max_attempts)


subdomain_allocator = SubdomainAllocator()
