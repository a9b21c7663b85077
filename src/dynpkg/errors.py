"""Install failure taxonomy.

Every per-plugin failure is an ``InstallError``; the coordinator converts
anything else raised during fetch/extract/publish into one of these.
``InvalidDescriptorError`` is the exception: it aborts a whole batch before
any install starts.
"""

from __future__ import annotations

from dynpkg.types import InstallKey


class InstallError(Exception):
    """A single package could not be installed."""

    retryable = False

    def __init__(self, message: str, key: InstallKey | None = None) -> None:
        self.key = key
        super().__init__(message)


class SourceUnavailable(InstallError):
    """The package source could not be reached (transport failure)."""

    retryable = True


class RateLimited(SourceUnavailable):
    """The package source asked us to back off."""

    def __init__(
        self,
        message: str,
        key: InstallKey | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, key)


class PackageNotFound(InstallError):
    """The package source definitively has no such name/version."""


class ExtractionFailed(InstallError):
    """The downloaded archive is corrupt, unsafe, or unreadable."""


class IntegrityError(ExtractionFailed):
    """Downloaded bytes do not match the published integrity digest."""


class CacheWriteFailed(InstallError):
    """Filesystem error while staging or publishing a cache entry."""


class InstallTimeout(InstallError):
    """A fetch attempt exceeded its timeout."""


class InvalidDescriptorError(ValueError):
    """A batch contains a malformed or contradictory plugin descriptor."""


class ModuleLinkFailed(InstallError):
    """The cache entry could not be linked into the job's module directory."""
