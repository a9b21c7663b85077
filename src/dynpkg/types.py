"""Data models for dynpkg."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path

_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class InstallKey:
    """Canonical identity of a package at an exact version."""

    name: str
    version: str

    @property
    def canonical(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def path_segment(self) -> str:
        """Filesystem-safe directory name for this key.

        The readable prefix is lossy (``a/b`` and ``a_b`` both become ``a_b``),
        so a digest of the canonical string keeps distinct keys apart.
        """
        readable = _UNSAFE_SEGMENT_RE.sub("_", self.canonical).strip("_.") or "pkg"
        digest = hashlib.sha256(self.canonical.encode()).hexdigest()[:12]
        return f"{readable}-{digest}"

    @classmethod
    def parse(cls, spec: str) -> InstallKey:
        """Parse ``name@version`` (scoped names like ``@scope/pkg@1.0.0`` included)."""
        name, sep, version = spec.strip().rpartition("@")
        if not sep or not name or not version:
            raise ValueError(f"Expected name@version, got {spec!r}")
        return cls(name=name, version=version)

    def __str__(self) -> str:
        return self.canonical


@dataclass(frozen=True)
class PluginInstallation:
    """A plugin package requested by a generation job."""

    name: str
    version: str

    @property
    def key(self) -> InstallKey:
        return InstallKey(self.name, self.version)

    @classmethod
    def from_dict(cls, raw: dict) -> PluginInstallation:
        # Generator job payloads name the package under "npm"
        return cls(name=raw.get("name") or raw.get("npm") or "", version=raw.get("version") or "")

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


class CacheStatus(StrEnum):
    READY = "ready"
    CORRUPT = "corrupt"


@dataclass(frozen=True)
class CacheEntry:
    key: InstallKey
    path: Path
    status: CacheStatus
    integrity: str | None = None
    installed_at: datetime | None = None

    @property
    def is_ready(self) -> bool:
        return self.status is CacheStatus.READY


@dataclass(frozen=True)
class PackageArchive:
    """Raw package bytes as returned by a package source."""

    data: bytes
    integrity: str | None = None  # SRI string, e.g. "sha512-<base64>"


class InstallStatus(StrEnum):
    INSTALLED = "installed"
    FAILED = "failed"


@dataclass(frozen=True)
class InstallOutcome:
    descriptor: PluginInstallation
    status: InstallStatus
    path: Path | None = None  # cache entry backing the install
    error: Exception | None = None

    @property
    def installed(self) -> bool:
        return self.status is InstallStatus.INSTALLED


@dataclass
class BatchInstallResult:
    """Per-plugin outcomes for one job, in the caller's input order."""

    job_id: str
    outcomes: list[InstallOutcome] = field(default_factory=list)
    modules: dict[str, Path] = field(default_factory=dict)  # plugin name -> job-local path

    @property
    def had_failures(self) -> bool:
        return any(not o.installed for o in self.outcomes)

    @property
    def installed(self) -> list[PluginInstallation]:
        return [o.descriptor for o in self.outcomes if o.installed]

    @property
    def failed(self) -> list[InstallOutcome]:
        return [o for o in self.outcomes if not o.installed]
