"""Shared test fixtures for dynpkg."""

from __future__ import annotations

import asyncio
import io
import tarfile
from collections import Counter
from pathlib import Path

import pytest

from dynpkg.cache import FilesystemInstallCache
from dynpkg.types import InstallKey, PackageArchive

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------


def make_settings(tmp_path: Path | None = None, **overrides):
    """Create a Settings object with sensible defaults for testing.

    No dynpkg.toml, no .env, no environment: tests never touch real config.

    Usage::

        s = make_settings(tmp_path)
        s = make_settings(tmp_path, install=InstallConfig(max_concurrent=1))
    """
    from dynpkg.config import (
        CacheConfig,
        InstallConfig,
        JobsConfig,
        LoggingConfig,
        Settings,
        SourceConfig,
    )

    base = tmp_path or Path("/nonexistent-dynpkg-test-root")
    defaults = {
        "cache": CacheConfig(root=base / "cache"),
        "jobs": JobsConfig(root=base / "jobs"),
        "source": SourceConfig(max_retries=0, timeout_seconds=5.0),
        "install": InstallConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def make_tarball(
    files: dict[str, str | bytes] | None = None,
    *,
    prefix: str = "package/",
) -> bytes:
    """Build an npm-style .tgz in memory (every member under *prefix*)."""
    if files is None:
        files = {"package.json": '{"name": "pkg"}', "index.js": "module.exports = {};"}
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(prefix + name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeSource:
    """In-memory package source that counts fetches per key.

    ``packages`` maps (name, version) to archive bytes; ``failures`` maps keys
    to the exception to raise. When ``gate`` is set, every fetch waits on it
    before answering so tests can pile up concurrent requests.
    """

    def __init__(
        self,
        packages: dict[tuple[str, str], bytes] | None = None,
        failures: dict[tuple[str, str], Exception] | None = None,
        *,
        gate: asyncio.Event | None = None,
        delay: float = 0.0,
    ) -> None:
        self.packages = packages or {}
        self.failures = failures or {}
        self.gate = gate
        self.delay = delay
        self.calls: Counter[tuple[str, str]] = Counter()

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def add(self, name: str, version: str, files: dict[str, str | bytes] | None = None) -> None:
        self.packages[(name, version)] = make_tarball(
            files or {"package.json": f'{{"name": "{name}", "version": "{version}"}}'}
        )

    async def fetch(self, name: str, version: str) -> PackageArchive:
        from dynpkg.errors import PackageNotFound

        self.calls[(name, version)] += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if (name, version) in self.failures:
            raise self.failures[(name, version)]
        try:
            return PackageArchive(data=self.packages[(name, version)])
        except KeyError:
            raise PackageNotFound(f"{name}@{version} not found") from None


class InMemoryCache:
    """Cache fake: 'extracts' by recording the archive and handing out a fake path."""

    def __init__(self) -> None:
        self.entries: dict[InstallKey, Path] = {}
        self.puts: Counter[InstallKey] = Counter()

    def has(self, key: InstallKey) -> bool:
        return key in self.entries

    def get(self, key: InstallKey) -> Path | None:
        return self.entries.get(key)

    def put(self, key: InstallKey, archive: PackageArchive) -> Path:
        self.puts[key] += 1
        path = Path("/virtual-cache") / key.path_segment
        self.entries[key] = path
        return path


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton rooted in tmp_path."""
    monkeypatch.setattr("dynpkg.config._settings", make_settings(tmp_path))


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cache(tmp_path: Path) -> FilesystemInstallCache:
    return FilesystemInstallCache(tmp_path / "cache")


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()
