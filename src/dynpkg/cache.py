"""Content-addressed on-disk store of extracted packages.

Layout under the cache root::

    <root>/<key segment>/            one fully extracted package per InstallKey
    <root>/<key segment>/.dynpkg-entry.json   ready marker, written before publish
    <root>/.staging/<segment>.<id>/  in-progress extractions
    <root>/.trash/<segment>.<id>/    entries being removed

A package is extracted into its own staging directory and then renamed into
place in one ``os.rename``. Staging and final directories share a filesystem,
so readers see either no entry or a complete one.
"""

from __future__ import annotations

import json
import os
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from dynpkg.archive import extract_package, verify_integrity
from dynpkg.errors import CacheWriteFailed, InstallError
from dynpkg.logger import logger
from dynpkg.types import CacheEntry, CacheStatus, InstallKey, PackageArchive

MARKER_NAME = ".dynpkg-entry.json"


@runtime_checkable
class InstallCache(Protocol):
    """What the coordinator needs from a cache.

    ``put`` is only ever called once at a time per key; the coordinator
    guarantees that within a process.
    """

    def has(self, key: InstallKey) -> bool: ...

    def get(self, key: InstallKey) -> Path | None: ...

    def put(self, key: InstallKey, archive: PackageArchive) -> Path: ...


class FilesystemInstallCache:
    def __init__(
        self,
        root: Path,
        *,
        max_entry_size: int = 20_000_000,
        verify: bool = True,
    ) -> None:
        self.root = root
        self.max_entry_size = max_entry_size
        self.verify = verify
        self._staging_dir = root / ".staging"
        self._trash_dir = root / ".trash"
        self._staging_dir.mkdir(parents=True, exist_ok=True)
        self._trash_dir.mkdir(parents=True, exist_ok=True)
        self._purge_trash()

    def path_for(self, key: InstallKey) -> Path:
        return self.root / key.path_segment

    # --- Queries ---

    def entry(self, key: InstallKey) -> CacheEntry | None:
        """Describe the entry for *key*, or None when nothing is published."""
        path = self.path_for(key)
        if not path.is_dir():
            return None
        try:
            meta = _read_marker(path)
            if meta.get("key") != key.canonical:
                raise ValueError(f"marker belongs to {meta.get('key')!r}")
        except (OSError, ValueError) as exc:
            logger.warning(
                "Cache entry is corrupt", key=key.canonical, path=str(path), err=str(exc)
            )
            return CacheEntry(key=key, path=path, status=CacheStatus.CORRUPT)
        return CacheEntry(
            key=key,
            path=path,
            status=CacheStatus.READY,
            integrity=meta.get("integrity"),
            installed_at=_parse_timestamp(meta.get("installed_at")),
        )

    def has(self, key: InstallKey) -> bool:
        return self.get(key) is not None

    def get(self, key: InstallKey) -> Path | None:
        """Path of the ready entry for *key*; None on a miss (corrupt counts as a miss)."""
        entry = self.entry(key)
        if entry is None or not entry.is_ready:
            return None
        return entry.path

    def entries(self) -> list[CacheEntry]:
        """All published entries whose marker is readable."""
        found: list[CacheEntry] = []
        if not self.root.is_dir():
            return found
        for child in sorted(self.root.iterdir()):
            if child.name.startswith(".") or not child.is_dir():
                continue
            try:
                meta = _read_marker(child)
                key = InstallKey(meta["name"], meta["version"])
            except (OSError, ValueError, KeyError):
                logger.warning("Skipping unreadable cache entry", path=str(child))
                continue
            entry = self.entry(key)
            if entry is not None:
                found.append(entry)
        return found

    # --- Mutations ---

    def put(self, key: InstallKey, archive: PackageArchive) -> Path:
        """Extract *archive* and publish it as the entry for *key*.

        Raises ``ExtractionFailed`` (including ``IntegrityError``) for bad
        archives and ``CacheWriteFailed`` for filesystem errors. Nothing is
        published on failure.
        """
        final = self.path_for(key)
        staging = self._staging_dir / f"{key.path_segment}.{uuid.uuid4().hex}"
        try:
            if self.verify and archive.integrity:
                verify_integrity(archive.data, archive.integrity)
            count = extract_package(archive.data, staging, max_entry_size=self.max_entry_size)
            _write_marker(staging, key, archive.integrity)
            self._publish(key, staging, final)
        except InstallError as exc:
            if exc.key is None:
                exc.key = key
            raise
        except OSError as exc:
            raise CacheWriteFailed(f"Could not write cache entry for {key}: {exc}", key) from exc
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.info("Cache entry published", key=key.canonical, path=str(final), files=count)
        return final

    def _publish(self, key: InstallKey, staging: Path, final: Path) -> None:
        existing = self.entry(key)
        if existing is not None:
            if existing.is_ready:
                # Another process published first; keep theirs
                return
            self._move_to_trash(final)
        try:
            os.rename(staging, final)
        except OSError:
            if self.has(key):
                return
            raise

    def remove(self, key: InstallKey) -> bool:
        """Delete the entry for *key*. Returns False if there was none.

        The entry disappears from readers' view in one rename before its
        contents are deleted. Callers are responsible for checking that no
        job still references the entry.
        """
        path = self.path_for(key)
        if not path.exists():
            return False
        self._move_to_trash(path)
        self._purge_trash()
        logger.info("Cache entry removed", key=key.canonical)
        return True

    def _move_to_trash(self, path: Path) -> None:
        os.rename(path, self._trash_dir / f"{path.name}.{uuid.uuid4().hex}")

    def _purge_trash(self) -> None:
        for child in self._trash_dir.iterdir():
            shutil.rmtree(child, ignore_errors=True)


def _read_marker(directory: Path) -> dict:
    meta = json.loads((directory / MARKER_NAME).read_text())
    if not isinstance(meta, dict):
        raise ValueError(f"marker is a JSON {type(meta).__name__}, not an object")
    return meta


def _write_marker(directory: Path, key: InstallKey, integrity: str | None) -> None:
    marker = {
        "key": key.canonical,
        "name": key.name,
        "version": key.version,
        "integrity": integrity,
        "installed_at": datetime.now(UTC).isoformat(),
    }
    (directory / MARKER_NAME).write_text(json.dumps(marker, indent=2))


def _parse_timestamp(raw: object) -> datetime | None:
    if not isinstance(raw, str):
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None
