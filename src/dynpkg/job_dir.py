"""Per-job module directories.

Each generation job gets ``<root>/<job id>/`` laid out like ``node_modules``:
``<root>/<job id>/<plugin name>`` is a symlink to the plugin's cache entry
(``@scope/pkg`` nests under ``@scope/``). Cache entries are immutable, so jobs
share bytes without seeing each other's layout. Where symlinks are
unavailable, or ``link_mode="copy"``, the entry is copied instead.
"""

from __future__ import annotations

import re
import shutil
import threading
from pathlib import Path, PurePosixPath
from typing import Literal, TypeAlias

from dynpkg.cache import MARKER_NAME
from dynpkg.logger import logger

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

LinkMode: TypeAlias = Literal["symlink", "copy"]


def module_relpath(plugin_name: str) -> PurePosixPath:
    """Relative location of a plugin inside a job directory.

    Raises ValueError for names that would escape the job directory.
    """
    rel = PurePosixPath(plugin_name)
    if rel.is_absolute() or not rel.parts or any(p in ("", ".", "..") for p in rel.parts):
        raise ValueError(f"Plugin name {plugin_name!r} is not a valid module path")
    if len(rel.parts) > 2 or (len(rel.parts) == 2 and not rel.parts[0].startswith("@")):
        raise ValueError(f"Plugin name {plugin_name!r} is not a valid module path")
    return rel


class _OpenJob:
    """Bookkeeping for one open job directory.

    ``lock`` serializes filesystem changes to the directory, so a link still
    running in a worker thread finishes before ``release`` deletes it.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.closed = False
        # plugin name -> (job-local path, cache path)
        self.modules: dict[str, tuple[Path, Path]] = {}


class JobModuleDirectories:
    """Tracks the module directory of every open job."""

    def __init__(self, root: Path, *, link_mode: LinkMode = "symlink") -> None:
        self.root = root
        self.link_mode = link_mode
        self._lock = threading.Lock()
        self._jobs: dict[str, _OpenJob] = {}

    def job_path(self, job_id: str) -> Path:
        if not _JOB_ID_RE.match(job_id):
            raise ValueError(f"Invalid job id {job_id!r}")
        return self.root / job_id

    def is_open(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def open_jobs(self) -> list[str]:
        with self._lock:
            return sorted(self._jobs)

    def open(self, job_id: str) -> Path:
        """Create an empty module directory for *job_id*.

        A leftover directory from an earlier run of the same job id is wiped.
        Raises ValueError while the job id is still open.
        """
        path = self.job_path(job_id)
        job = _OpenJob()
        with self._lock:
            if job_id in self._jobs:
                raise ValueError(f"Job {job_id!r} already has an open module directory")
            self._jobs[job_id] = job
        with job.lock:
            if path.exists():
                shutil.rmtree(path)
            path.mkdir(parents=True)
        return path

    def link(self, job_id: str, plugin_name: str, source_path: Path) -> Path:
        """Expose *source_path* as *plugin_name* inside the job's directory.

        Raises KeyError if the job is not open, including when it was released
        while this call waited for the job's lock.
        """
        dest = self.job_path(job_id) / module_relpath(plugin_name)
        job = self._open_job(job_id)
        with job.lock:
            if job.closed:
                raise KeyError(f"Job {job_id!r} was released")
            dest.parent.mkdir(parents=True, exist_ok=True)
            if dest.is_symlink() or dest.is_file():
                dest.unlink()
            elif dest.is_dir():
                shutil.rmtree(dest)

            if self.link_mode == "symlink":
                try:
                    dest.symlink_to(source_path, target_is_directory=True)
                except OSError as exc:
                    logger.warning(
                        "Symlink unavailable, copying module instead",
                        job_id=job_id,
                        plugin=plugin_name,
                        err=str(exc),
                    )
                    self._copy(source_path, dest)
            else:
                self._copy(source_path, dest)
            job.modules[plugin_name] = (dest, source_path)
        return dest

    def _open_job(self, job_id: str) -> _OpenJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Job {job_id!r} has no open module directory")
        return job

    @staticmethod
    def _copy(source_path: Path, dest: Path) -> None:
        shutil.copytree(
            source_path, dest, symlinks=True, ignore=shutil.ignore_patterns(MARKER_NAME)
        )

    def finalize(self, job_id: str) -> dict[str, Path]:
        """Plugin name -> job-local module path for everything linked so far."""
        job = self._open_job(job_id)
        with job.lock:
            return {name: dest for name, (dest, _) in sorted(job.modules.items())}

    def release(self, job_id: str) -> None:
        """Drop the job's directory; its cache entries become unreferenced.

        Blocks until a link in progress for the job has finished.
        """
        path = self.job_path(job_id)
        with self._lock:
            job = self._jobs.pop(job_id, None)
        if job is None:
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            return
        with job.lock:
            job.closed = True
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)

    def referenced_paths(self) -> set[Path]:
        """Cache paths used by any open job (eviction must skip these)."""
        with self._lock:
            jobs = list(self._jobs.values())
        referenced: set[Path] = set()
        for job in jobs:
            with job.lock:
                referenced.update(src for _, src in job.modules.values())
        return referenced
