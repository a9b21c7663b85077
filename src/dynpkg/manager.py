"""Batch installation of a generation job's plugins.

``InstallationManager.install`` validates the whole batch, then installs
every distinct plugin concurrently (bounded per batch). One plugin failing
never stops the others: each descriptor gets its own ``InstallOutcome``, in
input order, and the caller decides whether a partial plugin set is usable.

One manager (and so one coordinator) should be shared by all jobs in a
process; that is what makes concurrent jobs fetch each package only once.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Iterable, Mapping
from pathlib import Path

from dynpkg.cache import FilesystemInstallCache
from dynpkg.config import Settings, get_settings
from dynpkg.coordinator import InstallCoordinator
from dynpkg.errors import InstallError, InvalidDescriptorError, ModuleLinkFailed
from dynpkg.hooks import HookDispatcher, InstallEvent
from dynpkg.job_dir import JobModuleDirectories, module_relpath
from dynpkg.logger import logger
from dynpkg.source import NpmRegistrySource, PackageSource
from dynpkg.types import (
    BatchInstallResult,
    InstallOutcome,
    InstallStatus,
    PluginInstallation,
)


def validate_batch(descriptors: Iterable[object]) -> list[PluginInstallation]:
    """Reject malformed batches before anything is installed."""
    checked: list[PluginInstallation] = []
    versions: dict[str, str] = {}
    for descriptor in descriptors:
        if not isinstance(descriptor, PluginInstallation):
            raise InvalidDescriptorError(f"Expected PluginInstallation, got {descriptor!r}")
        if not descriptor.name.strip():
            raise InvalidDescriptorError("Plugin name must not be empty")
        if not descriptor.version.strip():
            raise InvalidDescriptorError(f"Plugin {descriptor.name!r} has no version")
        try:
            module_relpath(descriptor.name)
        except ValueError as exc:
            raise InvalidDescriptorError(str(exc)) from exc
        seen = versions.setdefault(descriptor.name, descriptor.version)
        if seen != descriptor.version:
            raise InvalidDescriptorError(
                f"Plugin {descriptor.name!r} requested at both {seen} and {descriptor.version}"
            )
        checked.append(descriptor)
    return checked


def _as_observers(hooks: object | Iterable[object] | None) -> list[object]:
    if hooks is None:
        return []
    if isinstance(hooks, (list, tuple)):
        return list(hooks)
    return [hooks]


class InstallationManager:
    def __init__(
        self,
        coordinator: InstallCoordinator,
        source: PackageSource,
        job_dirs: JobModuleDirectories,
        *,
        max_concurrent: int = 4,
        hook_timeout_seconds: float = 30.0,
    ) -> None:
        self._coordinator = coordinator
        self._source = source
        self._job_dirs = job_dirs
        self._max_concurrent = max(1, max_concurrent)
        self._hook_timeout = hook_timeout_seconds

    @property
    def coordinator(self) -> InstallCoordinator:
        return self._coordinator

    @property
    def job_dirs(self) -> JobModuleDirectories:
        return self._job_dirs

    async def __aenter__(self) -> InstallationManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        close = getattr(self._source, "close", None)
        if close is not None:
            await close()

    async def install(
        self,
        job_id: str,
        descriptors: Iterable[PluginInstallation],
        hooks: object | Iterable[object] | None = None,
    ) -> BatchInstallResult:
        """Install *descriptors* for *job_id* and publish its module directory.

        Raises ``InvalidDescriptorError`` (before any install) for a malformed
        batch or job id. Per-plugin failures are reported in the result, not
        raised. If the calling task is cancelled, plugins not yet started are
        skipped, the job's directory is released, and installs shared with
        other jobs carry on.

        The job stays open after a successful install so its modules count as
        referenced; call ``release`` once the job no longer needs them. A job
        id cannot be installed again until it is released.
        """
        batch = validate_batch(descriptors)
        try:
            self._job_dirs.open(job_id)
        except ValueError as exc:
            raise InvalidDescriptorError(str(exc)) from exc

        dispatcher = HookDispatcher(_as_observers(hooks), timeout_seconds=self._hook_timeout)
        log = logger.bind(job_id=job_id)
        log.info("Installing dynamic packages", plugins=len(batch))

        # Identical descriptors are installed once and share one outcome
        unique = list(dict.fromkeys(batch))
        semaphore = asyncio.Semaphore(self._max_concurrent)
        try:
            results = await asyncio.gather(
                *(self._install_one(job_id, d, dispatcher, semaphore) for d in unique)
            )
        except asyncio.CancelledError:
            log.warning("Plugin installation cancelled")
            self._job_dirs.release(job_id)
            raise
        except Exception:
            log.exception("Plugin installation aborted")
            self._job_dirs.release(job_id)
            raise

        by_descriptor = dict(zip(unique, results, strict=True))
        result = BatchInstallResult(
            job_id=job_id,
            outcomes=[by_descriptor[d] for d in batch],
            modules=self._job_dirs.finalize(job_id),
        )
        log.info(
            "Dynamic packages installed",
            installed=len(result.installed),
            failed=len(result.failed),
        )
        return result

    async def release(self, job_id: str) -> None:
        """Delete the job's module directory and stop referencing its cache entries."""
        await asyncio.to_thread(self._job_dirs.release, job_id)
        logger.info("Released job module directory", job_id=job_id)

    async def _install_one(
        self,
        job_id: str,
        descriptor: PluginInstallation,
        dispatcher: HookDispatcher,
        semaphore: asyncio.Semaphore,
    ) -> InstallOutcome:
        async with semaphore:
            await dispatcher.dispatch(
                InstallEvent.BEFORE_INSTALL, job_id=job_id, descriptor=descriptor
            )
            try:
                cache_path = await self._coordinator.acquire(
                    descriptor.key,
                    functools.partial(self._source.fetch, descriptor.name, descriptor.version),
                )
                module_path = await self._link(job_id, descriptor, cache_path)
            except InstallError as exc:
                await dispatcher.dispatch(
                    InstallEvent.INSTALL_ERROR, job_id=job_id, descriptor=descriptor, error=exc
                )
                return InstallOutcome(descriptor=descriptor, status=InstallStatus.FAILED, error=exc)

            await dispatcher.dispatch(
                InstallEvent.AFTER_INSTALL, job_id=job_id, descriptor=descriptor, path=module_path
            )
            return InstallOutcome(
                descriptor=descriptor, status=InstallStatus.INSTALLED, path=cache_path
            )

    async def _link(self, job_id: str, descriptor: PluginInstallation, cache_path: Path) -> Path:
        try:
            return await asyncio.to_thread(
                self._job_dirs.link, job_id, descriptor.name, cache_path
            )
        except (OSError, KeyError) as exc:
            raise ModuleLinkFailed(
                f"Could not link {descriptor} into job {job_id}: {exc}", descriptor.key
            ) from exc


def build_manager(settings: Settings | None = None) -> InstallationManager:
    """Wire a manager from configuration (filesystem cache, npm registry)."""
    s = settings or get_settings()
    cache = FilesystemInstallCache(
        s.cache.root,
        max_entry_size=s.source.max_entry_size,
        verify=s.source.verify_integrity,
    )
    coordinator = InstallCoordinator(
        cache,
        timeout_seconds=s.source.timeout_seconds,
        max_retries=s.source.max_retries,
        base_retry_seconds=s.source.base_retry_seconds,
    )
    token = s.source.auth_token.get_secret_value() if s.source.auth_token else None
    source = NpmRegistrySource(s.source.registry_url, auth_token=token)
    job_dirs = JobModuleDirectories(s.jobs.root, link_mode=s.jobs.link_mode)
    return InstallationManager(
        coordinator,
        source,
        job_dirs,
        max_concurrent=s.install.max_concurrent,
        hook_timeout_seconds=s.install.hook_timeout_seconds,
    )


async def install_plugins(
    job_id: str,
    packages: Iterable[PluginInstallation | Mapping[str, str]],
    *,
    settings: Settings | None = None,
    hooks: object | Iterable[object] | None = None,
) -> BatchInstallResult:
    """One-shot install for a single job using a manager built from settings."""
    descriptors = [
        p if isinstance(p, PluginInstallation) else PluginInstallation.from_dict(dict(p))
        for p in packages
    ]
    async with build_manager(settings) as manager:
        return await manager.install(job_id, descriptors, hooks=hooks)
