"""Lifecycle hooks for plugin installs.

Three events exist per descriptor: before install, after a successful
install, and on install error. Observers implement any subset of the hook
specs below (sync or async) and are dispatched through pluggy. Hooks are
observational: an exception or a hang in one is logged and never changes the
install outcome.

Usage::

    class Progress:
        @hookimpl
        def dynpkg_after_install(self, descriptor, path):
            print("ready:", descriptor, path)

    await manager.install("job-1", descriptors, hooks=[Progress()])
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeAlias

import pluggy

from dynpkg.logger import logger
from dynpkg.types import PluginInstallation

hookspec = pluggy.HookspecMarker("dynpkg")
hookimpl = pluggy.HookimplMarker("dynpkg")


class InstallHookSpec:
    """Hook specifications for install observers."""

    @hookspec
    def dynpkg_before_install(self, job_id: str, descriptor: PluginInstallation) -> Any:
        """Called once per descriptor before its install is attempted."""

    @hookspec
    def dynpkg_after_install(
        self, job_id: str, descriptor: PluginInstallation, path: Path
    ) -> Any:
        """Called once per descriptor after it is linked into the job's module directory."""

    @hookspec
    def dynpkg_install_error(
        self, job_id: str, descriptor: PluginInstallation, error: Exception
    ) -> Any:
        """Called once per descriptor whose install failed."""


class InstallEvent(StrEnum):
    BEFORE_INSTALL = "dynpkg_before_install"
    AFTER_INSTALL = "dynpkg_after_install"
    INSTALL_ERROR = "dynpkg_install_error"


class LoggingHooks:
    """Log every lifecycle event. Registered on every dispatcher by default."""

    @hookimpl
    def dynpkg_before_install(self, job_id: str, descriptor: PluginInstallation) -> None:
        logger.info(
            "Installing plugin", job_id=job_id, plugin=descriptor.name, version=descriptor.version
        )

    @hookimpl
    def dynpkg_after_install(self, job_id: str, descriptor: PluginInstallation) -> None:
        logger.info(
            "Successfully installed plugin",
            job_id=job_id,
            plugin=descriptor.name,
            version=descriptor.version,
        )

    @hookimpl
    def dynpkg_install_error(
        self, job_id: str, descriptor: PluginInstallation, error: Exception
    ) -> None:
        logger.error(
            "Failed to install plugin",
            job_id=job_id,
            plugin=descriptor.name,
            version=descriptor.version,
            error_type=type(error).__name__,
            err=str(error),
        )


Callback: TypeAlias = Callable[..., Awaitable[None] | None]


@dataclass
class CallbackHooks:
    """Adapt plain ``on_*`` callbacks to the hook specs.

    ``on_before_install(descriptor)``, ``on_after_install(descriptor)`` and
    ``on_error(descriptor, error)`` may be sync or async; any may be omitted.
    """

    on_before_install: Callback | None = None
    on_after_install: Callback | None = None
    on_error: Callback | None = None

    @hookimpl
    def dynpkg_before_install(self, descriptor: PluginInstallation) -> Any:
        if self.on_before_install is not None:
            return self.on_before_install(descriptor)
        return None

    @hookimpl
    def dynpkg_after_install(self, descriptor: PluginInstallation) -> Any:
        if self.on_after_install is not None:
            return self.on_after_install(descriptor)
        return None

    @hookimpl
    def dynpkg_install_error(self, descriptor: PluginInstallation, error: Exception) -> Any:
        if self.on_error is not None:
            return self.on_error(descriptor, error)
        return None


class HookDispatcher:
    """Calls each registered hook implementation in isolation."""

    def __init__(
        self,
        observers: Iterable[object] = (),
        *,
        timeout_seconds: float = 30.0,
        include_logging: bool = True,
    ) -> None:
        self._pm = pluggy.PluginManager("dynpkg")
        self._pm.add_hookspecs(InstallHookSpec)
        self._timeout = timeout_seconds
        if include_logging:
            self._pm.register(LoggingHooks())
        for observer in observers:
            self._pm.register(observer)

    @property
    def plugin_manager(self) -> pluggy.PluginManager:
        return self._pm

    async def dispatch(self, event: InstallEvent, **kwargs: Any) -> None:
        """Fire *event* on every implementation; never raises."""
        hook = getattr(self._pm.hook, event.value)
        for impl in hook.get_hookimpls():
            args = {name: kwargs[name] for name in impl.argnames}
            try:
                result = impl.function(**args)
                if inspect.isawaitable(result):
                    async with asyncio.timeout(self._timeout):
                        await result
            except TimeoutError:
                logger.warning(
                    "Lifecycle hook timed out",
                    hook=event.value,
                    observer=impl.plugin_name,
                    timeout_seconds=self._timeout,
                )
            except Exception:
                logger.exception(
                    "Lifecycle hook failed", hook=event.value, observer=impl.plugin_name
                )
