"""Per-key install deduplication.

At most one fetch+extract runs per InstallKey at a time. The first caller
for a missing key starts a shared install task; everyone else asking for the
same key while it runs awaits that same task and gets the same path or the
same exception.

The in-flight table is only touched in synchronous stretches (no ``await``
between the cache check, the table lookup and the insert), so the event loop
itself serializes bookkeeping; the slow fetch runs in its own task and never
blocks other keys.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeAlias
from pathlib import Path

from dynpkg.cache import InstallCache
from dynpkg.errors import (
    CacheWriteFailed,
    InstallError,
    InstallTimeout,
    RateLimited,
    SourceUnavailable,
)
from dynpkg.logger import logger
from dynpkg.types import InstallKey, PackageArchive

FetchFn: TypeAlias = Callable[[], Awaitable[PackageArchive | bytes]]


@dataclass
class InFlightInstall:
    key: InstallKey
    task: asyncio.Task[Path]
    waiters: int = 0


def _consume_result(task: asyncio.Task[Path]) -> None:
    # An install whose waiters were all cancelled may fail with nobody awaiting it;
    # the failure is already logged by _install.
    if not task.cancelled():
        task.exception()


class InstallCoordinator:
    """Owns the in-flight table for one cache.

    Failures are not remembered: once a failed install's record is gone, the
    next ``acquire`` for that key fetches again.
    """

    def __init__(
        self,
        cache: InstallCache,
        *,
        timeout_seconds: float = 120.0,
        max_retries: int = 0,
        base_retry_seconds: float = 1.0,
    ) -> None:
        self._cache = cache
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._base_retry_seconds = base_retry_seconds
        self._in_flight: dict[InstallKey, InFlightInstall] = {}

    @property
    def cache(self) -> InstallCache:
        return self._cache

    def in_flight(self) -> list[InstallKey]:
        return list(self._in_flight)

    async def acquire(self, key: InstallKey, fetch_fn: FetchFn) -> Path:
        """Return the cache path for *key*, fetching it at most once.

        Raises an ``InstallError`` subclass when the install fails. Cancelling
        the caller only stops its own wait; the shared install keeps running
        for the other waiters and still publishes into the cache.
        """
        path = self._cache.get(key)
        if path is not None:
            logger.debug("Cache hit", key=key.canonical)
            return path

        record = self._in_flight.get(key)
        if record is None:
            task = asyncio.create_task(self._install(key, fetch_fn), name=f"dynpkg-install:{key}")
            task.add_done_callback(_consume_result)
            record = InFlightInstall(key=key, task=task)
            self._in_flight[key] = record
            logger.info("Cache miss, fetching package", key=key.canonical)
        else:
            logger.info("Joining in-flight install", key=key.canonical, waiters=record.waiters)
        record.waiters += 1

        try:
            return await asyncio.shield(record.task)
        finally:
            record.waiters -= 1
            if record.waiters == 0 and not record.task.done():
                logger.info("Install continues without waiters", key=key.canonical)

    async def _install(self, key: InstallKey, fetch_fn: FetchFn) -> Path:
        try:
            archive = await self._fetch_with_retries(key, fetch_fn)
            try:
                return await asyncio.to_thread(self._cache.put, key, archive)
            except InstallError:
                raise
            except Exception as exc:
                raise CacheWriteFailed(f"Could not store {key}: {exc}", key) from exc
        except InstallError as exc:
            if exc.key is None:
                exc.key = key
            logger.warning(
                "Package install failed",
                key=key.canonical,
                error_type=type(exc).__name__,
                err=str(exc),
            )
            raise
        finally:
            # Runs before waiters resume: late arrivals either hit the cache
            # or start a fresh attempt.
            self._in_flight.pop(key, None)

    async def _fetch_with_retries(self, key: InstallKey, fetch_fn: FetchFn) -> PackageArchive:
        attempt = 0
        while True:
            try:
                return await self._fetch_once(key, fetch_fn)
            except InstallError as exc:
                if not exc.retryable or attempt >= self._max_retries:
                    raise
                attempt += 1
                delay = self._base_retry_seconds * (2 ** (attempt - 1))
                if isinstance(exc, RateLimited) and exc.retry_after is not None:
                    delay = max(delay, exc.retry_after)
                logger.info(
                    "Retrying fetch with backoff",
                    key=key.canonical,
                    attempt=attempt,
                    delay_seconds=delay,
                    err=str(exc),
                )
                await asyncio.sleep(delay)

    async def _fetch_once(self, key: InstallKey, fetch_fn: FetchFn) -> PackageArchive:
        try:
            async with asyncio.timeout(self._timeout):
                result = await fetch_fn()
        except TimeoutError as exc:
            raise InstallTimeout(f"Fetching {key} timed out after {self._timeout}s", key) from exc
        except InstallError:
            raise
        except Exception as exc:
            raise SourceUnavailable(f"Fetching {key} failed: {exc}", key) from exc
        if isinstance(result, bytes):
            return PackageArchive(data=result)
        return result
