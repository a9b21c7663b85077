"""Package sources: where package archives come from.

A source turns ``(name, version)`` into archive bytes or raises
``PackageNotFound`` / ``SourceUnavailable`` / ``RateLimited``. Timeouts and
retries are the coordinator's job, not the source's.
"""

from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import aiohttp

from dynpkg.errors import PackageNotFound, RateLimited, SourceUnavailable
from dynpkg.types import InstallKey, PackageArchive


@runtime_checkable
class PackageSource(Protocol):
    async def fetch(self, name: str, version: str) -> PackageArchive: ...


def tarball_filename(name: str, version: str) -> str:
    """File name ``npm pack`` gives a package (``@scope/pkg`` -> ``scope-pkg-1.0.0.tgz``)."""
    return f"{name.lstrip('@').replace('/', '-')}-{version}.tgz"


def _shasum_to_sri(shasum: str | None) -> str | None:
    # Old registry manifests only publish a hex sha1
    if not shasum:
        return None
    try:
        return "sha1-" + base64.b64encode(bytes.fromhex(shasum)).decode()
    except ValueError:
        return None


def _parse_retry_after(raw: str | None) -> float | None:
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class NpmRegistrySource:
    """Fetch packages from an npm-compatible registry over HTTP."""

    def __init__(
        self,
        registry_url: str = "https://registry.npmjs.org",
        *,
        auth_token: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._registry_url = registry_url.rstrip("/")
        self._auth_token = auth_token
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> NpmRegistrySource:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def manifest_url(self, name: str, version: str) -> str:
        # Scoped names keep the leading "@" but escape the slash: @scope%2Fpkg
        return f"{self._registry_url}/{quote(name, safe='@')}/{quote(version, safe='')}"

    async def fetch(self, name: str, version: str) -> PackageArchive:
        key = InstallKey(name, version)
        manifest = await self._get_json(self.manifest_url(name, version), key)
        dist = manifest.get("dist") or {}
        tarball_url = dist.get("tarball")
        if not tarball_url:
            raise PackageNotFound(f"Registry manifest for {key} has no tarball", key)
        integrity = dist.get("integrity") or _shasum_to_sri(dist.get("shasum"))
        data = await self._get(tarball_url, key)
        return PackageArchive(data=data, integrity=integrity)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json, application/octet-stream"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def _get_json(self, url: str, key: InstallKey) -> dict[str, Any]:
        body = await self._get(url, key)
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise SourceUnavailable(f"Registry returned invalid JSON for {key}", key) from exc
        if not isinstance(data, dict):
            raise SourceUnavailable(f"Registry returned unexpected manifest for {key}", key)
        return data

    async def _get(self, url: str, key: InstallKey) -> bytes:
        session = self._get_session()
        try:
            async with session.get(url, headers=self._headers()) as resp:
                if resp.status == 404:
                    raise PackageNotFound(f"{key} not found in registry", key)
                if resp.status == 429:
                    raise RateLimited(
                        f"Registry rate limited request for {key}",
                        key,
                        retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
                    )
                if resp.status >= 400:
                    raise SourceUnavailable(f"Registry returned HTTP {resp.status} for {key}", key)
                return await resp.read()
        except aiohttp.ClientError as exc:
            raise SourceUnavailable(f"Registry request for {key} failed: {exc}", key) from exc


class LocalArchiveSource:
    """Serve ``npm pack``-style tarballs from a local directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    async def fetch(self, name: str, version: str) -> PackageArchive:
        key = InstallKey(name, version)
        path = self.root / tarball_filename(name, version)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise PackageNotFound(f"No archive for {key} at {path}", key) from exc
        except OSError as exc:
            raise SourceUnavailable(f"Could not read {path}: {exc}", key) from exc
        return PackageArchive(data=data)
