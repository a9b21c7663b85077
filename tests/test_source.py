"""Tests for package sources, against a fake npm registry."""

from __future__ import annotations

import base64
import hashlib
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from conftest import make_tarball

from dynpkg.errors import PackageNotFound, RateLimited, SourceUnavailable
from dynpkg.source import LocalArchiveSource, NpmRegistrySource, PackageSource, tarball_filename

TARBALL = make_tarball({"index.js": "registry"})
INTEGRITY = "sha512-" + base64.b64encode(hashlib.sha512(TARBALL).digest()).decode()


def _registry_app() -> web.Application:
    async def manifest(request: web.Request) -> web.Response:
        name = request.match_info["name"]
        version = request.match_info["version"]
        if name == "missing":
            return web.Response(status=404)
        if name == "limited":
            return web.Response(status=429, headers={"Retry-After": "3"})
        if name == "broken":
            return web.Response(status=503)
        if name == "legacy":
            sha1 = hashlib.sha1(TARBALL).hexdigest()
            dist = {"tarball": f"{request.url.origin()}/tarballs/legacy.tgz", "shasum": sha1}
        else:
            dist = {
                "tarball": f"{request.url.origin()}/tarballs/{version}.tgz",
                "integrity": INTEGRITY,
            }
        return web.json_response({"name": name, "version": version, "dist": dist})

    async def tarball(request: web.Request) -> web.Response:
        return web.Response(body=TARBALL, content_type="application/octet-stream")

    app = web.Application()
    app.router.add_get("/tarballs/{file}", tarball)
    app.router.add_get("/{name}/{version}", manifest)
    return app


@pytest.fixture
async def registry():
    server = TestServer(_registry_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def npm(registry: TestServer):
    async with NpmRegistrySource(str(registry.make_url(""))) as source:
        yield source


class TestNpmRegistrySource:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(NpmRegistrySource(), PackageSource)

    def test_scoped_manifest_url(self) -> None:
        source = NpmRegistrySource("https://registry.example.com/")
        assert (
            source.manifest_url("@amplication/plugin-auth", "1.0.0")
            == "https://registry.example.com/@amplication%2Fplugin-auth/1.0.0"
        )

    @pytest.mark.asyncio
    async def test_fetch_returns_tarball_and_integrity(self, npm: NpmRegistrySource) -> None:
        archive = await npm.fetch("foo", "1.0.0")
        assert archive.data == TARBALL
        assert archive.integrity == INTEGRITY

    @pytest.mark.asyncio
    async def test_legacy_shasum_becomes_sri(self, npm: NpmRegistrySource) -> None:
        archive = await npm.fetch("legacy", "1.0.0")
        expected = "sha1-" + base64.b64encode(hashlib.sha1(TARBALL).digest()).decode()
        assert archive.integrity == expected

    @pytest.mark.asyncio
    async def test_not_found(self, npm: NpmRegistrySource) -> None:
        with pytest.raises(PackageNotFound):
            await npm.fetch("missing", "1.0.0")

    @pytest.mark.asyncio
    async def test_rate_limited(self, npm: NpmRegistrySource) -> None:
        with pytest.raises(RateLimited) as excinfo:
            await npm.fetch("limited", "1.0.0")
        assert excinfo.value.retry_after == 3.0
        assert excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self, npm: NpmRegistrySource) -> None:
        with pytest.raises(SourceUnavailable, match="503"):
            await npm.fetch("broken", "1.0.0")

    @pytest.mark.asyncio
    async def test_connection_failure_is_unavailable(self) -> None:
        async with NpmRegistrySource("http://127.0.0.1:9") as source:
            with pytest.raises(SourceUnavailable):
                await source.fetch("foo", "1.0.0")

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self) -> None:
        seen: list[str | None] = []

        async def capture(request: web.Request) -> web.Response:
            seen.append(request.headers.get("Authorization"))
            return web.Response(status=404)

        app = web.Application()
        app.router.add_get("/{name}/{version}", capture)
        server = TestServer(app)
        await server.start_server()
        try:
            async with NpmRegistrySource(str(server.make_url("")), auth_token="s3cret") as source:
                with pytest.raises(PackageNotFound):
                    await source.fetch("foo", "1.0.0")
        finally:
            await server.close()

        assert seen == ["Bearer s3cret"]


class TestLocalArchiveSource:
    def test_tarball_filename_matches_npm_pack(self) -> None:
        assert tarball_filename("@scope/pkg", "1.0.0") == "scope-pkg-1.0.0.tgz"
        assert tarball_filename("pkg", "2.0.0") == "pkg-2.0.0.tgz"

    @pytest.mark.asyncio
    async def test_reads_archive(self, tmp_path: Path) -> None:
        (tmp_path / "scope-pkg-1.0.0.tgz").write_bytes(TARBALL)
        archive = await LocalArchiveSource(tmp_path).fetch("@scope/pkg", "1.0.0")
        assert archive.data == TARBALL

    @pytest.mark.asyncio
    async def test_missing_archive(self, tmp_path: Path) -> None:
        with pytest.raises(PackageNotFound):
            await LocalArchiveSource(tmp_path).fetch("pkg", "1.0.0")
