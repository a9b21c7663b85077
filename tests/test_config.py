"""Tests for settings loading: defaults, dynpkg.toml, and env overrides."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from dynpkg.config import InstallConfig, Settings, SourceConfig, get_settings, reset_settings


@pytest.fixture
def isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run from an empty directory so no real dynpkg.toml or .env is picked up."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestDefaults:
    def test_defaults(self, isolated_cwd: Path):
        s = Settings()
        assert s.source.registry_url == "https://registry.npmjs.org"
        assert s.source.verify_integrity is True
        assert s.source.auth_token is None
        assert s.jobs.link_mode == "symlink"
        assert s.install.max_concurrent == 4
        assert s.logging.level == "INFO"

    def test_get_settings_is_cached(self, isolated_cwd: Path):
        assert get_settings() is get_settings()

    def test_reset_settings_drops_cache(self, isolated_cwd: Path):
        first = get_settings()
        reset_settings()
        assert get_settings() is not first


class TestSources:
    def test_toml_file(self, isolated_cwd: Path):
        (isolated_cwd / "dynpkg.toml").write_text(
            '[source]\nregistry_url = "https://npm.internal.example/"\nmax_retries = 5\n'
            '[jobs]\nlink_mode = "copy"\n'
        )
        s = Settings()
        assert s.source.registry_url == "https://npm.internal.example"
        assert s.source.max_retries == 5
        assert s.jobs.link_mode == "copy"

    def test_env_overrides_toml(self, isolated_cwd: Path, monkeypatch: pytest.MonkeyPatch):
        (isolated_cwd / "dynpkg.toml").write_text("[install]\nmax_concurrent = 2\n")
        monkeypatch.setenv("INSTALL__MAX_CONCURRENT", "8")
        assert Settings().install.max_concurrent == 8

    def test_token_from_dotenv_is_masked(self, isolated_cwd: Path):
        (isolated_cwd / ".env").write_text("SOURCE__AUTH_TOKEN=npm_secret\n")
        s = Settings()
        assert s.source.auth_token is not None
        assert s.source.auth_token.get_secret_value() == "npm_secret"
        assert "npm_secret" not in repr(s.source)

    def test_paths_expand_user(self, isolated_cwd: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CACHE__ROOT", "~/dynpkg-cache")
        assert Settings().cache.root == Path("~/dynpkg-cache").expanduser()

    def test_unknown_section_key_is_rejected(self, isolated_cwd: Path):
        (isolated_cwd / "dynpkg.toml").write_text("[source]\nregistry = \"typo\"\n")
        with pytest.raises(ValidationError):
            Settings()


class TestValidators:
    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            SourceConfig(timeout_seconds=0)

    def test_retries_cannot_be_negative(self):
        with pytest.raises(ValidationError):
            SourceConfig(max_retries=-1)

    def test_max_concurrent_is_clamped(self):
        assert InstallConfig(max_concurrent=0).max_concurrent == 1

    def test_invalid_link_mode(self):
        from dynpkg.config import JobsConfig

        with pytest.raises(ValidationError):
            JobsConfig(link_mode="hardlink")
