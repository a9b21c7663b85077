"""Entry point for `python -m dynpkg` / `uv run dynpkg`.

Subcommands:
    dynpkg install --job ID name@version ...   Install plugins for one job
    dynpkg cache list                           List cached packages
    dynpkg cache remove name@version            Remove one cached package
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from dynpkg.types import InstallKey, PluginInstallation


def _parse_plugins(specs: list[str]) -> list[PluginInstallation]:
    plugins = []
    for spec in specs:
        try:
            key = InstallKey.parse(spec)
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(2)
        plugins.append(PluginInstallation(key.name, key.version))
    return plugins


def _install(job_id: str, specs: list[str]) -> None:
    from dynpkg.config import get_settings
    from dynpkg.errors import InvalidDescriptorError
    from dynpkg.logger import set_level
    from dynpkg.manager import install_plugins

    s = get_settings()
    set_level(s.logging.level)
    try:
        result = asyncio.run(install_plugins(job_id, _parse_plugins(specs), settings=s))
    except InvalidDescriptorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    for outcome in result.outcomes:
        if outcome.installed:
            print(f"installed  {outcome.descriptor}")
        else:
            print(f"FAILED     {outcome.descriptor}: {outcome.error}")
    for name, path in result.modules.items():
        print(f"{name} -> {path}")
    sys.exit(1 if result.had_failures else 0)


def _cache_list() -> None:
    from dynpkg.cache import FilesystemInstallCache
    from dynpkg.config import get_settings

    cache = FilesystemInstallCache(get_settings().cache.root)
    entries = cache.entries()
    if not entries:
        print("Cache is empty")
        return
    for entry in entries:
        installed = entry.installed_at.isoformat() if entry.installed_at else "-"
        print(f"{entry.key}\t{entry.status}\t{installed}\t{entry.path}")


def _cache_remove(spec: str) -> None:
    from dynpkg.cache import FilesystemInstallCache
    from dynpkg.config import get_settings

    try:
        key = InstallKey.parse(spec)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    cache = FilesystemInstallCache(get_settings().cache.root)
    if not cache.remove(key):
        print(f"{key} is not cached", file=sys.stderr)
        sys.exit(1)
    print(f"Removed {key}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="dynpkg",
        description="Install plugin packages for code-generation jobs",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    install = sub.add_parser("install", help="Install plugins for a job")
    install.add_argument("--job", required=True, help="Generation job id")
    install.add_argument("plugins", nargs="+", metavar="name@version")

    cache = sub.add_parser("cache", help="Inspect the package cache")
    cache_sub = cache.add_subparsers(dest="cache_command", required=True)
    cache_sub.add_parser("list", help="List cached packages")
    remove = cache_sub.add_parser("remove", help="Remove a cached package")
    remove.add_argument("package", metavar="name@version")

    args = parser.parse_args(argv)

    match args.command:
        case "install":
            _install(args.job, args.plugins)
        case "cache" if args.cache_command == "list":
            _cache_list()
        case "cache":
            _cache_remove(args.package)


if __name__ == "__main__":
    main()
