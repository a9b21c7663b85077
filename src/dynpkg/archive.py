"""Package archive handling: integrity checks and safe extraction.

Packages arrive as gzipped tarballs in npm layout, where every member sits
under a single top-level directory (normally ``package/``). Extraction strips
that directory so the destination holds the package root directly.
"""

from __future__ import annotations

import base64
import hashlib
import io
import tarfile
import zlib
from pathlib import Path, PurePosixPath

from dynpkg.errors import ExtractionFailed, IntegrityError

SUPPORTED_ALGORITHMS = ("sha512", "sha384", "sha256", "sha1")


def verify_integrity(data: bytes, integrity: str) -> None:
    """Check *data* against an SRI string such as ``sha512-<base64>``.

    Several space-separated hashes may be given; one match is enough. Hashes
    using algorithms we don't know are ignored, but at least one known
    algorithm must be present.
    """
    checked = False
    for token in integrity.split():
        algorithm, sep, expected = token.partition("-")
        if not sep or algorithm not in SUPPORTED_ALGORITHMS:
            continue
        checked = True
        actual = base64.b64encode(hashlib.new(algorithm, data).digest()).decode()
        if actual == expected:
            return
    if not checked:
        raise IntegrityError(f"No supported hash algorithm in integrity {integrity!r}")
    raise IntegrityError(f"Integrity mismatch (expected {integrity})")


def _strip_top_level(name: str) -> str | None:
    parts = PurePosixPath(name).parts
    if len(parts) < 2:
        return None
    return str(PurePosixPath(*parts[1:]))


def _prepare_members(tar: tarfile.TarFile, max_entry_size: int) -> list[tarfile.TarInfo]:
    members: list[tarfile.TarInfo] = []
    for member in tar.getmembers():
        relative = _strip_top_level(member.name)
        if relative is None or member.isdir():
            # Directories are recreated from file paths
            continue
        if member.isreg():
            if member.size > max_entry_size:
                raise ExtractionFailed(
                    f"Archive member {member.name} exceeds {max_entry_size} bytes"
                )
            members.append(member.replace(name=relative, deep=False))
        elif member.issym():
            members.append(member.replace(name=relative, deep=False))
        elif member.islnk():
            target = _strip_top_level(member.linkname)
            if target is None:
                raise ExtractionFailed(f"Hard link {member.name} points outside the package")
            members.append(member.replace(name=relative, linkname=target, deep=False))
        else:
            raise ExtractionFailed(f"Archive contains a non-regular file: {member.name}")
    return members


def extract_package(data: bytes, destination: Path, *, max_entry_size: int) -> int:
    """Extract a package tarball into *destination*; return the member count.

    Links escaping *destination*, absolute paths and device files are
    rejected by tarfile's ``data`` filter.
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            members = _prepare_members(tar, max_entry_size)
            if not any(m.isreg() for m in members):
                raise ExtractionFailed("Archive contains no files")
            destination.mkdir(parents=True, exist_ok=True)
            tar.extractall(destination, members=members, filter="data")
    except (tarfile.TarError, zlib.error, EOFError, KeyError) as exc:
        raise ExtractionFailed(f"Unreadable package archive: {exc}") from exc
    return len(members)
