"""Single-member extraction from downloaded runtime archives.

Only the requested member is read, and only into memory. Nothing from the
archive is ever written to a path derived from its own member names.
"""

from __future__ import annotations

import posixpath
import tarfile
import zipfile
from pathlib import Path
from typing import IO

from fossilize.errors import FetchError


def _normalize(name: str) -> str:
    return posixpath.normpath(name.lstrip("/")).removeprefix("./")


def untar(stream: IO[bytes], member: str, *, compression: str = "xz") -> bytes:
    """Read ``member`` from a compressed tar stream in a single forward pass."""
    wanted = _normalize(member)
    with tarfile.open(fileobj=stream, mode=f"r|{compression}") as archive:
        for info in archive:
            if _normalize(info.name) != wanted:
                continue
            if not info.isfile():
                raise FetchError(
                    f"Archive member `{member}` is not a regular file.",
                    context={"operation": "untar", "member": member},
                )
            extracted = archive.extractfile(info)
            if extracted is None:
                break
            return extracted.read()
    raise FetchError(
        f"Archive does not contain `{member}`.",
        hint="The distribution layout may have changed for this runtime version.",
        context={"operation": "untar", "member": member},
    )


def unzip(path: str | Path, member: str) -> bytes:
    """Read ``member`` from a zip archive on disk."""
    wanted = _normalize(member)
    try:
        with zipfile.ZipFile(path) as archive:
            for info in archive.infolist():
                if _normalize(info.filename) == wanted and not info.is_dir():
                    return archive.read(info)
    except zipfile.BadZipFile as exc:
        raise FetchError(
            "Downloaded archive is not a valid zip file.",
            context={"operation": "unzip", "path": str(path)},
        ) from exc
    raise FetchError(
        f"Archive does not contain `{member}`.",
        hint="The distribution layout may have changed for this runtime version.",
        context={"operation": "unzip", "member": member, "path": str(path)},
    )


__all__ = ["untar", "unzip"]
