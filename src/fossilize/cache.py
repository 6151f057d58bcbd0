"""Durable cache of signature-stripped Node.js runtime binaries."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from urllib.request import urlopen

from fossilize.archive import untar, unzip
from fossilize.fetch import DEFAULT_DIST_URL, Opener, archive_url, open_stream
from fossilize.platforms import PlatformTarget
from fossilize.signature import strip_signature

logger = logging.getLogger(__name__)


def cache_name(version: str, platform: PlatformTarget) -> str:
    return f"node-v{version}-{platform.key}{platform.binary_extension}"


def archive_name(version: str, platform: PlatformTarget) -> str:
    return f"node-v{version}-{platform.key}.{platform.archive_extension}"


def archive_member(version: str, platform: PlatformTarget) -> str:
    root = f"node-v{version}-{platform.key}"
    if platform.is_windows:
        return f"{root}/node.exe"
    return f"{root}/bin/node"


@dataclass(slots=True)
class BinaryCache:
    """Resolves runtime binaries for ``(version, platform)`` pairs.

    Entries are only ever written after their signature was stripped, so a
    cache hit is always safe to inject into. Concurrent writers of the same
    entry each publish a complete file; the last one wins.
    """

    cache_dir: Path
    dist_url: str = DEFAULT_DIST_URL
    opener: Opener = field(default=urlopen)
    skip_cache: bool = False

    def __post_init__(self) -> None:
        self.cache_dir = Path(self.cache_dir)

    def entry_path(self, version: str, platform: PlatformTarget) -> Path:
        return self.cache_dir / cache_name(version, platform)

    def obtain(self, version: str, platform: PlatformTarget, working_prefix: str | Path) -> Path:
        """Return a private working copy of the runtime binary."""
        if not self.skip_cache:
            try:
                return self._copy_from_cache(version, platform, working_prefix)
            except FileNotFoundError:
                logger.info("Cache miss for node v%s (%s)", version, platform)

        self._populate(version, platform)
        return self._copy_from_cache(version, platform, working_prefix)

    def _copy_from_cache(
        self,
        version: str,
        platform: PlatformTarget,
        working_prefix: str | Path,
    ) -> Path:
        source = self.entry_path(version, platform)
        target = Path(f"{working_prefix}-{platform.key}{platform.binary_extension}")
        shutil.copyfile(source, target)
        return target

    def _populate(self, version: str, platform: PlatformTarget) -> Path:
        remote_name = archive_name(version, platform)
        url = archive_url(self.dist_url, version, remote_name)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=remote_name, dir=self.cache_dir))
        try:
            logger.info("Downloading %s...", url)
            member = archive_member(version, platform)
            with open_stream(url, opener=self.opener) as body:
                if platform.is_windows:
                    archive_path = work_dir / remote_name
                    with archive_path.open("wb") as handle:
                        shutil.copyfileobj(body, handle)
                    binary = unzip(archive_path, member)
                else:
                    binary = untar(body, member)

            logger.info("Removing code signature from %s", member)
            unsigned = strip_signature(binary, platform)
            return self._publish(version, platform, unsigned)
        finally:
            try:
                shutil.rmtree(work_dir)
            except OSError as exc:
                logger.warning("Failed to remove %s: %s", work_dir, exc)

    def _publish(self, version: str, platform: PlatformTarget, data: bytes) -> Path:
        entry = self.entry_path(version, platform)
        fd, temp_name = tempfile.mkstemp(prefix=f".{entry.name}.", dir=self.cache_dir)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(temp_name, entry)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        logger.info("Cached %s", entry)
        return entry


__all__ = ["BinaryCache", "archive_member", "archive_name", "cache_name"]
