"""Target platform keys in Node.js distribution naming (``os-arch``)."""

from __future__ import annotations

import platform as _platform
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from fossilize.errors import ValidationError

BinaryFormat = Literal["elf", "macho", "pe"]

_HOST_OS = {
    "darwin": "darwin",
    "win32": "win",
    "cygwin": "win",
    "aix": "aix",
}

_HOST_ARCH = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armv7l",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
}


@dataclass(frozen=True, slots=True)
class PlatformTarget:
    """An ``os-arch`` pair.

    Values are not checked against a closed set; the distribution server
    decides whether a pair exists.
    """

    os: str
    arch: str

    @classmethod
    def parse(cls, value: str) -> PlatformTarget:
        key = value.strip()
        os_name, sep, arch = key.partition("-")
        if not os_name or not sep or not arch:
            raise ValidationError(
                f"Invalid platform `{value}`.",
                hint="Use the `os-arch` form, e.g. linux-x64, darwin-arm64 or win-x64.",
                context={"platform": value},
            )
        return cls(os=os_name, arch=arch)

    @classmethod
    def host(cls) -> PlatformTarget:
        os_name = _HOST_OS.get(sys.platform, sys.platform.rstrip("0123456789"))
        machine = _platform.machine().lower()
        return cls(os=os_name, arch=_HOST_ARCH.get(machine, machine))

    @property
    def key(self) -> str:
        return f"{self.os}-{self.arch}"

    @property
    def is_windows(self) -> bool:
        return self.os.startswith("win")

    @property
    def is_macos(self) -> bool:
        return self.os.startswith("darwin")

    @property
    def binary_extension(self) -> str:
        return ".exe" if self.is_windows else ""

    @property
    def archive_extension(self) -> str:
        return "zip" if self.is_windows else "tar.xz"

    @property
    def binary_format(self) -> BinaryFormat:
        if self.is_windows:
            return "pe"
        if self.is_macos:
            return "macho"
        return "elf"

    def __str__(self) -> str:
        return self.key


def normalize_platforms(values: Iterable[str] | None) -> list[PlatformTarget]:
    """Parse requested platforms, dropping duplicates; default to the host."""
    targets: list[PlatformTarget] = []
    for value in values or ():
        if not value.strip():
            continue
        target = PlatformTarget.parse(value)
        if target not in targets:
            targets.append(target)
    if not targets:
        targets.append(PlatformTarget.host())
    return targets


__all__ = ["BinaryFormat", "PlatformTarget", "normalize_platforms"]
