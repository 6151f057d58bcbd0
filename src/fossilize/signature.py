"""Code-signature stripping for Mach-O and PE runtime binaries.

Stripping is a pure buffer transform: the input is the raw executable and
the output is the same executable without its embedded signature, ready to
be mutated and re-signed. ELF binaries carry no embedded signature and are
returned untouched.
"""

from __future__ import annotations

import array
import struct
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path

import lief

from fossilize.errors import SignatureError
from fossilize.platforms import BinaryFormat, PlatformTarget

# ── Mach-O ──────────────────────────────────────────────────────────

FAT_MAGIC = 0xCAFEBABE
FAT_MAGIC_64 = 0xCAFEBABF


def _parse_macho(data: bytes) -> lief.MachO.Binary:
    if len(data) >= 4 and struct.unpack_from(">I", data, 0)[0] in (FAT_MAGIC, FAT_MAGIC_64):
        raise SignatureError(
            "Universal (fat) Mach-O binaries are not supported.",
            hint="Use a single-architecture darwin platform such as darwin-arm64.",
        )
    fat = lief.MachO.parse(list(data))
    if fat is None or fat.size == 0:
        raise SignatureError("Binary is not a Mach-O file.")
    if fat.size > 1:
        raise SignatureError(
            "Universal (fat) Mach-O binaries are not supported.",
            context={"architectures": str(fat.size)},
        )
    return fat.at(0)


def unsign_macho(data: bytes) -> bytes:
    binary = _parse_macho(data)
    if not binary.has_code_signature:
        return bytes(data)
    binary.remove_signature()
    with tempfile.TemporaryDirectory(prefix="fossilize-unsign-") as work_dir:
        output = Path(work_dir) / "unsigned"
        binary.write(str(output))
        return output.read_bytes()


# ── PE ──────────────────────────────────────────────────────────────

PE32_MAGIC = 0x10B
PE32_PLUS_MAGIC = 0x20B
IMAGE_DIRECTORY_ENTRY_SECURITY = 4


@dataclass(frozen=True, slots=True)
class _PeLayout:
    checksum_offset: int
    security_entry_offset: int | None


def _pe_layout(data: bytes) -> _PeLayout:
    if len(data) < 0x40 or data[:2] != b"MZ":
        raise SignatureError("Binary is not a PE file (missing MZ header).")
    (e_lfanew,) = struct.unpack_from("<I", data, 0x3C)
    if e_lfanew + 24 > len(data) or data[e_lfanew : e_lfanew + 4] != b"PE\0\0":
        raise SignatureError("Binary is not a PE file (missing PE signature).")
    coff = e_lfanew + 4
    (size_of_optional,) = struct.unpack_from("<H", data, coff + 16)
    opt = coff + 20
    if opt + size_of_optional > len(data) or size_of_optional < 2:
        raise SignatureError("PE optional header is truncated.")
    (magic,) = struct.unpack_from("<H", data, opt)
    if magic == PE32_MAGIC:
        rva_count_at, dirs_at = 92, 96
    elif magic == PE32_PLUS_MAGIC:
        rva_count_at, dirs_at = 108, 112
    else:
        raise SignatureError("Unknown PE optional header magic.", context={"magic": hex(magic)})
    if rva_count_at + 4 > size_of_optional:
        raise SignatureError("PE optional header is truncated.")
    (rva_count,) = struct.unpack_from("<I", data, opt + rva_count_at)
    security_entry = dirs_at + IMAGE_DIRECTORY_ENTRY_SECURITY * 8
    if rva_count <= IMAGE_DIRECTORY_ENTRY_SECURITY or security_entry + 8 > size_of_optional:
        return _PeLayout(checksum_offset=opt + 64, security_entry_offset=None)
    return _PeLayout(checksum_offset=opt + 64, security_entry_offset=opt + security_entry)


def pe_checksum(data: bytes | bytearray, checksum_offset: int) -> int:
    """Compute the optional-header checksum the way the Windows loader does."""
    buffer = bytearray(data)
    buffer[checksum_offset : checksum_offset + 4] = bytes(4)
    if len(buffer) % 2:
        buffer.append(0)
    words = array.array("H", bytes(buffer))
    if sys.byteorder == "big":
        words.byteswap()
    total = sum(words)
    while total > 0xFFFF:
        total = (total & 0xFFFF) + (total >> 16)
    return (total + len(data)) & 0xFFFFFFFF


def _align_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


def unsign_pe(data: bytes) -> bytes:
    layout = _pe_layout(data)
    if layout.security_entry_offset is None:
        return bytes(data)
    offset, size = struct.unpack_from("<II", data, layout.security_entry_offset)
    if size == 0:
        return bytes(data)
    end = offset + size
    if end > len(data) or any(data[_align_up(end, 8) :]):
        raise SignatureError(
            "PE certificate table does not lie at the end of the file.",
            context={"offset": str(offset), "size": str(size)},
        )
    out = bytearray(data[:offset])
    struct.pack_into("<II", out, layout.security_entry_offset, 0, 0)
    struct.pack_into("<I", out, layout.checksum_offset, pe_checksum(out, layout.checksum_offset))
    return bytes(out)


# ── Public API ──────────────────────────────────────────────────────


def strip_signature(data: bytes, platform: PlatformTarget | BinaryFormat) -> bytes:
    """Return ``data`` without an embedded code signature.

    Raises ``SignatureError`` if the binary cannot be parsed as the format
    the platform implies.
    """
    binary_format = platform.binary_format if isinstance(platform, PlatformTarget) else platform
    if binary_format == "macho":
        return unsign_macho(data)
    if binary_format == "pe":
        return unsign_pe(data)
    return bytes(data)


def is_signed(data: bytes, platform: PlatformTarget | BinaryFormat) -> bool:
    binary_format = platform.binary_format if isinstance(platform, PlatformTarget) else platform
    if binary_format == "macho":
        return bool(_parse_macho(data).has_code_signature)
    if binary_format == "pe":
        layout = _pe_layout(data)
        if layout.security_entry_offset is None:
            return False
        _, size = struct.unpack_from("<II", data, layout.security_entry_offset)
        return size != 0
    return False


__all__ = ["is_signed", "pe_checksum", "strip_signature", "unsign_macho", "unsign_pe"]
