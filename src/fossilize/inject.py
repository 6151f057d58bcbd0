"""Splice a payload blob into a runtime binary.

The runtime looks up its payload by resource name and only does so when
its fuse is blown, so injection is two steps: add the named resource in
the binary-format-specific place and flip the sentinel fuse from ``:0``
to ``:1``.

=========  ===============================================================
Format     Resource location
=========  ===============================================================
ELF        ``PT_NOTE`` segment whose note name is the resource name
Mach-O     section ``__<resource>`` inside a dedicated segment
PE         ``RT_RCDATA`` resource named after the resource
=========  ===============================================================
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, replace
from pathlib import Path

import lief

from fossilize.errors import InjectionError
from fossilize.platforms import PlatformTarget
from fossilize.runner import CommandRunner, run_checked

logger = logging.getLogger(__name__)

# Split so that scanning a bundle of this package for the fuse finds nothing.
SENTINEL_PREFIX = "NODE_SEA_FUSE_"
SENTINEL_HASH = "fce680ab2cc467b6e072b8b5df1996b2"

RESOURCE_NAME = "NODE_SEA_BLOB"
MACHO_SEGMENT_NAME = "NODE_SEA"

RT_RCDATA = 10
NAMED_RESOURCE_FLAG = 0x80000000


def sentinel() -> bytes:
    return (SENTINEL_PREFIX + SENTINEL_HASH).encode("ascii")


def flip_fuse(data: bytes) -> bytes:
    """Blow the sentinel fuse; exactly one unused fuse must be present."""
    marker = sentinel()
    first = data.find(marker)
    if first == -1:
        raise InjectionError(
            "Could not find the sentinel in the binary.",
            hint="Use an unmodified runtime binary that supports single executable applications.",
        )
    if data.rfind(marker) != first:
        raise InjectionError("Multiple occurrences of the sentinel found in the binary.")
    colon = first + len(marker)
    if data[colon : colon + 1] != b":":
        raise InjectionError(
            f"Value at index {colon} must be ':'.",
            context={"index": str(colon)},
        )
    state = data[colon + 1 : colon + 2]
    if state == b"1":
        raise InjectionError(
            "The sentinel fuse was already blown; the binary has a payload.",
            hint="Start again from a clean runtime binary.",
        )
    if state != b"0":
        raise InjectionError(
            f"Value at index {colon + 1} must be '0' or '1'.",
            context={"index": str(colon + 1)},
        )
    out = bytearray(data)
    out[colon + 1] = ord("1")
    return bytes(out)


def inject(
    binary_path: str | Path,
    blob: bytes,
    platform: PlatformTarget,
    *,
    resource_name: str = RESOURCE_NAME,
    macho_segment_name: str | None = None,
) -> Path:
    """Inject ``blob`` into the binary at ``binary_path`` in place.

    The binary must still carry its unused sentinel; calling this twice on
    the same file fails.
    """
    path = Path(binary_path)
    data = flip_fuse(path.read_bytes())
    binary_format = platform.binary_format
    if binary_format == "elf":
        path.write_bytes(add_elf_note(data, resource_name, blob))
        return path

    if binary_format == "macho":
        _inject_macho(path, data, resource_name, blob, macho_segment_name or MACHO_SEGMENT_NAME)
    else:
        _inject_pe(path, data, resource_name, blob)
    return path


def find_resource(
    data: bytes,
    platform: PlatformTarget,
    *,
    resource_name: str = RESOURCE_NAME,
    macho_segment_name: str | None = None,
) -> bytes | None:
    """Return the payload stored under ``resource_name``, if any."""
    binary_format = platform.binary_format
    if binary_format == "elf":
        return find_elf_note(data, resource_name)
    if binary_format == "macho":
        return _find_macho_section(
            data, macho_segment_name or MACHO_SEGMENT_NAME, f"__{resource_name}"
        )
    return _find_pe_resource(data, resource_name)


def mark_executable(path: str | Path, runner: CommandRunner) -> None:
    run_checked(runner, "chmod", "+x", str(path))


# ── ELF ─────────────────────────────────────────────────────────────

PT_LOAD = 1
PT_NOTE = 4
PT_PHDR = 6
PF_R = 0x4
PN_XNUM = 0xFFFF
NOTE_ALIGN = 4


@dataclass(frozen=True, slots=True)
class _Phdr:
    p_type: int
    p_flags: int
    p_offset: int
    p_vaddr: int
    p_paddr: int
    p_filesz: int
    p_memsz: int
    p_align: int


@dataclass(frozen=True, slots=True)
class _ElfLayout:
    endian: str
    is_64: bool
    phoff: int
    phentsize: int
    phnum: int

    @property
    def phoff_at(self) -> int:
        return 32 if self.is_64 else 28

    @property
    def phnum_at(self) -> int:
        return 56 if self.is_64 else 44


def _elf_layout(data: bytes) -> _ElfLayout:
    if len(data) < 52 or data[:4] != b"\x7fELF":
        raise InjectionError("Binary is not an ELF file.")
    ei_class, ei_data = data[4], data[5]
    if ei_class not in (1, 2) or ei_data not in (1, 2):
        raise InjectionError("Unsupported ELF class or byte order.")
    endian = "<" if ei_data == 1 else ">"
    is_64 = ei_class == 2
    if is_64:
        (phoff,) = struct.unpack_from(f"{endian}Q", data, 32)
        phentsize, phnum = struct.unpack_from(f"{endian}HH", data, 54)
    else:
        (phoff,) = struct.unpack_from(f"{endian}I", data, 28)
        phentsize, phnum = struct.unpack_from(f"{endian}HH", data, 42)
    if phnum == PN_XNUM:
        raise InjectionError("ELF binaries with extended program header numbering are not supported.")
    if phoff + phentsize * phnum > len(data):
        raise InjectionError("ELF program header table extends past the end of the file.")
    return _ElfLayout(endian=endian, is_64=is_64, phoff=phoff, phentsize=phentsize, phnum=phnum)


def _read_phdrs(data: bytes, layout: _ElfLayout) -> list[_Phdr]:
    phdrs: list[_Phdr] = []
    for index in range(layout.phnum):
        offset = layout.phoff + index * layout.phentsize
        if layout.is_64:
            p_type, p_flags, p_offset, p_vaddr, p_paddr, p_filesz, p_memsz, p_align = (
                struct.unpack_from(f"{layout.endian}IIQQQQQQ", data, offset)
            )
        else:
            p_type, p_offset, p_vaddr, p_paddr, p_filesz, p_memsz, p_flags, p_align = (
                struct.unpack_from(f"{layout.endian}IIIIIIII", data, offset)
            )
        phdrs.append(
            _Phdr(p_type, p_flags, p_offset, p_vaddr, p_paddr, p_filesz, p_memsz, p_align)
        )
    return phdrs


def _pack_phdr(phdr: _Phdr, layout: _ElfLayout) -> bytes:
    if layout.is_64:
        packed = struct.pack(
            f"{layout.endian}IIQQQQQQ",
            phdr.p_type,
            phdr.p_flags,
            phdr.p_offset,
            phdr.p_vaddr,
            phdr.p_paddr,
            phdr.p_filesz,
            phdr.p_memsz,
            phdr.p_align,
        )
    else:
        packed = struct.pack(
            f"{layout.endian}IIIIIIII",
            phdr.p_type,
            phdr.p_offset,
            phdr.p_vaddr,
            phdr.p_paddr,
            phdr.p_filesz,
            phdr.p_memsz,
            phdr.p_flags,
            phdr.p_align,
        )
    return packed.ljust(layout.phentsize, b"\0")


def _align_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def _pad4(raw: bytes) -> bytes:
    return raw + bytes(_align_up(len(raw), NOTE_ALIGN) - len(raw))


def _build_note(endian: str, name: str, desc: bytes) -> bytes:
    raw_name = name.encode("ascii") + b"\0"
    header = struct.pack(f"{endian}III", len(raw_name), len(desc), 0)
    return header + _pad4(raw_name) + _pad4(desc)


def add_elf_note(data: bytes, name: str, desc: bytes) -> bytes:
    """Append a ``PT_NOTE`` segment holding ``desc`` under ``name``.

    The program header table is rebuilt at the end of the file, inside a new
    read-only ``PT_LOAD`` so the loader can still map it. The new segment's
    file offset and virtual address keep the same distance as the first
    ``PT_LOAD``, so ``AT_PHDR`` is right whether the kernel derives it from
    ``PT_PHDR`` or from ``e_phoff``.
    """
    layout = _elf_layout(data)
    phdrs = _read_phdrs(data, layout)
    loads = [phdr for phdr in phdrs if phdr.p_type == PT_LOAD]
    if not loads:
        raise InjectionError("ELF binary has no loadable segments.")
    if layout.phnum + 2 >= PN_XNUM:
        raise InjectionError("ELF binary has too many program headers.")

    page = max(max(phdr.p_align for phdr in loads), 0x1000)
    first = min(loads, key=lambda phdr: phdr.p_vaddr)
    delta = first.p_vaddr - first.p_offset
    memory_end = max(phdr.p_vaddr + phdr.p_memsz for phdr in loads)
    region_offset = max(_align_up(len(data), page), _align_up(memory_end - delta, page))
    region_vaddr = region_offset + delta

    table_size = (layout.phnum + 2) * layout.phentsize
    note = _build_note(layout.endian, name, desc)
    note_offset = _align_up(region_offset + table_size, NOTE_ALIGN)
    region_size = note_offset + len(note) - region_offset

    new_load = _Phdr(
        p_type=PT_LOAD,
        p_flags=PF_R,
        p_offset=region_offset,
        p_vaddr=region_vaddr,
        p_paddr=region_vaddr,
        p_filesz=region_size,
        p_memsz=region_size,
        p_align=page,
    )
    note_vaddr = region_vaddr + (note_offset - region_offset)
    new_note = _Phdr(
        p_type=PT_NOTE,
        p_flags=PF_R,
        p_offset=note_offset,
        p_vaddr=note_vaddr,
        p_paddr=note_vaddr,
        p_filesz=len(note),
        p_memsz=len(note),
        p_align=NOTE_ALIGN,
    )

    rebuilt: list[_Phdr] = []
    last_load = max(index for index, phdr in enumerate(phdrs) if phdr.p_type == PT_LOAD)
    for index, phdr in enumerate(phdrs):
        if phdr.p_type == PT_PHDR:
            phdr = replace(
                phdr,
                p_offset=region_offset,
                p_vaddr=region_vaddr,
                p_paddr=region_vaddr,
                p_filesz=table_size,
                p_memsz=table_size,
            )
        rebuilt.append(phdr)
        if index == last_load:
            rebuilt.append(new_load)
    rebuilt.append(new_note)

    out = bytearray(data)
    out.extend(bytes(region_offset - len(out)))
    out.extend(b"".join(_pack_phdr(phdr, layout) for phdr in rebuilt))
    out.extend(bytes(note_offset - len(out)))
    out.extend(note)

    phoff_fmt = f"{layout.endian}Q" if layout.is_64 else f"{layout.endian}I"
    struct.pack_into(phoff_fmt, out, layout.phoff_at, region_offset)
    struct.pack_into(f"{layout.endian}H", out, layout.phnum_at, len(rebuilt))
    return bytes(out)


def find_elf_note(data: bytes, name: str) -> bytes | None:
    layout = _elf_layout(data)
    wanted = name.encode("ascii") + b"\0"
    for phdr in _read_phdrs(data, layout):
        if phdr.p_type != PT_NOTE:
            continue
        pos = phdr.p_offset
        end = min(phdr.p_offset + phdr.p_filesz, len(data))
        while pos + 12 <= end:
            namesz, descsz, _ = struct.unpack_from(f"{layout.endian}III", data, pos)
            name_at = pos + 12
            desc_at = name_at + _align_up(namesz, NOTE_ALIGN)
            if data[name_at : name_at + namesz] == wanted:
                return bytes(data[desc_at : desc_at + descsz])
            pos = desc_at + _align_up(descsz, NOTE_ALIGN)
    return None


# ── Mach-O / PE (LIEF) ──────────────────────────────────────────────


def _inject_macho(
    path: Path, data: bytes, resource_name: str, blob: bytes, segment_name: str
) -> None:
    fat = lief.MachO.parse(list(data))
    if fat is None or fat.size == 0:
        raise InjectionError("Failed to parse Mach-O binary.", context={"path": str(path)})
    binary = fat.at(0)
    section_name = f"__{resource_name}"
    if binary.get_section(segment_name, section_name) is not None:
        raise InjectionError(
            f"Segment {segment_name} already contains {section_name}.",
            hint="Start again from a clean runtime binary.",
        )
    segment = lief.MachO.SegmentCommand(segment_name)
    segment.add_section(lief.MachO.Section(section_name, list(blob)))
    binary.add(segment)
    binary.write(str(path))


def _node_name(node: lief.PE.ResourceNode) -> str | None:
    if not node.has_name:
        return None
    name = node.name
    return name.decode("utf-8", "replace") if isinstance(name, bytes) else name


def _inject_pe(path: Path, data: bytes, resource_name: str, blob: bytes) -> None:
    binary = lief.PE.parse(list(data))
    if binary is None:
        raise InjectionError("Failed to parse PE binary.", context={"path": str(path)})
    if not binary.has_resources:
        raise InjectionError("PE binary has no resource tree.", context={"path": str(path)})

    name = resource_name.upper()
    resources = binary.resources
    rcdata = next((node for node in resources.childs if node.id == RT_RCDATA), None)
    if rcdata is None:
        directory = lief.PE.ResourceDirectory()
        directory.id = RT_RCDATA
        rcdata = resources.add_directory_node(directory)
    if any(_node_name(node) == name for node in rcdata.childs):
        raise InjectionError(
            f"Resource {name} already exists.",
            hint="Start again from a clean runtime binary.",
        )

    # Type, name, then a language-neutral data leaf.
    name_dir = lief.PE.ResourceDirectory()
    name_dir.id = NAMED_RESOURCE_FLAG
    name_dir.name = name
    name_node = rcdata.add_directory_node(name_dir)
    name_node.add_data_node(lief.PE.ResourceData(list(blob), 0))

    builder = lief.PE.Builder(binary)
    builder.build_resources(True)
    status = builder.build()
    if isinstance(status, lief.lief_errors):
        raise InjectionError(
            "Failed to rebuild the PE resource tree.",
            context={"path": str(path), "error": str(status)},
        )
    builder.write(str(path))


def _find_macho_section(data: bytes, segment_name: str, section_name: str) -> bytes | None:
    fat = lief.MachO.parse(list(data))
    if fat is None or fat.size == 0:
        return None
    section = fat.at(0).get_section(segment_name, section_name)
    return bytes(section.content) if section is not None else None


def _find_pe_resource(data: bytes, resource_name: str) -> bytes | None:
    binary = lief.PE.parse(list(data))
    if binary is None or not binary.has_resources:
        return None
    name = resource_name.upper()
    for type_node in binary.resources.childs:
        if type_node.id != RT_RCDATA:
            continue
        for name_node in type_node.childs:
            if _node_name(name_node) != name:
                continue
            for leaf in name_node.childs:
                if leaf.is_data:
                    return bytes(leaf.content)
    return None


__all__ = [
    "MACHO_SEGMENT_NAME",
    "RESOURCE_NAME",
    "add_elf_note",
    "find_elf_note",
    "find_resource",
    "flip_fuse",
    "inject",
    "mark_executable",
    "sentinel",
]
