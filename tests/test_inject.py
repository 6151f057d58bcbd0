import os
import struct
from pathlib import Path

import lief
import pytest

from conftest import (
    FakeRunner,
    build_elf,
    build_macho,
    build_pe,
    build_pe_with_resources,
    fuse,
)
from fossilize.errors import InjectionError
from fossilize.inject import (
    RESOURCE_NAME,
    add_elf_note,
    find_elf_note,
    find_resource,
    flip_fuse,
    inject,
    mark_executable,
    sentinel,
)
from fossilize.platforms import PlatformTarget

LINUX = PlatformTarget.parse("linux-x64")
DARWIN = PlatformTarget.parse("darwin-arm64")
WINDOWS = PlatformTarget.parse("win-x64")

PT_LOAD = 1
PT_NOTE = 4
PT_PHDR = 6


def _phdrs(data: bytes) -> list[tuple[int, ...]]:
    (phoff,) = struct.unpack_from("<Q", data, 32)
    phentsize, phnum = struct.unpack_from("<HH", data, 54)
    return [
        struct.unpack_from("<IIQQQQQQ", data, phoff + index * phentsize) for index in range(phnum)
    ]


def test_sentinel_is_the_node_fuse() -> None:
    assert sentinel() == b"NODE_SEA_FUSE_fce680ab2cc467b6e072b8b5df1996b2"


def test_flip_fuse_blows_exactly_the_state_byte() -> None:
    data = b"head" + fuse() + b"tail"
    flipped = flip_fuse(data)

    assert flipped == b"head" + sentinel() + b":1tail"


@pytest.mark.parametrize(
    ("data", "message"),
    [
        (b"no fuse in here", "Could not find the sentinel"),
        (fuse() + b"..." + fuse(), "Multiple occurrences"),
        (sentinel() + b";0", "must be ':'"),
        (sentinel() + b":1", "already blown"),
        (sentinel() + b":7", "must be '0' or '1'"),
    ],
)
def test_flip_fuse_rejects_unusable_binaries(data: bytes, message: str) -> None:
    with pytest.raises(InjectionError, match=message):
        flip_fuse(data)


def test_inject_elf_round_trip(tmp_path: Path) -> None:
    binary = tmp_path / "app-linux-x64"
    original = build_elf(b"code" + fuse() + b"data")
    binary.write_bytes(original)
    blob = b"SEA-BLOB:" + bytes(range(256))

    inject(binary, blob, LINUX)

    data = binary.read_bytes()
    assert find_resource(data, LINUX) == blob
    assert sentinel() + b":1" in data
    assert sentinel() + b":0" not in data
    # The original image is untouched apart from the header and the fuse.
    assert data[176 : len(original)] == flip_fuse(original)[176:]


def test_inject_elf_keeps_program_headers_loadable(tmp_path: Path) -> None:
    binary = tmp_path / "app"
    binary.write_bytes(build_elf(fuse()))

    inject(binary, b"payload", LINUX)

    data = binary.read_bytes()
    (phoff,) = struct.unpack_from("<Q", data, 32)
    phdrs = _phdrs(data)
    types = [phdr[0] for phdr in phdrs]
    assert types == [PT_PHDR, PT_LOAD, PT_LOAD, PT_NOTE]

    phdr = phdrs[0]
    assert phdr[2] == phoff
    assert phdr[5] == len(phdrs) * 56

    loads = [entry for entry in phdrs if entry[0] == PT_LOAD]
    assert {load[3] - load[2] for load in loads} == {0}
    new_load = loads[-1]
    assert new_load[1] == 0x4
    assert new_load[2] % 0x1000 == 0
    assert new_load[2] <= phoff and phoff + phdr[5] <= new_load[2] + new_load[5]

    note = phdrs[-1]
    assert new_load[2] <= note[2] and note[2] + note[5] <= new_load[2] + new_load[5]
    assert note[2] % 4 == 0


def test_inject_uses_custom_resource_name(tmp_path: Path) -> None:
    binary = tmp_path / "app"
    binary.write_bytes(build_elf(fuse()))

    inject(binary, b"custom", LINUX, resource_name="MY_BLOB")

    data = binary.read_bytes()
    assert find_resource(data, LINUX, resource_name="MY_BLOB") == b"custom"
    assert find_resource(data, LINUX) is None


@pytest.mark.parametrize("body", [b"no fuse", fuse() + fuse()])
def test_failed_inject_leaves_binary_untouched(tmp_path: Path, body: bytes) -> None:
    binary = tmp_path / "app"
    original = build_elf(body)
    binary.write_bytes(original)

    with pytest.raises(InjectionError):
        inject(binary, b"payload", LINUX)

    assert binary.read_bytes() == original


def test_second_inject_fails(tmp_path: Path) -> None:
    binary = tmp_path / "app"
    binary.write_bytes(build_elf(fuse()))
    inject(binary, b"first", LINUX)
    injected = binary.read_bytes()

    with pytest.raises(InjectionError, match="already blown"):
        inject(binary, b"second", LINUX)

    assert binary.read_bytes() == injected


def test_inject_rejects_non_elf_for_linux(tmp_path: Path) -> None:
    binary = tmp_path / "app"
    binary.write_bytes(b"\0" * 64 + fuse())

    with pytest.raises(InjectionError, match="not an ELF"):
        inject(binary, b"payload", LINUX)


def test_inject_macho_round_trip(tmp_path: Path) -> None:
    binary = tmp_path / "app-darwin-arm64"
    binary.write_bytes(build_macho(signed=False, symbols=b"L" * 16 + fuse()))
    blob = b"SEA-BLOB:" + bytes(range(256)) * 4

    inject(binary, blob, DARWIN, macho_segment_name="NODE_SEA")

    data = binary.read_bytes()
    assert find_resource(data, DARWIN) == blob
    assert sentinel() + b":1" in data
    assert sentinel() + b":0" not in data


def test_inject_macho_twice_fails(tmp_path: Path) -> None:
    binary = tmp_path / "app-darwin-arm64"
    binary.write_bytes(build_macho(signed=False, symbols=b"L" * 16 + fuse()))
    inject(binary, b"first", DARWIN)

    with pytest.raises(InjectionError):
        inject(binary, b"second", DARWIN)

    assert find_resource(binary.read_bytes(), DARWIN) == b"first"


def test_inject_pe_round_trip(tmp_path: Path) -> None:
    binary = tmp_path / "app-win-x64.exe"
    binary.write_bytes(build_pe_with_resources(b"\0" * 16 + fuse()))
    blob = b"SEA-BLOB:" + bytes(range(256)) * 4

    inject(binary, blob, WINDOWS)

    data = binary.read_bytes()
    assert find_resource(data, WINDOWS) == blob
    assert find_resource(data, WINDOWS, resource_name="other") is None
    assert sentinel() + b":1" in data
    assert sentinel() + b":0" not in data


def test_inject_pe_uses_type_name_language_layout(tmp_path: Path) -> None:
    binary = tmp_path / "app.exe"
    binary.write_bytes(build_pe_with_resources(fuse()))

    inject(binary, b"payload", WINDOWS)

    parsed = lief.PE.parse(str(binary))
    [rcdata] = [node for node in parsed.resources.childs if node.id == 10]
    [named] = list(rcdata.childs)
    assert named.has_name and named.is_directory
    [leaf] = list(named.childs)
    assert leaf.is_data
    assert bytes(leaf.content) == b"payload"
    assert any(node.id == 24 for node in parsed.resources.childs)


def test_inject_pe_resource_name_is_upper_cased(tmp_path: Path) -> None:
    binary = tmp_path / "app.exe"
    binary.write_bytes(build_pe_with_resources(fuse()))

    inject(binary, b"payload", WINDOWS, resource_name="my_blob")

    assert find_resource(binary.read_bytes(), WINDOWS, resource_name="MY_BLOB") == b"payload"


def test_pe_without_resources_is_left_untouched(tmp_path: Path) -> None:
    binary = tmp_path / "app.exe"
    original = build_pe(certificate=None) + fuse()
    binary.write_bytes(original)

    with pytest.raises(InjectionError, match="resource tree"):
        inject(binary, b"payload", WINDOWS)

    assert binary.read_bytes() == original


def test_unparseable_macho_is_left_untouched(tmp_path: Path) -> None:
    binary = tmp_path / "app-darwin-arm64"
    original = b"\0" * 64 + fuse()
    binary.write_bytes(original)

    with pytest.raises(InjectionError, match="Mach-O"):
        inject(binary, b"payload", DARWIN)

    assert binary.read_bytes() == original


def test_elf_notes_accumulate() -> None:
    data = add_elf_note(build_elf(b""), "FIRST", b"one")
    data = add_elf_note(data, "SECOND", b"two!")

    assert find_elf_note(data, "FIRST") == b"one"
    assert find_elf_note(data, "SECOND") == b"two!"
    assert find_elf_note(data, RESOURCE_NAME) is None


def test_mark_executable_runs_chmod(tmp_path: Path, toolchain_runner: FakeRunner) -> None:
    binary = tmp_path / "app"
    binary.write_bytes(b"")
    os.chmod(binary, 0o644)

    mark_executable(binary, toolchain_runner)

    assert toolchain_runner.calls == [("chmod", ["+x", str(binary)])]
    assert os.access(binary, os.X_OK)
