"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import struct
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from fossilize.inject import sentinel
from fossilize.runner import CommandResult

Handler = Callable[[list[str]], CommandResult]

OK = CommandResult(stdout="", stderr="", exit_code=0)


@dataclass
class FakeRunner:
    """Records invocations and answers them from per-tool handlers."""

    handlers: dict[str, Handler] = field(default_factory=dict)
    calls: list[tuple[str, list[str]]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def run(self, name: str, args: list[str]) -> CommandResult:
        with self._lock:
            self.calls.append((name, list(args)))
        handler = self.handlers.get(Path(name).name)
        if handler is None:
            return OK
        return handler(list(args))

    def tools(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture(autouse=True)
def _reset_fossilize_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("fossilize")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def toolchain_runner() -> FakeRunner:
    """A runner whose esbuild, node and chmod behave like the real tools."""
    return FakeRunner(
        handlers={
            "esbuild": _fake_esbuild,
            "node": _fake_node,
            "chmod": _fake_chmod,
        }
    )


def _fake_esbuild(args: list[str]) -> CommandResult:
    outfile = next(arg.split("=", 1)[1] for arg in args if arg.startswith("--outfile="))
    Path(outfile).write_text(f"// bundle of {args[0]}\n", encoding="utf-8")
    return OK


def _fake_node(args: list[str]) -> CommandResult:
    assert args[0] == "--experimental-sea-config"
    config = json.loads(Path(args[1]).read_text(encoding="utf-8"))
    digest = hashlib.sha256(Path(config["main"]).read_bytes())
    digest.update(json.dumps(config, sort_keys=True).encode("utf-8"))
    Path(config["output"]).write_bytes(b"SEA-BLOB:" + digest.digest())
    return CommandResult(stdout="Wrote single executable preparation blob\n", stderr="", exit_code=0)


def _fake_chmod(args: list[str]) -> CommandResult:
    assert args[0] == "+x"
    path = Path(args[1])
    os.chmod(path, path.stat().st_mode | 0o111)
    return OK


# ── Synthetic binaries ──────────────────────────────────────────────


def fuse() -> bytes:
    return sentinel() + b":0"


def build_elf(body: bytes) -> bytes:
    """A minimal little-endian ELF64 PIE with ``PT_PHDR`` and one ``PT_LOAD``."""
    phoff = 64
    body_offset = phoff + 2 * 56
    total = body_offset + len(body)
    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + bytes(8)
    header = ident + struct.pack(
        "<HHIQQQIHHHHHH", 3, 0x3E, 1, 0, phoff, 0, 0, 64, 56, 2, 64, 0, 0
    )
    phdr = struct.pack("<IIQQQQQQ", 6, 4, phoff, phoff, phoff, 112, 112, 8)
    load = struct.pack("<IIQQQQQQ", 1, 5, 0, 0, 0, total, total, 0x1000)
    return header + phdr + load + body


def build_macho(
    *, signed: bool = True, signature_first: bool = True, symbols: bytes = b"L" * 64
) -> bytes:
    """A minimal arm64 Mach-O with ``__LINKEDIT`` and, optionally, a code signature."""
    linkedit_off = 0x100
    blob = b"S" * 32
    dataoff = linkedit_off + len(symbols)
    filesize = len(symbols) + (len(blob) if signed else 0)
    linkedit = struct.pack(
        "<II16sQQQQiiII",
        0x19,
        72,
        b"__LINKEDIT",
        0x4000,
        0x4000,
        linkedit_off,
        filesize,
        1,
        1,
        0,
        0,
    )
    commands = [linkedit]
    if signed:
        codesig = struct.pack("<IIII", 0x1D, 16, dataoff, len(blob))
        commands = [codesig, linkedit] if signature_first else [linkedit, codesig]
    table = b"".join(commands)
    header = struct.pack("<IiIIIIII", 0xFEEDFACF, 0x0100000C, 0, 2, len(commands), len(table), 0, 0)
    data = (header + table).ljust(linkedit_off, b"\0") + symbols
    if signed:
        data += blob
    return data


PE_OPTIONAL_OFFSET = 0x40 + 4 + 20


def build_pe(*, certificate: bytes | None = b"C" * 24, trailer: bytes = b"") -> bytes:
    """A minimal PE32+ image with an optional certificate table at its end."""
    dos = bytearray(0x40)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, 0x40)
    coff = struct.pack("<HHIIIHH", 0x8664, 0, 0, 0, 0, 240, 0x22)
    optional = bytearray(240)
    struct.pack_into("<H", optional, 0, 0x20B)
    struct.pack_into("<I", optional, 108, 16)
    data = bytearray(bytes(dos) + b"PE\0\0" + coff + bytes(optional))
    data = data.ljust(512, b"\0")
    data[400:420] = b"image-section-bytes!"
    if certificate is not None:
        struct.pack_into("<II", data, PE_OPTIONAL_OFFSET + 112 + 32, len(data), len(certificate))
        data += certificate
    return bytes(data) + trailer


def _resource_directory(entry_id: int, offset: int, *, subdirectory: bool) -> bytes:
    header = struct.pack("<IIHHHH", 0, 0, 0, 0, 0, 1)
    flag = 0x80000000 if subdirectory else 0
    return header + struct.pack("<II", entry_id, offset | flag)


def build_pe_with_resources(body: bytes, *, manifest: bytes = b"<assembly/>\0") -> bytes:
    """A PE32+ image with ``body`` in ``.rdata`` and a one-entry resource tree.

    The tree holds a single ``RT_MANIFEST`` resource, like most real
    executables.
    """
    rdata_rva, rsrc_rva = 0x1000, 0x2000
    tree = (
        _resource_directory(24, 0x18, subdirectory=True)
        + _resource_directory(1, 0x30, subdirectory=True)
        + _resource_directory(0x409, 0x48, subdirectory=False)
        + struct.pack("<IIII", rsrc_rva + 0x58, len(manifest), 0, 0)
        + manifest
    )

    dos = bytearray(0x40)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, 0x40)
    coff = struct.pack("<HHIIIHH", 0x8664, 2, 0, 0, 0, 240, 0x22)

    optional = bytearray(240)
    struct.pack_into("<HBB", optional, 0, 0x20B, 14, 0)
    struct.pack_into("<III", optional, 4, 0, 0x400, 0)
    struct.pack_into("<II", optional, 16, rdata_rva, rdata_rva)
    struct.pack_into("<QII", optional, 24, 0x140000000, 0x1000, 0x200)
    struct.pack_into("<HHHHHH", optional, 40, 6, 0, 0, 0, 6, 0)
    struct.pack_into("<III", optional, 56, 0x3000, 0x200, 0)
    struct.pack_into("<HH", optional, 68, 3, 0x8160)
    struct.pack_into("<QQQQ", optional, 72, 0x100000, 0x1000, 0x100000, 0x1000)
    struct.pack_into("<II", optional, 104, 0, 16)
    struct.pack_into("<II", optional, 112 + 2 * 8, rsrc_rva, len(tree))

    sections = struct.pack(
        "<8sIIIIIIHHI", b".rdata", 0x200, rdata_rva, 0x200, 0x200, 0, 0, 0, 0, 0x40000040
    ) + struct.pack(
        "<8sIIIIIIHHI", b".rsrc", len(tree), rsrc_rva, 0x200, 0x400, 0, 0, 0, 0, 0x40000040
    )
    headers = (bytes(dos) + b"PE\0\0" + coff + bytes(optional) + sections).ljust(0x200, b"\0")
    return headers + body.ljust(0x200, b"\0") + tree.ljust(0x200, b"\0")
