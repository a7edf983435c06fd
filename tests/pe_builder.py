from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

FILE_ALIGNMENT = 0x200
HEADERS_SIZE = 0x400
PE_OFFSET = 0x80

CODE_RX = 0x60000020  # code + execute + read
DATA_RW = 0xC0000040  # initialized data + read + write
DATA_R = 0x40000040  # initialized data + read


@dataclass
class _Section:
    name: bytes
    va: int
    data: bytes
    characteristics: int
    vsize: Optional[int] = None
    raw_size: Optional[int] = None


@dataclass
class PEBuilder:
    """Builds small synthetic PE images; every field not set stays zero."""

    is_64: bool = False
    machine: Optional[int] = None
    subsystem: int = 3
    characteristics: int = 0x0102
    timestamp: int = 0x5F3759DF
    entry_point: int = 0x1000
    image_base: Optional[int] = None
    magic: Optional[int] = None
    dll_characteristics: int = 0x8140
    number_of_rva_and_sizes: int = 16
    dos_stub: bytes = b""
    sections: List[_Section] = field(default_factory=list)
    directories: Dict[int, Tuple[int, int]] = field(default_factory=dict)
    overlay: bytes = b""

    def add_section(
        self,
        name: str,
        va: int,
        data: bytes,
        characteristics: int = DATA_R,
        *,
        vsize: Optional[int] = None,
        raw_size: Optional[int] = None,
    ) -> "PEBuilder":
        self.sections.append(_Section(name.encode("ascii"), va, data, characteristics, vsize, raw_size))
        return self

    def set_directory(self, index: int, va: int, size: int) -> "PEBuilder":
        self.directories[index] = (va, size)
        return self

    def overlay_offset(self) -> int:
        """File offset at which `overlay` will start."""
        return self._layout()[1]

    def _layout(self) -> Tuple[List[int], int]:
        offsets: List[int] = []
        cur = HEADERS_SIZE
        for s in self.sections:
            offsets.append(cur)
            cur += _align(max(len(s.data), 1), FILE_ALIGNMENT)
        return offsets, cur

    def build(self) -> bytes:
        size_opt = 0xF0 if self.is_64 else 0xE0
        magic = self.magic if self.magic is not None else (0x20B if self.is_64 else 0x10B)
        machine = self.machine if self.machine is not None else (0x8664 if self.is_64 else 0x14C)

        dos = bytearray(PE_OFFSET)
        dos[0:2] = b"MZ"
        stub = self.dos_stub[: PE_OFFSET - 0x40]
        dos[0x40 : 0x40 + len(stub)] = stub
        struct.pack_into("<I", dos, 0x3C, PE_OFFSET)

        coff = struct.pack(
            "<HHIIIHH", machine, len(self.sections), self.timestamp, 0, 0, size_opt, self.characteristics
        )

        opt = bytearray(size_opt)
        struct.pack_into("<H", opt, 0, magic)
        struct.pack_into("<I", opt, 16, self.entry_point)
        if self.is_64:
            struct.pack_into("<Q", opt, 24, self.image_base if self.image_base is not None else 0x140000000)
            rva_count_off, dd_off = 108, 112
        else:
            struct.pack_into("<I", opt, 28, self.image_base if self.image_base is not None else 0x400000)
            rva_count_off, dd_off = 92, 96
        struct.pack_into("<HH", opt, 40, 6, 0)  # OS version
        struct.pack_into("<HH", opt, 44, 1, 2)  # image version
        struct.pack_into("<HH", opt, 48, 6, 1)  # subsystem version
        struct.pack_into("<H", opt, 68, self.subsystem)
        struct.pack_into("<H", opt, 70, self.dll_characteristics)
        struct.pack_into("<I", opt, rva_count_off, self.number_of_rva_and_sizes)
        for index, (va, size) in self.directories.items():
            struct.pack_into("<II", opt, dd_off + index * 8, va, size)

        offsets, end = self._layout()
        table = bytearray()
        for s, raw_off in zip(self.sections, offsets):
            sh = bytearray(40)
            sh[0:8] = s.name[:8].ljust(8, b"\x00")
            raw_size = s.raw_size if s.raw_size is not None else len(s.data)
            struct.pack_into("<I", sh, 8, s.vsize if s.vsize is not None else max(len(s.data), 1))
            struct.pack_into("<I", sh, 12, s.va)
            struct.pack_into("<I", sh, 16, raw_size)
            struct.pack_into("<I", sh, 20, raw_off if raw_size else 0)
            struct.pack_into("<I", sh, 36, s.characteristics)
            table += sh

        blob = bytearray(bytes(dos) + b"PE\x00\x00" + coff + bytes(opt) + bytes(table))
        assert len(blob) <= HEADERS_SIZE
        blob += b"\x00" * (HEADERS_SIZE - len(blob))
        for s in self.sections:
            blob += s.data
            blob += b"\x00" * (_align(max(len(s.data), 1), FILE_ALIGNMENT) - len(s.data))
        assert len(blob) == end
        return bytes(blob) + self.overlay


def _align(x: int, a: int) -> int:
    return (x + a - 1) // a * a


def cstr(s: str) -> bytes:
    return s.encode("ascii") + b"\x00"


def build_import_section(
    va: int, modules: Sequence[Tuple[str, Sequence[object]]], *, is_64: bool = False
) -> Tuple[bytes, int, int]:
    """
    Import directory for `modules`, laid out from section RVA `va`.
    Each function is a name (str) or an ordinal (int).
    Returns (section bytes, import directory RVA, import directory size).
    """
    width = 8 if is_64 else 4
    flag = 0x8000000000000000 if is_64 else 0x80000000
    fmt = "<Q" if is_64 else "<I"

    desc_size = 20 * (len(modules) + 1)
    buf = bytearray(desc_size)

    def here() -> int:
        return va + len(buf)

    for i, (module, funcs) in enumerate(modules):
        name_rva = here()
        buf += cstr(module)
        while len(buf) % 2:
            buf += b"\x00"

        ibn_rvas: List[Optional[int]] = []
        for f in funcs:
            if isinstance(f, str):
                ibn_rvas.append(here())
                buf += struct.pack("<H", 0) + cstr(f)
                while len(buf) % 2:
                    buf += b"\x00"
            else:
                ibn_rvas.append(None)

        while len(buf) % width:
            buf += b"\x00"
        thunk_rva = here()
        for f, ibn in zip(funcs, ibn_rvas):
            value = ibn if ibn is not None else (flag | int(f))  # type: ignore[arg-type]
            buf += struct.pack(fmt, value)
        buf += b"\x00" * width

        struct.pack_into("<IIIII", buf, i * 20, thunk_rva, 0, 0, name_rva, thunk_rva)

    return bytes(buf), va, desc_size


def build_export_section(
    va: int,
    dll_name: str,
    functions: Sequence[int],
    names: Sequence[Tuple[str, int]],
    *,
    ordinal_base: int = 1,
    forwarders: Optional[Dict[int, str]] = None,
) -> Tuple[bytes, int, int]:
    """
    Export directory at section RVA `va`.
    `functions` are the address-table RVAs (0 = empty slot); `names` pairs a name with an
    index into `functions`. `forwarders` maps a function index to "DLL.Func" text placed
    inside the directory. Returns (section bytes, export RVA, export size).
    """
    buf = bytearray(40)

    def here() -> int:
        return va + len(buf)

    fwd_rvas: Dict[int, int] = {}
    for idx, text in (forwarders or {}).items():
        fwd_rvas[idx] = here()
        buf += cstr(text)
    name_rva = here()
    buf += cstr(dll_name)

    name_rvas = []
    for n, _ in names:
        name_rvas.append(here())
        buf += cstr(n)
    while len(buf) % 4:
        buf += b"\x00"

    funcs_rva = here()
    for i, f in enumerate(functions):
        buf += struct.pack("<I", fwd_rvas.get(i, f))
    names_rva = here()
    for r in name_rvas:
        buf += struct.pack("<I", r)
    ords_rva = here()
    for _, idx in names:
        buf += struct.pack("<H", idx)

    struct.pack_into(
        "<IIHHIIIIIII",
        buf,
        0,
        0,
        0,
        0,
        0,
        name_rva,
        ordinal_base,
        len(functions),
        len(names),
        funcs_rva,
        names_rva,
        ords_rva,
    )
    return bytes(buf), va, len(buf)


def resource_directory(named: int, ids: int) -> bytes:
    return struct.pack("<IIHHHH", 0, 0, 0, 0, named, ids)


def resource_entry(name_or_id: int, target: int, *, subdir: bool = False) -> bytes:
    return struct.pack("<II", name_or_id, target | (0x80000000 if subdir else 0))


def resource_data_entry(rva: int, size: int) -> bytes:
    return struct.pack("<IIII", rva, size, 0, 0)


def build_resource_section(va: int, leaves: Sequence[Tuple[int, int, bytes]]) -> Tuple[bytes, int, int]:
    """
    Well-formed three-level tree: one type directory per leaf, each with one
    name/id entry and one language entry (0x409). `leaves` holds (type_id, name_id, payload).
    Returns (section bytes, resource RVA, resource size).
    """
    n = len(leaves)
    root_size = 16 + 8 * n
    level_size = 16 + 8
    name_dirs = root_size
    lang_dirs = name_dirs + n * level_size
    data_entries = lang_dirs + n * level_size
    payloads = data_entries + n * 16

    buf = bytearray(resource_directory(0, n))
    for i, (type_id, _, _) in enumerate(leaves):
        buf += resource_entry(type_id, name_dirs + i * level_size, subdir=True)
    for i, (_, name_id, _) in enumerate(leaves):
        buf += resource_directory(0, 1) + resource_entry(name_id, lang_dirs + i * level_size, subdir=True)
    for i in range(n):
        buf += resource_directory(0, 1) + resource_entry(0x409, data_entries + i * 16)

    cur = payloads
    blobs = bytearray()
    for _, _, payload in leaves:
        buf += resource_data_entry(va + cur, len(payload))
        blobs += payload
        while len(blobs) % 4:
            blobs += b"\x00"
        cur = payloads + len(blobs)
    buf += blobs
    return bytes(buf), va, len(buf)


def version_block(key: str, *, value: bytes = b"", wtype: int = 1, children: bytes = b"", wvlen: Optional[int] = None) -> bytes:
    """One VS_VERSIONINFO-style block: {wLength, wValueLength, wType, key, pad, value, pad, children}."""
    body = bytearray(6)
    body += key.encode("utf-16le") + b"\x00\x00"
    while len(body) % 4:
        body += b"\x00"
    body += value
    while len(body) % 4:
        body += b"\x00"
    body += children
    if wvlen is None:
        wvlen = len(value) // 2 if wtype == 1 else len(value)
    struct.pack_into("<HHH", body, 0, len(body), wvlen, wtype)
    return bytes(body)


def version_string(key: str, text: str) -> bytes:
    return version_block(key, value=text.encode("utf-16le") + b"\x00\x00")


def build_versioninfo(pairs: Dict[str, str]) -> bytes:
    strings = b"".join(version_string(k, v) for k, v in pairs.items())
    table = version_block("040904B0", children=strings)
    sfi = version_block("StringFileInfo", children=table)
    fixed = struct.pack("<I", 0xFEEF04BD) + b"\x00" * 48
    return version_block("VS_VERSION_INFO", value=fixed, wtype=0, children=sfi)


def win_certificate(blob: bytes, *, cert_type: int = 0x0002, revision: int = 0x0200) -> bytes:
    out = struct.pack("<IHH", 8 + len(blob), revision, cert_type) + blob
    while len(out) % 8:
        out += b"\x00"
    return out


def rich_stub(key: int, records: Sequence[Tuple[int, int, int]], *, filler: bool = True) -> bytes:
    """
    DOS-stub bytes ending in a Rich trailer. `records` are (comp_id, version, count) in
    on-disk order; an all-zero decoded record is prefixed so the backward walk stops.
    With `filler`, one extra record sits right before the marker.
    """
    key_bytes = struct.pack("<I", key)

    def enc(comp_id: int, version: int, count: int) -> bytes:
        raw = struct.pack("<HHI", comp_id, version, count)
        return bytes(b ^ key_bytes[i % 4] for i, b in enumerate(raw))

    out = enc(0, 0, 0)
    for r in records:
        out += enc(*r)
    if filler:
        out += enc(0xFFFF, 0xFFFF, 1)
    return out + b"Rich" + key_bytes
