from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from petriage.byteview import ImageLayout, parse_section_table, read_bytes, u16, u32, u64

logger = logging.getLogger(__name__)

IMAGE_DOS_SIGNATURE = b"MZ"
IMAGE_NT_SIGNATURE = b"PE\x00\x00"
RICH_MARKER = b"Rich"

PE32_MAGIC = 0x10B
PE32P_MAGIC = 0x20B

E_LFANEW_OFFSET = 0x3C
COFF_HEADER_SIZE = 20
RICH_SEARCH_WINDOW = 256
NUM_DATA_DIRECTORIES = 16

DIR_EXPORT = 0
DIR_IMPORT = 1
DIR_RESOURCE = 2
DIR_SECURITY = 4
DIR_TLS = 9
DIR_COM_DESCRIPTOR = 14

IMAGE_FILE_DLL = 0x2000

MACHINE_TYPES = {
    0x0: "UNKNOWN",
    0x14C: "I386",
    0x162: "R3000",
    0x166: "R4000",
    0x1A2: "SH3",
    0x1A6: "SH4",
    0x1C0: "ARM",
    0x1C2: "THUMB",
    0x1C4: "ARMNT",
    0x200: "IA64",
    0x5032: "RISCV32",
    0x5064: "RISCV64",
    0x8664: "AMD64",
    0xAA64: "ARM64",
}

SUBSYSTEMS = {
    0: "UNKNOWN",
    1: "NATIVE",
    2: "WINDOWS_GUI",
    3: "WINDOWS_CUI",
    5: "OS2_CUI",
    7: "POSIX_CUI",
    8: "NATIVE_WINDOWS",
    9: "WINDOWS_CE_GUI",
    10: "EFI_APPLICATION",
    11: "EFI_BOOT_SERVICE_DRIVER",
    12: "EFI_RUNTIME_DRIVER",
    13: "EFI_ROM",
    14: "XBOX",
}

FILE_CHARACTERISTICS = {
    0x0001: "RELOCS_STRIPPED",
    0x0002: "EXECUTABLE_IMAGE",
    0x0004: "LINE_NUMS_STRIPPED",
    0x0008: "LOCAL_SYMS_STRIPPED",
    0x0010: "AGGRESSIVE_WS_TRIM",
    0x0020: "LARGE_ADDRESS_AWARE",
    0x0080: "BYTES_REVERSED_LO",
    0x0100: "32BIT_MACHINE",
    0x0200: "DEBUG_STRIPPED",
    0x0400: "REMOVABLE_RUN_FROM_SWAP",
    0x0800: "NET_RUN_FROM_SWAP",
    0x1000: "SYSTEM",
    0x2000: "DLL",
    0x4000: "UP_SYSTEM_ONLY",
    0x8000: "BYTES_REVERSED_HI",
}

DLL_CHARACTERISTICS = {
    0x0020: "HIGH_ENTROPY_VA",
    0x0040: "DYNAMIC_BASE",
    0x0080: "FORCE_INTEGRITY",
    0x0100: "NX_COMPAT",
    0x0200: "NO_ISOLATION",
    0x0400: "NO_SEH",
    0x0800: "NO_BIND",
    0x1000: "APPCONTAINER",
    0x2000: "WDM_DRIVER",
    0x4000: "GUARD_CF",
    0x8000: "TERMINAL_SERVER_AWARE",
}


class PeFormatError(ValueError):
    """A mandatory header failed validation; the whole analysis stops."""

    code = "E_PE_FORMAT"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        return _err(self.code, self.message, **self.extra)


class NotExecutableError(PeFormatError):
    code = "E_PE_NOT_EXECUTABLE"


class InvalidPESignatureError(PeFormatError):
    code = "E_PE_INVALID_SIGNATURE"


class UnsupportedImageTypeError(PeFormatError):
    code = "E_PE_UNSUPPORTED_IMAGE_TYPE"


def _err(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    d = {"code": code, "message": message}
    d.update(extra)
    return d


@dataclass(frozen=True)
class OptionalHeaderLayout:
    """Offsets relative to the start of the optional header."""

    entry_point: int
    image_base: int
    image_base_width: int
    os_version: int
    image_version: int
    subsystem_version: int
    subsystem: int
    dll_characteristics: int
    number_of_rva_and_sizes: int
    data_directories: int


PE32_LAYOUT = OptionalHeaderLayout(
    entry_point=16,
    image_base=28,
    image_base_width=4,
    os_version=40,
    image_version=44,
    subsystem_version=48,
    subsystem=68,
    dll_characteristics=70,
    number_of_rva_and_sizes=92,
    data_directories=96,
)

PE32P_LAYOUT = OptionalHeaderLayout(
    entry_point=16,
    image_base=24,
    image_base_width=8,
    os_version=40,
    image_version=44,
    subsystem_version=48,
    subsystem=68,
    dll_characteristics=70,
    number_of_rva_and_sizes=108,
    data_directories=112,
)

LAYOUTS = {PE32_MAGIC: PE32_LAYOUT, PE32P_MAGIC: PE32P_LAYOUT}


@dataclass(frozen=True)
class RichEntry:
    comp_id: int
    version: int
    count: int


@dataclass(frozen=True)
class RichHeader:
    offset: int
    key: bytes
    entries: Tuple[RichEntry, ...]

    @property
    def xor_key(self) -> str:
        if len(self.key) != 4:
            return ""
        return " ".join(f"0x{b:02X}" for b in self.key)


@dataclass(frozen=True)
class PeHeaders:
    layout: ImageLayout
    optional_layout: OptionalHeaderLayout
    magic: int
    machine: int
    number_of_sections: int
    time_date_stamp: int
    characteristics: int
    optional_offset: int
    size_of_optional_header: int
    entry_point: int
    image_base: int
    os_version: Tuple[int, int]
    image_version: Tuple[int, int]
    subsystem_version: Tuple[int, int]
    subsystem: int
    dll_characteristics: int
    number_of_rva_and_sizes: int
    rich: Optional[RichHeader]
    errors: Tuple[Dict[str, Any], ...]

    @property
    def is_64(self) -> bool:
        return self.layout.is_64

    @property
    def is_dll(self) -> bool:
        return bool(self.characteristics & IMAGE_FILE_DLL)

    def directory(self, data: bytes, index: int) -> Tuple[int, int]:
        """(virtual_address, size) of a data directory slot; (0, 0) when absent."""
        if index < 0 or index >= min(self.number_of_rva_and_sizes, NUM_DATA_DIRECTORIES):
            return 0, 0
        off = self.optional_offset + self.optional_layout.data_directories + index * 8
        return u32(data, off), u32(data, off + 4)


def flag_names(table: Dict[int, str], value: int) -> List[str]:
    return [name for bit, name in sorted(table.items()) if value & bit]


def format_timestamp(ts: int) -> str:
    when = datetime.fromtimestamp(ts, tz=timezone.utc)
    return f"0x{ts:X} [{when.strftime('%a %b %d %H:%M:%S %Y')} UTC]"


def subsystem_name(value: int) -> str:
    return SUBSYSTEMS.get(value, f"UNKNOWN (0x{value:x})")


def find_rich_header(data: bytes, pe_offset: int) -> Optional[RichHeader]:
    """
    Locate the Rich marker by a bounded backward scan from the PE header and
    XOR-decode the 8-byte records that precede it.
    """
    start = max(0, pe_offset - RICH_SEARCH_WINDOW)
    marker = -1
    for i in range(pe_offset - 4, start - 1, -1):
        if data[i : i + 4] == RICH_MARKER:
            marker = i
            break
    if marker < 0:
        return None

    key = read_bytes(data, marker + 4, 4)
    if key is None:
        return RichHeader(offset=marker, key=b"", entries=())

    entries: List[RichEntry] = []
    off = marker - 16
    while off >= 0:
        raw = data[off : off + 8]
        dec = bytes(b ^ key[i % 4] for i, b in enumerate(raw))
        comp_id = u16(dec, 0)
        version = u16(dec, 2)
        count = u32(dec, 4)
        if comp_id == 0 and version == 0 and count == 0:
            break
        entries.append(RichEntry(comp_id=comp_id, version=version, count=count))
        off -= 8
    logger.debug("rich header at 0x%x with %d records", marker, len(entries))
    return RichHeader(offset=marker, key=key, entries=tuple(entries))


def import_hash(module_names: Iterable[bytes]) -> str:
    """MD5 over the raw import module names concatenated in table order; '' if none."""
    md5 = hashlib.md5()
    seen_any = False
    for name in module_names:
        if name:
            md5.update(name)
            seen_any = True
    return md5.hexdigest() if seen_any else ""


def parse_headers(data: bytes, *, max_sections: int = 96) -> PeHeaders:
    """
    Validate DOS/PE/Optional headers and derive the image layout.
    Raises a PeFormatError subclass when a mandatory header is unusable.
    """
    errors: List[Dict[str, Any]] = []

    if data[:2] != IMAGE_DOS_SIGNATURE:
        raise NotExecutableError("Not a valid PE file (missing MZ header).")

    e_lfanew = u32(data, E_LFANEW_OFFSET)
    if len(data) < E_LFANEW_OFFSET + 4 or e_lfanew <= 0 or e_lfanew + 4 > len(data):
        raise InvalidPESignatureError("DOS header PE pointer is out of bounds.", e_lfanew=e_lfanew)

    if data[e_lfanew : e_lfanew + 4] != IMAGE_NT_SIGNATURE:
        raise InvalidPESignatureError("Missing PE\\0\\0 signature.", e_lfanew=e_lfanew)

    coff_off = e_lfanew + 4
    opt_off = coff_off + COFF_HEADER_SIZE
    magic = u16(data, opt_off)
    opt_layout = LAYOUTS.get(magic)
    if opt_layout is None:
        raise UnsupportedImageTypeError(f"Unsupported optional header magic 0x{magic:X}.", magic=magic)

    machine = u16(data, coff_off)
    number_of_sections = u16(data, coff_off + 2)
    time_date_stamp = u32(data, coff_off + 4)
    size_of_optional_header = u16(data, coff_off + 16)
    characteristics = u16(data, coff_off + 18)

    if opt_off + size_of_optional_header > len(data):
        errors.append(
            _err(
                "E_PE_OPT_TRUNCATED",
                "Optional header truncated or size exceeds file.",
                opt_off=opt_off,
                size_of_optional_header=size_of_optional_header,
            )
        )

    if magic == PE32P_MAGIC:
        image_base = u64(data, opt_off + opt_layout.image_base)
    else:
        image_base = u32(data, opt_off + opt_layout.image_base)

    def version(rel: int) -> Tuple[int, int]:
        return u16(data, opt_off + rel), u16(data, opt_off + rel + 2)

    sect_off = opt_off + size_of_optional_header
    num_sections = number_of_sections
    if num_sections > max_sections:
        errors.append(
            _err(
                "E_PE_SECTION_COUNT_CLAMPED",
                f"Section count too large; clamped to max_sections={max_sections}.",
                number_of_sections=number_of_sections,
                max_sections=max_sections,
            )
        )
        num_sections = max_sections

    sections = parse_section_table(data, sect_off, num_sections)
    if len(sections) < num_sections:
        errors.append(
            _err(
                "E_PE_SECTION_HEADER_TRUNCATED",
                "Section table truncated.",
                declared=num_sections,
                parsed=len(sections),
            )
        )

    layout = ImageLayout(
        pe_offset=e_lfanew,
        is_64=magic == PE32P_MAGIC,
        sections=sections,
        file_len=len(data),
    )

    return PeHeaders(
        layout=layout,
        optional_layout=opt_layout,
        magic=magic,
        machine=machine,
        number_of_sections=number_of_sections,
        time_date_stamp=time_date_stamp,
        characteristics=characteristics,
        optional_offset=opt_off,
        size_of_optional_header=size_of_optional_header,
        entry_point=u32(data, opt_off + opt_layout.entry_point),
        image_base=image_base,
        os_version=version(opt_layout.os_version),
        image_version=version(opt_layout.image_version),
        subsystem_version=version(opt_layout.subsystem_version),
        subsystem=u16(data, opt_off + opt_layout.subsystem),
        dll_characteristics=u16(data, opt_off + opt_layout.dll_characteristics),
        number_of_rva_and_sizes=u32(data, opt_off + opt_layout.number_of_rva_and_sizes),
        rich=find_rich_header(data, e_lfanew),
        errors=tuple(errors),
    )


def static_info(headers: PeHeaders, data: bytes, *, import_module_names: Iterable[bytes] = ()) -> Dict[str, Any]:
    """Flatten decoded headers into the `static_info` facet."""
    ep_section = headers.layout.section_for_rva(headers.entry_point)
    security_va, _ = headers.directory(data, DIR_SECURITY)
    tls_va, tls_size = headers.directory(data, DIR_TLS)
    clr_va, clr_size = headers.directory(data, DIR_COM_DESCRIPTOR)
    rich = headers.rich

    return {
        "machine": MACHINE_TYPES.get(headers.machine, f"UNKNOWN (0x{headers.machine:x})"),
        "magic": f"0x{headers.magic:X}",
        "is_64bit": headers.is_64,
        "is_dll": headers.is_dll,
        "entry_point": headers.entry_point,
        "entry_point_section": ep_section.name if ep_section is not None else "UNKNOWN",
        "image_base": headers.image_base,
        "subsystem": subsystem_name(headers.subsystem),
        "os_version": "%d.%d" % headers.os_version,
        "image_version": "%d.%d" % headers.image_version,
        "subsystem_version": "%d.%d" % headers.subsystem_version,
        "file_characteristics": flag_names(FILE_CHARACTERISTICS, headers.characteristics),
        "dll_characteristics": flag_names(DLL_CHARACTERISTICS, headers.dll_characteristics),
        "time_date_stamp": headers.time_date_stamp,
        "timestamp": format_timestamp(headers.time_date_stamp),
        "digitally_signed": security_va != 0,
        "tls_callbacks": "Present" if (tls_va or tls_size) else "None",
        "clr_runtime": "Present" if (clr_va or clr_size) else "None",
        "rich_header_offset": rich.offset if rich is not None else None,
        "rich_xor_key": rich.xor_key if rich is not None else "",
        "rich_entries": [
            {"comp_id": e.comp_id, "version": e.version, "count": e.count} for e in (rich.entries if rich else ())
        ],
        "import_hash": import_hash(import_module_names),
    }
