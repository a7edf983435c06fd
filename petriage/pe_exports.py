from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from petriage.byteview import ImageLayout, read_c_string, u16, u32
from petriage.pe import _err

logger = logging.getLogger(__name__)

EXPORT_DIRECTORY_SIZE = 40


@dataclass(frozen=True)
class ExportEntry:
    name: str
    ordinal: int
    address: int
    forwarder: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExportTable:
    dll_name: Optional[str] = None
    ordinal_base: int = 0
    entries: List[ExportEntry] = field(default_factory=list)


def parse_exports(
    data: bytes,
    layout: ImageLayout,
    *,
    export_rva: int,
    export_size: int,
    max_entries: int = 65536,
    max_name_len: int = 512,
) -> Tuple[ExportTable, List[Dict[str, Any]]]:
    """
    Join the address table with the name/ordinal tables.
    Named exports come first (sorted by name), then ordinal-only exports with name "".
    """
    errors: List[Dict[str, Any]] = []
    table = ExportTable()

    if not export_rva or not export_size:
        return table, errors

    base_off = layout.rva_to_offset(export_rva)
    if base_off is None:
        return table, [
            _err(
                "E_PE_EXPORT_RVA_UNMAPPED",
                "Export directory RVA could not be mapped to file offset.",
                export_rva=export_rva,
            )
        ]
    if base_off + EXPORT_DIRECTORY_SIZE > len(data):
        return table, [_err("E_PE_EXPORT_DIR_TRUNCATED", "Export directory truncated.", export_off=base_off)]

    name_rva = u32(data, base_off + 12)
    ordinal_base = u32(data, base_off + 16)
    num_funcs = u32(data, base_off + 20)
    num_names = u32(data, base_off + 24)
    addr_funcs_rva = u32(data, base_off + 28)
    addr_names_rva = u32(data, base_off + 32)
    addr_ord_rva = u32(data, base_off + 36)

    table.ordinal_base = ordinal_base
    if name_rva:
        name_off = layout.rva_to_offset(name_rva)
        if name_off is not None:
            table.dll_name = read_c_string(data, name_off, max_len=max_name_len)

    if num_funcs > max_entries:
        errors.append(_err("E_PE_EXPORT_TOO_MANY_FUNCS", f"Export function count exceeded max_entries={max_entries}.", num_funcs=num_funcs))
        num_funcs = max_entries
    if num_names > max_entries:
        errors.append(_err("E_PE_EXPORT_TOO_MANY_NAMES", f"Export name count exceeded max_entries={max_entries}.", num_names=num_names))
        num_names = max_entries

    funcs_off = layout.rva_to_offset(addr_funcs_rva)
    if funcs_off is None:
        errors.append(_err("E_PE_EXPORT_FUNCS_UNMAPPED", "Export address table unmappable.", addr_funcs_rva=addr_funcs_rva))
        return table, errors

    ordinal_to_address: Dict[int, int] = {}
    for i in range(num_funcs):
        ent_off = funcs_off + i * 4
        if ent_off + 4 > len(data):
            errors.append(_err("E_PE_EXPORT_FUNCS_TRUNCATED", "Export address table truncated.", index=i))
            break
        func_rva = u32(data, ent_off)
        if func_rva:
            ordinal_to_address[ordinal_base + i] = func_rva

    name_to_ordinal: Dict[str, int] = {}
    if num_names:
        names_off = layout.rva_to_offset(addr_names_rva)
        ords_off = layout.rva_to_offset(addr_ord_rva)
        if names_off is None or ords_off is None:
            errors.append(
                _err(
                    "E_PE_EXPORT_TABLES_UNMAPPED",
                    "Export names/ordinals tables unmappable.",
                    addr_names_rva=addr_names_rva,
                    addr_ord_rva=addr_ord_rva,
                )
            )
        else:
            for i in range(num_names):
                if names_off + i * 4 + 4 > len(data) or ords_off + i * 2 + 2 > len(data):
                    errors.append(_err("E_PE_EXPORT_NAMES_TRUNCATED", "Export name tables truncated.", index=i))
                    break
                ptr_rva = u32(data, names_off + i * 4)
                ptr_off = layout.rva_to_offset(ptr_rva)
                if ptr_off is None:
                    logger.debug("export name rva 0x%x unmapped", ptr_rva)
                    continue
                name = read_c_string(data, ptr_off, max_len=max_name_len)
                if not name:
                    continue
                name_to_ordinal.setdefault(name, ordinal_base + u16(data, ords_off + i * 2))

    export_end = export_rva + export_size

    def forwarder_of(address: int) -> Optional[str]:
        # An address inside the export directory points at "DLL.Function" text.
        if not (export_rva <= address < export_end):
            return None
        off = layout.rva_to_offset(address)
        if off is None:
            return None
        return read_c_string(data, off, max_len=max_name_len)

    covered = set(name_to_ordinal.values())
    for name in sorted(name_to_ordinal):
        ordinal = name_to_ordinal[name]
        address = ordinal_to_address.get(ordinal)
        if address is None:
            continue
        table.entries.append(ExportEntry(name=name, ordinal=ordinal, address=address, forwarder=forwarder_of(address)))

    for ordinal in sorted(ordinal_to_address):
        if ordinal in covered:
            continue
        address = ordinal_to_address[ordinal]
        table.entries.append(ExportEntry(name="", ordinal=ordinal, address=address, forwarder=forwarder_of(address)))

    return table, errors
