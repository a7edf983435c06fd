from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from petriage.byteview import ImageLayout, read_c_string_bytes, u16, u32, u64
from petriage.pe import _err

logger = logging.getLogger(__name__)

IMPORT_DESCRIPTOR_SIZE = 20
ORDINAL_FLAG_32 = 0x80000000
ORDINAL_FLAG_64 = 0x8000000000000000


@dataclass(frozen=True)
class ImportEntry:
    module_name: str
    function_name: Optional[str] = None
    ordinal: Optional[int] = None
    hint: Optional[int] = None

    @property
    def is_ordinal(self) -> bool:
        return self.function_name is None

    @property
    def label(self) -> str:
        if self.function_name is not None:
            return self.function_name
        return f"ordinal_{self.ordinal}"


@dataclass
class ImportTable:
    entries: List[ImportEntry] = field(default_factory=list)
    # Raw module-name bytes of every resolved descriptor, in table order.
    module_names: List[bytes] = field(default_factory=list)

    def by_module(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for name in self.module_names:
            grouped.setdefault(name.decode("ascii", errors="replace"), [])
        for e in self.entries:
            grouped.setdefault(e.module_name, []).append(e.label)
        return grouped


def _thunk_entries(
    data: bytes,
    layout: ImageLayout,
    *,
    module: str,
    thunk_off: int,
    max_funcs: int,
    max_name_len: int,
    errors: List[Dict[str, Any]],
) -> List[ImportEntry]:
    width = 8 if layout.is_64 else 4
    flag = ORDINAL_FLAG_64 if layout.is_64 else ORDINAL_FLAG_32
    out: List[ImportEntry] = []

    for idx in range(max_funcs):
        ent_off = thunk_off + idx * width
        if ent_off + width > len(data):
            errors.append(_err("E_PE_IMPORT_THUNK_TRUNCATED", "Import thunk table truncated.", dll=module, thunk_off=thunk_off))
            return out
        val = u64(data, ent_off) if layout.is_64 else u32(data, ent_off)
        if val == 0:
            return out

        if val & flag:
            out.append(ImportEntry(module_name=module, ordinal=int(val & 0xFFFF)))
            continue

        ibn_rva = int(val & 0xFFFFFFFF)
        ibn_off = layout.rva_to_offset(ibn_rva)
        if ibn_off is None:
            errors.append(
                _err(
                    "E_PE_IMPORT_BY_NAME_UNMAPPED",
                    "IMAGE_IMPORT_BY_NAME RVA could not be mapped.",
                    dll=module,
                    ibn_rva=ibn_rva,
                )
            )
            continue
        raw = read_c_string_bytes(data, ibn_off + 2, max_len=max_name_len)
        if not raw:
            errors.append(
                _err(
                    "E_PE_IMPORT_BY_NAME_UNREADABLE",
                    "Imported function name unreadable.",
                    dll=module,
                    ibn_rva=ibn_rva,
                )
            )
            continue
        out.append(
            ImportEntry(
                module_name=module,
                function_name=raw.decode("ascii", errors="replace"),
                hint=u16(data, ibn_off),
            )
        )

    errors.append(
        _err(
            "E_PE_IMPORT_TOO_MANY_FUNCS",
            f"Import function count exceeded max_funcs_per_dll={max_funcs}.",
            dll=module,
        )
    )
    return out


def parse_imports(
    data: bytes,
    layout: ImageLayout,
    *,
    import_rva: int,
    import_size: int,
    max_dlls: int = 256,
    max_funcs_per_dll: int = 4096,
    max_name_len: int = 512,
) -> Tuple[ImportTable, List[Dict[str, Any]]]:
    """
    Walk IMAGE_IMPORT_DESCRIPTORs until the all-zero terminator or the end of the buffer.
    A descriptor whose module name cannot be resolved is skipped; the walk continues.
    """
    errors: List[Dict[str, Any]] = []
    table = ImportTable()

    if not import_rva or not import_size:
        return table, errors

    desc_off = layout.rva_to_offset(import_rva)
    if desc_off is None:
        return table, [
            _err(
                "E_PE_IMPORT_RVA_UNMAPPED",
                "Import directory RVA could not be mapped to file offset.",
                import_rva=import_rva,
            )
        ]

    for _ in range(max_dlls):
        if desc_off + IMPORT_DESCRIPTOR_SIZE > len(data):
            errors.append(_err("E_PE_IMPORT_DESC_TRUNCATED", "Import descriptor table truncated.", desc_off=desc_off))
            break

        original_first_thunk = u32(data, desc_off)
        name_rva = u32(data, desc_off + 12)
        first_thunk = u32(data, desc_off + 16)
        desc_off += IMPORT_DESCRIPTOR_SIZE

        if original_first_thunk == 0 and name_rva == 0 and first_thunk == 0:
            break

        name_off = layout.rva_to_offset(name_rva)
        raw_name = read_c_string_bytes(data, name_off, max_len=max_name_len) if name_off is not None else None
        if not raw_name:
            logger.debug("skipping import descriptor with unresolved name rva=0x%x", name_rva)
            errors.append(
                _err(
                    "E_PE_IMPORT_DLL_NAME_UNMAPPED",
                    "Import DLL name RVA could not be resolved; descriptor skipped.",
                    name_rva=name_rva,
                )
            )
            continue

        module = raw_name.decode("ascii", errors="replace")
        table.module_names.append(raw_name)

        thunk_rva = original_first_thunk or first_thunk
        thunk_off = layout.rva_to_offset(thunk_rva)
        if thunk_off is None:
            errors.append(
                _err(
                    "E_PE_IMPORT_THUNK_UNMAPPED",
                    "Import thunk RVA could not be mapped.",
                    thunk_rva=thunk_rva,
                    dll=module,
                )
            )
            continue

        table.entries.extend(
            _thunk_entries(
                data,
                layout,
                module=module,
                thunk_off=thunk_off,
                max_funcs=max_funcs_per_dll,
                max_name_len=max_name_len,
                errors=errors,
            )
        )
    else:
        errors.append(
            _err(
                "E_PE_IMPORT_TOO_MANY_DLLS",
                f"Import DLL count exceeded max_dlls={max_dlls}.",
                max_dlls=max_dlls,
            )
        )

    return table, errors
