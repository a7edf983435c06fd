from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from petriage.byteview import ImageLayout, align4, clip, read_counted_utf16le, read_utf16le_zstring, u16, u32
from petriage.pe import _err

logger = logging.getLogger(__name__)

RT_ICON = 3
RT_RCDATA = 10
RT_GROUP_ICON = 14
RT_VERSION = 16
RT_MANIFEST = 24

RESOURCE_TYPES = {
    1: "RT_CURSOR",
    2: "RT_BITMAP",
    3: "RT_ICON",
    4: "RT_MENU",
    5: "RT_DIALOG",
    6: "RT_STRING",
    7: "RT_FONTDIR",
    8: "RT_FONT",
    9: "RT_ACCELERATOR",
    10: "RT_RCDATA",
    11: "RT_MESSAGETABLE",
    12: "RT_GROUP_CURSOR",
    14: "RT_GROUP_ICON",
    16: "RT_VERSION",
    17: "RT_DLGINCLUDE",
    19: "RT_PLUGPLAY",
    20: "RT_VXD",
    21: "RT_ANICURSOR",
    22: "RT_ANIICON",
    23: "RT_HTML",
    24: "RT_MANIFEST",
}

PNG_SIGNATURE = b"\x89PNG"
DIRECTORY_HEADER_SIZE = 16
DIRECTORY_ENTRY_SIZE = 8
DATA_ENTRY_SIZE = 16
HIGH_BIT = 0x80000000


def resource_type_name(type_id: int) -> str:
    return RESOURCE_TYPES.get(type_id, f"UNKNOWN_{type_id}")


@dataclass(frozen=True)
class ResourceLeaf:
    type: str
    id1: str
    id2: str
    rva: int
    size: int
    file_offset: Optional[int]
    sniffed_kind: str = ""
    version_info: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.type,
            "id1": self.id1,
            "id2": self.id2,
            "rva": self.rva,
            "size": self.size,
            "file_offset": self.file_offset,
            "sniffed_kind": self.sniffed_kind,
        }
        if self.version_info:
            d["version_info"] = dict(self.version_info)
        return d


@dataclass
class ResourceDirectory:
    label: str
    children: List["ResourceNode"] = field(default_factory=list)


ResourceNode = Union[ResourceDirectory, ResourceLeaf]


def flatten(node: ResourceNode) -> List[ResourceLeaf]:
    out: List[ResourceLeaf] = []
    stack: List[ResourceNode] = [node]
    while stack:
        cur = stack.pop()
        if isinstance(cur, ResourceLeaf):
            out.append(cur)
        else:
            stack.extend(reversed(cur.children))
    return out


def parse_versioninfo_strings(
    vs: bytes, *, max_pairs: int = 200, max_key_chars: int = 200, max_val_chars: int = 2000
) -> Tuple[Dict[str, str], List[Dict[str, Any]]]:
    """
    Parse VS_VERSIONINFO / StringFileInfo / StringTable / String blocks.
    Returns (kv_pairs sorted by key, errors); the first value seen for a key wins.
    """
    errors: List[Dict[str, Any]] = []
    pairs: Dict[str, str] = {}

    def read_block(off: int, limit: int) -> Optional[Tuple[int, int, str, int, int]]:
        # (wValueLength, wType, key, header_end, block_end)
        if off < 0 or off + 6 > limit:
            return None
        wlen = u16(vs, off)
        if wlen < 6 or off + wlen > limit:
            return None
        key, consumed = read_utf16le_zstring(vs, off + 6, max_chars=max_key_chars)
        if key is None:
            return None
        return u16(vs, off + 2), u16(vs, off + 4), key, off + 6 + consumed, off + wlen

    # (children_off, block_end, depth)
    work: List[Tuple[int, int, int]] = []

    root = read_block(0, len(vs))
    if root is None:
        return {}, [_err("E_PE_VI_PARSE_FAILED", "Failed to parse VS_VERSIONINFO root.")]
    wvlen, wtype, key, header_end, end = root
    if key != "VS_VERSION_INFO":
        return {}, [_err("E_PE_VI_BAD_ROOT", "Root key is not VS_VERSION_INFO.", root_key=key)]

    # Fixed file info is wvlen bytes for binary values, wvlen WCHARs for text.
    value_bytes = wvlen if wtype == 0 else wvlen * 2
    work.append((align4(align4(header_end) + value_bytes), end, 0))

    while work:
        cur, block_end, depth = work.pop()
        if depth > 8:
            errors.append(_err("E_PE_VI_TOO_DEEP", "VersionInfo nesting too deep.", depth=depth))
            continue
        cur = align4(cur)
        while cur + 6 <= block_end:
            blk = read_block(cur, block_end)
            if blk is None:
                break
            wvlen, wtype, key, header_end, end = blk
            val_off = align4(header_end)
            if wtype == 1 and wvlen > 0 and key not in ("StringFileInfo", "VarFileInfo") and len(pairs) < max_pairs:
                val_len = min(wvlen, max_val_chars) * 2
                if val_off + val_len <= end and key not in pairs:
                    pairs[key] = vs[val_off : val_off + val_len].decode("utf-16le", errors="replace").rstrip("\x00")
            value_bytes = wvlen * 2 if wtype == 1 else wvlen
            child_off = align4(val_off + value_bytes)
            if child_off < end:
                work.append((child_off, end, depth + 1))
            cur = align4(end)

    return {k: pairs[k] for k in sorted(pairs)}, errors


def sniff_kind(type_name: str, head: bytes) -> str:
    """Best-effort content label for a leaf; never raises."""
    is_png = head[:4] == PNG_SIGNATURE
    if type_name in ("RT_ICON", "RT_GROUP_ICON"):
        return "PNG image" if is_png else "Windows icon"
    if type_name == "RT_RCDATA":
        return "PNG image" if is_png else ""
    if type_name == "RT_MANIFEST":
        return "Windows Visual Stylesheet"
    return ""


def walk_resources(
    data: bytes,
    layout: ImageLayout,
    *,
    resource_rva: int,
    resource_size: int,
    max_depth: int = 8,
    max_nodes: int = 4096,
    max_version_size: int = 2_000_000,
) -> Tuple[Optional[ResourceDirectory], List[Dict[str, Any]]]:
    """
    Walk the resource directory with an explicit work-stack.
    Depth beyond max_depth, a revisited directory offset, or too many nodes abandon
    that subtree with E_PE_RSRC_MALFORMED_TREE; everything already collected is kept.
    """
    errors: List[Dict[str, Any]] = []
    if not resource_rva or not resource_size:
        return None, errors

    base_off = layout.rva_to_offset(resource_rva)
    if base_off is None:
        return None, [
            _err(
                "E_PE_RSRC_RVA_UNMAPPED",
                "Resource directory RVA could not be mapped to file offset.",
                resource_rva=resource_rva,
            )
        ]

    root = ResourceDirectory(label="")
    # (parent, directory offset relative to base, depth, path labels)
    stack: List[Tuple[ResourceDirectory, int, int, Tuple[str, ...]]] = [(root, 0, 0, ())]
    visited = set()
    nodes_seen = 0

    def malformed(message: str, **extra: Any) -> None:
        logger.debug("resource tree: %s %s", message, extra)
        errors.append(_err("E_PE_RSRC_MALFORMED_TREE", message, **extra))

    def entry_label(name_or_id: int, depth: int) -> str:
        if name_or_id & HIGH_BIT:
            name = read_counted_utf16le(data, base_off + (name_or_id & ~HIGH_BIT))
            return name if name is not None else ""
        if depth == 0:
            return resource_type_name(name_or_id)
        return str(name_or_id)

    while stack:
        node, dir_rel, depth, path = stack.pop()
        if depth >= max_depth:
            malformed(f"Resource tree deeper than max_depth={max_depth}.", dir_rel=dir_rel, depth=depth)
            continue
        if dir_rel in visited:
            malformed("Resource directory revisited (cycle).", dir_rel=dir_rel)
            continue
        visited.add(dir_rel)

        dir_off = base_off + dir_rel
        if dir_off + DIRECTORY_HEADER_SIZE > len(data):
            malformed("Resource directory out of bounds.", dir_rel=dir_rel)
            continue
        total = u16(data, dir_off + 12) + u16(data, dir_off + 14)

        pending: List[Tuple[ResourceDirectory, int, int, Tuple[str, ...]]] = []
        for i in range(total):
            nodes_seen += 1
            if nodes_seen > max_nodes:
                malformed(f"Resource nodes exceeded max_nodes={max_nodes}.", max_nodes=max_nodes)
                stack.clear()
                pending.clear()
                break
            ent_off = dir_off + DIRECTORY_HEADER_SIZE + i * DIRECTORY_ENTRY_SIZE
            if ent_off + DIRECTORY_ENTRY_SIZE > len(data):
                malformed("Resource directory entry out of bounds.", dir_rel=dir_rel, index=i)
                break
            label = entry_label(u32(data, ent_off), depth)
            target = u32(data, ent_off + 4)
            child_path = path + (label,)

            if target & HIGH_BIT:
                child = ResourceDirectory(label=label)
                node.children.append(child)
                pending.append((child, target & ~HIGH_BIT, depth + 1, child_path))
                continue

            leaf = _read_leaf(data, layout, base_off + target, child_path, max_version_size, errors)
            if leaf is not None:
                node.children.append(leaf)

        # Reverse so siblings are visited in table order.
        stack.extend(reversed(pending))

    return root, errors


def _read_leaf(
    data: bytes,
    layout: ImageLayout,
    entry_off: int,
    path: Tuple[str, ...],
    max_version_size: int,
    errors: List[Dict[str, Any]],
) -> Optional[ResourceLeaf]:
    if entry_off + DATA_ENTRY_SIZE > len(data):
        errors.append(_err("E_PE_RSRC_DATA_ENTRY_OOB", "Resource data entry out of bounds.", entry_off=entry_off))
        return None

    rva = u32(data, entry_off)
    size = u32(data, entry_off + 4)
    file_offset = layout.rva_to_offset(rva)
    type_name = path[0] if path else ""
    id1 = path[1] if len(path) > 1 else ""
    id2 = path[2] if len(path) > 2 else ""

    sniffed = ""
    version_info: Dict[str, str] = {}
    if file_offset is not None and size > 0:
        sniffed = sniff_kind(type_name, clip(data, file_offset, min(size, 8)))
        if type_name == "RT_VERSION":
            blob = clip(data, file_offset, min(size, max_version_size))
            version_info, vi_errs = parse_versioninfo_strings(blob)
            errors.extend(vi_errs)
    elif file_offset is None:
        errors.append(_err("E_PE_RSRC_DATA_RVA_UNMAPPED", "Resource data RVA could not be mapped.", data_rva=rva))

    return ResourceLeaf(
        type=type_name,
        id1=id1,
        id2=id2,
        rva=rva,
        size=size,
        file_offset=file_offset,
        sniffed_kind=sniffed,
        version_info=version_info,
    )
