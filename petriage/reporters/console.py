from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

console = Console()


def render_console(record: Dict[str, Any], bundle_zip: Optional[Path] = None) -> None:
    info = record.get("pe_fileinfo", {})
    static = record.get("static_info") or {}
    auth = record.get("authenticode_info", {})

    t = Table(title="petriage: PE static triage")
    t.add_column("Field")
    t.add_column("Value", overflow="fold")
    t.add_row("file", str(record.get("filename", "")))
    t.add_row("type", str(info.get("file_type", "")))
    t.add_row("size", str(info.get("size", "")))
    t.add_row("sha256", str(info.get("sha256", "")))
    t.add_row("entropy", f"{float(info.get('entropy', 0.0)):.3f}")
    t.add_row("machine", str(static.get("machine", "")))
    t.add_row("subsystem", str(static.get("subsystem", "")))
    t.add_row("timestamp", str(static.get("timestamp", "")))
    t.add_row("entry point", f"0x{int(static.get('entry_point', 0)):X} ({static.get('entry_point_section', '')})")
    t.add_row("import hash", str(static.get("import_hash", "")))
    t.add_row("imports", f"{len(record.get('imports', {}))} modules")
    t.add_row("exports", str(len(record.get("exports", []))))
    t.add_row("resources", str(len(record.get("resources", []))))
    t.add_row("signature", str(auth.get("validation_error", "")))
    t.add_row("errors", str(len(record.get("errors", []))))
    console.print(t)

    render_sections(record.get("sections", []))

    for hint in record.get("packing_indicators", []):
        console.print(f"[yellow]packing hint:[/yellow] {escape(str(hint.get('section')))}: {hint.get('indicator')} ({escape(str(hint.get('detail')))})")
    if bundle_zip is not None:
        console.print(f"[green]Bundle written:[/green] {bundle_zip}")


def render_sections(sections: List[Dict[str, Any]]) -> None:
    if not sections:
        return
    t = Table(title="Sections")
    for col in ("Name", "VirtAddr", "VirtSize", "RawSize", "Entropy", "Type", "X", "W", "MD5"):
        t.add_column(col)
    for s in sections:
        t.add_row(
            str(s.get("name", "")),
            f"0x{int(s.get('virtual_address', 0)):X}",
            f"0x{int(s.get('virtual_size', 0)):X}",
            f"0x{int(s.get('raw_size', 0)):X}",
            f"{float(s.get('entropy', 0.0)):.2f}",
            str(s.get("type", "")),
            "yes" if s.get("is_executable") else "no",
            "yes" if s.get("is_writable") else "no",
            str(s.get("md5", "")),
        )
    console.print(t)


def render_matches(pattern: str, matches: List[str]) -> None:
    console.print(f"[bold]{len(matches)}[/bold] match(es) for [cyan]{escape(pattern)}[/cyan]", highlight=False)
    for m in matches:
        console.print(m, markup=False, highlight=False)
