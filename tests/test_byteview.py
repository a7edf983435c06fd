from __future__ import annotations

import random

import pytest

from petriage.byteview import (
    ImageLayout,
    Section,
    clip,
    read_c_string,
    read_counted_utf16le,
    shannon_entropy,
    u16,
    u32,
    u64,
)


def test_readers_return_zero_out_of_bounds():
    data = b"\x01\x02\x03"
    assert u16(data, 0) == 0x0201
    assert u16(data, 2) == 0
    assert u32(data, 0) == 0
    assert u64(b"", 0) == 0
    assert u32(data, -1) == 0


def test_clip_and_c_string():
    assert clip(b"abcdef", 4, 10) == b"ef"
    assert clip(b"abcdef", 10, 2) == b""
    assert read_c_string(b"abc\x00def", 0) == "abc"
    assert read_c_string(b"abc", 0) is None
    assert read_c_string(b"abc\x00", 9) is None


def test_counted_utf16le():
    raw = b"\x03\x00" + "abc".encode("utf-16le")
    assert read_counted_utf16le(raw, 0) == "abc"
    assert read_counted_utf16le(raw[:-1], 0) is None


def _layout(*sections: Section, file_len: int = 0x2000) -> ImageLayout:
    return ImageLayout(pe_offset=0x80, is_64=False, sections=tuple(sections), file_len=file_len)


def test_rva_to_offset_translates_inside_section():
    text = Section(".text", 0x1000, 0x200, 0x400, 0x200, 0)
    layout = _layout(text)
    assert layout.rva_to_offset(0x1000) == 0x400
    assert layout.rva_to_offset(0x10FF) == 0x4FF
    assert layout.rva_to_offset(0x1200) is None
    assert layout.rva_to_offset(0x0FFF) is None


def test_rva_to_offset_without_raw_data_maps_onto_itself():
    bss = Section(".bss", 0x1000, 0x1000, 0, 0, 0)
    layout = _layout(bss)
    assert layout.rva_to_offset(0x1800) == 0x1800
    # Still bounded by the file.
    assert _layout(bss, file_len=0x100).rva_to_offset(0x1800) is None


def test_rva_to_offset_past_end_of_file():
    s = Section(".data", 0x1000, 0x1000, 0x1F00, 0x1000, 0)
    assert _layout(s).rva_to_offset(0x1200) is None


@pytest.mark.parametrize("sections", [(), (Section(".text", 0x1000, 0x200, 0x400, 0x200, 0),)])
def test_rva_to_offset_is_total(sections):
    layout = _layout(*sections)
    rng = random.Random(7)
    rvas = [0, 1, 0x1000, 0x7FFFFFFF, 0xFFFFFFFF] + [rng.randrange(0, 0x100000000) for _ in range(200)]
    for rva in rvas:
        off = layout.rva_to_offset(rva)
        assert off is None or 0 <= off < layout.file_len
        assert layout.rva_to_offset(rva) == off


def test_entropy_bounds_and_permutation_invariance():
    assert shannon_entropy(b"") == 0.0
    assert shannon_entropy(b"\x41" * 7) == 0.0
    assert shannon_entropy(b"\x00" * 4096) == 0.0
    assert shannon_entropy(bytes(range(256))) == pytest.approx(8.0)

    blob = b"AAAB" * 50 + b"BC" * 10
    swapped = blob.translate(bytes.maketrans(b"AB", b"BA"))
    assert swapped != blob
    assert shannon_entropy(swapped) == pytest.approx(shannon_entropy(blob))
