import struct
from dataclasses import dataclass
from typing import List

import pytest

from iwi_unpacker import IWI_MAGIC, resolve_layout


@dataclass
class SyntheticIwi:
    data: bytes
    payloads: List[bytes]
    offsets: List[int]
    table_start: int
    table_end: int


def mip_payload(level: int, size: int) -> bytes:
    return bytes((j + level * 31) % 251 for j in range(size))


def build_iwi(version=0x05, mip_sizes=(64, 256, 1024), fmt=0x0B, usage=0,
              width=64, height=32, depth=1, magic=IWI_MAGIC, gap_fill=0xEE) -> SyntheticIwi:
    """Build an IWI file the way the games lay them out.

    ``mip_sizes`` lists the levels smallest first, one fewer than the table
    has entries. The first table entry holds the file size, so its own size
    comes out as zero.
    """
    layout = resolve_layout(version).layout
    count = layout.table_entries
    if len(mip_sizes) != count - 1:
        raise ValueError(f"need {count - 1} mip sizes for version 0x{version:02X}")

    prefix = bytearray(magic + bytes([version]))
    if layout.info_offset is not None:
        prefix += bytes([gap_fill]) * (layout.info_offset - len(prefix))
    prefix += struct.pack('<BBHHH', fmt, usage, width, height, depth)
    if layout.table_offset is not None:
        prefix += bytes([gap_fill]) * (layout.table_offset - len(prefix))

    table_start = len(prefix)
    table_end = table_start + 4 * count

    offsets = [0] * count
    cursor = table_end + mip_sizes[0]
    offsets[count - 1] = cursor
    for level in range(1, count - 1):
        offsets[count - 1 - level] = cursor
        cursor += mip_sizes[level]
    offsets[0] = cursor

    payloads = [mip_payload(level, size) for level, size in enumerate(mip_sizes)]
    data = bytes(prefix) + struct.pack(f'<{count}i', *offsets) + b''.join(payloads)
    return SyntheticIwi(data, payloads, offsets, table_start, table_end)


@pytest.fixture
def iwi_builder():
    return build_iwi
