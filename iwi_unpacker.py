#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Call of Duty IWI Unpacker
Toolkit for reading IWi texture containers and extracting their base mip level

Features:
- Header validation for the CoD2, CoD4/5, MW2/MW3, BO1 and BO2 versions
- Version-dependent layout resolution (metadata and mipmap table positions)
- Mipmap size inference from the raw offset table
- Extraction of the largest mip level as a raw payload
- JSON sidecar with texture metadata
- Detailed extraction statistics
"""
import io
import os
import sys
import struct
import json
import argparse
import logging
from pathlib import Path
from typing import List, Optional, BinaryIO
from enum import Enum, IntEnum
from dataclasses import dataclass, field


logger = logging.getLogger(__name__)


IWI_MAGIC = b'IWi'

HEADER_STRUCT = struct.Struct('<3sB')
INFO_STRUCT = struct.Struct('<BBHHH')
OFFSET_STRUCT = struct.Struct('<i')


class IwiError(ValueError):
    """Base class for IWI decoding errors"""


class FormatError(IwiError):
    """Magic tag or version byte not recognized"""


class TruncatedDataError(IwiError):
    """A read or seek runs past the end of the input, or a mip range is corrupt"""


class IwiVersion(IntEnum):
    """IWI versions (CoD4/CoD5 and MW2/MW3 share a byte)"""
    COD2 = 0x05
    COD4 = 0x06
    COD5 = 0x06
    CODMW2 = 0x08
    CODMW3 = 0x08
    CODBO1 = 0x0D
    CODBO2 = 0x1B


class IwiFormat(IntEnum):
    """IWI pixel formats"""
    ARGB32 = 0x01
    RGB24 = 0x02
    GA16 = 0x03
    A8 = 0x04
    DXT1 = 0x0B
    DXT3 = 0x0C
    DXT5 = 0x0D


SUPPORTED_VERSIONS = frozenset(v.value for v in IwiVersion)


@dataclass(frozen=True)
class IwiLayout:
    """Where the metadata block and mipmap table sit for a version family.

    Offsets are absolute from the start of the file. ``None`` means the
    block follows whatever was read before it.
    """
    info_offset: Optional[int]
    table_entries: int
    table_offset: Optional[int]


class LayoutVariant(Enum):
    """Named layout families, selected from the version byte"""
    DEFAULT = IwiLayout(info_offset=None, table_entries=4, table_offset=None)
    MW2_MW3 = IwiLayout(info_offset=0x08, table_entries=4, table_offset=None)
    BO1 = IwiLayout(info_offset=None, table_entries=8, table_offset=0x10)
    BO2 = IwiLayout(info_offset=None, table_entries=8, table_offset=0x20)

    @property
    def layout(self) -> IwiLayout:
        return self.value


_VERSION_LAYOUTS = {
    IwiVersion.COD2: LayoutVariant.DEFAULT,
    IwiVersion.COD4: LayoutVariant.DEFAULT,
    IwiVersion.CODMW2: LayoutVariant.MW2_MW3,
    IwiVersion.CODBO1: LayoutVariant.BO1,
    IwiVersion.CODBO2: LayoutVariant.BO2,
}


@dataclass(frozen=True)
class IwiHeader:
    """IWI file header"""
    magic: bytes = IWI_MAGIC
    version: int = IwiVersion.COD2

    @property
    def is_supported(self) -> bool:
        return self.magic == IWI_MAGIC and self.version in SUPPORTED_VERSIONS


@dataclass(frozen=True)
class IwiInfo:
    """IWI pixel-format metadata"""
    format: int = 0
    usage: int = 0
    width: int = 0
    height: int = 0
    depth: int = 0

    @property
    def format_name(self) -> str:
        try:
            return IwiFormat(self.format).name
        except ValueError:
            return f"UNKNOWN_0x{self.format:02X}"


@dataclass(frozen=True)
class MipEntry:
    """A mip level's byte range inside the file"""
    offset: int
    size: int


@dataclass
class IwiImage:
    """Decoded IWI file holding the largest mip level"""
    header: IwiHeader
    info: IwiInfo
    data: bytes = b""
    variant: LayoutVariant = LayoutVariant.DEFAULT
    mipmaps: List[MipEntry] = field(default_factory=list)


def resolve_layout(version: int) -> LayoutVariant:
    """Get the layout variant for a version byte"""
    try:
        return _VERSION_LAYOUTS[IwiVersion(version)]
    except (ValueError, KeyError):
        raise FormatError(f"Unsupported IWI version: 0x{version:02X}") from None


def _read_exact(reader: BinaryIO, size: int, what: str) -> bytes:
    """Read exactly ``size`` bytes or fail"""
    data = reader.read(size)
    if len(data) < size:
        raise TruncatedDataError(
            f"Unexpected end of file while reading {what} (expected {size}, got {len(data)})")
    return data


def _seek(reader: BinaryIO, position: int, file_end: int, what: str):
    """Absolute seek that refuses to land past the end of the input"""
    if position > file_end:
        raise TruncatedDataError(f"Cannot seek to {what} at 0x{position:X}: input is only {file_end} bytes")
    reader.seek(position, io.SEEK_SET)


def read_header(reader: BinaryIO) -> IwiHeader:
    """Read and validate the IWI header"""
    magic, version = HEADER_STRUCT.unpack(_read_exact(reader, HEADER_STRUCT.size, "header"))
    header = IwiHeader(magic, version)

    if magic != IWI_MAGIC:
        raise FormatError(f"Invalid IWI magic: {magic!r}")
    if not header.is_supported:
        raise FormatError(f"Unsupported IWI version: {magic.decode('ascii')}0x{version:02X}")

    return header


def read_info(reader: BinaryIO) -> IwiInfo:
    """Read the pixel-format metadata block"""
    return IwiInfo(*INFO_STRUCT.unpack(_read_exact(reader, INFO_STRUCT.size, "image info")))


def read_offsets(reader: BinaryIO, count: int) -> List[int]:
    """Read the raw mipmap offset table"""
    data = _read_exact(reader, OFFSET_STRUCT.size * count, "mipmap offset table")
    return [value for (value,) in OFFSET_STRUCT.iter_unpack(data)]


def build_mipmaps(offsets: List[int], table_end: int, file_end: int) -> List[MipEntry]:
    """Calculate mipmap offsets and sizes from the raw offset table.

    The file only stores offsets, so every size is the distance to the next
    known boundary. The first entry runs to the end of the file and the last
    one starts right after the table. A single-entry table is treated as a
    first entry.
    """
    last = len(offsets) - 1
    mipmaps = []

    for i, offset in enumerate(offsets):
        if i == 0:
            mipmaps.append(MipEntry(offset, file_end - offset))
        elif i == last:
            mipmaps.append(MipEntry(table_end, offset - table_end))
        else:
            mipmaps.append(MipEntry(offset, offsets[i - 1] - offset))

    return mipmaps


def select_largest_mipmap(mipmaps: List[MipEntry]) -> MipEntry:
    """Pick the largest mip level, preferring the earliest table entry on ties"""
    if not mipmaps:
        raise TruncatedDataError("Mipmap table is empty")
    # sorted() is stable, so equal sizes keep table order
    return sorted(mipmaps, key=lambda m: m.size, reverse=True)[0]


def extract_mipmap(data: bytes, mipmap: MipEntry) -> bytes:
    """Slice a mip level out of the file bytes"""
    if mipmap.size < 0:
        raise TruncatedDataError(f"Invalid mipmap size: {mipmap.size}")
    if mipmap.offset < 0:
        raise TruncatedDataError(f"Invalid mipmap offset: {mipmap.offset}")

    end = mipmap.offset + mipmap.size
    if end > len(data):
        raise TruncatedDataError(
            f"Mipmap at 0x{mipmap.offset:X} needs {mipmap.size} bytes, "
            f"only {max(0, len(data) - mipmap.offset)} available")

    return bytes(data[mipmap.offset:end])


def decode_iwi(data: bytes) -> IwiImage:
    """Decode IWI file contents and return the largest mip level"""
    file_end = len(data)
    reader = io.BytesIO(data)

    header = read_header(reader)
    variant = resolve_layout(header.version)
    layout = variant.layout
    logger.debug(f"IWI version 0x{header.version:02X} -> layout {variant.name}")

    if layout.info_offset is not None:
        _seek(reader, layout.info_offset, file_end, "image info")
    info = read_info(reader)

    if layout.table_offset is not None:
        _seek(reader, layout.table_offset, file_end, "mipmap offset table")
    offsets = read_offsets(reader, layout.table_entries)
    table_end = reader.tell()
    logger.debug(f"Offset table: {offsets}, table_end=0x{table_end:X}, file_end=0x{file_end:X}")

    mipmaps = build_mipmaps(offsets, table_end, file_end)
    largest = select_largest_mipmap(mipmaps)
    logger.debug(f"Selected mipmap: offset=0x{largest.offset:X}, size={largest.size}")

    return IwiImage(
        header=header,
        info=info,
        data=extract_mipmap(data, largest),
        variant=variant,
        mipmaps=mipmaps,
    )


def read_iwi(path: str) -> IwiImage:
    """Read an IWI file from disk and decode it"""
    with open(path, 'rb') as f:
        data = f.read()
    return decode_iwi(data)


@dataclass
class ExtractionStats:
    """Statistics for extraction process"""
    total: int = 0
    success: int = 0
    failed: int = 0

    def add_total(self):
        self.total += 1

    def add_success(self):
        self.success += 1

    def add_failed(self):
        self.failed += 1

    def print_summary(self):
        logger.info(f"\n### Extraction Summary ###")
        logger.info(f"Total files: {self.total}")
        logger.info(f"Successfully processed: {self.success}")
        logger.info(f"Failed: {self.failed}")


def image_to_json_info(image: IwiImage) -> dict:
    """Metadata written next to an extracted payload"""
    return {
        'version': image.header.version,
        'layout': image.variant.name,
        'format': image.info.format_name,
        'format_code': image.info.format,
        'usage': image.info.usage,
        'width': image.info.width,
        'height': image.info.height,
        'depth': image.info.depth,
        'data_size': len(image.data),
    }


def extract_iwi_file(iwi_path: str, output_dir: str, options: argparse.Namespace, stats: ExtractionStats = None):
    """Extract the largest mip level of one IWI file"""
    if stats:
        stats.add_total()

    stem = Path(iwi_path).stem
    data_path = os.path.join(output_dir, stem + '.data')
    json_path = os.path.join(output_dir, stem + '.iwi-json')
    overwrite = getattr(options, 'overwrite', False)

    if not overwrite and os.path.exists(data_path):
        logger.info(f"* Skipping, already exists: {data_path}")
        if stats:
            stats.add_success()  # Count skipped files as success
        return

    logger.info(f"* Extracting: {iwi_path}")

    try:
        image = read_iwi(iwi_path)
        os.makedirs(output_dir, exist_ok=True)

        with open(data_path, 'wb') as f:
            f.write(image.data)

        if not getattr(options, 'no_json', False):
            with open(json_path, 'w') as json_file:
                json.dump(image_to_json_info(image), json_file, indent=2)

        if stats:
            stats.add_success()
    except (IwiError, OSError) as e:
        logger.error(f"Failed to process {iwi_path}: {e}")
        if stats:
            stats.add_failed()


def extract_directory(input_dir: str, output_dir: str, options: argparse.Namespace, stats: ExtractionStats = None):
    """Extract all IWI files from a directory"""
    input_path = Path(input_dir)
    recursive = getattr(options, 'recursive', False)
    pattern = "**/*.iwi" if recursive else "*.iwi"

    for iwi_file in sorted(input_path.glob(pattern)):
        if not iwi_file.is_file():
            continue
        target_dir = output_dir
        if recursive:
            # Keep the source tree layout under the output directory
            target_dir = os.path.join(output_dir, str(iwi_file.parent.relative_to(input_path)))
        extract_iwi_file(str(iwi_file), target_dir, options, stats)


def show_info(iwi_path: str):
    """Log header, metadata and mipmap table of an IWI file"""
    image = read_iwi(iwi_path)
    info = image.info

    logger.info(f"IWI File: {iwi_path}")
    logger.info(f"Magic: {image.header.magic.decode('ascii')}")
    logger.info(f"Version: 0x{image.header.version:02X} ({image.variant.name})")
    logger.info(f"Format: {info.format_name}")
    logger.info(f"Usage: {info.usage}")
    logger.info(f"Dimensions: {info.width}x{info.height}x{info.depth}")
    logger.info(f"Mipmaps: {len(image.mipmaps)}")
    for index, mipmap in enumerate(image.mipmaps):
        logger.info(f"  [{index}] offset=0x{mipmap.offset:X} size={mipmap.size}")
    logger.info(f"Largest mipmap: {len(image.data)} bytes")


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser"""
    parser = argparse.ArgumentParser(
        description='Call of Duty IWI Unpacker - Extract the base mip level of IWI textures',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Supported operations:
  extract  - Extract the largest mip level of IWI files
  info     - Display file information

Examples:
  %(prog)s extract texture.iwi -o ./output
  %(prog)s extract ./images -r --overwrite
  %(prog)s info texture.iwi
        """
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    extract_parser = subparsers.add_parser('extract', help='Extract the largest mip level of IWI files')
    extract_parser.add_argument('input', help='Path to IWI file or directory')
    extract_parser.add_argument('-o', '--output', default='./output', help='Output directory (default: ./output)')
    extract_parser.add_argument('-r', '--recursive', action='store_true', help='Recursive search in subdirectories')
    extract_parser.add_argument('--no-json', action='store_true', help='Do not write .iwi-json metadata files')
    extract_parser.add_argument('--overwrite', action='store_true', help='Overwrite existing files')

    info_parser = subparsers.add_parser('info', help='Display file information')
    info_parser.add_argument('input', help='Path to IWI file')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(message)s')
    logger.setLevel(logging.DEBUG if args.verbose else logging.INFO)

    if not args.command:
        parser.print_help()
        return 0

    input_path = Path(args.input)
    if not input_path.exists():
        logger.error(f"Input not found: {args.input}")
        return 1

    if args.command == 'extract':
        stats = ExtractionStats()
        if input_path.is_file():
            extract_iwi_file(str(input_path), args.output, args, stats)
        else:
            extract_directory(str(input_path), args.output, args, stats)
        stats.print_summary()
        return 1 if stats.failed else 0

    try:
        show_info(str(input_path))
    except (IwiError, OSError) as e:
        logger.error(f"Error: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
