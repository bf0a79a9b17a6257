"""Low-level TIFF/BigTIFF structure parser -- stdlib only (struct module).

Handles both standard TIFF (magic 42) and BigTIFF (magic 43) formats,
with little-endian (II) and big-endian (MM) byte orders. The whole file is
held in memory: offsets point forwards and backwards arbitrarily, and layer
IFDs are only reachable through offsets stored in private tags.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from skora.errors import InvalidHeader, MalformedIfd
from skora.tiff.reader import ByteReader, byte_order

logger = logging.getLogger(__name__)

# TIFF type definitions: {type_id: (element_size_bytes, struct_format_char)}
TIFF_TYPES: Dict[int, Tuple[int, str]] = {
    1: (1, 'B'),    # BYTE
    2: (1, 's'),    # ASCII
    3: (2, 'H'),    # SHORT
    4: (4, 'I'),    # LONG
    5: (8, 'II'),   # RATIONAL (num/denom)
    6: (1, 'b'),    # SBYTE
    7: (1, 's'),    # UNDEFINED
    8: (2, 'h'),    # SSHORT
    9: (4, 'i'),    # SLONG
    10: (8, 'ii'),  # SRATIONAL
    11: (4, 'f'),   # FLOAT
    12: (8, 'd'),   # DOUBLE
    13: (4, 'I'),   # IFD
    16: (8, 'Q'),   # LONG8 (BigTIFF)
    17: (8, 'q'),   # SLONG8 (BigTIFF, signed)
    18: (8, 'Q'),   # IFD8 (BigTIFF)
}

# Well-known TIFF tag names
TAG_NAMES: Dict[int, str] = {
    254: 'NewSubfileType', 256: 'ImageWidth', 257: 'ImageLength',
    258: 'BitsPerSample', 259: 'Compression', 262: 'PhotometricInterpretation',
    266: 'FillOrder', 270: 'ImageDescription',
    273: 'StripOffsets', 274: 'Orientation', 277: 'SamplesPerPixel',
    278: 'RowsPerStrip', 279: 'StripByteCounts',
    282: 'XResolution', 283: 'YResolution', 284: 'PlanarConfiguration',
    285: 'PageName', 286: 'XPosition', 287: 'YPosition',
    296: 'ResolutionUnit', 305: 'Software', 306: 'DateTime',
    317: 'Predictor', 320: 'ColorMap',
    322: 'TileWidth', 323: 'TileLength', 324: 'TileOffsets',
    325: 'TileByteCounts', 330: 'SubIFDs', 338: 'ExtraSamples',
    339: 'SampleFormat',
    # Alias / Autodesk Sketchbook private tags
    50784: 'AliasLayerMetadata',
    # Fixed-record layer table
    65000: 'LayerTable',
}

NEW_SUBFILE_TYPE_TAG = 254
SOFTWARE_TAG = 305
SUBIFDS_TAG = 330

# Maximum plausible tag count per IFD. Anything vastly beyond this means
# the IFD pointer landed in image data and the "tag count" is garbage.
MAX_IFD_ENTRIES = 4096

# Upper bound on IFDs followed along one "next IFD" chain
MAX_CHAIN_LENGTH = 4096


class IFDEntry:
    """A single IFD (Image File Directory) entry.

    ``is_inline`` records, once, whether the value fits in the entry's own
    value slot (``count * element_size <= slot size``). ``value_offset``
    then points either into that slot or at the out-of-line value, so
    readers never re-derive the predicate.
    """
    __slots__ = ('tag_id', 'dtype', 'count', 'value_offset', 'entry_offset',
                 'is_inline', 'size')

    def __init__(self, tag_id: int, dtype: int, count: int,
                 value_offset: int, entry_offset: int, is_inline: bool,
                 size: int):
        self.tag_id = tag_id
        self.dtype = dtype
        self.count = count
        self.value_offset = value_offset
        self.entry_offset = entry_offset
        self.is_inline = is_inline
        self.size = size

    @property
    def tag_name(self) -> str:
        return TAG_NAMES.get(self.tag_id, f'Tag_{self.tag_id}')

    @property
    def known_type(self) -> bool:
        return self.dtype in TIFF_TYPES

    def __repr__(self):
        where = 'inline' if self.is_inline else f'@{self.value_offset}'
        return (f'IFDEntry({self.tag_name}, type={self.dtype}, '
                f'count={self.count}, {where})')


class Ifd:
    """One parsed Image File Directory.

    ``entries`` keeps the file order (which is normally, but not always,
    sorted by tag id). Lookups by tag id return the first entry when a tag
    is duplicated.
    """
    __slots__ = ('offset', 'entries', 'next_offset', 'tags')

    def __init__(self, offset: int, entries: List[IFDEntry], next_offset: int):
        self.offset = offset
        self.entries = entries
        self.next_offset = next_offset
        self.tags: Dict[int, IFDEntry] = {}
        for entry in entries:
            if entry.tag_id in self.tags:
                logger.warning(
                    'Duplicate tag %d in IFD at %d: using entry at %d, '
                    'ignoring entry at %d', entry.tag_id, offset,
                    self.tags[entry.tag_id].entry_offset, entry.entry_offset)
                continue
            self.tags[entry.tag_id] = entry

    def get(self, tag_id: int) -> Optional[IFDEntry]:
        return self.tags.get(tag_id)

    def __contains__(self, tag_id: int) -> bool:
        return tag_id in self.tags

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self):
        return f'Ifd(offset={self.offset}, tags={len(self.entries)}, next={self.next_offset})'


class TIFFHeader:
    """Parsed TIFF file header."""
    __slots__ = ('endian', 'is_bigtiff', 'first_ifd_offset')

    def __init__(self, endian: str, is_bigtiff: bool, first_ifd_offset: int):
        self.endian = endian
        self.is_bigtiff = is_bigtiff
        self.first_ifd_offset = first_ifd_offset

    @property
    def slot_size(self) -> int:
        """Size of an entry's value slot (and of every offset field)."""
        return 8 if self.is_bigtiff else 4


def read_header(data: bytes) -> Optional[TIFFHeader]:
    """Read and validate TIFF/BigTIFF header. Returns None if not a valid TIFF."""
    endian = byte_order(data)
    if endian is None or len(data) < 8:
        return None
    reader = ByteReader(data[:16], endian)

    magic = reader.read_u16(2)
    if magic == 42:
        # Standard TIFF
        return TIFFHeader(endian, False, reader.read_u32(4))
    elif magic == 43:
        # BigTIFF
        if len(data) < 16 or reader.read_u16(4) != 8:
            return None
        return TIFFHeader(endian, True, reader.read_u64(8))
    else:
        return None


def read_ifd(reader: ByteReader, header: TIFFHeader, ifd_offset: int) -> Ifd:
    """Parse the IFD at ``ifd_offset``.

    Raises OutOfBounds when the entry count itself cannot be read, and
    MalformedIfd when the declared entry table runs past the end of the
    buffer or an out-of-line value points outside it. Values are not read
    here; they are resolved lazily through ``read_tag_*``.
    """
    if header.is_bigtiff:
        count_fmt, count_size = 'Q', 8
        entry_size = 20
        offset_fmt = 'Q'
    else:
        count_fmt, count_size = 'H', 2
        entry_size = 12
        offset_fmt = 'I'
    slot_size = header.slot_size

    num_entries = reader.unpack(count_fmt, ifd_offset)[0]
    if num_entries > MAX_IFD_ENTRIES:
        raise MalformedIfd(f'implausible entry count {num_entries}', ifd_offset)

    table_start = ifd_offset + count_size
    next_ptr = table_start + num_entries * entry_size
    if next_ptr + slot_size > len(reader):
        raise MalformedIfd(
            f'{num_entries} entries run past the end of the file '
            f'({len(reader)} bytes)', ifd_offset)

    entries = []
    for e in range(num_entries):
        entry_offset = table_start + e * entry_size
        if header.is_bigtiff:
            tag_id, dtype, count = reader.unpack('HHQ', entry_offset)
            slot = entry_offset + 12
        else:
            tag_id, dtype, count = reader.unpack('HHI', entry_offset)
            slot = entry_offset + 8

        type_info = TIFF_TYPES.get(dtype)
        if type_info is None:
            # Opaque: keep the raw slot so nothing is lost
            logger.debug('Tag %d in IFD at %d has unknown type %d',
                         tag_id, ifd_offset, dtype)
            entries.append(IFDEntry(tag_id, dtype, count, slot, entry_offset,
                                    True, slot_size))
            continue

        total = type_info[0] * count
        if total <= slot_size:
            entries.append(IFDEntry(tag_id, dtype, count, slot, entry_offset,
                                    True, total))
            continue

        value_offset = reader.unpack(offset_fmt, slot)[0]
        if not reader.in_bounds(value_offset, total):
            raise MalformedIfd(
                f'tag {tag_id} value ({total} bytes at offset {value_offset}) '
                f'lies outside the file', ifd_offset)
        entries.append(IFDEntry(tag_id, dtype, count, value_offset,
                                entry_offset, False, total))

    next_offset = reader.unpack(offset_fmt, next_ptr)[0]
    return Ifd(ifd_offset, entries, next_offset)


def read_tag_value_bytes(reader: ByteReader, entry: IFDEntry) -> bytes:
    """Read the raw bytes of a tag value."""
    return reader.read_bytes(entry.value_offset, entry.size)


def read_tag_string(reader: ByteReader, entry: IFDEntry) -> str:
    """Read a tag value as text, dropping trailing NULs."""
    raw = read_tag_value_bytes(reader, entry)
    return raw.rstrip(b'\x00').decode('utf-8', errors='replace')


def read_tag_values(reader: ByteReader, entry: IFDEntry) -> Tuple:
    """Read a numeric tag as a tuple.

    RATIONAL/SRATIONAL values come back as floats (a zero denominator gives
    0.0). ASCII, UNDEFINED and unknown types return a 1-tuple of raw bytes.
    """
    type_info = TIFF_TYPES.get(entry.dtype)
    if type_info is None or type_info[1] == 's':
        return (read_tag_value_bytes(reader, entry),)
    fmt_char = type_info[1]
    values = reader.unpack(fmt_char * entry.count, entry.value_offset)
    if entry.dtype in (5, 10):
        pairs = zip(values[0::2], values[1::2])
        return tuple(num / den if den else 0.0 for num, den in pairs)
    return values


class TiffFile:
    """A TIFF buffer plus its header; the entry point for IFD traversal."""

    def __init__(self, data: bytes):
        header = read_header(data)
        if header is None:
            raise InvalidHeader('Not a TIFF file (bad byte order or magic number)')
        self.header = header
        self.reader = ByteReader(data, header.endian)

    @property
    def size(self) -> int:
        return len(self.reader)

    @property
    def endian(self) -> str:
        return self.header.endian

    def read_ifd(self, offset: int) -> Ifd:
        """Parse the IFD at an arbitrary caller-supplied offset."""
        return read_ifd(self.reader, self.header, offset)

    def first_ifd(self) -> Ifd:
        return self.read_ifd(self.header.first_ifd_offset)

    def iter_ifds(self, start: Optional[int] = None,
                  max_pages: int = MAX_CHAIN_LENGTH) -> List[Ifd]:
        """Follow the "next IFD" chain. Returns the IFDs in chain order.

        Starts from the header's first IFD unless ``start`` is given. Stops
        at a zero pointer, at a pointer already visited, or after
        ``max_pages`` IFDs.
        """
        result = []
        offset = self.header.first_ifd_offset if start is None else start
        seen = set()

        while offset != 0 and len(result) < max_pages:
            if offset in seen:
                logger.warning('IFD chain loops back to offset %d; stopping', offset)
                break
            seen.add(offset)
            ifd = self.read_ifd(offset)
            result.append(ifd)
            offset = ifd.next_offset

        return result

    # -- tag value helpers ------------------------------------------------

    def tag_bytes(self, ifd: Ifd, tag_id: int) -> Optional[bytes]:
        entry = ifd.get(tag_id)
        if entry is None:
            return None
        return read_tag_value_bytes(self.reader, entry)

    def tag_string(self, ifd: Ifd, tag_id: int, default: Optional[str] = None) -> Optional[str]:
        entry = ifd.get(tag_id)
        if entry is None:
            return default
        return read_tag_string(self.reader, entry)

    def tag_values(self, ifd: Ifd, tag_id: int, default: Optional[Iterable] = None) -> Optional[Tuple]:
        entry = ifd.get(tag_id)
        if entry is None:
            return tuple(default) if default is not None else None
        return read_tag_values(self.reader, entry)

    def tag_value(self, ifd: Ifd, tag_id: int, default=None):
        entry = ifd.get(tag_id)
        if entry is None or entry.count == 0:
            return default
        return read_tag_values(self.reader, entry)[0]
