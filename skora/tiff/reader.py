"""Endian-aware positioned reads over an in-memory TIFF buffer."""

import struct
from typing import Optional, Tuple

from skora.errors import OutOfBounds


def byte_order(data: bytes) -> Optional[str]:
    """Return the struct byte-order prefix for a TIFF buffer, or None."""
    bo = bytes(data[:2])
    if bo == b'II':
        return '<'
    if bo == b'MM':
        return '>'
    return None


class ByteReader:
    """Read-only view of a TIFF buffer in a fixed byte order.

    Every read is a pure function of (buffer, offset). Spans that extend past
    the end of the buffer raise ``OutOfBounds`` rather than returning short
    data, so callers never see silently truncated values.
    """
    __slots__ = ('data', 'endian')

    def __init__(self, data: bytes, endian: str = '<'):
        if endian not in ('<', '>'):
            raise ValueError(f'endian must be "<" or ">", got {endian!r}')
        self.data = bytes(data)
        self.endian = endian

    def __len__(self) -> int:
        return len(self.data)

    def in_bounds(self, offset: int, length: int) -> bool:
        return offset >= 0 and length >= 0 and offset + length <= len(self.data)

    def check(self, offset: int, length: int) -> None:
        if not self.in_bounds(offset, length):
            raise OutOfBounds(offset, length, len(self.data))

    def read_bytes(self, offset: int, length: int) -> bytes:
        self.check(offset, length)
        return self.data[offset:offset + length]

    def unpack(self, fmt: str, offset: int) -> Tuple:
        """Unpack ``fmt`` (without byte-order prefix) at ``offset``."""
        fmt = self.endian + fmt
        size = struct.calcsize(fmt)
        self.check(offset, size)
        return struct.unpack_from(fmt, self.data, offset)

    def read_u8(self, offset: int) -> int:
        return self.unpack('B', offset)[0]

    def read_u16(self, offset: int) -> int:
        return self.unpack('H', offset)[0]

    def read_u32(self, offset: int) -> int:
        return self.unpack('I', offset)[0]

    def read_u64(self, offset: int) -> int:
        return self.unpack('Q', offset)[0]
