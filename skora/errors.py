"""Exception taxonomy for TIFF parsing, layer decoding, and ORA writing.

Structural problems (offsets, counts, sizes) are errors and abort the
conversion of the current file. Vendor-specific semantic oddities such as
unknown blend codes are recorded as warnings on the decoded layers instead.
"""

from typing import Optional


class SkoraError(Exception):
    """Base class for every error raised by skora."""


class InvalidHeader(SkoraError):
    """The buffer does not start with a TIFF or BigTIFF header."""


class OutOfBounds(SkoraError):
    """A read would extend past the end of the source buffer."""

    def __init__(self, offset: int, length: int, size: int):
        self.offset = offset
        self.length = length
        self.size = size
        super().__init__(
            f'Cannot read {length} bytes at offset {offset} '
            f'(buffer is {size} bytes)')


class MalformedIfd(SkoraError):
    """An IFD (or the image data it describes) violates its declared shape."""

    def __init__(self, message: str, ifd_offset: Optional[int] = None):
        self.ifd_offset = ifd_offset
        if ifd_offset is not None:
            message = f'IFD at offset {ifd_offset}: {message}'
        super().__init__(message)


class MalformedLayerRecord(SkoraError):
    """A private layer record (table entry or Alias CSV) is malformed."""

    def __init__(self, message: str, index: Optional[int] = None):
        self.index = index
        if index is not None:
            message = f'layer record {index}: {message}'
        super().__init__(message)


class UnsupportedFormat(SkoraError):
    """A recognised TIFF feature that this decoder does not implement."""

    def __init__(self, tag_id: int, value, what: str = 'value'):
        self.tag_id = tag_id
        self.value = value
        super().__init__(f'Unsupported {what} {value!r} (tag {tag_id})')


class UnsupportedCompression(UnsupportedFormat):
    def __init__(self, value, tag_id: int = 259):
        super().__init__(tag_id, value, what='compression')


class UnsupportedPhotometric(UnsupportedFormat):
    def __init__(self, value, tag_id: int = 262):
        super().__init__(tag_id, value, what='photometric interpretation')


class WriteError(SkoraError):
    """The Open Raster archive could not be produced."""


class WriteIOError(WriteError):
    """The destination could not be written."""


class WriteEncodeError(WriteError):
    """A layer (or the merged image) could not be encoded."""
