"""Decoding of the fixed-record private layer table.

The root IFD carries a private tag (``LAYER_TABLE_TAG``, type BYTE or
UNDEFINED) whose value is a packed array of 84-byte records, one per
layer, in the file's byte order::

    u32   offset of the layer's own IFD
    64s   name, UTF-8, NUL-terminated, NUL/space padded
    f32   opacity (clamped to 0..1)
    u8    visible flag (non-zero = visible)
    u8    blend mode code (see BlendModeTable)
    u16   reserved
    i32   x offset on the canvas (may be negative)
    i32   y offset on the canvas (may be negative)

The first record is the top-most layer. Record order is the stacking order
and is never re-sorted.
"""

import logging
import math
import struct
from typing import Dict, List, Optional, Tuple

from skora.errors import MalformedLayerRecord
from skora.models import BlendMode, LayerDescriptor
from skora.tiff.parser import Ifd, TiffFile, read_tag_value_bytes

logger = logging.getLogger(__name__)

LAYER_TABLE_TAG = 65000
LAYER_NAME_SIZE = 64

_RECORD_FORMAT = 'I64sfBBHii'
LAYER_RECORD_SIZE = struct.calcsize('<' + _RECORD_FORMAT)

# Blend codes observed so far. Extend through BlendModeTable.add() or the
# "blend_modes" config key rather than editing the decoder.
DEFAULT_BLEND_CODES: Dict[int, BlendMode] = {
    0: BlendMode.NORMAL,
    1: BlendMode.MULTIPLY,
    2: BlendMode.SCREEN,
    3: BlendMode.OVERLAY,
    4: BlendMode.DARKEN,
    5: BlendMode.LIGHTEN,
    6: BlendMode.COLOR_DODGE,
    7: BlendMode.COLOR_BURN,
    8: BlendMode.HARD_LIGHT,
    9: BlendMode.SOFT_LIGHT,
    10: BlendMode.DIFFERENCE,
    11: BlendMode.EXCLUSION,
    12: BlendMode.ADDITION,
}


class BlendModeTable:
    """Extensible mapping from vendor blend codes to ``BlendMode``."""

    def __init__(self, codes: Optional[Dict[int, BlendMode]] = None):
        self._codes = dict(DEFAULT_BLEND_CODES)
        if codes:
            self._codes.update(codes)

    def add(self, code: int, mode: BlendMode) -> None:
        self._codes[int(code)] = mode

    def __contains__(self, code: int) -> bool:
        return code in self._codes

    def __len__(self) -> int:
        return len(self._codes)

    def resolve(self, code: int) -> Tuple[BlendMode, Optional[str]]:
        """Map a code to a mode. Unknown codes give NORMAL plus a warning."""
        mode = self._codes.get(code)
        if mode is not None:
            return mode, None
        return BlendMode.NORMAL, f'unknown blend mode code {code:#04x}; using normal'


def decode_layer_name(field: bytes, index: Optional[int] = None) -> str:
    """Decode a NUL-terminated, padded name field.

    The terminator must fall inside the field, so a 64-byte field holds at
    most 63 bytes of name. A field with no NUL is a MalformedLayerRecord.
    """
    end = field.find(b'\x00')
    if end < 0:
        raise MalformedLayerRecord(
            f'name is not terminated within its {len(field)}-byte field', index)
    try:
        name = field[:end].decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedLayerRecord(f'name is not valid UTF-8 ({e})', index) from e
    return name.rstrip(' ')


def decode_layer_record(raw: bytes, endian: str, index: int,
                        blend_table: Optional[BlendModeTable] = None) -> LayerDescriptor:
    """Decode one packed record; ``index`` becomes the descriptor's z_order."""
    if len(raw) != LAYER_RECORD_SIZE:
        raise MalformedLayerRecord(
            f'expected {LAYER_RECORD_SIZE} bytes, got {len(raw)}', index)
    if blend_table is None:
        blend_table = BlendModeTable()

    (ifd_offset, name_field, opacity, visible, blend_code, _reserved,
     x, y) = struct.unpack(endian + _RECORD_FORMAT, raw)

    warnings = []
    name = decode_layer_name(name_field, index)

    if math.isnan(opacity):
        warnings.append(f'layer {index} ({name!r}): opacity is NaN; using 1.0')
        opacity = 1.0
    opacity = min(max(float(opacity), 0.0), 1.0)

    blend_mode, blend_warning = blend_table.resolve(blend_code)
    if blend_warning:
        warnings.append(f'layer {index} ({name!r}): {blend_warning}')

    for message in warnings:
        logger.warning(message)

    return LayerDescriptor(
        name=name,
        ifd_offset=ifd_offset,
        x=x,
        y=y,
        opacity=opacity,
        visible=bool(visible),
        blend_mode=blend_mode,
        blend_code=blend_code,
        z_order=index,
        warnings=tuple(warnings),
    )


def has_layer_table(ifd: Ifd, tag_id: int = LAYER_TABLE_TAG) -> bool:
    return tag_id in ifd


def decode_layer_table(tiff: TiffFile, ifd: Ifd,
                       tag_id: int = LAYER_TABLE_TAG,
                       blend_table: Optional[BlendModeTable] = None) -> List[LayerDescriptor]:
    """Decode the private layer table of ``ifd`` into ordered descriptors.

    The record count comes from the tag's declared byte count. The referenced
    layer IFDs are not read here; their offsets stay opaque until the pixel
    decoder resolves them.
    """
    entry = ifd.get(tag_id)
    if entry is None:
        return []
    if entry.dtype not in (1, 7):  # BYTE, UNDEFINED
        raise MalformedLayerRecord(
            f'layer table tag {tag_id} has data type {entry.dtype}, '
            f'expected BYTE or UNDEFINED')
    if entry.count % LAYER_RECORD_SIZE:
        raise MalformedLayerRecord(
            f'layer table is {entry.count} bytes, not a multiple of the '
            f'{LAYER_RECORD_SIZE}-byte record size')

    payload = read_tag_value_bytes(tiff.reader, entry)
    descriptors = []
    for index in range(entry.count // LAYER_RECORD_SIZE):
        start = index * LAYER_RECORD_SIZE
        raw = payload[start:start + LAYER_RECORD_SIZE]
        descriptors.append(decode_layer_record(raw, tiff.endian, index, blend_table))

    logger.debug('Decoded %d layer records from tag %d', len(descriptors), tag_id)
    return descriptors
