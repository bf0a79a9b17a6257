"""Alias/Autodesk Sketchbook multilayer TIFF decoding.

Sketchbook writes a normal TIFF whose root image is the flattened
composite. The layers live in sub-IFDs::

    root IFD
      Software  = "Alias MultiLayer TIFF V1.1"
      50784     = "<layer count>, <current layer>, <background ARGB>, <thumbnail count>"
      SubIFDs   -> layer IFD -> layer IFD -> ... (bottom-most first)
                   thumbnail IFD (NewSubfileType bit 0 set)

Each layer IFD carries its own 50784 string::

    "<opacity>, <fill colour>, <visible>, <locked>, <name image present>,
     <visibility channel count>, <mask layer count>"

plus XPosition/YPosition and, optionally, PageName. Layer pixels are BGRA,
premultiplied, and stored bottom-up.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from skora.errors import MalformedLayerRecord
from skora.models import LayerDescriptor, PixelLayout
from skora.tiff.parser import NEW_SUBFILE_TYPE_TAG, SOFTWARE_TAG, Ifd, TiffFile
from skora.tiff.sub_ifd import read_sub_ifd_chains

logger = logging.getLogger(__name__)

ALIAS_METADATA_TAG = 50784
ALIAS_SOFTWARE_PREFIX = 'Alias MultiLayer TIFF'

PAGE_NAME_TAG = 285
X_POSITION_TAG = 286
Y_POSITION_TAG = 287

ROOT_FIELDS = 4
LAYER_FIELDS = 7

ALIAS_LAYOUT = PixelLayout(swap_red_blue=True, premultiplied=True, bottom_up=True)


@dataclass(frozen=True)
class AliasMetadata:
    """The root IFD's 50784 payload."""
    layer_count: int
    current_layer: int
    background: Tuple[int, int, int, int]  # RGBA
    thumbnail_count: int


@dataclass
class AliasDocument:
    """Everything decoded from an Alias file except pixels."""
    metadata: AliasMetadata
    descriptors: List[LayerDescriptor]  # top-most first
    thumbnail: Optional[Ifd] = None


def is_alias_multilayer(tiff: TiffFile, ifd: Ifd) -> bool:
    """True if ``ifd`` is the root of an Alias multilayer file."""
    if ALIAS_METADATA_TAG not in ifd:
        return False
    software = tiff.tag_string(ifd, SOFTWARE_TAG, '')
    return software.startswith(ALIAS_SOFTWARE_PREFIX)


def _split_fields(text: str, expected: int, index: Optional[int]) -> List[str]:
    fields = [f.strip() for f in text.split(',')]
    if len(fields) < expected:
        raise MalformedLayerRecord(
            f'Alias metadata {text!r} has {len(fields)} fields, expected {expected}', index)
    return fields


def _parse_int(value: str, what: str, index: Optional[int]) -> int:
    try:
        return int(value)
    except ValueError:
        raise MalformedLayerRecord(f'{what} {value!r} is not an integer', index) from None


def parse_argb(value: str, index: Optional[int] = None) -> Tuple[int, int, int, int]:
    """Parse an 8-digit ARGB hex string into an RGBA tuple."""
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raw = b''
    if len(raw) != 4:
        raise MalformedLayerRecord(f'colour {value!r} is not 8 hex digits (ARGB)', index)
    a, r, g, b = raw
    return r, g, b, a


def parse_alias_metadata(text: str) -> AliasMetadata:
    """Parse the root IFD's CSV payload."""
    fields = _split_fields(text, ROOT_FIELDS, None)
    return AliasMetadata(
        layer_count=_parse_int(fields[0], 'layer count', None),
        current_layer=_parse_int(fields[1], 'current layer', None),
        background=parse_argb(fields[2]),
        thumbnail_count=_parse_int(fields[3], 'thumbnail count', None),
    )


def is_thumbnail_ifd(tiff: TiffFile, ifd: Ifd) -> bool:
    """Reduced-resolution images have bit 0 of NewSubfileType set."""
    return bool(tiff.tag_value(ifd, NEW_SUBFILE_TYPE_TAG, 0) & 1)


def decode_alias_layer(tiff: TiffFile, ifd: Ifd, position: int, z_order: int,
                       canvas_height: int) -> LayerDescriptor:
    """Decode one layer IFD. ``position`` counts from the bottom (0 = bottom)."""
    text = tiff.tag_string(ifd, ALIAS_METADATA_TAG)
    if text is None:
        raise MalformedLayerRecord(
            f'layer IFD at {ifd.offset} has no Alias metadata tag', position)
    fields = _split_fields(text, LAYER_FIELDS, position)

    try:
        opacity = float(fields[0])
    except ValueError:
        raise MalformedLayerRecord(f'opacity {fields[0]!r} is not a number', position) from None
    visible = _parse_int(fields[2], 'visible flag', position) != 0

    name = tiff.tag_string(ifd, PAGE_NAME_TAG) or f'Layer {position + 1}'

    warnings = []
    if math.isnan(opacity):
        warnings.append(f'layer {position} ({name!r}): opacity is NaN; using 1.0')
        opacity = 1.0
    opacity = min(max(opacity, 0.0), 1.0)

    # XPosition/YPosition measure from the bottom-left corner of the canvas
    x = int(round(tiff.tag_value(ifd, X_POSITION_TAG, 0.0)))
    y_from_bottom = int(round(tiff.tag_value(ifd, Y_POSITION_TAG, 0.0)))
    layer_height = tiff.tag_value(ifd, 257, 0)
    y = canvas_height - y_from_bottom - layer_height

    for message in warnings:
        logger.warning(message)
    logger.debug('Alias layer %d %r: opacity %.3f, visible %s, locked %s, at (%d, %d)',
                 position, name, opacity, visible, fields[3], x, y)

    return LayerDescriptor(
        name=name,
        ifd_offset=ifd.offset,
        x=x,
        y=y,
        opacity=opacity,
        visible=visible,
        z_order=z_order,
        layout=ALIAS_LAYOUT,
        warnings=tuple(warnings),
    )


def decode_alias_layers(tiff: TiffFile, root: Ifd, canvas_height: int,
                        background_layer: bool = True) -> AliasDocument:
    """Decode an Alias root IFD and its sub-IFD chains.

    The sub-IFD chains list the bottom-most layer first; the result is
    reversed once so that descriptors come out top-most first. With
    ``background_layer`` a solid "Background" layer filled with the
    document's background colour is appended at the bottom; it refers to
    the root IFD and carries ``fill_color`` instead of pixel data.
    """
    metadata = parse_alias_metadata(tiff.tag_string(root, ALIAS_METADATA_TAG, ''))
    logger.info('Alias document: %d layers, current %d, background %s, %d thumbnails',
                metadata.layer_count, metadata.current_layer, metadata.background,
                metadata.thumbnail_count)

    thumbnail = None
    layer_ifds = []
    for sub in read_sub_ifd_chains(tiff, root):
        if is_thumbnail_ifd(tiff, sub):
            if thumbnail is None:
                thumbnail = sub
            continue
        layer_ifds.append(sub)

    if len(layer_ifds) != metadata.layer_count:
        logger.warning('Alias metadata declares %d layers but %d layer IFDs were found',
                       metadata.layer_count, len(layer_ifds))

    count = len(layer_ifds)
    descriptors = [None] * count
    for position, ifd in enumerate(layer_ifds):
        z_order = count - 1 - position
        descriptors[z_order] = decode_alias_layer(tiff, ifd, position, z_order, canvas_height)

    if background_layer:
        descriptors.append(LayerDescriptor(
            name='Background',
            ifd_offset=root.offset,
            z_order=count,
            fill_color=metadata.background,
        ))

    return AliasDocument(metadata, descriptors, thumbnail)
