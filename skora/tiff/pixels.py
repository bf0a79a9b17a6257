"""Strip/tile pixel decoding into canonical RGBA.

Every supported image variant (grayscale, RGB, palette; 1 to 16 bits per
sample; with or without alpha) is normalised here into one representation:
an unpremultiplied ``uint8`` RGBA array. Nothing downstream branches on the
source format.

Decompression uses imagecodecs; sample unpacking, predictor reversal and
colour conversion use numpy.
"""

import logging
from typing import Callable, Dict, Iterator, NamedTuple, Optional, Tuple

import imagecodecs
import numpy as np

from skora.errors import (
    MalformedIfd,
    UnsupportedCompression,
    UnsupportedFormat,
    UnsupportedPhotometric,
)
from skora.models import DecodedImage, PixelLayout
from skora.tiff.parser import Ifd, TiffFile

logger = logging.getLogger(__name__)

# Compression id -> decompressor (None = stored uncompressed)
DECOMPRESSORS: Dict[int, Optional[Callable[[bytes], bytes]]] = {
    1: None,
    5: imagecodecs.lzw_decode,
    8: imagecodecs.zlib_decode,        # Adobe deflate
    32946: imagecodecs.zlib_decode,    # old-style deflate
    32773: imagecodecs.packbits_decode,
}

PHOTOMETRIC_MINISWHITE = 0
PHOTOMETRIC_MINISBLACK = 1
PHOTOMETRIC_RGB = 2
PHOTOMETRIC_PALETTE = 3

SUPPORTED_PHOTOMETRIC = (PHOTOMETRIC_MINISWHITE, PHOTOMETRIC_MINISBLACK,
                         PHOTOMETRIC_RGB, PHOTOMETRIC_PALETTE)

# ExtraSamples values
EXTRA_UNSPECIFIED = 0
EXTRA_ASSOCIATED_ALPHA = 1
EXTRA_UNASSOCIATED_ALPHA = 2


class Segment(NamedTuple):
    """One strip or tile: where it lands and where its bytes are."""
    x: int
    y: int
    width: int
    height: int
    offset: int
    byte_count: int


def is_image_ifd(ifd: Ifd) -> bool:
    """True if the IFD carries dimensions and strip or tile data."""
    return 256 in ifd and 257 in ifd and (273 in ifd or 324 in ifd)


def _required(tiff: TiffFile, ifd: Ifd, tag_id: int, name: str):
    value = tiff.tag_value(ifd, tag_id)
    if value is None:
        raise MalformedIfd(f'missing required tag {name} ({tag_id})', ifd.offset)
    return value


def iter_segments(tiff: TiffFile, ifd: Ifd, width: int, height: int) -> Iterator[Segment]:
    """Yield the strips or tiles of an image with their canvas positions.

    Strips cover full rows (the last one may be short); tiles are always
    full-size and are cropped when written.
    """
    if 322 in ifd:  # TileWidth
        tile_w = _required(tiff, ifd, 322, 'TileWidth')
        tile_h = _required(tiff, ifd, 323, 'TileLength')
        offsets = tiff.tag_values(ifd, 324) or ()
        counts = tiff.tag_values(ifd, 325) or ()
        if tile_w <= 0 or tile_h <= 0:
            raise MalformedIfd(f'invalid tile size {tile_w}x{tile_h}', ifd.offset)
        across = -(-width // tile_w)
        down = -(-height // tile_h)
        if len(offsets) < across * down or len(counts) != len(offsets):
            raise MalformedIfd(
                f'{len(offsets)} tile offsets / {len(counts)} byte counts for '
                f'a {across}x{down} tile grid', ifd.offset)
        for i in range(across * down):
            row, col = divmod(i, across)
            yield Segment(col * tile_w, row * tile_h, tile_w, tile_h,
                          offsets[i], counts[i])
        return

    rows_per_strip = min(tiff.tag_value(ifd, 278, height), height)  # RowsPerStrip
    offsets = tiff.tag_values(ifd, 273)   # StripOffsets
    counts = tiff.tag_values(ifd, 279)    # StripByteCounts
    if offsets is None or counts is None:
        raise MalformedIfd('missing StripOffsets or StripByteCounts', ifd.offset)
    if rows_per_strip <= 0:
        raise MalformedIfd(f'invalid RowsPerStrip {rows_per_strip}', ifd.offset)
    strips = -(-height // rows_per_strip)
    if len(offsets) < strips or len(counts) != len(offsets):
        raise MalformedIfd(
            f'{len(offsets)} strip offsets / {len(counts)} byte counts for '
            f'{strips} strips', ifd.offset)
    for i in range(strips):
        y = i * rows_per_strip
        yield Segment(0, y, width, min(rows_per_strip, height - y),
                      offsets[i], counts[i])


def decode_segment(tiff: TiffFile, ifd: Ifd, segment: Segment, spp: int, bps: int,
                   decompress: Optional[Callable[[bytes], bytes]],
                   predictor: int) -> np.ndarray:
    """Decode one strip/tile into a (height, width, spp) sample array."""
    raw = tiff.reader.read_bytes(segment.offset, segment.byte_count)
    data = decompress(raw) if decompress is not None else raw

    row_bytes = (segment.width * spp * bps + 7) // 8
    expected = row_bytes * segment.height
    if len(data) < expected:
        raise MalformedIfd(
            f'segment at offset {segment.offset} decoded to {len(data)} bytes, '
            f'expected {expected}', ifd.offset)

    shape = (segment.height, segment.width, spp)
    if bps == 8:
        arr = np.frombuffer(data, dtype=np.uint8, count=expected).reshape(shape)
    elif bps == 16:
        dtype = np.dtype(tiff.endian + 'u2')
        arr = np.frombuffer(data, dtype=dtype, count=expected // 2)
        arr = arr.reshape(shape).astype(np.uint16)
    else:
        # Sub-byte samples, MSB first, rows padded to a byte boundary
        rows = np.frombuffer(data, dtype=np.uint8, count=expected)
        bits = np.unpackbits(rows.reshape(segment.height, row_bytes), axis=1)
        bits = bits[:, :segment.width * bps].reshape(segment.height, segment.width, bps)
        weights = (1 << np.arange(bps - 1, -1, -1)).astype(np.uint8)
        arr = (bits * weights).sum(axis=2, dtype=np.uint8).reshape(shape)

    if predictor == 2:
        # Horizontal differencing restarts at the first pixel of every row
        arr = np.cumsum(arr, axis=1, dtype=arr.dtype)
    return arr


def unpremultiply(rgba: np.ndarray) -> np.ndarray:
    """Divide colour by alpha. Fully transparent pixels get zero colour."""
    alpha = rgba[..., 3:4].astype(np.float64)
    color = rgba[..., :3].astype(np.float64)
    with np.errstate(divide='ignore', invalid='ignore'):
        straight = np.where(alpha > 0, color * 255.0 / alpha, 0.0)
    out = rgba.copy()
    out[..., :3] = np.clip(np.floor(straight + 0.5), 0, 255).astype(np.uint8)
    return out


def _to_8bit(samples: np.ndarray, bps: int) -> np.ndarray:
    if bps == 16:
        return (samples >> 8).astype(np.uint8)
    if bps < 8:
        scale = (1 << bps) - 1
        return (samples.astype(np.uint16) * 255 // scale).astype(np.uint8)
    return samples


def _to_rgba(tiff: TiffFile, ifd: Ifd, samples: np.ndarray, photometric: int,
             bps: int, spp: int, layout: PixelLayout) -> Tuple[np.ndarray, bool]:
    height, width = samples.shape[:2]
    rgba = np.empty((height, width, 4), dtype=np.uint8)
    alpha_index = None

    if photometric in (PHOTOMETRIC_MINISWHITE, PHOTOMETRIC_MINISBLACK):
        scaled = _to_8bit(samples, bps)
        gray = scaled[..., 0]
        if photometric == PHOTOMETRIC_MINISWHITE:
            gray = 255 - gray
        rgba[..., :3] = gray[..., None]
        if spp >= 2:
            alpha_index = 1
    elif photometric == PHOTOMETRIC_RGB:
        if spp < 3:
            raise MalformedIfd(f'RGB image with {spp} samples per pixel', ifd.offset)
        scaled = _to_8bit(samples, bps)
        rgba[..., :3] = scaled[..., :3]
        if spp >= 4:
            alpha_index = 3
    else:
        if spp != 1:
            raise UnsupportedFormat(277, spp, 'samples per pixel for palette image')
        colormap = tiff.tag_values(ifd, 320)  # ColorMap
        entries = 1 << bps
        if colormap is None or len(colormap) != 3 * entries:
            raise MalformedIfd('palette image without a valid ColorMap', ifd.offset)
        lut = (np.asarray(colormap, dtype=np.uint16).reshape(3, entries) >> 8)
        lut = lut.astype(np.uint8).T
        rgba[..., :3] = lut[samples[..., 0]]
        scaled = None

    if alpha_index is None:
        rgba[..., 3] = 255
        return rgba, False

    extra = tiff.tag_values(ifd, 338, ())  # ExtraSamples
    kind = extra[0] if extra else EXTRA_UNASSOCIATED_ALPHA
    if kind == EXTRA_UNSPECIFIED:
        rgba[..., 3] = 255
        return rgba, False

    rgba[..., 3] = scaled[..., alpha_index]
    if kind == EXTRA_ASSOCIATED_ALPHA or layout.premultiplied:
        rgba = unpremultiply(rgba)
    return rgba, True


def decode_image(tiff: TiffFile, ifd: Ifd, layout: Optional[PixelLayout] = None) -> DecodedImage:
    """Decode the image described by ``ifd`` into canonical RGBA.

    ``layout`` describes vendor storage quirks (BGRA order, premultiplied
    colour, bottom-up rows) that are undone after colour conversion.
    """
    if layout is None:
        layout = PixelLayout()

    width = _required(tiff, ifd, 256, 'ImageWidth')
    height = _required(tiff, ifd, 257, 'ImageLength')
    if width <= 0 or height <= 0:
        raise MalformedIfd(f'image has zero size ({width}x{height})', ifd.offset)

    spp = tiff.tag_value(ifd, 277, 1)
    bps_values = tiff.tag_values(ifd, 258, (1,))
    bps = bps_values[0]
    if any(v != bps for v in bps_values):
        raise UnsupportedFormat(258, bps_values, 'mixed bits per sample')
    if bps not in (1, 2, 4, 8, 16):
        raise UnsupportedFormat(258, bps, 'bits per sample')
    if bps < 8 and spp != 1:
        raise UnsupportedFormat(258, bps, f'bits per sample with {spp} samples per pixel')

    photometric = tiff.tag_value(ifd, 262)
    if photometric is None:
        photometric = PHOTOMETRIC_RGB if spp >= 3 else PHOTOMETRIC_MINISBLACK
    if photometric not in SUPPORTED_PHOTOMETRIC:
        raise UnsupportedPhotometric(photometric)

    compression = tiff.tag_value(ifd, 259, 1)
    if compression not in DECOMPRESSORS:
        raise UnsupportedCompression(compression)

    predictor = tiff.tag_value(ifd, 317, 1)
    if predictor not in (1, 2) or (predictor == 2 and bps < 8):
        raise UnsupportedFormat(317, predictor, 'predictor')

    sample_formats = tiff.tag_values(ifd, 339, (1,))
    if any(v != 1 for v in sample_formats):
        raise UnsupportedFormat(339, sample_formats, 'sample format')
    planar = tiff.tag_value(ifd, 284, 1)
    if planar != 1 and spp > 1:
        raise UnsupportedFormat(284, planar, 'planar configuration')
    fill_order = tiff.tag_value(ifd, 266, 1)
    if fill_order != 1:
        raise UnsupportedFormat(266, fill_order, 'fill order')

    decompress = DECOMPRESSORS[compression]
    samples = np.zeros((height, width, spp), dtype=np.uint16 if bps == 16 else np.uint8)

    # Segments cover disjoint regions, so processing order is irrelevant
    for segment in iter_segments(tiff, ifd, width, height):
        arr = decode_segment(tiff, ifd, segment, spp, bps, decompress, predictor)
        h = min(segment.height, height - segment.y)
        w = min(segment.width, width - segment.x)
        samples[segment.y:segment.y + h, segment.x:segment.x + w] = arr[:h, :w]

    rgba, has_alpha = _to_rgba(tiff, ifd, samples, photometric, bps, spp, layout)

    if layout.swap_red_blue:
        rgba = rgba[..., [2, 1, 0, 3]]
    if layout.bottom_up:
        rgba = rgba[::-1]

    logger.debug('Decoded IFD at %d: %dx%d, %d spp, %d bps, compression %d',
                 ifd.offset, width, height, spp, bps, compression)
    return DecodedImage(width, height, np.ascontiguousarray(rgba), has_alpha)
