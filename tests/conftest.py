"""Shared test fixtures -- synthetic layered TIFF and Alias/Sketchbook file generators."""

import struct
import zlib

import imagecodecs
import numpy as np
import pytest

from skora.tiff.layers import LAYER_TABLE_TAG


# TIFF type -> (element size, struct format)
TYPE_INFO = {
    1: (1, 'B'), 2: (1, 's'), 3: (2, 'H'), 4: (4, 'I'), 5: (8, 'II'),
    7: (1, 's'), 8: (2, 'h'), 9: (4, 'i'), 10: (8, 'ii'), 11: (4, 'f'),
    12: (8, 'd'), 13: (4, 'I'), 16: (8, 'Q'), 18: (8, 'Q'),
}


def build_tiff(entries, endian='<', extra_data=None):
    """Build a minimal TIFF file in memory with given IFD entries.

    Args:
        entries: List of (tag_id, type_id, count, value_or_bytes) tuples.
            For inline values pass an int (packed by the entry's type).
            For raw values pass bytes; they go inline when they fit in
            4 bytes, out-of-line otherwise.
        endian: '<' for little-endian, '>' for big-endian.
        extra_data: Optional bytes to append after the IFD.

    Returns:
        bytes: Complete TIFF file content.
    """
    bo = b'II' if endian == '<' else b'MM'
    header = bo + struct.pack(endian + 'H', 42) + struct.pack(endian + 'I', 8)

    num_entries = len(entries)
    ifd_header = struct.pack(endian + 'H', num_entries)

    # Out-of-line data starts after: header(8) + ifd_count(2) + entries(12*n) + next_ifd(4)
    data_offset = 8 + 2 + 12 * num_entries + 4
    entry_bytes = b''
    data_bytes = b''

    for tag_id, type_id, count, value in entries:
        entry_bytes += struct.pack(endian + 'HHI', tag_id, type_id, count)
        if isinstance(value, bytes):
            if len(value) <= 4:
                entry_bytes += value.ljust(4, b'\x00')
            else:
                entry_bytes += struct.pack(endian + 'I', data_offset + len(data_bytes))
                data_bytes += value
        elif type_id == 3:
            entry_bytes += struct.pack(endian + 'HH', value, 0)
        else:
            entry_bytes += struct.pack(endian + 'I', value)

    next_ifd = struct.pack(endian + 'I', 0)

    result = header + ifd_header + entry_bytes + next_ifd + data_bytes
    if extra_data:
        result += extra_data
    return result


def build_bigtiff(entries, endian='<'):
    """Build a minimal BigTIFF file in memory.

    Same entry format as ``build_tiff``; inline values use the 8-byte slot.
    """
    bo = b'II' if endian == '<' else b'MM'
    ifd_offset = 16  # After 16-byte header

    num_entries = len(entries)
    # IFD: entry_count(8) + entries(20*n) + next_ifd(8)
    data_start = ifd_offset + 8 + 20 * num_entries + 8

    header = bo + struct.pack(endian + 'HHHQ', 43, 8, 0, ifd_offset)

    ifd_bytes = struct.pack(endian + 'Q', num_entries)
    data_bytes = b''

    for tag_id, type_id, count, value in entries:
        ifd_bytes += struct.pack(endian + 'HHQ', tag_id, type_id, count)
        if isinstance(value, bytes):
            if len(value) <= 8:
                ifd_bytes += value.ljust(8, b'\x00')
            else:
                ifd_bytes += struct.pack(endian + 'Q', data_start + len(data_bytes))
                data_bytes += value
        elif type_id == 3:
            ifd_bytes += struct.pack(endian + 'H6x', value)
        elif type_id == 4:
            ifd_bytes += struct.pack(endian + 'I4x', value)
        else:
            ifd_bytes += struct.pack(endian + 'Q', value)

    ifd_bytes += struct.pack(endian + 'Q', 0)  # next IFD = 0
    return header + ifd_bytes + data_bytes


# ---------------------------------------------------------------------------
# Layout-aware builder: named IFDs and blobs, offsets resolved at build time
# ---------------------------------------------------------------------------

class Ref:
    """Offset of a named IFD or blob, resolved when the file is built."""

    def __init__(self, name):
        self.name = name


def _encode_value(endian, dtype, value, offsets):
    """Return (count, payload bytes) for an entry value."""
    if callable(value):
        value = value(offsets)
    if isinstance(value, str):
        value = value.encode('utf-8') + b'\x00'
    if isinstance(value, (bytes, bytearray)):
        return len(value) // TYPE_INFO[dtype][0], bytes(value)
    if not isinstance(value, (list, tuple)):
        value = [value]
    values = [offsets[v.name] if isinstance(v, Ref) else v for v in value]
    fmt = TYPE_INFO[dtype][1]
    if dtype in (5, 10):
        flat = [n for pair in values for n in pair]
        return len(values), struct.pack(endian + fmt[0] * len(flat), *flat)
    return len(values), struct.pack(endian + fmt * len(values), *values)


class TiffBuilder:
    """Assemble a TIFF whose IFDs and data blobs reference each other.

    Entries are ``(tag, type, value)`` or ``(tag, type, count, value)``.
    A value is an int/float, a list of them, a ``(num, den)`` pair list for
    rationals, bytes, str (ASCII), a ``Ref``, or a callable taking the
    resolved ``{name: offset}`` map (it must return the same length for
    any map). Items are laid out in the order they are added, word
    aligned; the first IFD added is the root unless ``build(first=...)``.
    """

    def __init__(self, endian='<', bigtiff=False):
        self.endian = endian
        self.bigtiff = bigtiff
        self._items = []
        self._first = None

    @property
    def slot(self):
        return 8 if self.bigtiff else 4

    def blob(self, name, data):
        self._items.append((name, bytes(data), None))
        return Ref(name)

    def ifd(self, name, entries, next_ifd=None):
        self._items.append((name, list(entries), next_ifd))
        if self._first is None:
            self._first = name
        return Ref(name)

    def _ifd_bytes(self, start, entries, next_ifd, offsets):
        e = self.endian
        if self.bigtiff:
            count_fmt, head_fmt, off_fmt = 'Q', 'HHQ', 'Q'
        else:
            count_fmt, head_fmt, off_fmt = 'H', 'HHI', 'I'
        entry_size = 4 + 2 * self.slot
        data_pos = start + struct.calcsize(count_fmt) + len(entries) * entry_size + self.slot

        out = struct.pack(e + count_fmt, len(entries))
        data = b''
        for entry in entries:
            if len(entry) == 4:
                tag, dtype, count_override, value = entry
            else:
                (tag, dtype, value), count_override = entry, None
            count, payload = _encode_value(e, dtype, value, offsets)
            if count_override is not None:
                count = count_override
            out += struct.pack(e + head_fmt, tag, dtype, count)
            if len(payload) <= self.slot:
                out += payload.ljust(self.slot, b'\x00')
            else:
                out += struct.pack(e + off_fmt, data_pos + len(data))
                data += payload
                if len(data) % 2:
                    data += b'\x00'

        nxt = offsets[next_ifd.name] if isinstance(next_ifd, Ref) else (next_ifd or 0)
        out += struct.pack(e + off_fmt, nxt)
        return out + data

    def _chunk(self, start, body, next_ifd, offsets):
        if isinstance(body, bytes):
            return body
        return self._ifd_bytes(start, body, next_ifd, offsets)

    def build(self, first=None):
        header_size = 16 if self.bigtiff else 8
        dummy = {name: 0 for name, _, _ in self._items}

        offsets = {}
        pos = header_size
        for name, body, next_ifd in self._items:
            offsets[name] = pos
            size = len(self._chunk(pos, body, next_ifd, dummy))
            pos += size + (size % 2)

        e = self.endian
        bo = b'II' if e == '<' else b'MM'
        root = offsets[first or self._first]
        if self.bigtiff:
            out = bytearray(bo + struct.pack(e + 'HHHQ', 43, 8, 0, root))
        else:
            out = bytearray(bo + struct.pack(e + 'HI', 42, root))

        for name, body, next_ifd in self._items:
            out += self._chunk(offsets[name], body, next_ifd, offsets)
            if len(out) % 2:
                out += b'\x00'
        self.offsets = offsets
        return bytes(out)


# ---------------------------------------------------------------------------
# Pixel data helpers
# ---------------------------------------------------------------------------

def compress(data, compression):
    if compression == 1:
        return data
    if compression == 32773:
        return imagecodecs.packbits_encode(data)
    if compression == 5:
        return imagecodecs.lzw_encode(data)
    if compression in (8, 32946):
        return zlib.compress(data)
    raise ValueError(f'no test encoder for compression {compression}')


def apply_predictor(arr):
    """Horizontal differencing along each row (wrapping)."""
    out = arr.copy()
    out[:, 1:] = arr[:, 1:] - arr[:, :-1]
    return out


def pack_rows(arr, bits, endian='<'):
    """Serialise (h, w, spp) samples, rows padded to a byte boundary."""
    if bits == 16:
        return arr.astype(endian + 'u2').tobytes()
    if bits == 8:
        return arr.astype(np.uint8).tobytes()
    h, w = arr.shape[:2]
    values = arr[..., 0].astype(np.uint8)
    planes = (values[..., None] >> np.arange(bits - 1, -1, -1).astype(np.uint8)) & 1
    return np.packbits(planes.reshape(h, w * bits), axis=1).tobytes()


def add_image(builder, name, pixels, compression=1, rows_per_strip=None,
              photometric=None, extra_samples=None, predictor=1, bits=None,
              tile=None, extra_entries=(), next_ifd=None):
    """Add an image IFD (plus its strip or tile blobs) to ``builder``."""
    arr = pixels if pixels.ndim == 3 else pixels[..., None]
    h, w, spp = arr.shape
    if bits is None:
        bits = 16 if arr.dtype == np.uint16 else 8
    if predictor == 2:
        arr = apply_predictor(arr)
    if photometric is None:
        photometric = 2 if spp >= 3 else 1

    entries = [
        (256, 4, w), (257, 4, h), (258, 3, [bits] * spp), (259, 3, compression),
        (262, 3, photometric), (277, 3, spp),
    ]
    segments = []
    if tile is not None:
        tw, th = tile
        padded = np.zeros((-(-h // th) * th, -(-w // tw) * tw, spp), dtype=arr.dtype)
        padded[:h, :w] = arr
        for ty in range(0, padded.shape[0], th):
            for tx in range(0, padded.shape[1], tw):
                segments.append(pack_rows(padded[ty:ty + th, tx:tx + tw], bits, builder.endian))
    else:
        rps = rows_per_strip or h
        for y in range(0, h, rps):
            segments.append(pack_rows(arr[y:y + rps], bits, builder.endian))
        entries.append((278, 4, rps))

    encoded = [compress(seg, compression) for seg in segments]
    refs = [builder.blob(f'{name}.seg{i}', data) for i, data in enumerate(encoded)]
    counts = [len(data) for data in encoded]
    if tile is not None:
        entries += [(322, 4, tile[0]), (323, 4, tile[1]), (324, 4, refs), (325, 4, counts)]
    else:
        entries += [(273, 4, refs), (279, 4, counts)]
    if predictor != 1:
        entries.append((317, 3, predictor))
    if extra_samples is not None:
        entries.append((338, 3, list(extra_samples)))
    entries.extend(extra_entries)
    entries.sort(key=lambda entry: entry[0])
    return builder.ifd(name, entries, next_ifd)


def checkerboard(height, width, color_a, color_b, cell=2):
    """RGBA checkerboard of ``cell``-pixel squares."""
    yy, xx = np.mgrid[0:height, 0:width]
    mask = ((yy // cell + xx // cell) % 2).astype(bool)
    img = np.empty((height, width, 4), dtype=np.uint8)
    img[~mask] = color_a
    img[mask] = color_b
    return img


def solid(height, width, rgba):
    img = np.empty((height, width, 4), dtype=np.uint8)
    img[...] = rgba
    return img


# ---------------------------------------------------------------------------
# Layered file assemblers
# ---------------------------------------------------------------------------

def layer_record(ifd_offset, name='', opacity=1.0, visible=True, blend=0, x=0, y=0,
                 endian='<', name_field=None):
    """Pack one 84-byte layer table record."""
    field = name_field if name_field is not None else name.encode('utf-8') + b'\x00'
    field = field.ljust(64, b'\x00')
    return struct.pack(endian + 'I64sfBBHii', ifd_offset, field, opacity,
                       1 if visible else 0, blend, 0, x, y)


def layer(name, pixels, x=0, y=0, opacity=1.0, visible=True, blend=0):
    return {'name': name, 'pixels': pixels, 'x': x, 'y': y,
            'opacity': opacity, 'visible': visible, 'blend': blend}


def build_layered_tiff(layers, width, height, endian='<', compression=1,
                       thumbnail=None, bigtiff=False, table_tag=LAYER_TABLE_TAG,
                       rows_per_strip=None):
    """Build a TIFF whose root carries a layer table for ``layers`` (top-most first).

    Layer IFDs are only reachable through the table. A ``thumbnail`` is
    chained after the root as a reduced-resolution image.
    """
    builder = TiffBuilder(endian, bigtiff)

    def table(offsets):
        return b''.join(
            layer_record(offsets[f'layer{i}'], item['name'], item['opacity'],
                         item['visible'], item['blend'], item['x'], item['y'], endian)
            for i, item in enumerate(layers))

    add_image(builder, 'root', np.zeros((height, width, 4), dtype=np.uint8),
              compression=compression, extra_samples=(2,),
              extra_entries=[(table_tag, 7, table)],
              next_ifd=Ref('thumb') if thumbnail is not None else None)
    for i, item in enumerate(layers):
        add_image(builder, f'layer{i}', item['pixels'], compression=compression,
                  extra_samples=(2,), rows_per_strip=rows_per_strip)
    if thumbnail is not None:
        add_image(builder, 'thumb', thumbnail, extra_samples=(2,),
                  extra_entries=[(254, 4, 1)])
    return builder.build()


def to_alias_storage(rgba):
    """Premultiply, swap to BGRA and flip bottom-up, as Sketchbook stores layers."""
    alpha = rgba[..., 3:4].astype(np.uint16)
    stored = rgba.copy()
    stored[..., :3] = (rgba[..., :3].astype(np.uint16) * alpha // 255).astype(np.uint8)
    stored = stored[..., [2, 1, 0, 3]]
    return np.ascontiguousarray(stored[::-1])


def alias_layer(name, pixels, x=0, y=0, opacity=1.0, visible=True, stored=None):
    """Alias layer description; ``y`` counts from the bottom edge of the canvas."""
    return {'name': name, 'pixels': pixels, 'x': x, 'y': y, 'opacity': opacity,
            'visible': visible, 'stored': stored}


def build_alias_tiff(layers, width, height, background='ffffffff', endian='<',
                     thumbnail=None, current_layer=0):
    """Build an Alias MultiLayer TIFF; ``layers`` are listed bottom-most first."""
    builder = TiffBuilder(endian)
    sub_ifds = []
    if layers:
        sub_ifds.append(Ref('alias0'))
    if thumbnail is not None:
        sub_ifds.append(Ref('thumb'))

    root_entries = [
        (305, 2, 'Alias MultiLayer TIFF V1.1'),
        (50784, 2, f'{len(layers)}, {current_layer}, {background}, '
                   f'{1 if thumbnail is not None else 0}'),
    ]
    if sub_ifds:
        root_entries.append((330, 4, sub_ifds))
    add_image(builder, 'root', np.zeros((height, width, 4), dtype=np.uint8),
              extra_samples=(2,), extra_entries=root_entries)

    for i, item in enumerate(layers):
        stored = item['stored'] if item['stored'] is not None else to_alias_storage(item['pixels'])
        entries = [
            (50784, 2, f"{item['opacity']}, 0, {1 if item['visible'] else 0}, 0, 0, 0, 0"),
            (286, 5, [(item['x'], 1)]),
            (287, 5, [(item['y'], 1)]),
        ]
        if item['name']:
            entries.append((285, 2, item['name']))
        nxt = Ref(f'alias{i + 1}') if i + 1 < len(layers) else None
        add_image(builder, f'alias{i}', stored, extra_samples=(1,),
                  extra_entries=entries, next_ifd=nxt)

    if thumbnail is not None:
        add_image(builder, 'thumb', thumbnail, extra_samples=(2,),
                  extra_entries=[(254, 4, 1)])
    return builder.build()


# ---------------------------------------------------------------------------
# File fixtures
# ---------------------------------------------------------------------------

RED = (255, 0, 0, 255)
GREEN = (0, 255, 0, 255)
BLUE = (0, 0, 255, 255)
CLEAR = (0, 0, 0, 0)


@pytest.fixture
def three_layers():
    """Three layers, top-most first, with distinct attributes."""
    return [
        layer('Ink', checkerboard(4, 6, BLUE, CLEAR), x=-10, y=3, opacity=0.5),
        layer('Colour', checkerboard(5, 5, GREEN, RED, cell=1), x=2, y=2, visible=False, blend=1),
        layer('Paper', solid(8, 12, (250, 240, 230, 255))),
    ]


@pytest.fixture
def tmp_layered_tiff(tmp_path, three_layers):
    filepath = tmp_path / 'drawing.tif'
    filepath.write_bytes(build_layered_tiff(three_layers, 12, 8))
    return filepath


@pytest.fixture
def tmp_alias_tiff(tmp_path):
    filepath = tmp_path / 'sketch.tiff'
    layers = [
        alias_layer('Sketch', checkerboard(4, 4, RED, CLEAR), x=1, y=2),
        alias_layer('', solid(2, 3, GREEN), opacity=0.25),
    ]
    filepath.write_bytes(build_alias_tiff(layers, 8, 6, background='ff102030'))
    return filepath


@pytest.fixture
def tmp_flat_tiff(tmp_path):
    builder = TiffBuilder()
    add_image(builder, 'root', checkerboard(3, 5, RED, BLUE)[..., :3])
    filepath = tmp_path / 'flat.tif'
    filepath.write_bytes(builder.build())
    return filepath
