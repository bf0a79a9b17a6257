"""Tests for skora.tiff.layers -- fixed-record layer table decoding."""

import struct

import pytest

from skora.errors import MalformedLayerRecord
from skora.models import BlendMode
from skora.tiff import TiffFile
from skora.tiff.layers import (
    LAYER_RECORD_SIZE,
    LAYER_TABLE_TAG,
    BlendModeTable,
    decode_layer_name,
    decode_layer_record,
    decode_layer_table,
    has_layer_table,
)
from tests.conftest import TiffBuilder, layer_record


def _table_tiff(payload, dtype=7, endian='<'):
    builder = TiffBuilder(endian)
    builder.ifd('root', [(256, 4, 1), (257, 4, 1), (LAYER_TABLE_TAG, dtype, payload)])
    tiff = TiffFile(builder.build())
    return tiff, tiff.first_ifd()


class TestRecordLayout:

    def test_record_size(self):
        assert LAYER_RECORD_SIZE == 84
        assert len(layer_record(0, 'x')) == 84


class TestDecodeLayerName:

    def test_trims_padding(self):
        assert decode_layer_name(b'Sky  \x00\x00\x00') == 'Sky'

    def test_stops_at_first_nul(self):
        assert decode_layer_name(b'ab\x00cd\x00') == 'ab'

    def test_utf8(self):
        field = 'Ébauche 草稿'.encode('utf-8') + b'\x00'
        assert decode_layer_name(field.ljust(64, b'\x00')) == 'Ébauche 草稿'

    def test_longest_name_fits(self):
        assert decode_layer_name(b'x' * 63 + b'\x00') == 'x' * 63

    def test_unterminated_name_rejected(self):
        with pytest.raises(MalformedLayerRecord, match='not terminated'):
            decode_layer_name(b'x' * 64, index=3)

    def test_invalid_utf8_rejected(self):
        with pytest.raises(MalformedLayerRecord, match='UTF-8') as exc:
            decode_layer_name(b'\xff\xfe\x00', index=1)
        assert exc.value.index == 1


class TestDecodeLayerRecord:

    def test_all_fields(self):
        raw = layer_record(1234, 'Shading', opacity=0.25, visible=False, blend=2, x=-10, y=7)
        desc = decode_layer_record(raw, '<', 5)
        assert desc.name == 'Shading'
        assert desc.ifd_offset == 1234
        assert desc.opacity == 0.25
        assert desc.visible is False
        assert desc.blend_mode == BlendMode.SCREEN
        assert desc.blend_code == 2
        assert (desc.x, desc.y) == (-10, 7)
        assert desc.z_order == 5
        assert desc.warnings == ()

    def test_big_endian(self):
        raw = layer_record(99, 'BE', opacity=0.5, x=-3, y=4, endian='>')
        desc = decode_layer_record(raw, '>', 0)
        assert desc.ifd_offset == 99
        assert desc.opacity == 0.5
        assert (desc.x, desc.y) == (-3, 4)

    def test_opacity_clamped(self):
        assert decode_layer_record(layer_record(0, 'a', opacity=1.5), '<', 0).opacity == 1.0
        assert decode_layer_record(layer_record(0, 'a', opacity=-0.5), '<', 0).opacity == 0.0

    def test_nan_opacity_warns(self, caplog):
        raw = layer_record(0, 'nan', opacity=float('nan'))
        with caplog.at_level('WARNING'):
            desc = decode_layer_record(raw, '<', 0)
        assert desc.opacity == 1.0
        assert len(desc.warnings) == 1
        assert 'NaN' in desc.warnings[0]

    def test_any_nonzero_visible_flag(self):
        raw = bytearray(layer_record(0, 'v', visible=False))
        raw[72] = 7  # visible byte follows offset(4) + name(64) + opacity(4)
        assert decode_layer_record(bytes(raw), '<', 0).visible is True

    def test_unknown_blend_code(self, caplog):
        raw = layer_record(0, 'odd', blend=0xFF)
        with caplog.at_level('WARNING'):
            desc = decode_layer_record(raw, '<', 2)
        assert desc.blend_mode == BlendMode.NORMAL
        assert desc.blend_code == 0xFF
        assert len(desc.warnings) == 1
        assert '0xff' in desc.warnings[0]
        assert 'unknown blend mode' in caplog.text

    def test_wrong_length(self):
        with pytest.raises(MalformedLayerRecord):
            decode_layer_record(b'\x00' * 83, '<', 0)

    def test_name_filling_whole_field(self):
        raw = layer_record(0, name_field=b'n' * 64)
        with pytest.raises(MalformedLayerRecord, match='record 4'):
            decode_layer_record(raw, '<', 4)


class TestBlendModeTable:

    def test_defaults(self):
        table = BlendModeTable()
        assert len(table) == 13
        assert table.resolve(0) == (BlendMode.NORMAL, None)
        assert table.resolve(1) == (BlendMode.MULTIPLY, None)
        assert table.resolve(12) == (BlendMode.ADDITION, None)

    def test_add_code(self):
        table = BlendModeTable()
        table.add(40, BlendMode.DIFFERENCE)
        assert 40 in table
        assert table.resolve(40) == (BlendMode.DIFFERENCE, None)

    def test_constructor_overrides(self):
        table = BlendModeTable({1: BlendMode.SCREEN, 99: BlendMode.DARKEN})
        assert table.resolve(1)[0] == BlendMode.SCREEN
        assert table.resolve(99)[0] == BlendMode.DARKEN

    def test_unknown_code(self):
        mode, warning = BlendModeTable().resolve(77)
        assert mode == BlendMode.NORMAL
        assert '0x4d' in warning

    def test_custom_table_used_by_decoder(self):
        table = BlendModeTable({200: BlendMode.LIGHTEN})
        desc = decode_layer_record(layer_record(0, 'c', blend=200), '<', 0, table)
        assert desc.blend_mode == BlendMode.LIGHTEN
        assert desc.warnings == ()


class TestDecodeLayerTable:

    def test_records_in_file_order(self):
        payload = b''.join([
            layer_record(100, 'Top', x=-10),
            layer_record(200, 'Middle', opacity=0.5),
            layer_record(300, 'Bottom', visible=False),
        ])
        tiff, root = _table_tiff(payload)
        assert has_layer_table(root)
        descs = decode_layer_table(tiff, root)
        assert [d.name for d in descs] == ['Top', 'Middle', 'Bottom']
        assert [d.z_order for d in descs] == [0, 1, 2]
        assert [d.ifd_offset for d in descs] == [100, 200, 300]
        assert descs[0].x == -10

    def test_byte_type_accepted(self):
        tiff, root = _table_tiff(layer_record(1, 'b'), dtype=1)
        assert decode_layer_table(tiff, root)[0].name == 'b'

    def test_big_endian_table(self):
        payload = layer_record(42, 'BE', opacity=0.75, y=-2, endian='>')
        tiff, root = _table_tiff(payload, endian='>')
        desc = decode_layer_table(tiff, root)[0]
        assert desc.ifd_offset == 42
        assert desc.opacity == 0.75
        assert desc.y == -2

    def test_length_not_multiple_of_record(self):
        tiff, root = _table_tiff(layer_record(1, 'a') + b'\x00' * 10)
        with pytest.raises(MalformedLayerRecord, match='multiple'):
            decode_layer_table(tiff, root)

    def test_wrong_data_type(self):
        payload = struct.pack('<21I', *range(21))
        tiff, root = _table_tiff(payload, dtype=4)
        with pytest.raises(MalformedLayerRecord, match='data type'):
            decode_layer_table(tiff, root)

    def test_missing_table(self):
        builder = TiffBuilder()
        builder.ifd('root', [(256, 4, 1)])
        tiff = TiffFile(builder.build())
        root = tiff.first_ifd()
        assert not has_layer_table(root)
        assert decode_layer_table(tiff, root) == []

    def test_custom_tag(self):
        builder = TiffBuilder()
        builder.ifd('root', [(256, 4, 1), (50000, 7, layer_record(5, 'custom'))])
        tiff = TiffFile(builder.build())
        root = tiff.first_ifd()
        assert not has_layer_table(root)
        assert has_layer_table(root, 50000)
        assert decode_layer_table(tiff, root, tag_id=50000)[0].name == 'custom'
