"""Low-level TIFF/BigTIFF binary parser package.

Re-exports the public names so ``from skora.tiff import X`` works for the
parser, the layer metadata decoders and the pixel decoder alike.
"""

# --- reader.py: endian-aware positioned reads ---
from skora.tiff.reader import ByteReader, byte_order  # noqa: F401

# --- parser.py: types, constants, header/IFD reading, tag value reading ---
from skora.tiff.parser import (  # noqa: F401
    TIFF_TYPES,
    TAG_NAMES,
    IFDEntry,
    Ifd,
    TIFFHeader,
    TiffFile,
    read_header,
    read_ifd,
    read_tag_value_bytes,
    read_tag_string,
    read_tag_values,
)

# --- sub_ifd.py: SubIFDs traversal ---
from skora.tiff.sub_ifd import read_sub_ifd_chains, read_sub_ifd_offsets  # noqa: F401

# --- layers.py: fixed-record layer table ---
from skora.tiff.layers import (  # noqa: F401
    LAYER_TABLE_TAG,
    LAYER_RECORD_SIZE,
    BlendModeTable,
    decode_layer_record,
    decode_layer_table,
    has_layer_table,
)

# --- alias.py: Alias/Sketchbook multilayer ---
from skora.tiff.alias import (  # noqa: F401
    ALIAS_METADATA_TAG,
    AliasDocument,
    AliasMetadata,
    decode_alias_layers,
    is_alias_multilayer,
    is_thumbnail_ifd,
    parse_alias_metadata,
)

# --- pixels.py: strip/tile decoding to RGBA ---
from skora.tiff.pixels import decode_image, is_image_ifd, unpremultiply  # noqa: F401
