"""skora -- layered drawing-tool TIFF to Open Raster converter."""

__version__ = "1.0.0"

from skora.models import (
    BatchResult,
    BlendMode,
    ConversionResult,
    DecodedImage,
    LayerDescriptor,
    LayerStack,
    PixelLayout,
)
from skora.errors import (
    InvalidHeader,
    MalformedIfd,
    MalformedLayerRecord,
    OutOfBounds,
    SkoraError,
    UnsupportedCompression,
    UnsupportedFormat,
    UnsupportedPhotometric,
    WriteEncodeError,
    WriteError,
    WriteIOError,
)
from skora.config import ConvertConfig
from skora.converter import convert, convert_batch, convert_file, read_layer_stack
from skora.ora import write_stack

__all__ = [
    "__version__",
    "BatchResult",
    "BlendMode",
    "ConversionResult",
    "DecodedImage",
    "LayerDescriptor",
    "LayerStack",
    "PixelLayout",
    "InvalidHeader",
    "MalformedIfd",
    "MalformedLayerRecord",
    "OutOfBounds",
    "SkoraError",
    "UnsupportedCompression",
    "UnsupportedFormat",
    "UnsupportedPhotometric",
    "WriteEncodeError",
    "WriteError",
    "WriteIOError",
    "ConvertConfig",
    "convert",
    "convert_batch",
    "convert_file",
    "read_layer_stack",
    "write_stack",
]
