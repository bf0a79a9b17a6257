"""Open Raster (ORA) archive writer.

An ORA file is a zip archive::

    mimetype                  "image/openraster", first entry, stored
    stack.xml                 layer stack, top-most layer first
    data/layer<N>.png         one PNG per layer
    mergedimage.png           flattened image
    Thumbnails/thumbnail.png  preview, at most 256x256

The archive is assembled in memory and only published once every part has
been encoded, so a failed conversion never leaves a partial file behind.
Zip timestamps are fixed, which makes the output a pure function of the
layer stack.
"""

import io
import logging
import os
import stat
import tempfile
import xml.etree.ElementTree as ET
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import BinaryIO, List, Optional, Union

import numpy as np
from PIL import Image

from skora.composite import composite_stack
from skora.errors import WriteEncodeError, WriteIOError
from skora.models import DecodedImage, LayerStack

logger = logging.getLogger(__name__)

ORA_MIMETYPE = b'image/openraster'
ORA_VERSION = '0.0.3'
STACK_XML = 'stack.xml'
MERGED_IMAGE = 'mergedimage.png'
THUMBNAIL = 'Thumbnails/thumbnail.png'
THUMBNAIL_SIZE = 256

# Earliest timestamp a zip entry can carry
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def layer_source(index: int) -> str:
    """Archive path of the PNG for the layer at stack position ``index``."""
    return f'data/layer{index}.png'


def encode_png(image: DecodedImage) -> bytes:
    """Encode an RGBA image as PNG (lossless, no timestamps)."""
    if image.width <= 0 or image.height <= 0:
        raise WriteEncodeError(f'Cannot encode a {image.width}x{image.height} image')
    buf = io.BytesIO()
    try:
        Image.fromarray(image.pixels.copy()).save(buf, format='PNG')
    except (OSError, ValueError) as e:
        raise WriteEncodeError(f'PNG encoding failed: {e}') from e
    return buf.getvalue()


def make_thumbnail(image: DecodedImage, size: int = THUMBNAIL_SIZE) -> DecodedImage:
    """Shrink ``image`` to fit in ``size`` x ``size``, keeping the aspect ratio."""
    img = Image.fromarray(image.pixels.copy())
    img.thumbnail((size, size))
    pixels = np.asarray(img.convert('RGBA')).copy()
    return DecodedImage(img.width, img.height, pixels, image.has_alpha)


def _format_opacity(opacity: float) -> str:
    return format(opacity, '.6g')


def build_stack_xml(stack: LayerStack) -> bytes:
    """Render ``stack.xml``. Document order is stack order (top-most first)."""
    image = ET.Element('image', {
        'version': ORA_VERSION,
        'w': str(stack.width),
        'h': str(stack.height),
    })
    root = ET.SubElement(image, 'stack')
    for index, (desc, _) in enumerate(stack.layers):
        ET.SubElement(root, 'layer', {
            'name': desc.name,
            'src': layer_source(index),
            'x': str(desc.x),
            'y': str(desc.y),
            'opacity': _format_opacity(desc.opacity),
            'visibility': 'visible' if desc.visible else 'hidden',
            'composite-op': desc.blend_mode.value,
        })
    return ET.tostring(image, encoding='UTF-8', xml_declaration=True)


def _encode_layers(layers: List[DecodedImage], workers: int) -> List[bytes]:
    """Encode every layer, in parallel when ``workers`` > 1.

    Results are slotted by stack position, whatever order they finish in.
    """
    if workers <= 1 or len(layers) <= 1:
        return [encode_png(image) for image in layers]

    results: List[Optional[bytes]] = [None] * len(layers)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(encode_png, image): i for i, image in enumerate(layers)}
        for future in as_completed(futures):
            results[futures[future]] = future.result()
    return results


def _check_stack(stack: LayerStack) -> None:
    if stack.width <= 0 or stack.height <= 0:
        raise WriteEncodeError(f'Canvas has zero size ({stack.width}x{stack.height})')
    for desc, image in stack.layers:
        if image.width <= 0 or image.height <= 0:
            raise WriteEncodeError(
                f'Layer {desc.name!r} has zero size ({image.width}x{image.height})')


def _zip_entry(name: str, compress_type: int) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
    info.compress_type = compress_type
    info.external_attr = 0o644 << 16
    return info


def build_archive(stack: LayerStack, workers: int = 1,
                  thumbnail_size: int = THUMBNAIL_SIZE) -> bytes:
    """Encode ``stack`` into ORA archive bytes."""
    _check_stack(stack)

    layer_pngs = _encode_layers([image for _, image in stack.layers], workers)
    merged = composite_stack(stack)
    merged_png = encode_png(merged)
    thumbnail = stack.thumbnail if stack.thumbnail is not None else make_thumbnail(merged, thumbnail_size)
    thumbnail_png = encode_png(thumbnail)

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        zf.writestr(_zip_entry('mimetype', zipfile.ZIP_STORED), ORA_MIMETYPE)
        zf.writestr(_zip_entry(STACK_XML, zipfile.ZIP_DEFLATED), build_stack_xml(stack))
        for index, png in enumerate(layer_pngs):
            # PNG data is already compressed
            zf.writestr(_zip_entry(layer_source(index), zipfile.ZIP_STORED), png)
        zf.writestr(_zip_entry(MERGED_IMAGE, zipfile.ZIP_STORED), merged_png)
        zf.writestr(_zip_entry(THUMBNAIL, zipfile.ZIP_STORED), thumbnail_png)

    logger.debug('Built ORA archive: %d layers, %dx%d, %d bytes',
                 len(stack), stack.width, stack.height, buf.tell())
    return buf.getvalue()


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# Read once: os.umask can only be queried by setting it
_UMASK = _current_umask()


def _target_mode(path: Path) -> int:
    """Mode a plain ``open(path, 'wb')`` would leave ``path`` with."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return 0o666 & ~_UMASK


def publish(data: bytes, path: Union[str, os.PathLike]) -> None:
    """Write ``data`` to ``path`` atomically (temporary sibling + rename).

    The published file keeps the mode of the file it replaces, or gets the
    umask-derived default for a new file.
    """
    path = Path(path)
    try:
        fd, tmp = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp',
                                   dir=str(path.parent))
    except OSError as e:
        raise WriteIOError(f'Cannot create a temporary file next to {path}: {e}') from e
    try:
        with os.fdopen(fd, 'wb') as fh:
            fh.write(data)
        os.chmod(tmp, _target_mode(path))
        os.replace(tmp, path)
    except OSError as e:
        try:
            os.unlink(tmp)
        except OSError:
            logger.debug('Could not remove temporary file %s', tmp)
        raise WriteIOError(f'Cannot write {path}: {e}') from e


def write_stack(stack: LayerStack, destination: Union[str, os.PathLike, BinaryIO],
                workers: int = 1, thumbnail_size: int = THUMBNAIL_SIZE) -> None:
    """Write ``stack`` as an Open Raster archive.

    ``destination`` is a file path or a writable binary stream. Nothing is
    written to it unless the whole archive was built successfully.
    """
    data = build_archive(stack, workers=workers, thumbnail_size=thumbnail_size)
    if isinstance(destination, (str, os.PathLike)):
        publish(data, destination)
        return
    try:
        destination.write(data)
    except OSError as e:
        raise WriteIOError(f'Cannot write ORA archive: {e}') from e
