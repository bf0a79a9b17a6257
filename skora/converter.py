"""Layered TIFF to Open Raster conversion -- orchestration and batch runs.

Detects where a file keeps its layers, decodes every layer (in parallel
when asked to), and hands the finished LayerStack to the ORA writer.
Single files and whole directories go through the same path.

Exporting the decoded layers as standalone TIFFs needs tifffile:
    pip install skora[export]
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from skora.config import ConvertConfig
from skora.errors import MalformedIfd, SkoraError, UnsupportedFormat, WriteIOError
from skora.models import BatchResult, ConversionResult, DecodedImage, LayerDescriptor, LayerStack
from skora.ora import build_archive, publish
from skora.tiff.alias import decode_alias_layers, is_alias_multilayer, is_thumbnail_ifd
from skora.tiff.layers import decode_layer_table, has_layer_table
from skora.tiff.parser import Ifd, TiffFile
from skora.tiff.pixels import decode_image, is_image_ifd

logger = logging.getLogger(__name__)

TIFF_EXTENSIONS = {'.tif', '.tiff'}

SOURCE_LAYER_TABLE = 'layer-table'
SOURCE_ALIAS = 'alias'
SOURCE_FLAT = 'flat'

# Lazy-checked at call time
_tifffile = None


def _require_tifffile():
    global _tifffile
    if _tifffile is not None:
        return _tifffile
    try:
        import tifffile
        _tifffile = tifffile
        return tifffile
    except ImportError:
        raise ImportError(
            "tifffile is required for exporting layers as TIFF. "
            "Install it with: pip install skora[export]"
        )


def _canvas_size(tiff: TiffFile, root: Ifd) -> Tuple[int, int]:
    width = tiff.tag_value(root, 256)
    height = tiff.tag_value(root, 257)
    if width is None or height is None:
        raise MalformedIfd('root image has no ImageWidth/ImageLength', root.offset)
    return width, height


def find_thumbnail_ifd(tiff: TiffFile) -> Optional[Ifd]:
    """First reduced-resolution image on the main IFD chain, if any."""
    for ifd in tiff.iter_ifds()[1:]:
        if is_thumbnail_ifd(tiff, ifd) and is_image_ifd(ifd):
            return ifd
    return None


def decode_layer(tiff: TiffFile, desc: LayerDescriptor, width: int, height: int) -> DecodedImage:
    """Decode the pixels of one layer.

    Layers with a ``fill_color`` are solid and cover the whole canvas.
    """
    if desc.fill_color is not None:
        return DecodedImage.solid(width, height, desc.fill_color)
    ifd = tiff.read_ifd(desc.ifd_offset)
    return decode_image(tiff, ifd, desc.layout)


def _decode_layers(tiff: TiffFile, descriptors: List[LayerDescriptor],
                   width: int, height: int, workers: int) -> List[DecodedImage]:
    """Decode every layer; results keep the order of ``descriptors``."""
    if workers <= 1 or len(descriptors) <= 1:
        return [decode_layer(tiff, desc, width, height) for desc in descriptors]

    images: List[Optional[DecodedImage]] = [None] * len(descriptors)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(decode_layer, tiff, desc, width, height): i
            for i, desc in enumerate(descriptors)
        }
        for future in as_completed(futures):
            images[futures[future]] = future.result()
    return images


def _decode_thumbnail(tiff: TiffFile, ifd: Optional[Ifd]) -> Optional[DecodedImage]:
    if ifd is None:
        return None
    try:
        return decode_image(tiff, ifd)
    except UnsupportedFormat as e:
        # A preview is regenerated from the merged image instead
        logger.warning('Ignoring thumbnail at offset %d: %s', ifd.offset, e)
        return None


def detect_layers(tiff: TiffFile, root: Ifd,
                  config: ConvertConfig) -> Tuple[str, List[LayerDescriptor], Optional[Ifd]]:
    """Find and decode the layer descriptors of a file, without pixels.

    Layer sources are tried in order: the private layer table, the
    Alias/Sketchbook sub-IFD convention, and finally the root image alone.
    Returns (source kind, descriptors top-most first, thumbnail IFD).
    """
    height = _canvas_size(tiff, root)[1]

    if has_layer_table(root, config.layer_table_tag):
        source = SOURCE_LAYER_TABLE
        descriptors = decode_layer_table(tiff, root, config.layer_table_tag,
                                         config.blend_table())
        thumbnail_ifd = find_thumbnail_ifd(tiff)
    elif is_alias_multilayer(tiff, root):
        source = SOURCE_ALIAS
        document = decode_alias_layers(tiff, root, height, config.background_layer)
        descriptors = document.descriptors
        thumbnail_ifd = document.thumbnail
    else:
        source = SOURCE_FLAT
        name = tiff.tag_string(root, 285) or 'Layer 1'  # PageName
        descriptors = [LayerDescriptor(name=name, ifd_offset=root.offset)]
        thumbnail_ifd = find_thumbnail_ifd(tiff)

    return source, descriptors, thumbnail_ifd


def read_layer_stack(data: bytes, config: Optional[ConvertConfig] = None) -> LayerStack:
    """Parse a layered TIFF buffer into a fully decoded LayerStack."""
    if config is None:
        config = ConvertConfig.default()

    tiff = TiffFile(data)
    root = tiff.first_ifd()
    width, height = _canvas_size(tiff, root)
    source, descriptors, thumbnail_ifd = detect_layers(tiff, root, config)

    logger.debug('%s source: %d layers on a %dx%d canvas',
                 source, len(descriptors), width, height)

    images = _decode_layers(tiff, descriptors, width, height, config.workers)
    return LayerStack(
        width=width,
        height=height,
        layers=list(zip(descriptors, images)),
        thumbnail=_decode_thumbnail(tiff, thumbnail_ifd),
        source=source,
    )


def convert(data: bytes, config: Optional[ConvertConfig] = None) -> bytes:
    """Convert a layered TIFF buffer into ORA archive bytes."""
    if config is None:
        config = ConvertConfig.default()
    stack = read_layer_stack(data, config)
    return build_archive(stack, workers=config.workers,
                         thumbnail_size=config.thumbnail_size)


def _remove_files(paths: List[Path]) -> None:
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning('Could not remove %s: %s', path, e)


def export_layers(stack: LayerStack, directory: Path, stem: str) -> List[Path]:
    """Write every decoded layer as an RGBA TIFF into ``directory``.

    Files are named ``<stem>_layer_<N>.tiff`` with N the stack position
    (0 = top-most layer). If any layer fails, the files already written
    are removed again before the error propagates.
    """
    tifffile = _require_tifffile()
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    written = []
    try:
        for index, (desc, image) in enumerate(stack.layers):
            path = directory / f'{stem}_layer_{index}.tiff'
            written.append(path)
            tifffile.imwrite(
                str(path), image.pixels,
                photometric='rgb',
                extrasamples=(2,),  # unassociated alpha
                compression='zlib',
                description=desc.name,
            )
            logger.debug('Exported layer %r to %s', desc.name, path)
    except Exception:
        _remove_files(written)
        raise
    return written


def convert_file(
    source: Path,
    output_path: Optional[Path] = None,
    config: Optional[ConvertConfig] = None,
    export_tiff: bool = False,
) -> ConversionResult:
    """Convert a single layered TIFF to ORA.

    Args:
        source: Path to the source TIFF.
        output_path: Where to write the archive. Defaults to the source
            path with an ``.ora`` suffix.
        config: Conversion settings. None uses the defaults.
        export_tiff: Also write each layer as a TIFF under
            ``<stem>_layers/`` next to the archive.

    Returns:
        ConversionResult with details of the conversion. Failures are
        recorded in ``error``/``error_type``; no archive is written then.
    """
    source = Path(source)
    output_path = Path(output_path) if output_path else source.with_suffix('.ora')
    if config is None:
        config = ConvertConfig.default()
    t0 = time.monotonic()

    result = ConversionResult(source_path=source, output_path=output_path)

    try:
        if not source.exists():
            result.error = f'File not found: {source}'
            result.error_type = 'FileNotFoundError'
            return result

        stack = read_layer_stack(source.read_bytes(), config)
        result.source_kind = stack.source
        result.warnings = stack.warnings

        archive = build_archive(stack, workers=config.workers,
                                thumbnail_size=config.thumbnail_size)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        # Layer TIFFs go first: the archive is only published once they exist
        exported = []
        if export_tiff:
            layers_dir = output_path.parent / f'{output_path.stem}_layers'
            exported = export_layers(stack, layers_dir, output_path.stem)
        try:
            publish(archive, output_path)
        except WriteIOError:
            _remove_files(exported)
            raise

        result.layers_written = len(stack)
        result.exported_layers = exported

    except ImportError:
        raise
    except (SkoraError, OSError) as e:
        logger.error('Cannot convert %s: %s', source, e)
        result.error = str(e)
        result.error_type = type(e).__name__
    except Exception as e:
        logger.exception('convert_file failed for %s', source)
        result.error = str(e)
        result.error_type = type(e).__name__

    result.conversion_time_ms = (time.monotonic() - t0) * 1000
    return result


def collect_tiff_files(path: Path) -> List[Path]:
    """Collect all TIFF files from a path (file or directory)."""
    path = Path(path)
    if path.is_file():
        return [path]

    files = []
    for root, _, filenames in os.walk(path):
        for fname in sorted(filenames):
            if Path(fname).suffix.lower() in TIFF_EXTENSIONS:
                files.append(Path(root) / fname)
    files.sort()
    return files


def convert_batch(
    input_path: Path,
    output_dir: Optional[Path] = None,
    workers: int = 1,
    progress_callback: Optional[Callable] = None,
    config: Optional[ConvertConfig] = None,
    export_tiff: bool = False,
) -> BatchResult:
    """Convert a batch of layered TIFF files.

    Args:
        input_path: File or directory containing TIFF files.
        output_dir: Directory for the archives. None writes each archive
            next to its source.
        workers: Number of files converted in parallel. 1 = sequential.
        progress_callback: Called with (index, total, filepath, result)
            after each file.
        config: Conversion settings shared by every file.
        export_tiff: Also export each file's layers as TIFFs.

    Returns:
        BatchResult with summary statistics. A failing file never stops
        the rest of the batch.
    """
    input_path = Path(input_path)
    t0 = time.monotonic()

    files = collect_tiff_files(input_path)
    total = len(files)
    batch = BatchResult(total_files=total)

    file_pairs = []
    for filepath in files:
        if output_dir is None:
            out = filepath.with_suffix('.ora')
        elif input_path.is_dir():
            out = Path(output_dir) / filepath.relative_to(input_path).with_suffix('.ora')
        else:
            out = Path(output_dir) / (filepath.stem + '.ora')
        file_pairs.append((filepath, out))

    def do_one(filepath, out):
        return convert_file(filepath, out, config=config, export_tiff=export_tiff)

    if workers > 1 and total > 1:
        results = _convert_batch_parallel(file_pairs, do_one, workers, progress_callback, batch)
    else:
        results = _convert_batch_sequential(file_pairs, do_one, progress_callback, batch)

    batch.results = results
    batch.total_time_seconds = time.monotonic() - t0
    return batch


def _failed_result(filepath: Path, out: Path, error: Exception) -> ConversionResult:
    return ConversionResult(
        source_path=filepath, output_path=out,
        error=str(error), error_type=type(error).__name__,
    )


def _convert_batch_sequential(file_pairs, do_one, progress_callback, batch):
    results = []
    total = len(file_pairs)

    for i, (filepath, out) in enumerate(file_pairs):
        try:
            result = do_one(filepath, out)
        except Exception as e:
            logger.exception('Batch conversion failed for %s', filepath)
            result = _failed_result(filepath, out, e)

        results.append(result)
        _update_batch_stats(batch, result)

        if progress_callback:
            progress_callback(i + 1, total, filepath, result)

    return results


def _convert_batch_parallel(file_pairs, do_one, workers, progress_callback, batch):
    total = len(file_pairs)
    results = [None] * total

    def process_one(index, filepath, out):
        try:
            return index, do_one(filepath, out)
        except Exception as e:
            logger.exception('Batch conversion failed for %s', filepath)
            return index, _failed_result(filepath, out, e)

    # Stats and progress are only touched here, on the calling thread
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {}
        for i, (filepath, out) in enumerate(file_pairs):
            future = executor.submit(process_one, i, filepath, out)
            futures[future] = filepath

        for completed, future in enumerate(as_completed(futures), 1):
            filepath = futures[future]
            index, result = future.result()
            results[index] = result

            _update_batch_stats(batch, result)
            if progress_callback:
                progress_callback(completed, total, filepath, result)

    return results


def _update_batch_stats(batch: BatchResult, result: ConversionResult):
    if result.error:
        batch.files_errored += 1
    else:
        batch.files_converted += 1
