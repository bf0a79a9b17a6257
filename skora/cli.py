"""CLI interface for skora -- convert and info subcommands."""

import sys
import time
from pathlib import Path

import click

import skora
from skora.config import ConvertConfig
from skora.converter import collect_tiff_files, convert_batch, detect_layers
from skora.errors import SkoraError
from skora.log import (
    cli_bold,
    cli_dim,
    cli_error,
    cli_header,
    cli_info,
    cli_separator,
    cli_success,
    cli_warning,
    configure_logging,
    log_error,
    log_info,
    log_warn,
    set_color_enabled,
)
from skora.tiff.parser import TiffFile


@click.group()
@click.version_option(version=skora.__version__, prog_name='skora')
@click.option('--no-color', is_flag=True, help='Disable ANSI colors in console output.')
def main(no_color):
    """skora -- layered drawing TIFF to Open Raster converter.

    Extracts the layers a drawing application hides inside a TIFF file
    (private layer table or Alias/Sketchbook sub-IFDs) and writes them as
    an Open Raster (.ora) archive.
    """
    if no_color:
        set_color_enabled(False)


def _load_config(path):
    if not path:
        return ConvertConfig.default()
    try:
        return ConvertConfig.from_json(path)
    except (OSError, ValueError) as e:
        raise click.BadParameter(str(e), param_hint='--config')


@main.command()
@click.argument('path', type=click.Path(exists=True))
@click.option('--output', '-o', type=click.Path(),
              help='Output directory. If omitted, archives are written next to their sources.')
@click.option('--workers', '-w', type=int, default=1,
              help='Number of files converted in parallel (default: 1, sequential).')
@click.option('--export-layers', is_flag=True,
              help='Also write every layer as an RGBA TIFF (needs tifffile).')
@click.option('--config', 'config_path', type=click.Path(exists=True),
              help='JSON file with conversion settings.')
@click.option('--verbose', '-v', is_flag=True, help='Show layer details and debug logging.')
@click.option('--log', type=click.Path(), help='Write log to file.')
def convert(path, output, workers, export_layers, config_path, verbose, log):
    """Convert layered TIFF files to Open Raster.

    PATH can be a single file or a directory to process recursively.
    """
    configure_logging(verbose)
    config = _load_config(config_path)
    input_path = Path(path)
    output_dir = Path(output) if output else None

    log_file = open(log, 'w') if log else None

    def log_msg(console, plain, level=log_info):
        click.echo(console)
        if log_file:
            log_file.write(level(plain) + '\n')
            log_file.flush()

    files = collect_tiff_files(input_path)
    if not files:
        log_msg(f'No TIFF files found in {input_path}', f'No TIFF files found in {input_path}')
        if log_file:
            log_file.close()
        return

    workers_str = f', {workers} workers' if workers > 1 else ''
    log_msg(cli_header(f'skora v{skora.__version__} -- converting {len(files)} file(s){workers_str}'),
            f'skora v{skora.__version__} -- converting {len(files)} file(s){workers_str}')

    t0 = time.time()

    def progress(i, total, filepath, result):
        elapsed = time.time() - t0
        rate = i / elapsed if elapsed > 0 else 0

        if result.error:
            status = f'ERROR ({result.error_type}): {result.error}'
            log_msg(f'  [{i}/{total}] {filepath.name} | {cli_error(status)}',
                    f'{filepath} | {status}', log_error)
            return

        status = f'{result.layers_written} layer(s) [{result.source_kind}] -> {result.output_path.name}'
        log_msg(f'  [{i}/{total}] {rate:.1f}/s | {filepath.name} | {cli_success(status)}',
                f'{filepath} | {status}')
        for warning in result.warnings:
            log_msg(f'      {cli_warning(warning)}', f'{filepath} | {warning}', log_warn)
        if verbose:
            for exported in result.exported_layers:
                log_msg(f'      {cli_dim(str(exported))}', f'exported {exported}')

    batch_result = convert_batch(
        input_path, output_dir=output_dir,
        workers=workers, progress_callback=progress,
        config=config, export_tiff=export_layers,
    )

    # Summary
    click.echo(cli_separator())
    log_msg(f'Done in {batch_result.total_time_seconds:.1f}s',
            f'Done in {batch_result.total_time_seconds:.1f}s')
    log_msg(f'  Total:     {batch_result.total_files}', f'Total: {batch_result.total_files}')
    log_msg(f'  Converted: {batch_result.files_converted}',
            f'Converted: {batch_result.files_converted}')
    log_msg(f'  Errors:    {batch_result.files_errored}', f'Errors: {batch_result.files_errored}')

    if log_file:
        log_file.close()

    if batch_result.files_errored > 0:
        sys.exit(1)


@main.command()
@click.argument('path', type=click.Path(exists=True))
@click.option('--config', 'config_path', type=click.Path(exists=True),
              help='JSON file with conversion settings.')
def info(path, config_path):
    """Show the TIFF structure and layer stack of a file (no pixels decoded)."""
    filepath = Path(path)

    if filepath.is_dir():
        click.echo('Error: info command requires a single file, not a directory.', err=True)
        sys.exit(1)

    config = _load_config(config_path)
    try:
        tiff = TiffFile(filepath.read_bytes())
        root = tiff.first_ifd()
        chain = tiff.iter_ifds()
        source, descriptors, thumbnail = detect_layers(tiff, root, config)
    except SkoraError as e:
        click.echo(cli_error(f'Error ({type(e).__name__}): {e}'), err=True)
        sys.exit(1)

    header = tiff.header
    click.echo(cli_bold(f'File: {filepath.name}'))
    click.echo(f'Size: {tiff.size} bytes')
    click.echo(f'Byte order: {"little-endian (II)" if header.endian == "<" else "big-endian (MM)"}')
    click.echo(f'BigTIFF: {"yes" if header.is_bigtiff else "no"}')
    click.echo(f'IFD chain: {len(chain)} IFD(s)')
    for ifd in chain:
        width = tiff.tag_value(ifd, 256)
        height = tiff.tag_value(ifd, 257)
        dims = f'{width}x{height}' if width is not None else 'no image'
        click.echo(cli_dim(f'  @{ifd.offset}: {len(ifd)} tags, {dims}'))

    click.echo()
    click.echo(cli_info(f'Layer source: {source}'))
    if thumbnail is not None:
        click.echo(cli_info(f'Thumbnail: IFD at {thumbnail.offset}'))
    click.echo(f'Layers ({len(descriptors)}, top-most first):')
    for desc in descriptors:
        hidden = '' if desc.visible else ' hidden'
        click.echo(f'  [{desc.z_order}] {desc.name!r} at ({desc.x}, {desc.y}) '
                   f'opacity {desc.opacity:.2f} {desc.blend_mode.label}{hidden}')
        for warning in desc.warnings:
            click.echo(f'      {cli_warning(warning)}')


if __name__ == '__main__':
    main()
