import logging
import os
import click
from PIL import Image
from rich.progress import Progress

import spcn
from spcn import errors
from spcn.norm import StainNormalizer, autoselect
from spcn.norm.utils import read_image, suppression_presets
from spcn.util import (addLoggingFileHandler, cleanup_progress, getLoggingLevel,
                       is_image, log, logging_level, path_to_name,
                       removeLoggingFileHandler)

#----------------------------------------------------------------------------

@click.command()
@click.argument('reference', metavar='REFERENCE', type=click.Path(exists=True, dir_okay=False))
@click.argument('images', metavar='IMAGE...', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--outdir', '-o', help='Directory in which to write normalized PNG images.', metavar='PATH', required=True)
@click.option('--method', '-m', help='Normalization method.', type=click.Choice(list(StainNormalizer.normalizers)), default='spcn', show_default=True)
@click.option('--stains', '-s', help='Channel suppression preset.', type=click.Choice(list(suppression_presets)), default='he', show_default=True)
@click.option('--hematoxylin-index', help='Channel most strongly absorbed by hematoxylin (overrides preset).', type=int)
@click.option('--eosin-index', help='Channel most strongly absorbed by eosin (overrides preset).', type=int)
@click.option('--passthrough', is_flag=True, help='Copy images that cannot be normalized unchanged.')
@click.option('--log-file', help='Also write log messages to this file.', metavar='PATH')
@click.option('--verbose', '-v', is_flag=True, help='Show debug messages.')
@click.version_option(spcn.__version__, prog_name='spcn')
def main(
    reference,
    images,
    outdir,
    method,
    stains,
    hematoxylin_index,
    eosin_index,
    passthrough,
    log_file,
    verbose
):
    """Structure-preserving color normalization of H&E images.

    Normalizes each IMAGE to the stain colors of REFERENCE, keeping the
    image's own stain concentrations (and so its tissue structure).
    """
    kwargs = dict(suppression_presets[stains])
    if hematoxylin_index is not None:
        kwargs['color_index_suppressed_by_hematoxylin'] = hematoxylin_index
    if eosin_index is not None:
        kwargs['color_index_suppressed_by_eosin'] = eosin_index

    handler = addLoggingFileHandler(log_file) if log_file else None
    try:
        with logging_level(logging.DEBUG if verbose else getLoggingLevel()):
            normalize_images(reference, images, outdir, method, passthrough, **kwargs)
    finally:
        if handler is not None:
            removeLoggingFileHandler(handler)


def normalize_images(reference, images, outdir, method, passthrough, **kwargs):
    """Normalize image files to a reference and write them as PNG."""
    try:
        normalizer = autoselect(method, source=reference, **kwargs)
    except (ValueError, errors.NotNormalizableError, errors.ImageLoadError) as e:
        raise click.ClickException(str(e))
    log.info(f"Fit [green]{method}[/] normalizer to {reference}")

    unsupported = [p for p in images if not is_image(p)]
    for path in unsupported:
        log.warning(f"Skipping {path}: unsupported image format")
    images = [p for p in images if is_image(p)]

    os.makedirs(outdir, exist_ok=True)
    failed = []
    pb = Progress(transient=True)
    task = pb.add_task('Normalizing...', total=len(images))
    pb.start()
    with cleanup_progress(pb):
        for path in images:
            try:
                normalized = normalizer.rgb_to_rgb(read_image(path), passthrough=passthrough)
            except (errors.NotNormalizableError, errors.ImageLoadError) as e:
                log.error(f"Skipping {path}: {e}")
                failed.append(path)
            else:
                dest = os.path.join(outdir, path_to_name(path) + '.png')
                Image.fromarray(normalized).save(dest)
                log.debug(f"Wrote {dest}")
            pb.advance(task)

    log.info(f"Normalized {len(images) - len(failed)} of {len(images)} images")
    failed += unsupported
    if failed:
        raise click.ClickException(f"{len(failed)} image(s) could not be normalized")

#----------------------------------------------------------------------------

if __name__ == "__main__":
    main()

#----------------------------------------------------------------------------
