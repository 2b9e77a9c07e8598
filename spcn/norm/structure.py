"""Structure-preserving color normalization (SPCN).

Normalizes an image as defined by:

Vahadane, Abhishek, et al. "Structure-preserving color normalization and
sparse stain separation for histological images." IEEE Transactions on
Medical Imaging 35.8 (2016): 1962-1971.

Both the input and the reference image are factorized into stain colors
and per-pixel stain concentrations. The output keeps the input's
concentrations, so tissue structure is unchanged, and renders them with the
reference's stain colors and unstained background color.
"""

import multiprocessing.dummy
import numpy as np
from typing import Dict, Optional, Tuple, Union

import spcn.norm.utils as ut
from spcn import errors
from spcn.util import log, num_cpu
from spcn.norm import nmf
from spcn.norm.cache import FactorizationCache, ImageSource, as_source


def nmfs_to_image(
    input_H: np.ndarray,
    reference_W: np.ndarray,
    reference_unstained: np.ndarray,
    shape: Tuple[int, ...],
    dtype=np.uint8,
    tile_rows: int = 256,
    num_threads: int = 1
) -> np.ndarray:
    """Render input concentrations with the reference stain colors.

    Each output pixel is ``od_to_rgb(W_ref @ h, u_ref)``, where ``h`` is the
    input pixel's concentration column. Rows are processed in tiles, which
    may run on a thread pool; tiles write disjoint rows of the output.

    Args:
        input_H (np.ndarray): Input concentrations (2 x rows*cols).
        reference_W (np.ndarray): Reference stain colors, OD (channels x 2).
        reference_unstained (np.ndarray): Reference unstained color
            (channels,), calculation scale.
        shape (tuple): Output (rows, cols).
        dtype: Output dtype. Defaults to uint8.
        tile_rows (int): Rows per tile. Defaults to 256.
        num_threads (int): Worker threads. Defaults to 1.

    Returns:
        np.ndarray: Image (rows, cols, channels) of the given dtype.
    """
    rows, cols = shape[0], shape[1]
    channels = reference_W.shape[0]
    out = np.empty((rows, cols, channels), dtype=dtype)
    if rows * cols == 0:
        return out
    if input_H.shape[1] != rows * cols:
        raise ValueError(f"Concentrations cover {input_H.shape[1]} pixels; "
                         f"expected {rows * cols}")

    def render_tile(start):
        stop = min(start + tile_rows, rows)
        h = input_H[:, start * cols:stop * cols]
        V = ut.od_to_rgb(nmf.nmfs_to_od(h, reference_W), reference_unstained)
        out[start:stop] = ut.from_calc_scale(
            ut.matrix_to_image(V, (stop - start, cols)), dtype
        )

    starts = list(range(0, rows, max(tile_rows, 1)))
    if num_threads > 1 and len(starts) > 1:
        with multiprocessing.dummy.Pool(min(num_threads, len(starts))) as pool:
            pool.map(render_tile, starts)
    else:
        for start in starts:
            render_tile(start)
    return out


class StructurePreservingNormalizer:

    mode = 'euclidean'
    max_iterations = ut.MAX_NUMBER_OF_ITERATIONS
    lambda_ = ut.LAMBDA

    def __init__(
        self,
        color_index_suppressed_by_hematoxylin: int = 0,
        color_index_suppressed_by_eosin: int = 1,
        channels: int = 3,
        num_threads: Optional[int] = None,
        tile_rows: int = 256
    ) -> None:
        """Structure-preserving stain normalizer (numpy implementation).

        Factorizations are cached per role, so repeated normalization with
        an unchanged reference (or input) skips the expensive step.

        Args:
            color_index_suppressed_by_hematoxylin (int): Channel most
                strongly absorbed by hematoxylin. Defaults to 0 (red).
            color_index_suppressed_by_eosin (int): Channel most strongly
                absorbed by eosin. Defaults to 1 (green).
            channels (int): Number of color channels. Defaults to 3.
            num_threads (int, optional): Threads used to render output
                tiles. Defaults to the number of CPU cores.
            tile_rows (int): Rows per output tile. Defaults to 256.

        Raises:
            ValueError: If there are fewer than two channels, or the channel
                indices are equal or out of range.

        Examples
            See :class:`spcn.norm.StainNormalizer`
        """
        if channels < ut.NUMBER_OF_STAINS:
            raise ValueError(f"Expected at least {ut.NUMBER_OF_STAINS} color channels; "
                             f"got {channels}")
        for name, index in (('hematoxylin', color_index_suppressed_by_hematoxylin),
                            ('eosin', color_index_suppressed_by_eosin)):
            if not 0 <= index < channels:
                raise ValueError(f"Channel index suppressed by {name} must be "
                                 f"in [0, {channels}); got {index}")
        if color_index_suppressed_by_hematoxylin == color_index_suppressed_by_eosin:
            raise ValueError("Hematoxylin and eosin must suppress different "
                             "channels")
        self.color_index_suppressed_by_hematoxylin = color_index_suppressed_by_hematoxylin
        self.color_index_suppressed_by_eosin = color_index_suppressed_by_eosin
        self.channels = channels
        self.num_threads = num_threads if num_threads else num_cpu(default=1)
        self.tile_rows = tile_rows
        self.stain_matrix_target = None  # type: Optional[np.ndarray]
        self.unstained_target = None  # type: Optional[np.ndarray]
        self._cache = FactorizationCache()

    def _image_to_nmf(self, pixels: np.ndarray, role: str) -> nmf.Factorization:
        V = ut.image_to_matrix(pixels, self.channels)
        try:
            return nmf.image_to_nmf(
                V,
                self.color_index_suppressed_by_hematoxylin,
                self.color_index_suppressed_by_eosin,
                mode=self.mode,
                max_iterations=self.max_iterations,
                lambda_=self.lambda_
            )
        except errors.NotNormalizableError as e:
            raise e.__class__(role, e.reason) from None

    def factorize(
        self,
        image: Union[np.ndarray, ImageSource],
        role: str = 'input'
    ) -> nmf.Factorization:
        """Factorize an image into stain colors and concentrations.

        Args:
            image (np.ndarray, ImageSource): Image (rows, cols, channels).
            role (str): Cache slot, 'input' or 'reference'.

        Returns:
            Factorization

        Raises:
            errors.NotNormalizableError: If the image cannot be factorized.
        """
        return self._cache.get_or_compute(
            role,
            as_source(image),
            lambda pixels: self._image_to_nmf(pixels, role)
        )

    def fit(
        self,
        target: Union[np.ndarray, ImageSource]
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Fit normalizer to a reference image.

        Args:
            target (np.ndarray, ImageSource): Reference image
                (rows, cols, channels).

        Returns:
            A tuple containing

                np.ndarray:     Stain matrix target (channels, 2).

                np.ndarray:     Unstained target (channels,).

        Raises:
            errors.NotNormalizableError: If the reference cannot be factorized.
        """
        factorization = self.factorize(target, role='reference')
        self.set_fit(factorization.W, factorization.unstained)
        return self.stain_matrix_target, self.unstained_target  # type: ignore

    def get_fit(self) -> Dict[str, Optional[np.ndarray]]:
        """Get the current normalizer fit.

        Returns:
            Dict[str, np.ndarray]: Dictionary mapping 'stain_matrix_target'
            and 'unstained_target' to their respective fit values.
        """
        return {
            'stain_matrix_target': self.stain_matrix_target,
            'unstained_target': self.unstained_target
        }

    def set_fit(
        self,
        stain_matrix_target: np.ndarray,
        unstained_target: np.ndarray
    ) -> None:
        """Set the normalizer fit to the given values.

        Args:
            stain_matrix_target (np.ndarray): Reference stain colors in
                optical density. Must have the shape (channels, 2).
            unstained_target (np.ndarray): Reference unstained color, in
                [0, 255]. Must have the shape (channels,).
        """
        stain_matrix_target = ut._as_numpy(stain_matrix_target)
        unstained_target = ut._as_numpy(unstained_target)

        if stain_matrix_target.shape != (self.channels, ut.NUMBER_OF_STAINS):
            raise ValueError("stain_matrix_target must have shape "
                             f"({self.channels}, {ut.NUMBER_OF_STAINS}) - "
                             f"got {stain_matrix_target.shape}")
        if unstained_target.shape != (self.channels,):
            raise ValueError(f"unstained_target must have shape ({self.channels},) - "
                             f"got {unstained_target.shape}")
        if np.any(stain_matrix_target < 0):
            raise ValueError("stain_matrix_target must be non-negative")

        self.stain_matrix_target = stain_matrix_target
        self.unstained_target = unstained_target

    def _render(
        self,
        factorization: nmf.Factorization,
        reference_W: np.ndarray,
        reference_unstained: np.ndarray,
        pixels: np.ndarray
    ) -> np.ndarray:
        return nmfs_to_image(
            factorization.H,
            reference_W,
            reference_unstained,
            pixels.shape[:2],
            dtype=pixels.dtype,
            tile_rows=self.tile_rows,
            num_threads=self.num_threads
        )

    def transform(self, I: Union[np.ndarray, ImageSource]) -> np.ndarray:
        """Normalize an image to the fitted reference.

        Args:
            I (np.ndarray, ImageSource): Image (rows, cols, channels).

        Returns:
            np.ndarray: Normalized image, same shape and dtype as the input.

        Raises:
            errors.NormalizerNotFitError: If the normalizer has not been fit.
            errors.NotNormalizableError: If the image cannot be factorized.
        """
        if self.stain_matrix_target is None or self.unstained_target is None:
            raise errors.NormalizerNotFitError
        source = as_source(I)
        if source.pixels.size == 0:
            return source.pixels.copy()
        factorization = self.factorize(source, role='input')
        return self._render(
            factorization,
            self.stain_matrix_target,
            self.unstained_target,
            source.pixels
        )

    def normalize(
        self,
        image: Union[np.ndarray, ImageSource],
        reference: Union[np.ndarray, ImageSource]
    ) -> np.ndarray:
        """Normalize an image to a reference in one step.

        When neither factorization is cached, the two are computed
        concurrently. The normalizer fit is left unchanged.

        Args:
            image (np.ndarray, ImageSource): Image to normalize.
            reference (np.ndarray, ImageSource): Reference image.

        Returns:
            np.ndarray: Normalized image, same shape and dtype as ``image``.

        Raises:
            errors.NotNormalizableError: If either image cannot be factorized.
                The input image is checked first.
        """
        sources = {'input': as_source(image), 'reference': as_source(reference)}
        if sources['input'].pixels.size == 0:
            return sources['input'].pixels.copy()
        missing = [role for role, source in sources.items()
                   if not self._cache.is_current(role, source)]
        if len(missing) > 1 and self.num_threads > 1:
            log.debug("Factorizing input and reference concurrently")
            with multiprocessing.dummy.Pool(len(missing)) as pool:
                pool.map(self._factorize_quietly, [(role, sources[role]) for role in missing])
        input_factorization = self.factorize(sources['input'], role='input')
        reference_factorization = self.factorize(sources['reference'], role='reference')
        return self._render(
            input_factorization,
            reference_factorization.W,
            reference_factorization.unstained,
            sources['input'].pixels
        )

    def _factorize_quietly(self, args: Tuple[str, ImageSource]) -> None:
        role, source = args
        try:
            self.factorize(source, role=role)
        except errors.NotNormalizableError:
            # Cached; raised again by the caller in a fixed order.
            pass


class StructurePreservingEuclideanNormalizer(StructurePreservingNormalizer):
    """SPCN with factorizations refined by Euclidean multiplicative updates."""

    mode = 'euclidean'
    max_iterations = 100


class StructurePreservingDivergenceNormalizer(StructurePreservingNormalizer):
    """SPCN with factorizations refined by Kullback-Leibler multiplicative
    updates."""

    mode = 'divergence'
    max_iterations = 100
