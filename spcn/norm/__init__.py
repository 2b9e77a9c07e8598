"""Structure-preserving stain normalization tools."""

from io import BytesIO
from typing import Any, Dict, Optional, Union

import numpy as np
from PIL import Image
from spcn import errors
from spcn.util import log
from spcn.norm import cache, distinguishers, nmf, structure, utils
from spcn.norm.cache import ImageSource
from spcn.norm.structure import (StructurePreservingNormalizer,
                                 StructurePreservingEuclideanNormalizer,
                                 StructurePreservingDivergenceNormalizer)


class StainNormalizer:

    normalizers = {
        'spcn': StructurePreservingNormalizer,
        'spcn_euclidean': StructurePreservingEuclideanNormalizer,
        'spcn_divergence': StructurePreservingDivergenceNormalizer,
    }  # type: Dict[str, Any]

    fit_keys = ('stain_matrix_target', 'unstained_target')

    def __init__(
        self,
        method: str = 'spcn',
        stains: Optional[str] = None,
        **kwargs
    ) -> None:
        """H&E stain normalizer preserving tissue structure.

        The stain normalizer supports numpy images, PNG or JPG strings, and
        :class:`spcn.norm.ImageSource` images. Normalization keeps the
        stain concentrations of the image being normalized and renders them
        with the stain colors of a reference image.

        Args:
            method (str): Normalization method. Options include 'spcn'
                (factorization seeded from extreme colors), 'spcn_euclidean'
                and 'spcn_divergence' (seed refined with Euclidean or
                Kullback-Leibler multiplicative updates). Defaults to 'spcn'.
            stains (str, optional): Channel suppression preset, either 'he'
                or 'hdab'. Defaults to None.

        Keyword args:
            color_index_suppressed_by_hematoxylin (int, optional): Channel
                most strongly absorbed by hematoxylin. Defaults to 0.
            color_index_suppressed_by_eosin (int, optional): Channel most
                strongly absorbed by eosin. Defaults to 1.
            channels (int, optional): Number of color channels. Defaults to 3.
            num_threads (int, optional): Threads used to render output tiles.
            stain_matrix_target (np.ndarray, optional): Set the stain matrix
                target for the normalizer.
            unstained_target (np.ndarray, optional): Set the unstained color
                target for the normalizer.

        Raises:
            ValueError: If the specified normalizer method or stain preset
                is not available.

        Examples
            Normalize a numpy image to a reference image.

                >>> import spcn
                >>> normalizer = spcn.norm.StainNormalizer('spcn')
                >>> normalizer.fit(reference_image)
                >>> normalizer.transform(image)

            Fit the normalizer to an image file.

                >>> normalizer.fit('/path/to/reference.png')

            Normalize a JPEG image, returning JPEG data.

                >>> normalizer.jpeg_to_jpeg(jpeg_bytes)

            Use a saved fit.

                >>> normalizer.set_fit(**fit)
        """
        if method not in self.normalizers:
            raise ValueError(f"Unrecognized normalizer method {method}")
        init_kwargs = {k: v for k, v in kwargs.items() if k not in self.fit_keys}
        fit_kwargs = {k: v for k, v in kwargs.items() if k in self.fit_keys}
        if stains is not None:
            if stains not in utils.suppression_presets:
                raise ValueError(f"Unrecognized stain preset {stains}")
            init_kwargs = dict(utils.suppression_presets[stains], **init_kwargs)

        self.method = method
        self.n = self.normalizers[method](**init_kwargs)

        if fit_kwargs:
            self.set_fit(**fit_kwargs)

    def __repr__(self):
        base = "{}(\n".format(self.__class__.__name__)
        base += "  method = {!r},\n".format(self.method)
        for fit_param, fit_val in self.get_fit().items():
            base += "  {} = {!r},\n".format(fit_param, fit_val)
        base += ")"
        return base

    def fit(
        self,
        arg1: Optional[Union[np.ndarray, str, ImageSource]],
        **kwargs
    ) -> "StainNormalizer":
        """Fit the normalizer to a reference image.

        Args:
            arg1: (np.ndarray, str, ImageSource): Reference to fit. May be a
                numpy image array, an ImageSource, or a path to an image.
                If None, fit values are taken from the keyword arguments.

        Raises:
            errors.NotNormalizableError: If the reference cannot be
                factorized.
        """
        if isinstance(arg1, (np.ndarray, ImageSource)):
            self.n.fit(arg1)
        elif isinstance(arg1, str):
            self.src_img = utils.read_image(arg1)
            self.n.fit(self.src_img)
        elif arg1 is None and kwargs:
            self.set_fit(**kwargs)
        else:
            raise ValueError(f'Unrecognized args for fit: {arg1}')
        log.debug('Fit normalizer: {}'.format(
            ', '.join([f"{fit_key} = {fit_val}"
            for fit_key, fit_val in self.get_fit().items()])
        ))
        return self

    def get_fit(self, as_list: bool = False):
        """Get the current normalizer fit.

        Args:
            as_list (bool). Convert the fit values (numpy arrays) to list
                format. Defaults to False.

        Returns:
            Dict[str, np.ndarray]: Dictionary mapping 'stain_matrix_target'
            and 'unstained_target' to their fit values (None if not fit).
        """
        _fit = self.n.get_fit()
        if as_list:
            return {k: (v.tolist() if v is not None else None)
                    for k, v in _fit.items()}
        else:
            return _fit

    def set_fit(self, **kwargs) -> None:
        """Set the normalizer fit to the given values.

        Keyword args:
            stain_matrix_target (np.ndarray): Reference stain colors in
                optical density, shape (channels, 2).
            unstained_target (np.ndarray): Reference unstained color,
                shape (channels,).
        """
        self.n.set_fit(**{k:v for k, v in kwargs.items() if v is not None})

    def transform(
        self,
        image: Union[np.ndarray, ImageSource],
        *,
        passthrough: bool = False
    ) -> np.ndarray:
        """Normalize an image.

        Args:
            image (np.ndarray, ImageSource): Image.

        Keyword args:
            passthrough (bool): Return the image unchanged if it cannot be
                normalized, instead of raising. Defaults to False.

        Returns:
            np.ndarray: Normalized image.
        """
        if isinstance(image, (str, bytes)):
            raise ValueError("Unable to auto-transform bytes or str; please "
                             "use .png_to_png() or .jpeg_to_jpeg().")
        if isinstance(image, (np.ndarray, ImageSource)):
            return self.rgb_to_rgb(image, passthrough=passthrough)
        raise ValueError(f"Unrecognized image type {type(image)}; expected "
                         "np.ndarray or ImageSource")

    def normalize(
        self,
        image: Union[np.ndarray, ImageSource],
        reference: Union[np.ndarray, ImageSource],
        *,
        passthrough: bool = False
    ) -> np.ndarray:
        """Normalize an image to a reference, without changing the fit.

        Args:
            image (np.ndarray, ImageSource): Image to normalize.
            reference (np.ndarray, ImageSource): Reference image.

        Keyword args:
            passthrough (bool): Return the image unchanged if either image
                cannot be normalized, instead of raising. Defaults to False.

        Returns:
            np.ndarray: Normalized image.
        """
        try:
            return self.n.normalize(image, reference)
        except errors.NotNormalizableError:
            if not passthrough:
                raise
            return _pixels(image).copy()

    def jpeg_to_jpeg(
        self,
        jpeg_string: Union[str, bytes],
        *,
        quality: int = 100,
        passthrough: bool = False
    ) -> bytes:
        """Normalize a JPEG image, returning a JPEG image.

        Args:
            jpeg_string (str, bytes): JPEG image data.

        Keyword args:
            quality (int, optional): Quality level for creating the resulting
                normalized JPEG image. Defaults to 100.
            passthrough (bool): Return the image unchanged if it cannot be
                normalized. Defaults to False.

        Returns:
            bytes:  Normalized JPEG image.
        """
        cv_image = self.jpeg_to_rgb(jpeg_string, passthrough=passthrough)
        with BytesIO() as output:
            Image.fromarray(cv_image).save(
                output,
                format="JPEG",
                quality=quality
            )
            return output.getvalue()

    def jpeg_to_rgb(
        self,
        jpeg_string: Union[str, bytes],
        *,
        passthrough: bool = False
    ) -> np.ndarray:
        """Normalize a JPEG image, returning a numpy uint8 array.

        Args:
            jpeg_string (str, bytes): JPEG image data.

        Keyword args:
            passthrough (bool): Return the image unchanged if it cannot be
                normalized. Defaults to False.

        Returns:
            np.ndarray: Normalized image, uint8, W x H x C.
        """
        cv_image = utils.decode_image(jpeg_string)
        return self.rgb_to_rgb(cv_image, passthrough=passthrough)

    def png_to_png(
        self,
        png_string: Union[str, bytes],
        *,
        passthrough: bool = False
    ) -> bytes:
        """Normalize a PNG image, returning a PNG image.

        Args:
            png_string (str, bytes): PNG image data.

        Keyword args:
            passthrough (bool): Return the image unchanged if it cannot be
                normalized. Defaults to False.

        Returns:
            bytes: Normalized PNG image.
        """
        cv_image = self.png_to_rgb(png_string, passthrough=passthrough)
        with BytesIO() as output:
            Image.fromarray(cv_image).save(output, format="PNG")
            return output.getvalue()

    def png_to_rgb(
        self,
        png_string: Union[str, bytes],
        *,
        passthrough: bool = False
    ) -> np.ndarray:
        """Normalize a PNG image, returning a numpy uint8 array.

        Args:
            png_string (str, bytes): PNG image data.

        Keyword args:
            passthrough (bool): Return the image unchanged if it cannot be
                normalized. Defaults to False.

        Returns:
            np.ndarray: Normalized image, uint8, W x H x C.
        """
        return self.jpeg_to_rgb(png_string, passthrough=passthrough)  # imdecode detects the format

    def rgb_to_rgb(
        self,
        image: Union[np.ndarray, ImageSource],
        *,
        passthrough: bool = False
    ) -> np.ndarray:
        """Normalize a numpy array, returning a numpy array of the same dtype.

        Args:
            image (np.ndarray, ImageSource): Image.

        Keyword args:
            passthrough (bool): Return the image unchanged if it cannot be
                normalized. Defaults to False.

        Returns:
            np.ndarray: Normalized image, W x H x C.

        Raises:
            errors.NormalizerNotFitError: If the normalizer has not been fit.
            errors.NotNormalizableError: If the image cannot be normalized
                and ``passthrough`` is False.
        """
        try:
            return self.n.transform(image)
        except errors.NotNormalizableError:
            if not passthrough:
                raise
            return _pixels(image).copy()


def _pixels(image: Union[np.ndarray, ImageSource]) -> np.ndarray:
    if isinstance(image, ImageSource):
        return image.pixels
    return np.asarray(image)


def autoselect(
    method: str,
    source: Optional[Union[str, np.ndarray, ImageSource]] = None,
    **kwargs
) -> StainNormalizer:
    """Create a normalizer for a given method, and fit to a given source.

    Args:
        method (str): Normalization method. Options include 'spcn',
            'spcn_euclidean' and 'spcn_divergence'.
        source (str, np.ndarray, ImageSource, optional): Reference image, or
            path to a reference image. If not provided, the normalizer is
            returned unfit.

    Keyword args:
        Passed to :class:`StainNormalizer`.

    Returns:
        StainNormalizer: Initialized normalizer.
    """
    normalizer = StainNormalizer(method, **kwargs)
    if source is not None:
        normalizer.fit(source)
    return normalizer
