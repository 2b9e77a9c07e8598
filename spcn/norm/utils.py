"""Shared constants, pixel conversions and image I/O for stain normalization.

Images are handled as numpy arrays of shape (rows, cols, channels). Inside
the algorithm, pixel values live in a common "calculation scale": float32
values in [0, 255], regardless of the dtype of the image they came from.
"""

import cv2
import numpy as np
from typing import Dict, List, Union

from spcn import errors

# -----------------------------------------------------------------------------

# Floating-point type used for all matrix calculations.
CALC_DTYPE = np.float32

# Upper bound of the calculation scale.
CALC_MAX = 255.0

# Hematoxylin and eosin. The unstained (background) color is tracked apart.
NUMBER_OF_STAINS = 2

EPSILON0 = 1e-3   # a small array inf-norm, relative to the largest value
EPSILON1 = 1e-6   # a very small matrix element
EPSILON2 = 1e-12  # a very small squared magnitude for a vector

# Fraction of the best projection that a sample must reach to contribute to
# a refined distinguisher color.
REFINE_FRACTION = 0.999

# Minimum optical density between the origin and a stain extreme, once the
# mean stain direction is removed. Closer extremes are noise around a single
# stain.
STAIN_SEPARATION = 0.05

# For Virtanen's non-negative matrix factorization algorithm.
MAX_NUMBER_OF_ITERATIONS = 0
LAMBDA = 0.02  # Lasso penalty on concentrations.

# Channel index most strongly suppressed by each stain (RGB images).
# Hematoxylin (blue/purple) absorbs red; eosin (pink) absorbs green;
# DAB (brown) absorbs blue.
suppression_presets = {
    'he': {'color_index_suppressed_by_hematoxylin': 0,
           'color_index_suppressed_by_eosin': 1},
    'hdab': {'color_index_suppressed_by_hematoxylin': 0,
             'color_index_suppressed_by_eosin': 2},
}  # type: Dict[str, Dict[str, int]]

# -----------------------------------------------------------------------------


def pixel_max(dtype) -> float:
    """Largest valid pixel value for an image dtype.

    Integer images span their full range; floating-point images are
    expected in [0, 1].
    """
    dtype = np.dtype(dtype)
    if dtype == np.bool_:
        return 1.0
    if np.issubdtype(dtype, np.integer):
        return float(np.iinfo(dtype).max)
    if np.issubdtype(dtype, np.floating):
        return 1.0
    raise ValueError(f"Unsupported image dtype {dtype}")


def to_calc_scale(image: np.ndarray) -> np.ndarray:
    """Cast an image to CALC_DTYPE, rescaled to [0, CALC_MAX]."""
    image = np.asarray(image)
    scale = CALC_MAX / pixel_max(image.dtype)
    return image.astype(CALC_DTYPE) * CALC_DTYPE(scale)


def from_calc_scale(image: np.ndarray, dtype) -> np.ndarray:
    """Rescale calculation-scale values back to an image dtype."""
    dtype = np.dtype(dtype)
    image = np.clip(image, 0, CALC_MAX) * (pixel_max(dtype) / CALC_MAX)
    if np.issubdtype(dtype, np.integer) or dtype == np.bool_:
        image = np.rint(image)
    return image.astype(dtype)


def image_to_matrix(image: np.ndarray, channels: int = 3) -> np.ndarray:
    """Convert an image into a (channels x pixels) sample matrix.

    Pixels are visited in row-major order, so column ``r * cols + c`` holds
    the pixel at row ``r``, column ``c``.

    Args:
        image (np.ndarray): Image with dimensions (rows, cols, channels).
        channels (int): Expected number of channels.

    Returns:
        np.ndarray: Matrix of shape (channels, rows * cols), CALC_DTYPE, in
        calculation scale. Empty images produce a (channels, 0) matrix.
    """
    image = np.asarray(image)
    if image.ndim != 3 or image.shape[2] != channels:
        raise ValueError(f"Expected image with shape (rows, cols, {channels}), "
                         f"got {image.shape}")
    return np.ascontiguousarray(to_calc_scale(image).reshape((-1, channels)).T)


def matrix_to_image(matrix: np.ndarray, shape) -> np.ndarray:
    """Reshape a (channels x pixels) matrix back to (rows, cols, channels)."""
    rows, cols = shape[0], shape[1]
    return matrix.T.reshape((rows, cols, matrix.shape[0]))


def rgb_to_od(V: np.ndarray, unstained: np.ndarray) -> np.ndarray:
    """Convert sample colors to optical density relative to a background.

    Channels brighter than the unstained color have no absorbance and are
    clamped to zero.

    Args:
        V (np.ndarray): Sample matrix (channels x pixels), calculation scale.
        unstained (np.ndarray): Unstained color (channels,).

    Returns:
        np.ndarray: Optical density, same shape as V, non-negative.
    """
    log_unstained = np.log1p(np.asarray(unstained, dtype=CALC_DTYPE))
    OD = log_unstained[:, np.newaxis] - np.log1p(np.maximum(V, 0))
    return np.maximum(OD, 0).astype(CALC_DTYPE)


def od_to_rgb(OD: np.ndarray, unstained: np.ndarray) -> np.ndarray:
    """Convert optical density back to colors, clipped to the valid range."""
    base = np.asarray(unstained, dtype=CALC_DTYPE) + 1
    V = base[:, np.newaxis] * np.exp(-OD) - 1
    return np.clip(V, 0, CALC_MAX).astype(CALC_DTYPE)


def count_differing_pixels(
    image1: np.ndarray,
    image2: np.ndarray,
    tolerance: float = 1
) -> int:
    """Count pixels where any channel differs by more than ``tolerance``."""
    image1 = np.asarray(image1, dtype=np.float64)
    image2 = np.asarray(image2, dtype=np.float64)
    if image1.shape != image2.shape:
        raise ValueError(f"Image shapes differ: {image1.shape} vs {image2.shape}")
    diff = np.abs(image1 - image2)
    if diff.ndim == 3:
        diff = diff.max(axis=-1)
    return int(np.count_nonzero(diff > tolerance))


def read_image(path: str) -> np.ndarray:
    """Read an image file as an RGB uint8 array."""
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise errors.ImageLoadError(path)
    return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)


def decode_image(data: Union[str, bytes]) -> np.ndarray:
    """Decode JPEG or PNG data to an RGB uint8 array."""
    if isinstance(data, str):
        data = data.encode('latin-1')
    cv_image = cv2.imdecode(
        np.frombuffer(data, dtype=np.uint8),
        cv2.IMREAD_COLOR
    )
    if cv_image is None:
        raise ValueError("Unable to decode image data")
    return cv2.cvtColor(cv_image, cv2.COLOR_BGR2RGB)


def _as_numpy(arg1: Union[List, np.ndarray]) -> np.ndarray:
    """Ensures array is a numpy array."""

    if isinstance(arg1, list):
        return np.array(arg1).astype(CALC_DTYPE)
    elif isinstance(arg1, np.ndarray):
        return arg1.astype(CALC_DTYPE)
    else:
        raise ValueError(f'Expected numpy array; got {type(arg1)}')
