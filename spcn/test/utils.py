"""Synthetic H&E images for testing."""

import numpy as np
from typing import Sequence, Tuple

# Background and full-concentration stain colors (RGB).
UNSTAINED = (240, 238, 242)
HEMATOXYLIN = (70, 50, 150)
EOSIN = (230, 120, 200)

# A second staining protocol, used as a normalization reference.
REFERENCE_UNSTAINED = (250, 247, 250)
REFERENCE_HEMATOXYLIN = (95, 70, 170)
REFERENCE_EOSIN = (225, 140, 215)

WHITE = (255, 255, 255)


def stain_od(color: Sequence[float], unstained: Sequence[float]) -> np.ndarray:
    """Optical density of a stain color relative to an unstained color."""
    return np.log1p(np.asarray(unstained, float)) - np.log1p(np.asarray(color, float))


def synthetic_he_image(
    rows: int = 48,
    cols: int = 48,
    seed: int = 0,
    unstained: Sequence[float] = UNSTAINED,
    hematoxylin: Sequence[float] = HEMATOXYLIN,
    eosin: Sequence[float] = EOSIN,
    overlap: bool = False
) -> Tuple[np.ndarray, np.ndarray]:
    """Render a random two-stain image with Beer-Lambert mixing.

    Concentrations are drawn from the triangle a + b <= 1, so the most
    extreme colors are the background and the two full-concentration stains.
    With ``overlap``, they are drawn from the unit square instead, as in
    tissue where both stains bind: the darkest pixels are then mixtures of
    both stains at full concentration.

    One in eight pixels is background, and four pixels of each stain are at
    full concentration.

    Returns:
        A tuple containing

            np.ndarray: Image (rows, cols, 3), uint8.

            np.ndarray: Concentrations (2, rows * cols), row-major.
    """
    rng = np.random.RandomState(seed)
    n = rows * cols
    a = rng.random_sample(n)
    b = rng.random_sample(n)
    if not overlap:
        outside = a + b > 1
        a[outside] = 1 - a[outside]
        b[outside] = 1 - b[outside]

    order = rng.permutation(n)
    background = order[:n // 8]
    pure_h = order[n // 8:n // 8 + 4]
    pure_e = order[n // 8 + 4:n // 8 + 8]
    a[background], b[background] = 0, 0
    a[pure_h], b[pure_h] = 1, 0
    a[pure_e], b[pure_e] = 0, 1

    OD = (np.outer(stain_od(hematoxylin, unstained), a)
          + np.outer(stain_od(eosin, unstained), b))
    base = np.asarray(unstained, float)[:, np.newaxis] + 1
    V = base * np.exp(-OD) - 1
    image = np.rint(V.T).clip(0, 255).astype(np.uint8).reshape((rows, cols, 3))
    return image, np.stack([a, b])


def two_by_two_image() -> np.ndarray:
    """Two hematoxylin pixels, one eosin pixel and one white pixel."""
    return np.array([
        [[70, 50, 150], [70, 50, 150]],
        [[230, 120, 200], [255, 255, 255]],
    ], dtype=np.uint8)


def uniform_image(color: Sequence[int], rows: int = 16, cols: int = 16) -> np.ndarray:
    return np.tile(np.asarray(color, dtype=np.uint8), (rows, cols, 1))


def synthetic_single_stain_image(
    rows: int = 48,
    cols: int = 48,
    seed: int = 0,
    unstained: Sequence[float] = UNSTAINED,
    stain: Sequence[float] = HEMATOXYLIN
) -> np.ndarray:
    """Render a random image of one stain at varying concentration."""
    rng = np.random.RandomState(seed)
    a = rng.random_sample(rows * cols)
    a[:rows * cols // 8] = 0
    OD = np.outer(stain_od(stain, unstained), a)
    V = (np.asarray(unstained, float)[:, np.newaxis] + 1) * np.exp(-OD) - 1
    return np.rint(V.T).clip(0, 255).astype(np.uint8).reshape((rows, cols, 3))
