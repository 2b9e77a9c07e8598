"""Non-negative stain factorization.

An image's sample matrix is factorized in optical density (OD) space as

    OD(V) ~= W H

where ``W`` (channels x 2) holds the hematoxylin and eosin stain colors as
optical densities relative to the unstained color, and ``H`` (2 x pixels)
holds each pixel's non-negative stain concentrations.

The factorization is seeded from the image's distinguisher colors and may be
refined with Virtanen's multiplicative updates, minimizing either the
Euclidean distance or the generalized Kullback-Leibler divergence plus an
L1 (lasso) penalty on ``H``.
"""

import numpy as np
from typing import Tuple

import spcn.norm.utils as ut
from spcn import errors
from spcn.norm import distinguishers
from spcn.util import log

MODES = ('euclidean', 'divergence')


class Factorization:
    """Result of factorizing one image.

    Attributes:
        W (np.ndarray): Stain colors in OD space, shape (channels, 2).
            Column 0 is hematoxylin, column 1 is eosin.
        H (np.ndarray): Stain concentrations, shape (2, pixels).
        unstained (np.ndarray): Unstained color in calculation scale,
            shape (channels,).
    """

    def __init__(
        self,
        W: np.ndarray,
        H: np.ndarray,
        unstained: np.ndarray
    ) -> None:
        self.W = W
        self.H = H
        self.unstained = unstained

    def __repr__(self):
        return "Factorization(channels={}, pixels={})".format(
            self.W.shape[0], self.H.shape[1])

    @property
    def num_pixels(self) -> int:
        return self.H.shape[1]

    def reconstruct(self) -> np.ndarray:
        """Approximate sample matrix (calculation scale) given by W H."""
        return ut.od_to_rgb(np.dot(self.W, self.H), self.unstained)


# -----------------------------------------------------------------------------

def distinguishers_to_nmf_seeds(
    distinguisher_colors: np.ndarray,
    color_index_suppressed_by_hematoxylin: int,
    color_index_suppressed_by_eosin: int,
    V: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Build the initial factorization from labelled distinguishers.

    The stain columns of W are the OD of the hematoxylin and eosin
    distinguishers relative to the unstained distinguisher. Each pixel's
    initial concentrations are the least-squares coefficients of its OD
    on those two columns, clamped to be non-negative.

    Args:
        distinguisher_colors (np.ndarray): Refined distinguisher colors
            (channels x 3), calculation scale.
        color_index_suppressed_by_hematoxylin (int): Channel index.
        color_index_suppressed_by_eosin (int): Channel index.
        V (np.ndarray): Full sample matrix (channels x pixels).

    Returns:
        A tuple containing

            np.ndarray: W0, shape (channels, 2).

            np.ndarray: H0, shape (2, pixels).

            np.ndarray: Unstained color, shape (channels,).

    Raises:
        errors.DegenerateDistinguishersError: If a stain color matches the
            unstained color or the two stain colors are parallel.
    """
    unstained_i, hematoxylin_i, eosin_i = distinguishers.distinguishers_to_colors(
        distinguisher_colors,
        color_index_suppressed_by_hematoxylin,
        color_index_suppressed_by_eosin
    )
    unstained = distinguisher_colors[:, unstained_i].astype(ut.CALC_DTYPE)
    stains = distinguisher_colors[:, [hematoxylin_i, eosin_i]]
    W = ut.rgb_to_od(stains, unstained)

    lengths2 = np.einsum('ij,ij->j', W, W)
    if np.any(lengths2 <= ut.EPSILON2):
        raise errors.DegenerateDistinguishersError(
            reason="a stain color matches the unstained color"
        )
    cosine = np.dot(W[:, 0], W[:, 1]) / np.sqrt(lengths2[0] * lengths2[1])
    if cosine >= 1 - ut.EPSILON1:
        raise errors.DegenerateDistinguishersError(
            reason="hematoxylin and eosin colors are parallel"
        )

    OD = ut.rgb_to_od(V, unstained)
    H = np.linalg.lstsq(W, OD, rcond=None)[0]
    H = np.maximum(H, 0).astype(ut.CALC_DTYPE)
    return W.astype(ut.CALC_DTYPE), H, unstained


# --- Multiplicative updates --------------------------------------------------

def _rescale_columns(
    W: np.ndarray,
    H: np.ndarray,
    target_lengths: np.ndarray
) -> None:
    """Rescale W columns to the given lengths, compensating in H (in place)."""
    lengths = np.sqrt(np.einsum('ij,ij->j', W, W))
    scale = np.ones_like(lengths)
    valid = lengths > ut.EPSILON1
    scale[valid] = target_lengths[valid] / lengths[valid]
    W *= scale[np.newaxis, :]
    H /= scale[:, np.newaxis]


def virtanen_euclidean(
    V: np.ndarray,
    W: np.ndarray,
    H: np.ndarray,
    lambda_: float = ut.LAMBDA,
    max_iterations: int = ut.MAX_NUMBER_OF_ITERATIONS,
    preserve_norms: bool = True
) -> Tuple[np.ndarray, np.ndarray]:
    """Refine W and H by minimizing ||V - WH||^2 + lambda * sum(H).

    Args:
        V (np.ndarray): Non-negative data matrix (channels x pixels).
        W (np.ndarray): Non-negative seed, (channels x 2).
        H (np.ndarray): Non-negative seed, (2 x pixels).
        lambda_ (float): L1 penalty on H.
        max_iterations (int): Number of update rounds. 0 returns the seeds.
        preserve_norms (bool): After each round, rescale W columns back to
            their seed lengths, compensating in H so that WH is unchanged.

    Returns:
        Tuple[np.ndarray, np.ndarray]: Refined W and H.
    """
    W = np.array(W, dtype=ut.CALC_DTYPE)
    H = np.array(H, dtype=ut.CALC_DTYPE)
    seed_lengths = np.sqrt(np.einsum('ij,ij->j', W, W))
    for _ in range(max_iterations):
        H *= np.dot(W.T, V) / np.maximum(np.dot(np.dot(W.T, W), H) + lambda_, ut.EPSILON1)
        np.maximum(H, 0, out=H)
        W *= np.dot(V, H.T) / np.maximum(np.dot(W, np.dot(H, H.T)), ut.EPSILON1)
        np.maximum(W, 0, out=W)
        if preserve_norms:
            _rescale_columns(W, H, seed_lengths)
    return W, H


def virtanen_kl_divergence(
    V: np.ndarray,
    W: np.ndarray,
    H: np.ndarray,
    lambda_: float = ut.LAMBDA,
    max_iterations: int = ut.MAX_NUMBER_OF_ITERATIONS,
    preserve_norms: bool = True
) -> Tuple[np.ndarray, np.ndarray]:
    """Refine W and H by minimizing D(V || WH) + lambda * sum(H).

    D is the generalized Kullback-Leibler divergence. Arguments and return
    values are as for :func:`virtanen_euclidean`.
    """
    W = np.array(W, dtype=ut.CALC_DTYPE)
    H = np.array(H, dtype=ut.CALC_DTYPE)
    seed_lengths = np.sqrt(np.einsum('ij,ij->j', W, W))
    for _ in range(max_iterations):
        ratio = V / np.maximum(np.dot(W, H), ut.EPSILON1)
        H *= np.dot(W.T, ratio) / np.maximum(W.sum(axis=0)[:, np.newaxis] + lambda_, ut.EPSILON1)
        np.maximum(H, 0, out=H)
        ratio = V / np.maximum(np.dot(W, H), ut.EPSILON1)
        W *= np.dot(ratio, H.T) / np.maximum(H.sum(axis=1)[np.newaxis, :], ut.EPSILON1)
        np.maximum(W, 0, out=W)
        if preserve_norms:
            _rescale_columns(W, H, seed_lengths)
    return W, H


def euclidean_error(V: np.ndarray, W: np.ndarray, H: np.ndarray) -> float:
    """Squared Frobenius norm of V - WH."""
    diff = V.astype(np.float64) - np.dot(W.astype(np.float64), H.astype(np.float64))
    return float(np.sum(diff * diff))


def kl_divergence_error(V: np.ndarray, W: np.ndarray, H: np.ndarray) -> float:
    """Generalized Kullback-Leibler divergence D(V || WH)."""
    V = V.astype(np.float64)
    WH = np.maximum(np.dot(W.astype(np.float64), H.astype(np.float64)), ut.EPSILON1)
    positive = V > 0
    total = np.sum(V[positive] * np.log(V[positive] / WH[positive]))
    return float(total - V.sum() + WH.sum())


def refine(
    OD: np.ndarray,
    W: np.ndarray,
    H: np.ndarray,
    mode: str = 'euclidean',
    lambda_: float = ut.LAMBDA,
    max_iterations: int = ut.MAX_NUMBER_OF_ITERATIONS
) -> Tuple[np.ndarray, np.ndarray]:
    """Refine a seeded factorization with the solver for ``mode``."""
    if mode == 'euclidean':
        solver = virtanen_euclidean
    elif mode == 'divergence':
        solver = virtanen_kl_divergence
    else:
        raise ValueError(f"Unrecognized factorization mode {mode!r}; "
                         f"expected one of {MODES}")
    return solver(OD, W, H, lambda_=lambda_, max_iterations=max_iterations)


# -----------------------------------------------------------------------------

def image_to_nmf(
    V: np.ndarray,
    color_index_suppressed_by_hematoxylin: int = 0,
    color_index_suppressed_by_eosin: int = 1,
    mode: str = 'euclidean',
    max_iterations: int = ut.MAX_NUMBER_OF_ITERATIONS,
    lambda_: float = ut.LAMBDA
) -> Factorization:
    """Factorize a sample matrix into stain colors and concentrations.

    Args:
        V (np.ndarray): Sample matrix (channels x pixels), calculation scale.
        color_index_suppressed_by_hematoxylin (int): Channel index.
        color_index_suppressed_by_eosin (int): Channel index.
        mode (str): 'euclidean' or 'divergence'. Only used when
            ``max_iterations`` > 0.
        max_iterations (int): Multiplicative update rounds.
        lambda_ (float): L1 penalty on concentrations.

    Returns:
        Factorization

    Raises:
        errors.InsufficientTissueError: If the background filter leaves no
            tissue.
        errors.DegenerateDistinguishersError: If the stain roles cannot be
            assigned.
    """
    if mode not in MODES:
        raise ValueError(f"Unrecognized factorization mode {mode!r}; "
                         f"expected one of {MODES}")
    bright, _ = distinguishers.matrix_to_bright_part_of_matrix(V)
    if bright.shape[1] == 0:
        raise errors.InsufficientTissueError()
    distinguisher_colors = distinguishers.matrix_to_distinguishers(bright)
    log.debug("Distinguisher colors: {}".format(
        np.round(distinguisher_colors.T, 1).tolist()))
    W, H, unstained = distinguishers_to_nmf_seeds(
        distinguisher_colors,
        color_index_suppressed_by_hematoxylin,
        color_index_suppressed_by_eosin,
        V
    )
    if max_iterations > 0:
        OD = ut.rgb_to_od(V, unstained)
        log.debug(f"Refining factorization ({mode}, {max_iterations} iterations)")
        W, H = refine(OD, W, H, mode=mode, lambda_=lambda_,
                      max_iterations=max_iterations)
    return Factorization(W, H, unstained)


def nmfs_to_od(input_H: np.ndarray, reference_W: np.ndarray) -> np.ndarray:
    """Combine input concentrations with reference stain colors."""
    return np.dot(reference_W, input_H)
