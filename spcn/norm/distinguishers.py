"""Extreme-color ("distinguisher") search for two-stain images.

A sample matrix holds one color per column. Among those colors we look for
the unstained background and the two pure stain colors. The background is
the brightest column. Stains are searched in optical density relative to
the background, where mixtures are sums of their pure parts: with the mean
density direction projected out, the pure stains at full strength are the
two extremes on opposite sides of the origin, and darker mixtures of both
stains fall between them.
"""

import numpy as np
from typing import List, Sequence, Tuple

import spcn.norm.utils as ut
from spcn import errors
from spcn.util import log


def matrix_to_bright_part_of_matrix(
    V: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """Remove columns that are of no use to the distinguisher search.

    Two kinds of columns are removed, both judged against ``EPSILON0`` times
    the largest absolute value in the matrix:

    - near-black columns (low brightness; out-of-tissue or scanner border)
    - duplicates of the unstained anchor, the brightest column. The anchor
      itself is kept.

    If nothing but the anchor survives there is no tissue to separate and
    an empty matrix is returned.

    Args:
        V (np.ndarray): Sample matrix (channels x pixels).

    Returns:
        A tuple containing

            np.ndarray: Kept columns, in their original order.

            np.ndarray: Indices of the kept columns in ``V``.
    """
    empty = (V[:, :0], np.zeros((0,), dtype=np.int64))
    if V.shape[1] == 0:
        return empty
    max_magnitude = float(np.max(np.abs(V)))
    if max_magnitude <= 0:
        return empty
    threshold = ut.EPSILON0 * max_magnitude

    anchor = int(np.argmax(V.sum(axis=0)))
    brightness = np.max(np.abs(V), axis=0)
    distance = np.max(np.abs(V - V[:, anchor:anchor+1]), axis=0)
    keep = (brightness >= threshold) & (distance >= threshold)
    keep[anchor] = True

    indices = np.flatnonzero(keep)
    if len(indices) < 2:
        log.debug("Background filter kept no tissue columns")
        return empty
    log.debug("Background filter kept {} of {} columns".format(
        len(indices), V.shape[1]))
    return V[:, indices], indices


def matrix_to_one_distinguisher(
    normV: np.ndarray,
    reference: np.ndarray
) -> int:
    """Find the column with the largest projection onto a reference.

    If the reference vector is (nearly) zero, columns are compared by their
    squared length instead.

    Args:
        normV (np.ndarray): Possibly recentered/projected matrix
            (channels x pixels).
        reference (np.ndarray): Reference direction (channels,).

    Returns:
        int: Column index of the first maximal absolute projection, or -1 if
        every column is (nearly) zero.
    """
    if normV.shape[1] == 0:
        return -1
    lengths2 = np.einsum('ij,ij->j', normV, normV)
    if lengths2.max() <= ut.EPSILON2:
        return -1
    reference = np.asarray(reference, dtype=normV.dtype)
    reference_length2 = float(np.dot(reference, reference))
    if reference_length2 > ut.EPSILON2:
        projections = np.abs(np.dot(reference, normV)) / np.sqrt(reference_length2)
    else:
        projections = lengths2
    index = int(np.argmax(projections))
    if projections[index] <= ut.EPSILON1:
        return -1
    return index


def recenter_matrix(normV: np.ndarray, index: int) -> np.ndarray:
    """Translate all columns so that column ``index`` lands on the origin."""
    return normV - normV[:, index:index+1]


def project_matrix(normV: np.ndarray, direction: np.ndarray) -> np.ndarray:
    """Remove the component along ``direction`` from every column."""
    direction = np.asarray(direction, dtype=normV.dtype)
    length2 = float(np.dot(direction, direction))
    if length2 <= ut.EPSILON2:
        return normV.copy()
    coefficients = np.dot(direction, normV) / length2
    return normV - np.outer(direction, coefficients)


def matrix_to_stain_contrast(V: np.ndarray, anchor: int) -> np.ndarray:
    """Optical density with the mean stain direction projected out.

    Relative to the unstained anchor, every pixel's optical density is a
    non-negative mix ``a * h + b * e`` of the two stain densities. The mean
    density points between ``h`` and ``e``, so once it is removed the two
    stains lie on opposite sides of the origin. A mixture then lands between
    its pure parts, and the extremes on either side are pure stains at full
    strength, however dark the mixtures are.

    Args:
        V (np.ndarray): Sample matrix (channels x pixels), calculation scale.
        anchor (int): Column of the unstained color.

    Returns:
        np.ndarray: Projected optical density (channels x pixels), float64.
    """
    OD = ut.rgb_to_od(V, V[:, anchor]).astype(np.float64)
    return project_matrix(OD, OD.mean(axis=1))


def first_pass_distinguishers(V: np.ndarray) -> List[int]:
    """Coarse search for the unstained color and the two stain extremes.

    The first round compares brightness (projection onto the all-ones
    direction) and picks the unstained anchor. Stains are then searched in
    the anchor's optical density with the mean stain direction projected
    out: the column farthest from the origin is one stain, and after
    recentering on it, the column farthest along the opposite direction is
    the other. A stain must lie at least ``STAIN_SEPARATION`` from the
    origin, so single-stain images do not yield a second stain from noise.

    Chosen columns are sent to the origin, so no index is returned twice.

    Args:
        V (np.ndarray): Sample matrix (channels x pixels), calculation scale.

    Returns:
        List[int]: Column indices, unstained first. Fewer than
        NUMBER_OF_STAINS + 1 indices means the search ran out of variation.
    """
    if V.shape[1] == 0:
        return []
    max_magnitude = float(np.max(np.abs(V)))
    if max_magnitude <= 0:
        return []
    normV = V.astype(np.float64) / max_magnitude
    anchor = matrix_to_one_distinguisher(normV, np.ones(V.shape[0]))
    if anchor < 0:
        return []
    indices = [anchor]

    contrast = matrix_to_stain_contrast(V, anchor)
    first = matrix_to_one_distinguisher(contrast, np.zeros(V.shape[0]))
    if first < 0 or np.linalg.norm(contrast[:, first]) < ut.STAIN_SEPARATION:
        log.debug("First pass found no stain distinguishers")
        return indices
    indices.append(first)

    opposite = -contrast[:, first]
    second = matrix_to_one_distinguisher(recenter_matrix(contrast, first), opposite)
    if second >= 0:
        beyond = np.dot(opposite, contrast[:, second]) / np.linalg.norm(opposite)
        if beyond >= ut.STAIN_SEPARATION:
            indices.append(second)
    log.debug(f"First pass found distinguishers at columns {indices}")
    return indices


def second_pass_distinguishers(
    V: np.ndarray,
    indices: Sequence[int]
) -> np.ndarray:
    """Refine each first-pass distinguisher by local averaging.

    The unstained anchor keeps its own color. For each stain, the other
    stain is sent to the origin of the stain contrast space. Columns that
    reach at least ``REFINE_FRACTION`` of the best dot product with the
    stain's transformed column are averaged, using their untransformed
    colors from ``V``.

    Args:
        V (np.ndarray): Sample matrix (channels x pixels), calculation scale.
        indices (Sequence[int]): First-pass column indices, unstained first.

    Returns:
        np.ndarray: Refined colors (channels x len(indices)).
    """
    colors = np.zeros((V.shape[0], len(indices)), dtype=ut.CALC_DTYPE)
    if len(indices) == 0:
        return colors
    colors[:, 0] = V[:, indices[0]]
    stains = list(indices[1:])
    if not stains:
        return colors
    contrast = matrix_to_stain_contrast(V, indices[0])
    for d, index in enumerate(stains, start=1):
        normV = contrast
        for other in stains:
            if other != index:
                normV = recenter_matrix(normV, other)
        dot_products = np.dot(normV[:, index], normV)
        best = float(dot_products.max())
        if best <= ut.EPSILON2:
            colors[:, d] = V[:, index]
            continue
        close = dot_products >= best * ut.REFINE_FRACTION
        colors[:, d] = V[:, close].mean(axis=1)
    return colors


def matrix_to_distinguishers(V: np.ndarray) -> np.ndarray:
    """Find the refined distinguisher colors of a (filtered) sample matrix.

    Args:
        V (np.ndarray): Sample matrix (channels x pixels), calculation scale.

    Returns:
        np.ndarray: Distinguisher colors (channels x k), calculation scale,
        unstained first, with k <= NUMBER_OF_STAINS + 1.
    """
    indices = first_pass_distinguishers(V)
    return second_pass_distinguishers(V, indices)


def distinguishers_to_colors(
    distinguishers: np.ndarray,
    color_index_suppressed_by_hematoxylin: int,
    color_index_suppressed_by_eosin: int
) -> Tuple[int, int, int]:
    """Label distinguishers as unstained, hematoxylin and eosin.

    The brightest distinguisher is the unstained color. Each remaining one
    is scored by how much it suppresses the hematoxylin channel compared to
    the eosin channel, relative to the unstained color; the stronger
    hematoxylin suppressor is hematoxylin and the other is eosin.

    Returns:
        Tuple[int, int, int]: Column indices of the unstained, hematoxylin
        and eosin distinguishers.

    Raises:
        errors.DegenerateDistinguishersError: If there are fewer than three
            distinguishers or the two stains cannot be told apart.
    """
    count = distinguishers.shape[1]
    if count < ut.NUMBER_OF_STAINS + 1:
        raise errors.DegenerateDistinguishersError(
            reason=f"found {count} of {ut.NUMBER_OF_STAINS + 1} distinguishers"
        )
    unstained = int(np.argmax(distinguishers.sum(axis=0)))
    candidates = [i for i in range(count) if i != unstained]
    baseline = np.maximum(distinguishers[:, unstained], ut.EPSILON1)
    relative = distinguishers[:, candidates] / baseline[:, np.newaxis]
    scores = (relative[color_index_suppressed_by_hematoxylin]
              - relative[color_index_suppressed_by_eosin])
    if abs(float(scores[0] - scores[1])) <= ut.EPSILON1:
        raise errors.DegenerateDistinguishersError(
            reason="hematoxylin and eosin suppress channels equally"
        )
    if scores[0] < scores[1]:
        hematoxylin, eosin = candidates[0], candidates[1]
    else:
        hematoxylin, eosin = candidates[1], candidates[0]
    return unstained, hematoxylin, eosin
