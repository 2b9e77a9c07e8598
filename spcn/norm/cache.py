"""Per-image factorization cache.

Factorizing an image is the expensive step of normalization. The cache keeps
the most recent factorization for each role ('input' and 'reference') and
reuses it while the image is unchanged. An image is identified by an
identity plus a modification marker; a change to either invalidates the
entry. Failures are cached as well, so an unnormalizable image is reported
once and not recomputed.
"""

import itertools
import threading
import numpy as np
from typing import Any, Callable, Dict, Hashable, Optional, Union

from spcn import errors
from spcn.util import log, array_digest
from spcn.norm.nmf import Factorization

ROLES = ('input', 'reference')

_identities = itertools.count()


class ImageSource:

    def __init__(self, pixels: np.ndarray, identity: Optional[Hashable] = None) -> None:
        """An image with a stable identity and a modification counter.

        Use this to let the normalizer recognize an image without hashing its
        pixels. Call :meth:`touch` (or :meth:`update`) after changing the
        pixels in place, so that cached factorizations are recomputed.

        Args:
            pixels (np.ndarray): Image (rows, cols, channels).
            identity (hashable, optional): Identity of the image. Defaults to
                a new unique value.
        """
        self.pixels = np.asarray(pixels)
        self.identity = identity if identity is not None else next(_identities)
        self.modified = 0  # type: Any

    def __repr__(self):
        return "ImageSource(identity={!r}, shape={}, modified={!r})".format(
            self.identity, self.pixels.shape, self.modified)

    def touch(self) -> None:
        """Mark the pixels as modified."""
        self.modified += 1

    def update(self, pixels: np.ndarray) -> None:
        """Replace the pixels and mark them as modified."""
        self.pixels = np.asarray(pixels)
        self.touch()


def as_source(image: Union[np.ndarray, ImageSource]) -> ImageSource:
    """Wrap a numpy image as an ImageSource.

    Plain arrays are identified by object id, with a digest of their
    contents as modification marker.
    """
    if isinstance(image, ImageSource):
        return image
    if not isinstance(image, np.ndarray):
        raise ValueError(f"Expected numpy array or ImageSource; got {type(image)}")
    source = ImageSource(image, identity=id(image))
    source.modified = array_digest(image)
    return source


class CacheEntry:
    """Cached outcome of factorizing one image."""

    def __init__(
        self,
        identity: Hashable,
        modified: Any,
        factorization: Optional[Factorization] = None,
        error: Optional[errors.NotNormalizableError] = None
    ) -> None:
        self.identity = identity
        self.modified = modified
        self.factorization = factorization
        self.error = error

    def __repr__(self):
        state = 'failed' if self.error is not None else 'ok'
        return "CacheEntry(identity={!r}, modified={!r}, {})".format(
            self.identity, self.modified, state)

    def matches(self, source: ImageSource) -> bool:
        return (self.identity == source.identity
                and self.modified == source.modified)

    def result(self) -> Factorization:
        """Return the cached factorization, or raise the cached failure."""
        if self.error is not None:
            raise self.error
        return self.factorization  # type: ignore


class FactorizationCache:

    def __init__(self) -> None:
        """Holds one factorization per role, safe to use from many threads.

        Each role has its own lock, so the input and reference images can be
        factorized concurrently.
        """
        self._entries = {}  # type: Dict[str, CacheEntry]
        self._locks = {role: threading.Lock() for role in ROLES}

    def __repr__(self):
        return "FactorizationCache({!r})".format(self._entries)

    def _check_role(self, role: str) -> None:
        if role not in ROLES:
            raise ValueError(f"Unrecognized role {role!r}; expected one of {ROLES}")

    def get(self, role: str) -> Optional[CacheEntry]:
        """Return the current entry for a role, if any."""
        self._check_role(role)
        return self._entries.get(role)

    def is_current(self, role: str, source: ImageSource) -> bool:
        """Check whether the role's entry was computed from this source."""
        entry = self.get(role)
        return entry is not None and entry.matches(source)

    def get_or_compute(
        self,
        role: str,
        source: ImageSource,
        compute: Callable[[np.ndarray], Factorization]
    ) -> Factorization:
        """Return the cached factorization for a source, computing if needed.

        Args:
            role (str): 'input' or 'reference'.
            source (ImageSource): Image to factorize.
            compute (Callable): Function mapping pixels to a Factorization.

        Returns:
            Factorization

        Raises:
            errors.NotNormalizableError: If the image cannot be factorized.
                The failure is logged when first computed and re-raised
                on later lookups without recomputation.
        """
        self._check_role(role)
        entry = self._entries.get(role)
        if entry is not None and entry.matches(source):
            log.debug(f"Using cached {role} factorization")
            return entry.result()
        with self._locks[role]:
            # Another thread may have finished the same image meanwhile.
            entry = self._entries.get(role)
            if entry is not None and entry.matches(source):
                return entry.result()
            log.debug(f"Computing {role} factorization")
            try:
                factorization = compute(source.pixels)
            except errors.NotNormalizableError as e:
                log.warning(str(e))
                entry = CacheEntry(source.identity, source.modified, error=e)
            else:
                entry = CacheEntry(source.identity, source.modified,
                                   factorization=factorization)
            self._entries[role] = entry
        return entry.result()

    def invalidate(self, role: Optional[str] = None) -> None:
        """Drop the entry for a role, or all entries."""
        roles = ROLES if role is None else (role,)
        for r in roles:
            self._check_role(r)
            with self._locks[r]:
                self._entries.pop(r, None)
