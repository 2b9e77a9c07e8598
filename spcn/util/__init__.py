import atexit
import hashlib
import logging
import os
from contextlib import contextmanager
from typing import Optional, TYPE_CHECKING

import numpy as np
from rich.logging import RichHandler
from rich.highlighter import NullHighlighter

from . import log_utils

if TYPE_CHECKING:
    from rich.progress import Progress


# --- Global vars -------------------------------------------------------------

SUPPORTED_FORMATS = ['jpg', 'jpeg', 'png', 'tif', 'tiff', 'bmp']

# --- Detect CPU cores --------------------------------------------------------

def num_cpu(default: Optional[int] = None) -> Optional[int]:
    try:
        return len(os.sched_getaffinity(0))
    except Exception:
        count = os.cpu_count()
        if count is None and default is not None:
            return default
        else:
            return count

# --- Configure logging--------------------------------------------------------

log = logging.getLogger('spcn')
log.setLevel(logging.DEBUG)


def setLoggingLevel(level):
    """Set the logging level.

    Uses standard python logging levels:

    - 50: CRITICAL
    - 40: ERROR
    - 30: WARNING
    - 20: INFO
    - 10: DEBUG
    - 0:  NOTSET

    Args:
        level (int): Logging level numeric value.

    """
    log.handlers[0].setLevel(level)


def getLoggingLevel():
    """Return the current logging level."""
    return log.handlers[0].level


@contextmanager
def logging_level(level: int):
    _initial = getLoggingLevel()
    setLoggingLevel(level)
    try:
        yield
    finally:
        setLoggingLevel(_initial)


def addLoggingFileHandler(path: str) -> logging.Handler:
    """Also write log records, without color markup, to the file at ``path``.

    The handler is closed automatically at interpreter exit.
    """
    fh = logging.FileHandler(path)
    fh.setFormatter(log_utils.FileFormatter())
    fh.setLevel(logging.DEBUG)
    log.addHandler(fh)
    atexit.register(fh.close)
    return fh


def removeLoggingFileHandler(handler: logging.Handler) -> None:
    log.removeHandler(handler)
    handler.close()


ch = RichHandler(
    markup=True,
    log_time_format="[%X]",
    show_path=False,
    highlighter=NullHighlighter(),
    rich_tracebacks=True
)
ch.setFormatter(log_utils.LogFormatter())
if 'SPCN_LOGGING_LEVEL' in os.environ:
    try:
        intLevel = int(os.environ['SPCN_LOGGING_LEVEL'])
        ch.setLevel(intLevel)
    except ValueError:
        ch.setLevel(logging.INFO)
else:
    ch.setLevel(logging.INFO)
log.addHandler(ch)

log.propagate = False

# --- Utility functions -------------------------------------------------------

def array_digest(arr: np.ndarray) -> str:
    """Calculate and return an MD5 checksum of an array's shape, dtype
    and contents."""
    m = hashlib.md5()
    m.update(str((arr.shape, arr.dtype.str)).encode())
    m.update(np.ascontiguousarray(arr).tobytes())
    return m.hexdigest()


def path_to_name(path: str) -> str:
    '''Returns name of a file, without extension,
    from a given full path string.'''
    _file = os.path.basename(path)
    dot_split = _file.split('.')
    if len(dot_split) == 1:
        return _file
    else:
        return '.'.join(dot_split[:-1])


def path_to_ext(path: str) -> str:
    '''Returns extension of a file path string.'''
    _file = os.path.basename(path)
    dot_split = _file.split('.')
    if len(dot_split) == 1:
        return ''
    else:
        return dot_split[-1]


def is_image(path: str) -> bool:
    """Checks if the given path is a supported image file."""
    return (os.path.isfile(path)
            and path_to_ext(path).lower() in SUPPORTED_FORMATS)


@contextmanager
def cleanup_progress(pb: Optional["Progress"]):
    try:
        yield
    finally:
        if pb is not None:
            pb.refresh()
            pb.stop()
