"""
_context.py
===========
Context managers that change placemass state for the length of a block.

  suppress_logger(name, level)   raise one logger's threshold
  quiet(level)                   the same, for the whole 'placemass' tree
  suppress_warnings(category)    ignore a warning category
  use_backend(backend)           force the pairwise distance backend

Each one restores the previous state on exit, including on exceptions, and
they nest.
"""

import logging
import warnings
from contextlib import contextmanager
from typing import Optional, Type

from placemass._backend import resolve_backend

_PACKAGE_LOGGER = "placemass"

# Set by use_backend; read by node_histogram_distance.
_backend_override: Optional[str] = None


@contextmanager
def suppress_logger(logger_name: str, level: int = logging.CRITICAL):
    """
    Set the level of logger *logger_name* to *level* inside the block.

    >>> # Hide the partial edge numbering warning while loading old files
    >>> with suppress_logger('placemass._tree', logging.ERROR):
    ...     samples = [read_jplace(p) for p in paths]
    """
    target = logging.getLogger(logger_name)
    previous = target.level
    target.setLevel(level)
    try:
        yield
    finally:
        target.setLevel(previous)


@contextmanager
def quiet(level: int = logging.CRITICAL):
    """
    Silence placemass logging below *level*.

    Module loggers are children of 'placemass', so this covers per-file
    progress, run summaries and the log-scaling advisory.

    >>> with quiet(logging.WARNING):
    ...     tree, masses, norm = heat_tree(files, options)
    """
    with suppress_logger(_PACKAGE_LOGGER, level):
        yield


@contextmanager
def suppress_warnings(category: Optional[Type[Warning]] = None):
    """Ignore warnings of *category* (all warnings if None) inside the block."""
    with warnings.catch_warnings():
        if category is None:
            warnings.simplefilter("ignore")
        else:
            warnings.filterwarnings("ignore", category=category)
        yield


@contextmanager
def use_backend(backend: str):
    """
    Force ``node_histogram_distance`` (and so ``nhd_matrix``) to *backend*,
    whatever ``backend=`` the caller passes.

    Parameters
    ----------
    backend : str
        'python', 'cpu-parallel' or 'best'.

    Raises
    ------
    ValueError
        If *backend* is unknown or unavailable; checked on entry.

    Notes
    -----
    The override is module state shared by all threads.  Concurrent callers
    that need different backends pass ``backend=`` instead.

    >>> with use_backend('python'):
    ...     reference = nhd_matrix(files)
    """
    global _backend_override
    resolve_backend(backend)
    previous = _backend_override
    _backend_override = backend
    try:
        yield
    finally:
        _backend_override = previous


def get_backend_override() -> Optional[str]:
    """The backend forced by the innermost active ``use_backend``, or None."""
    return _backend_override
