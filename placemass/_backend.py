"""
_backend.py
===========
Backend selection for the pairwise Node Histogram Distance engine.

Two backends compute the same matrix:

  'python'        numpy reference kernel (``_histograms._nhd_kernel``);
                  always present.
  'cpu-parallel'  numba ``prange`` kernel (``_cpu_kernels._nhd_matrix_njit``);
                  present when numba imports and the kernel module compiles.

'best' names the last entry of ``BACKEND_ORDER`` that is available.

Nothing here logs; ``_analysis`` reports availability once at import time.
"""

from typing import Callable, List, Optional

BACKEND_ORDER = ("python", "cpu-parallel")

_cpu_kernel: Optional[Callable] = None
_cpu_kernel_checked = False


def check_numba_available() -> bool:
    """Return True if numba can be imported."""
    try:
        import numba  # noqa: F401
    except ImportError:
        return False
    return True


def import_cpu_kernels():
    """
    Import the numba distance kernel once and remember the outcome.

    Returns
    -------
    (bool, callable or None)
        Whether the import worked, and ``_nhd_matrix_njit`` if it did.
    """
    global _cpu_kernel, _cpu_kernel_checked
    if not _cpu_kernel_checked:
        try:
            from placemass._cpu_kernels import _nhd_matrix_njit
        except ImportError:
            _nhd_matrix_njit = None
        _cpu_kernel = _nhd_matrix_njit
        _cpu_kernel_checked = True
    return _cpu_kernel is not None, _cpu_kernel


def get_available_backends() -> List[str]:
    """
    Available backends, in ``BACKEND_ORDER``.

    >>> get_available_backends()
    ['python', 'cpu-parallel']
    """
    available = ["python"]
    if check_numba_available() and import_cpu_kernels()[0]:
        available.append("cpu-parallel")
    return available


def get_best_backend() -> str:
    return get_available_backends()[-1]


def resolve_backend(backend: str) -> str:
    """
    Turn 'best' into a concrete backend and check that *backend* exists.

    Raises
    ------
    ValueError
        For names outside ``BACKEND_ORDER`` and for backends this machine
        cannot run.

    Examples
    --------
    >>> resolve_backend('python')
    'python'
    >>> resolve_backend('gpu')
    Traceback (most recent call last):
    ...
    ValueError: Unknown backend 'gpu'; expected 'best' or one of: python, cpu-parallel
    """
    if backend == "best":
        return get_best_backend()
    if backend not in BACKEND_ORDER:
        raise ValueError(
            f"Unknown backend {backend!r}; expected 'best' or one of: "
            f"{', '.join(BACKEND_ORDER)}"
        )
    available = get_available_backends()
    if backend not in available:
        raise ValueError(
            f"Backend {backend!r} is not available on this system. "
            f"Available backends: {', '.join(available)}"
        )
    return backend


def get_backend_info() -> dict:
    """
    Summary of the distance engine's backends.

    Returns
    -------
    dict
        'numba_available' : bool
        'numba_version'   : str or None
        'cpu_kernels_available' : bool
        'backends'        : list[str]
        'best_backend'    : str
    """
    numba_version = None
    if check_numba_available():
        import numba

        numba_version = numba.__version__
    return {
        "numba_available": numba_version is not None,
        "numba_version": numba_version,
        "cpu_kernels_available": import_cpu_kernels()[0],
        "backends": get_available_backends(),
        "best_backend": get_best_backend(),
    }
