"""
placemass
=========

Concurrent aggregation and comparison of phylogenetic placement samples.

*placemass* reads many placement files (jplace) that share one reference
tree and either compares them pairwise with the Node Histogram Distance, or
sums their mass per edge into one color-normalized heat tree.

Main Classes
------------
Tree : Reference tree with edge numbering, LCA and node distance matrices
Sample : Placement mass on a reference tree
JplaceFileSet : Ordered list of jplace files with shared loader settings
NodeHistogramSet : Per-node signed distance histograms of one sample
ColorNorm, ColorNormOptions, ColorMap : Heat tree color normalization

Workflows
---------
nhd_matrix : Pairwise Node Histogram Distance between samples
histogram_sets : Node histogram sets of all samples
accumulate_masses : Summed mass per edge over all samples
heat_tree : Summed masses plus their color normalization

Context Managers
----------------
quiet : Suppress logging during operations
suppress_logger : Suppress specific logger
suppress_warnings : Suppress specific warnings
use_backend : Force specific computational backend

Backend Information
-------------------
get_available_backends : Query available computational backends
get_backend_info : Get comprehensive backend status
check_numba_available : Check if numba is available

Examples
--------
Pairwise distances:

>>> from placemass import JplaceFileSet, nhd_matrix, write_matrix_csv
>>> files = JplaceFileSet(['a.jplace', 'b.jplace', 'c.jplace'])
>>> matrix = nhd_matrix(files, bins=25, n_workers=4)
>>> write_matrix_csv(matrix, 'nhd.csv', labels=['a', 'b', 'c'])

Heat tree:

>>> from placemass import ColorMap, ColorNormOptions, heat_tree, write_heat_tree
>>> options = ColorNormOptions(log_scaling=True)
>>> tree, masses, norm = heat_tree(files, options, relative=True)
>>> write_heat_tree(tree, masses, norm, ColorMap.from_options(options), 'heat.newick')

With context managers:

>>> from placemass import quiet, use_backend
>>> with quiet(), use_backend('python'):
...     matrix = nhd_matrix(files)
"""

__version__ = "0.1.0"
__license__ = "MIT"

# Main classes
from ._tree import Tree, compatible_trees
from ._sample import Sample
from ._jplace import JplaceFileSet, parse_jplace, read_jplace
from ._histograms import (
    NodeHistogramSet,
    node_distance_histogram_set,
    node_histogram_distance,
)
from ._norm import ColorMap, ColorNorm, ColorNormOptions, normalize_masses

# Concurrent aggregation
from ._aggregate import (
    LoggingProgress,
    MassAccumulator,
    OnceCell,
    ProgressReporter,
    ResultSlots,
    SharedReference,
    run_parallel,
)
from ._analysis import accumulate_masses, heat_tree, histogram_sets, nhd_matrix

# Output
from ._writers import (
    format_newick,
    write_colored_newick,
    write_heat_tree,
    write_matrix_csv,
)

# Errors
from ._exceptions import (
    EmptyInputError,
    PlacemassError,
    SampleReadError,
    TreeIncompatibilityError,
)

# Context managers (user-facing utilities)
from ._context import (
    suppress_logger,
    quiet,
    suppress_warnings,
    use_backend,
)

# Backend information (useful for checking capabilities)
from ._backend import (
    get_available_backends,
    get_backend_info,
    check_numba_available,
)

# Public API
__all__ = [
    # Main classes
    "Tree",
    "compatible_trees",
    "Sample",
    "JplaceFileSet",
    "read_jplace",
    "parse_jplace",
    "NodeHistogramSet",
    "node_distance_histogram_set",
    "node_histogram_distance",
    "ColorMap",
    "ColorNorm",
    "ColorNormOptions",
    "normalize_masses",
    # Concurrent aggregation
    "LoggingProgress",
    "MassAccumulator",
    "OnceCell",
    "ProgressReporter",
    "ResultSlots",
    "SharedReference",
    "run_parallel",
    "accumulate_masses",
    "heat_tree",
    "histogram_sets",
    "nhd_matrix",
    # Output
    "format_newick",
    "write_colored_newick",
    "write_heat_tree",
    "write_matrix_csv",
    # Errors
    "PlacemassError",
    "EmptyInputError",
    "SampleReadError",
    "TreeIncompatibilityError",
    # Context managers
    "suppress_logger",
    "quiet",
    "suppress_warnings",
    "use_backend",
    # Backend information
    "get_available_backends",
    "get_backend_info",
    "check_numba_available",
    # Version info
    "__version__",
]
