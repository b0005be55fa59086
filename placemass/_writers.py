"""
_writers.py
===========
Text output for the two workflows.

  write_matrix_csv(matrix, target, labels=None)
      Pairwise distance matrix as CSV, with row and column labels.

  format_newick(tree, edge_comments=None) -> str
  write_colored_newick(tree, colors, target)
      NEWICK with one ``[&!color=#rrggbb]`` comment per edge (FigTree style).

  write_heat_tree(tree, masses, norm, color_map, target)
      Colors a mass-per-edge vector and writes it as colored NEWICK.

*target* is a path or an open text file.
"""

import contextlib
import csv
import os
from typing import List, Optional, Sequence

import numpy as np

from placemass._norm import ColorMap, ColorNorm
from placemass._tree import Tree

_QUOTE_CHARS = set(":,;()[]{}' \t\r\n")


@contextlib.contextmanager
def _open_target(target):
    if hasattr(target, "write"):
        yield target
    else:
        with open(os.fspath(target), "w", newline="") as fh:
            yield fh


def write_matrix_csv(matrix, target, labels: Optional[Sequence[str]] = None) -> None:
    """
    Write a square matrix as CSV.

    The first row holds the column labels (after an empty corner cell) and
    each following row starts with its row label.  Labels default to the
    row index.
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise ValueError(f"Expected a square matrix, got shape {matrix.shape}.")
    n = matrix.shape[0]
    if labels is None:
        labels = [str(i) for i in range(n)]
    elif len(labels) != n:
        raise ValueError(f"Got {len(labels)} labels for a {n} x {n} matrix.")

    with _open_target(target) as fh:
        writer = csv.writer(fh, lineterminator="\n")
        writer.writerow([""] + list(labels))
        for label, row in zip(labels, matrix):
            writer.writerow([label] + [repr(float(v)) for v in row])


def _format_label(name: str) -> str:
    if name and any(c in _QUOTE_CHARS for c in name):
        return "'" + name.replace("'", "''") + "'"
    return name


def format_newick(tree: Tree, edge_comments: Optional[Sequence[str]] = None) -> str:
    """
    Serialise *tree* to NEWICK.

    Parameters
    ----------
    tree : Tree
    edge_comments : sequence of str, optional
        One comment per edge index, written as ``[comment]`` after the
        branch length of the edge's distal node.

    Returns
    -------
    str   NEWICK string terminated by ';'.
    """
    if edge_comments is not None and len(edge_comments) != tree.n_edges:
        raise ValueError(
            f"Got {len(edge_comments)} edge comments for {tree.n_edges} edges."
        )

    def suffix(node: int) -> str:
        out = _format_label(tree.names[node])
        if node == tree.root:
            return out
        out += ":" + repr(float(tree.distance[node]))
        if edge_comments is not None:
            out += "[" + edge_comments[int(tree.node_edge[node])] + "]"
        return out

    parts: List[str] = []
    stack = [(tree.root, 0)]
    while stack:
        node, k = stack.pop()
        lo = int(tree.child_offsets[node])
        hi = int(tree.child_offsets[node + 1])
        if lo == hi:
            parts.append(suffix(node))
        elif k == 0:
            parts.append("(")
            stack.append((node, 1))
            stack.append((int(tree.children[lo]), 0))
        elif k < hi - lo:
            parts.append(",")
            stack.append((node, k + 1))
            stack.append((int(tree.children[lo + k]), 0))
        else:
            parts.append(")" + suffix(node))
    return "".join(parts) + ";"


def write_colored_newick(tree: Tree, colors: Sequence[str], target) -> None:
    """Write *tree* with one '#rrggbb' color per edge index."""
    comments = ["&!color=" + c for c in colors]
    with _open_target(target) as fh:
        fh.write(format_newick(tree, comments))
        fh.write("\n")


def write_heat_tree(
    tree: Tree,
    masses,
    norm: ColorNorm,
    color_map: ColorMap,
    target,
) -> List[str]:
    """
    Color *masses* with *norm* and *color_map* and write the colored tree.

    Returns
    -------
    list[str]   The edge colors that were written.
    """
    masses = np.asarray(masses, dtype=np.float64)
    if masses.shape != (tree.n_edges,):
        raise ValueError(
            f"Got {masses.shape[0]} masses for a tree with {tree.n_edges} edges."
        )
    colors = color_map(norm, masses)
    write_colored_newick(tree, colors, target)
    return colors
