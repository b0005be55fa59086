"""
_jplace.py
==========
Sample loader for jplace files (version 3).

A jplace document is JSON with an edge-numbered NEWICK reference tree and a
list of placed queries:

    {
      "tree": "((A:0.1{0},B:0.2{1}):0.5{2},C:0.3{3}){4};",
      "fields": ["edge_num", "likelihood", "like_weight_ratio",
                 "distal_length", "pendant_length"],
      "placements": [
        {"p": [[0, -1234.5, 0.8, 0.05, 0.01], [2, -1236.0, 0.2, 0.1, 0.02]],
         "nm": [["read_1", 2]]},
        {"p": [[3, -99.0, 1.0, 0.1, 0.0]], "n": ["read_2"]}
      ],
      "version": 3,
      "metadata": {}
    }

Only the parts needed by the placement analyses are read.  Every function
here is a pure function of its input file, so the loader may be called from
several worker threads at once for different files.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from placemass._exceptions import SampleReadError
from placemass._sample import Sample
from placemass._tree import Tree

logger = logging.getLogger(__name__)

_MASS_NORMS = (None, "absolute", "relative")


def _check_mass_norm(mass_norm: Optional[str]) -> None:
    if mass_norm not in _MASS_NORMS:
        raise ValueError(
            f"mass_norm must be one of {_MASS_NORMS}, got {mass_norm!r}"
        )


def read_jplace(
    path,
    point_mass: bool = False,
    ignore_multiplicities: bool = False,
    mass_norm: Optional[str] = None,
) -> Sample:
    """
    Read a jplace file into a ``Sample``.

    Parameters
    ----------
    path : str or os.PathLike
    point_mass : bool, default False
        Keep only the most likely placement of each pquery, with lwr 1.
    ignore_multiplicities : bool, default False
        Treat every pquery as having multiplicity 1.
    mass_norm : {None, 'absolute', 'relative'}
        'relative' scales the sample to a total mass of 1; None and
        'absolute' keep the masses as read.

    Raises
    ------
    SampleReadError
        If the file cannot be read or is not valid jplace.
    """
    _check_mass_norm(mass_norm)
    source = os.fspath(path)
    try:
        with open(source, encoding="utf-8") as fh:
            doc = json.load(fh)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SampleReadError(f"Cannot read jplace file '{source}': {e}") from e

    return parse_jplace(
        doc,
        source=source,
        point_mass=point_mass,
        ignore_multiplicities=ignore_multiplicities,
        mass_norm=mass_norm,
    )


def parse_jplace(
    doc: Dict[str, Any],
    source: str = "<jplace>",
    point_mass: bool = False,
    ignore_multiplicities: bool = False,
    mass_norm: Optional[str] = None,
) -> Sample:
    """
    Build a ``Sample`` from an already decoded jplace document.

    See ``read_jplace`` for the parameters.  *source* is only used in error
    messages.
    """
    _check_mass_norm(mass_norm)
    if not isinstance(doc, dict):
        raise SampleReadError(f"{source}: jplace document is not a JSON object.")
    for key in ("tree", "fields", "placements"):
        if key not in doc:
            raise SampleReadError(f"{source}: missing jplace key '{key}'.")

    version = doc.get("version", 3)
    if version != 3:
        logger.debug("%s: jplace version %s read with version 3 rules", source, version)

    try:
        tree = Tree(doc["tree"])
    except ValueError as e:
        raise SampleReadError(f"{source}: invalid reference tree: {e}") from e

    fields = doc["fields"]
    if not isinstance(fields, list) or not isinstance(doc["placements"], list):
        raise SampleReadError(f"{source}: jplace 'fields' and 'placements' must be lists.")
    if "edge_num" not in fields or "like_weight_ratio" not in fields:
        raise SampleReadError(
            f"{source}: jplace fields must include 'edge_num' and 'like_weight_ratio'."
        )
    if "distal_length" not in fields and "proximal_length" not in fields:
        raise SampleReadError(
            f"{source}: jplace fields must include 'distal_length' or 'proximal_length'."
        )

    pqueries = []
    edges = []
    lwrs = []
    proximals = []
    pendants = []
    multiplicities = []
    names: List[List[str]] = []

    for qi, entry in enumerate(doc["placements"]):
        try:
            records = entry["p"]
        except (KeyError, TypeError):
            raise SampleReadError(f"{source}: pquery {qi} has no 'p' list.") from None

        try:
            q_names, q_mult = _read_names(entry)
            placements = [_read_placement(record, fields, tree) for record in records]
        except KeyError as e:
            raise SampleReadError(f"{source}: pquery {qi}: {e.args[0]}") from None
        except (TypeError, ValueError) as e:
            raise SampleReadError(f"{source}: pquery {qi}: {e}") from e

        names.append(q_names)
        multiplicities.append(q_mult)
        for edge, lwr, proximal, pendant in placements:
            pqueries.append(qi)
            edges.append(edge)
            lwrs.append(lwr)
            proximals.append(proximal)
            pendants.append(pendant)

    sample = Sample(
        tree,
        np.array(pqueries, dtype=np.int32),
        np.array(edges, dtype=np.int32),
        np.array(lwrs, dtype=np.float64),
        np.array(proximals, dtype=np.float64),
        np.array(multiplicities, dtype=np.float64),
        placement_pendant=np.array(pendants, dtype=np.float64),
        names=names,
    )

    if point_mass:
        sample = sample.point_mass()
    if ignore_multiplicities:
        sample = sample.without_multiplicities()
    if mass_norm == "relative":
        sample = sample.normalized()
    return sample


def _read_placement(record, fields: List[str], tree: Tree):
    """
    Return (edge index, lwr, proximal offset, pendant length) of one record.

    Raises KeyError for unknown edge numbers and TypeError or ValueError for
    malformed values.
    """
    if not isinstance(record, list):
        raise TypeError(f"placement record {record!r} is not a list")
    if len(record) != len(fields):
        raise ValueError(
            f"placement has {len(record)} values for {len(fields)} fields"
        )
    row = dict(zip(fields, record))
    edge = tree.edge_index(row["edge_num"])

    length = float(tree.edge_length[edge])
    if "distal_length" in row:
        proximal = length - float(row["distal_length"])
    else:
        proximal = float(row["proximal_length"])
    lwr = float(row["like_weight_ratio"])
    pendant = float(row.get("pendant_length") or 0.0)
    return edge, lwr, min(max(proximal, 0.0), length), pendant


def _read_names(entry: Dict[str, Any]):
    """Return (names, total multiplicity) of one pquery entry."""
    if "nm" in entry:
        q_names = []
        q_mult = 0.0
        for pair in entry["nm"]:
            if not isinstance(pair, list) or len(pair) != 2:
                raise ValueError(f"malformed 'nm' entry {pair!r}")
            q_names.append(str(pair[0]))
            q_mult += float(pair[1])
        return q_names, q_mult
    if "n" in entry:
        n = entry["n"]
        q_names = [n] if isinstance(n, str) else [str(x) for x in n]
        return q_names, (float(len(q_names)) if q_names else 1.0)
    return [], 1.0


class JplaceFileSet:
    """
    An ordered, finite list of jplace files with shared loader settings.

    This is the file-set interface consumed by the aggregation workflows:
    ``file_count()``, ``file_path(i)`` and ``sample(i)``.

    Parameters
    ----------
    paths : sequence of str or os.PathLike
    point_mass, ignore_multiplicities, mass_norm
        Passed to ``read_jplace`` for every file.

    Examples
    --------
    >>> files = JplaceFileSet(['a.jplace', 'b.jplace'], mass_norm='relative')
    >>> files.file_count()
    2
    >>> sample = files.sample(0)
    """

    def __init__(
        self,
        paths: Sequence,
        point_mass: bool = False,
        ignore_multiplicities: bool = False,
        mass_norm: Optional[str] = None,
    ) -> None:
        _check_mass_norm(mass_norm)
        self._paths = [os.fspath(p) for p in paths]
        self.point_mass = point_mass
        self.ignore_multiplicities = ignore_multiplicities
        self.mass_norm = mass_norm

    def __len__(self) -> int:
        return len(self._paths)

    def file_count(self) -> int:
        return len(self._paths)

    def file_path(self, index: int) -> str:
        return self._paths[index]

    def sample(self, index: int) -> Sample:
        return read_jplace(
            self._paths[index],
            point_mass=self.point_mass,
            ignore_multiplicities=self.ignore_multiplicities,
            mass_norm=self.mass_norm,
        )

    def mass_norm_relative(self) -> bool:
        return self.mass_norm == "relative"
