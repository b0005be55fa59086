"""
tests/test_analysis.py
======================
End-to-end tests for the two workflows: node histogram distances
(histogram_sets, nhd_matrix) and mass accumulation (accumulate_masses,
heat_tree), run over real jplace files on a thread pool.
"""

import logging
import os
import shutil
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from placemass._analysis import accumulate_masses, heat_tree, histogram_sets, nhd_matrix
from placemass._exceptions import EmptyInputError, SampleReadError, TreeIncompatibilityError
from placemass._histograms import node_distance_histogram_set, node_histogram_distance
from placemass._jplace import JplaceFileSet, parse_jplace, read_jplace
from placemass._norm import ColorNormOptions
from placement_helpers import ListFileSet, data_path, jplace_doc, random_doc, write_jplace

A_PLUS_B = [0.8, 0.2, 0.6, 0.4, 3.0, 1.0]


@pytest.fixture(scope="module")
def random_paths(tmp_path_factory):
    """Eight random samples on the reference tree."""
    directory = tmp_path_factory.mktemp("random_jplace")
    rng = np.random.default_rng(7)
    return [
        write_jplace(directory, f"sample_{k}.jplace", random_doc(rng))
        for k in range(8)
    ]


def _ab_files(**kwargs):
    return JplaceFileSet(
        [data_path("sample_a.jplace"), data_path("sample_b.jplace")], **kwargs
    )


# ======================================================================== #
# 1. Mass accumulation                                                      #
# ======================================================================== #


class TestAccumulateMasses:
    def test_sum(self):
        tree, masses = accumulate_masses(_ab_files(), n_workers=2)
        assert tree.n_edges == 6
        np.testing.assert_allclose(masses, A_PLUS_B)

    def test_relative_flag(self):
        _, masses = accumulate_masses(_ab_files(), relative=True, n_workers=2)
        assert masses.sum() == pytest.approx(1.0)
        np.testing.assert_allclose(masses, np.array(A_PLUS_B) / 6.0)

    def test_relative_file_set(self):
        _, masses = accumulate_masses(_ab_files(mass_norm="relative"), n_workers=2)
        assert masses.sum() == pytest.approx(1.0)
        np.testing.assert_allclose(masses, [0.1, 0.025, 0.15, 0.1, 0.375, 0.25])

    def test_worker_count_does_not_matter(self, random_paths):
        files = JplaceFileSet(random_paths)
        _, one = accumulate_masses(files, n_workers=1)
        _, four = accumulate_masses(files, n_workers=4)
        np.testing.assert_allclose(four, one, rtol=1e-12)

    def test_permutation_invariance(self, random_paths):
        _, forward = accumulate_masses(JplaceFileSet(random_paths), n_workers=3)
        _, backward = accumulate_masses(JplaceFileSet(random_paths[::-1]), n_workers=3)
        np.testing.assert_allclose(forward, backward, rtol=1e-12)

    def test_matches_sequential_sum(self, random_paths):
        _, masses = accumulate_masses(JplaceFileSet(random_paths), n_workers=4)
        expected = sum(read_jplace(p).mass_per_edge() for p in random_paths)
        np.testing.assert_allclose(masses, expected, rtol=1e-12)

    def test_single_file(self):
        _, masses = accumulate_masses(JplaceFileSet([data_path("sample_b.jplace")]))
        np.testing.assert_allclose(masses, [0.0, 0.0, 0.6, 0.4, 0.0, 1.0])

    def test_empty(self):
        with pytest.raises(EmptyInputError):
            accumulate_masses(JplaceFileSet([]))

    def test_differing_trees(self):
        files = JplaceFileSet(
            [data_path("sample_a.jplace"), data_path("other_tree.jplace")]
        )
        with pytest.raises(TreeIncompatibilityError, match="differing reference trees") as info:
            accumulate_masses(files, n_workers=1)
        assert info.value.source == data_path("other_tree.jplace")

    def test_differing_trees_many_workers(self, random_paths):
        paths = random_paths[:5] + [data_path("other_tree.jplace")] + random_paths[5:]
        with pytest.raises(TreeIncompatibilityError):
            accumulate_masses(JplaceFileSet(paths), n_workers=4)

    def test_unreadable_file_aborts(self, tmp_path):
        paths = [data_path("sample_a.jplace"), str(tmp_path / "missing.jplace")]
        with pytest.raises(SampleReadError, match="missing.jplace"):
            accumulate_masses(JplaceFileSet(paths), n_workers=2)

    def test_progress(self, random_paths):
        reports = []
        accumulate_masses(
            JplaceFileSet(random_paths),
            n_workers=1,
            progress=lambda pos, total, path: reports.append((pos, total, path)),
        )
        assert [r[0] for r in reports] == list(range(1, 9))
        assert [r[2] for r in reports] == random_paths

    def test_failing_progress_gives_no_partial_result(self):
        def progress(position, total, path):
            if path.endswith("sample_b.jplace"):
                raise RuntimeError("progress sink closed")

        with pytest.raises(RuntimeError, match="progress sink closed"):
            accumulate_masses(_ab_files(), n_workers=1, progress=progress)

    def test_zero_mass_relative(self, caplog):
        empty = parse_jplace(jplace_doc([]))
        files = ListFileSet([empty, empty])
        with caplog.at_level(logging.WARNING):
            _, masses = accumulate_masses(files, relative=True)
        np.testing.assert_array_equal(masses, np.zeros(6))
        assert "relative normalization was skipped" in caplog.text

    def test_each_sample_loaded_once(self):
        samples = [read_jplace(data_path("sample_a.jplace"))] * 5
        files = ListFileSet(samples)
        accumulate_masses(files, n_workers=3)
        assert sorted(files.loads) == [0, 1, 2, 3, 4]


class TestHeatTree:
    def test_log_scaling_absolute(self, caplog):
        files = JplaceFileSet([data_path("sample_a.jplace")])
        with caplog.at_level(logging.WARNING):
            tree, masses, norm = heat_tree(files, ColorNormOptions(log_scaling=True))
        assert tree.n_edges == 6
        assert norm.min_value == 1.0
        assert norm.max_value == pytest.approx(3.0)
        assert "cannot be shown using log scaling" in caplog.text
        np.testing.assert_allclose(masses, [0.8, 0.2, 0.0, 0.0, 3.0, 0.0])

    def test_log_scaling_relative(self):
        files = JplaceFileSet([data_path("sample_a.jplace")])
        _, masses, norm = heat_tree(
            files, ColorNormOptions(log_scaling=True, min_value=0.01), relative=True
        )
        assert norm.min_value == 0.01
        np.testing.assert_allclose(masses, [0.2, 0.05, 0.005, 0.005, 0.75, 0.005])

    def test_linear(self):
        _, masses, norm = heat_tree(_ab_files())
        assert norm.min_value == 0.0
        assert norm.max_value == pytest.approx(3.0)
        np.testing.assert_allclose(masses, A_PLUS_B)


# ======================================================================== #
# 2. Node histogram distance                                                #
# ======================================================================== #


class TestHistogramSets:
    def test_order_and_content(self):
        files = _ab_files()
        reference, sets = histogram_sets(files, bins=10, n_workers=2)
        d = reference.tree.node_distance_matrix()
        s = reference.tree.node_side_matrix()
        for k in range(2):
            expected = node_distance_histogram_set(files.sample(k), d, s, 10)
            np.testing.assert_allclose(sets[k].bins, expected.bins)

    def test_reference_matrices_shared(self):
        reference, _ = histogram_sets(_ab_files(), bins=5)
        assert reference.node_distances.shape == (7, 7)
        assert reference.node_sides.shape == (7, 7)
        assert reference.matrix_bytes == 7 * 7 * 8 + 7 * 7

    def test_invalid_bins(self):
        with pytest.raises(ValueError):
            histogram_sets(_ab_files(), bins=0)

    @pytest.mark.parametrize("order", [(0, 1), (1, 0)])
    def test_differing_branch_lengths(self, tmp_path, order):
        long_tree = "((A:10.0{0},B:20.0{1}):10.0{2},(C:10.0{3},D:10.0{4}):20.0{5}){6};"
        paths = [
            write_jplace(tmp_path, "short.jplace", jplace_doc([([(0, 1.0, 0.5)], 1.0)])),
            write_jplace(
                tmp_path, "long.jplace", jplace_doc([([(0, 1.0, 5.0)], 1.0)], tree=long_tree)
            ),
        ]
        files = JplaceFileSet([paths[k] for k in order])
        with pytest.raises(TreeIncompatibilityError, match="branch lengths") as info:
            histogram_sets(files, bins=10, n_workers=1)
        assert info.value.source == paths[order[1]]

    def test_branch_lengths_do_not_matter_for_masses(self, tmp_path):
        long_tree = "((A:10.0{0},B:20.0{1}):10.0{2},(C:10.0{3},D:10.0{4}):20.0{5}){6};"
        paths = [
            data_path("sample_a.jplace"),
            write_jplace(
                tmp_path, "long.jplace", jplace_doc([([(5, 1.0, 5.0)], 2.0)], tree=long_tree)
            ),
        ]
        _, masses = accumulate_masses(JplaceFileSet(paths), n_workers=1)
        np.testing.assert_allclose(masses, [0.8, 0.2, 0.0, 0.0, 3.0, 2.0])


class TestNHDMatrix:
    def test_identical_files(self, tmp_path):
        copy = str(tmp_path / "copy_a.jplace")
        shutil.copy(data_path("sample_a.jplace"), copy)
        files = JplaceFileSet(
            [data_path("sample_a.jplace"), copy, data_path("sample_b.jplace")]
        )
        d = nhd_matrix(files, bins=25, n_workers=3, backend="python")
        assert d.shape == (3, 3)
        assert d[0, 1] == pytest.approx(0.0)
        assert d[0, 2] > 0.0
        assert d[0, 2] == pytest.approx(d[1, 2])
        np.testing.assert_array_equal(d, d.T)

    def test_matches_direct_computation(self, random_paths):
        files = JplaceFileSet(random_paths)
        d = nhd_matrix(files, bins=25, n_workers=4, backend="python")
        tree = read_jplace(random_paths[0]).tree
        dm = tree.node_distance_matrix()
        sm = tree.node_side_matrix()
        sets = [node_distance_histogram_set(read_jplace(p), dm, sm, 25) for p in random_paths]
        np.testing.assert_allclose(d, node_histogram_distance(sets, backend="python"))

    @pytest.mark.slow
    def test_worker_count_does_not_matter(self, random_paths):
        files = JplaceFileSet(random_paths)
        one = nhd_matrix(files, n_workers=1, backend="python")
        four = nhd_matrix(files, n_workers=4, backend="python")
        np.testing.assert_allclose(four, one, rtol=1e-12)

    @pytest.mark.slow
    def test_permutation_invariance(self, random_paths):
        perm = [5, 2, 7, 0, 3, 6, 1, 4]
        d = nhd_matrix(JplaceFileSet(random_paths), n_workers=4, backend="python")
        dp = nhd_matrix(
            JplaceFileSet([random_paths[k] for k in perm]), n_workers=4, backend="python"
        )
        np.testing.assert_allclose(dp, d[np.ix_(perm, perm)], rtol=1e-12)

    def test_differing_trees(self):
        files = JplaceFileSet(
            [data_path("sample_a.jplace"), data_path("other_tree.jplace")]
        )
        with pytest.raises(TreeIncompatibilityError, match="differing reference trees"):
            nhd_matrix(files, n_workers=2)

    def test_empty(self):
        with pytest.raises(EmptyInputError):
            nhd_matrix(JplaceFileSet([]))
