#!/usr/bin/env python3
"""
Tests for posterior assignment, dendrogram walks and haplotype partitioning.
"""

import numpy as np
import pytest
from scipy.spatial.distance import pdist

from strainphase.distances import VariantFeature
from strainphase.errors import InconsistentMatrixError
from strainphase.haplotypes import (
    AMBIGUOUS_STRAIN,
    Dendrogram,
    Haplotype,
    MergeStep,
    ambiguous_calls,
    assign_strains,
    build_dendrogram,
    check_partition,
    find_root_labels,
    haplotypes_from_assignment,
    haplotypes_from_dendrogram,
)


def feature(position, variant, tid=0):
    ones = np.ones(2)
    return VariantFeature(position, variant, (ones, ones), tid)


def small_dendrogram():
    """Leaves 0..3: (0,1)->4, (2,3)->5, (4,5)->6."""
    return Dendrogram([MergeStep(0, 1, 0.1, 2), MergeStep(2, 3, 0.2, 2), MergeStep(4, 5, 1.0, 4)], 4)


# ==============================================================================
# Posterior assignment
# ==============================================================================

def test_posterior_threshold_with_three_clusters():
    predictions = np.array([
        [0, 0.2, 0.1],
        [1, 0.4, 0.5],
        [2, 0.9, 0.7],
        [2, 1 / 3, 0.2],
    ])
    assignment = assign_strains(predictions)

    assert assignment.cluster_count == 3
    assert assignment.strain_of == [AMBIGUOUS_STRAIN, 2, 3, 3]
    assert assignment.counts == {AMBIGUOUS_STRAIN: 1, 2: 1, 3: 2}
    assert assignment.feature_weights[3] == pytest.approx(0.9)
    assert assignment.strains == [2, 3]
    assert assignment.members(3) == [2, 3]


def test_geometric_mean_posteriors():
    predictions = np.array([[0, 0.5, 1.0], [0, 0.8, 1.0], [1, 1.0, 1.0]])
    means = assign_strains(predictions).geometric_means()
    assert means[1] == pytest.approx(np.sqrt(0.4))
    assert means[2] == pytest.approx(1.0)


# ==============================================================================
# Dendrogram
# ==============================================================================

def test_root_labels():
    dendrogram = small_dendrogram()
    assert find_root_labels(dendrogram, 1) == [6]
    assert sorted(find_root_labels(dendrogram, 2)) == [4, 5]
    assert sorted(find_root_labels(dendrogram, 3)) == [2, 3, 4]
    assert sorted(find_root_labels(dendrogram, 4)) == [0, 1, 2, 3]


def test_too_many_clusters_rejected():
    with pytest.raises(InconsistentMatrixError):
        find_root_labels(small_dendrogram(), 5)
    with pytest.raises(InconsistentMatrixError):
        find_root_labels(small_dendrogram(), 0)


def test_invalid_dendrogram_rejected():
    with pytest.raises(InconsistentMatrixError):
        Dendrogram([MergeStep(0, 5, 0.1, 2), MergeStep(2, 3, 0.2, 2), MergeStep(4, 5, 1.0, 4)], 4)
    with pytest.raises(InconsistentMatrixError):
        Dendrogram([MergeStep(0, 1, 0.1, 2)], 4)


def test_collect_leaves_and_sizes():
    dendrogram = small_dendrogram()
    assert sorted(dendrogram.collect_leaves(6)) == [0, 1, 2, 3]
    assert sorted(dendrogram.collect_leaves(5)) == [2, 3]
    assert dendrogram.size_of(4) == 2
    assert dendrogram.size_of(1) == 1


def test_build_dendrogram_from_distances():
    points = np.array([[0.0], [0.1], [5.0], [5.2], [9.0]])
    dendrogram = build_dendrogram(pdist(points))
    assert len(dendrogram) == 4
    assert dendrogram.root_label == 8
    roots = find_root_labels(dendrogram, 3)
    groups = sorted(sorted(dendrogram.collect_leaves(r)) for r in roots)
    assert groups == [[0, 1], [2, 3], [4]]
    assert build_dendrogram(np.array([])) is None


# ==============================================================================
# Haplotypes
# ==============================================================================

def test_haplotypes_partition_dendrogram_leaves():
    features = [feature(1, "A"), feature(4, "C"), feature(4, "G"), feature(9, "T")]
    haplotypes = haplotypes_from_dendrogram(small_dendrogram(), features, 2)

    assert [h.strain_index for h in haplotypes] == [1, 2]
    assert sorted(sorted(h.variant_indices) for h in haplotypes) == [[0, 1], [2, 3]]
    by_members = {frozenset(h.variant_indices): h for h in haplotypes}
    assert by_members[frozenset({2, 3})].calls_for(0) == {4: "G", 9: "T"}


def test_first_variant_wins_position():
    features = [feature(4, "C"), feature(4, "G")]
    haplotype = Haplotype(None, {0, 1}, 2, 1)
    haplotype.add_variants(features)
    assert haplotype.calls_for(0) == {4: "C"}
    assert haplotype.calls_for(7) == {}


def test_leaf_count_must_match_features():
    with pytest.raises(InconsistentMatrixError):
        haplotypes_from_dendrogram(small_dendrogram(), [feature(1, "A")], 2)


def test_check_partition_detects_overlap_and_gaps():
    a = Haplotype(None, {0, 1}, 2, 1)
    b = Haplotype(None, {1, 2}, 2, 2)
    with pytest.raises(InconsistentMatrixError):
        check_partition([a, b], {0, 1, 2})
    with pytest.raises(InconsistentMatrixError):
        check_partition([a], {0, 1, 2})
    check_partition([a, Haplotype(None, {2}, 1, 2)], {0, 1, 2})


def test_haplotypes_from_assignment_and_ambiguous_calls():
    features = [feature(1, "A"), feature(3, "C"), feature(5, "G", tid=1), feature(8, "T")]
    predictions = np.array([[0, 0.9, 1], [1, 0.8, 1], [0, 0.1, 1], [1, 0.95, 1]])
    assignment = assign_strains(predictions)

    haplotypes = haplotypes_from_assignment(features, assignment)
    assert [h.strain_index for h in haplotypes] == [1, 2]
    assert haplotypes[0].calls_for(0) == {1: "A"}
    assert haplotypes[1].calls_for(0) == {3: "C", 8: "T"}
    assert ambiguous_calls(features, assignment) == {1: {5: "G"}}
