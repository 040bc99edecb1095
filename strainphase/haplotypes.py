"""Strain assignment and dendrogram-based haplotype reconstruction.

Factorization reports a cluster and posterior for every variant. Variants
confidently placed in one cluster belong to that strain; the rest form an
ambiguous bucket shared by every strain. When a merge tree over the variants
is available, the k cluster roots of the tree define the haplotypes instead.
"""

import logging
import math
from collections import defaultdict
from typing import Dict, List, Set, NamedTuple, Optional

import numpy as np
from scipy.cluster.hierarchy import linkage

from strainphase.distances import VariantFeature
from strainphase.errors import InconsistentMatrixError

# Strain index of the shared ambiguous bucket; real strains start at 1
AMBIGUOUS_STRAIN = 0


class MergeStep(NamedTuple):
    left: int
    right: int
    distance: float
    size: int


class StrainAssignment(NamedTuple):
    """Per-variant routing of a factorization result."""
    strain_of: List[int]  # per feature row; AMBIGUOUS_STRAIN for the shared bucket
    cluster_count: int
    counts: Dict[int, int]
    feature_weights: Dict[int, float]
    log_posterior_sums: Dict[int, float]

    def geometric_means(self) -> Dict[int, float]:
        """Geometric mean posterior per strain."""
        return {strain: math.exp(self.log_posterior_sums[strain] / count)
                for strain, count in self.counts.items() if count > 0}

    def members(self, strain: int) -> List[int]:
        return [row for row, s in enumerate(self.strain_of) if s == strain]

    @property
    def strains(self) -> List[int]:
        return sorted(s for s in self.counts if s != AMBIGUOUS_STRAIN)


def assign_strains(predictions: np.ndarray) -> StrainAssignment:
    """Route each variant to its top cluster or to the ambiguous bucket.

    With k distinct reported clusters, a variant is exclusive to its cluster
    iff its posterior is at least 1/k.
    """
    predictions = np.asarray(predictions, dtype=np.float64)
    cluster_ids = predictions[:, 0].astype(int)
    k = len(set(cluster_ids.tolist()))
    threshold = 1.0 / k if k else 1.0

    strain_of = []
    counts: Dict[int, int] = defaultdict(int)
    feature_weights: Dict[int, float] = defaultdict(float)
    log_sums: Dict[int, float] = defaultdict(float)

    for cluster, posterior, weight in zip(cluster_ids, predictions[:, 1], predictions[:, 2]):
        strain = int(cluster) + 1 if posterior >= threshold else AMBIGUOUS_STRAIN
        strain_of.append(strain)
        counts[strain] += 1
        feature_weights[strain] += float(weight)
        log_sums[strain] += math.log(posterior) if posterior > 0 else -math.inf

    assignment = StrainAssignment(strain_of, k, dict(counts), dict(feature_weights), dict(log_sums))
    logging.info(f"Assigned {len(strain_of)} variants across {k} clusters "
                 f"({counts.get(AMBIGUOUS_STRAIN, 0)} ambiguous)")
    logging.debug(f"Strain geometric mean posteriors: {assignment.geometric_means()}")
    logging.debug(f"Strain counts: {assignment.counts}")
    logging.debug(f"Strain feature weights: {assignment.feature_weights}")
    return assignment


class Dendrogram:
    """Agglomerative merge tree over n leaves; node n + i is formed by step i."""

    def __init__(self, steps: List[MergeStep], n_leaves: int):
        self.steps = steps
        self.n_leaves = n_leaves
        self.validate()

    @classmethod
    def from_linkage(cls, z: np.ndarray) -> 'Dendrogram':
        """Build from a scipy linkage matrix."""
        steps = [MergeStep(int(row[0]), int(row[1]), float(row[2]), int(row[3])) for row in z]
        return cls(steps, len(steps) + 1)

    def __len__(self) -> int:
        return len(self.steps)

    def validate(self) -> None:
        """Check the step count and that labels only refer to earlier nodes."""
        n = self.n_leaves
        if len(self.steps) != n - 1:
            raise InconsistentMatrixError(
                f"Dendrogram over {n} leaves has {len(self.steps)} steps, expected {n - 1}")
        for index, step in enumerate(self.steps):
            # Merge labels strictly increase with later merges
            for child in (step.left, step.right):
                if not 0 <= child < n + index:
                    raise InconsistentMatrixError(
                        f"Merge step {index} refers to node {child}, which does not exist yet")

    def is_leaf(self, label: int) -> bool:
        return label < self.n_leaves

    def step_for(self, label: int) -> MergeStep:
        return self.steps[label - self.n_leaves]

    @property
    def root_label(self) -> int:
        return self.n_leaves + len(self.steps) - 1

    def size_of(self, label: int) -> int:
        return 1 if self.is_leaf(label) else self.step_for(label).size

    def collect_leaves(self, label: int) -> List[int]:
        """All leaves under a node."""
        leaves = []
        pending = [label]
        while pending:
            node = pending.pop()
            if self.is_leaf(node):
                leaves.append(node)
            else:
                step = self.step_for(node)
                pending.append(step.right)
                pending.append(step.left)
        return leaves


def build_dendrogram(distances: np.ndarray, method: str = 'average') -> Optional[Dendrogram]:
    """Merge tree over variants from condensed distances, or None for fewer than 2 variants."""
    if len(distances) == 0:
        return None
    z = linkage(distances, method=method)
    return Dendrogram.from_linkage(z)


def find_root_labels(dendrogram: Dendrogram, k: int) -> List[int]:
    """Labels of the k subtrees obtained by undoing the last merges.

    Starts from the final merge and repeatedly expands the largest pending
    label, which is always the most recent merge, into its two children.
    """
    if k < 1:
        raise InconsistentMatrixError(f"Cannot cut a dendrogram into {k} clusters")
    if k > dendrogram.n_leaves:
        raise InconsistentMatrixError(
            f"Cannot cut a dendrogram with {dendrogram.n_leaves} leaves into {k} clusters")
    if k == 1:
        return [dendrogram.root_label]

    final = dendrogram.steps[-1]
    labels = [final.left, final.right]
    while len(labels) < k:
        to_expand = max(labels)
        if dendrogram.is_leaf(to_expand):
            raise InconsistentMatrixError(f"Cannot expand leaf {to_expand} to reach {k} clusters")
        step = dendrogram.step_for(to_expand)
        labels.remove(to_expand)
        labels.extend([step.left, step.right])
    return labels


class Haplotype:
    """Variants hypothesized to belong to one strain."""

    def __init__(self, root_label: Optional[int], variant_indices: Set[int],
                 node_size: int, strain_index: int):
        self.root_label = root_label
        self.variant_indices = variant_indices
        self.node_size = node_size
        self.strain_index = strain_index
        # tid -> position -> chosen variant key
        self.variants_genome: Dict[int, Dict[int, str]] = {}

    def add_variants(self, features: List[VariantFeature]) -> None:
        """Record this haplotype's calls; the first variant in feature order wins a position."""
        for index in sorted(self.variant_indices):
            feature = features[index]
            contig_calls = self.variants_genome.setdefault(feature.tid, {})
            contig_calls.setdefault(feature.position, feature.variant)

    def calls_for(self, tid: int) -> Dict[int, str]:
        return self.variants_genome.get(tid, {})

    def __repr__(self) -> str:
        return (f"Haplotype(strain={self.strain_index}, root={self.root_label}, "
                f"size={self.node_size}, variants={len(self.variant_indices)})")


def check_partition(haplotypes: List[Haplotype], expected: Set[int]) -> None:
    """Every expected leaf must belong to exactly one haplotype."""
    seen: Set[int] = set()
    for haplotype in haplotypes:
        overlap = seen & haplotype.variant_indices
        if overlap:
            raise InconsistentMatrixError(
                f"Variants {sorted(overlap)[:10]} assigned to more than one haplotype")
        seen |= haplotype.variant_indices
    if seen != expected:
        missing = sorted(expected - seen)
        extra = sorted(seen - expected)
        raise InconsistentMatrixError(
            f"Haplotypes do not partition the variants (missing {missing[:10]}, unexpected {extra[:10]})")


def haplotypes_from_dendrogram(dendrogram: Dendrogram, features: List[VariantFeature],
                               k: int) -> List[Haplotype]:
    """One haplotype per dendrogram root, numbered from 1."""
    if dendrogram.n_leaves != len(features):
        raise InconsistentMatrixError(
            f"Dendrogram has {dendrogram.n_leaves} leaves but there are {len(features)} variants")

    haplotypes = []
    for index, root in enumerate(find_root_labels(dendrogram, k)):
        haplotype = Haplotype(root, set(dendrogram.collect_leaves(root)),
                              dendrogram.size_of(root), index + 1)
        haplotype.add_variants(features)
        logging.debug(f"{haplotype!r}")
        haplotypes.append(haplotype)

    check_partition(haplotypes, set(range(len(features))))
    return haplotypes


def haplotypes_from_assignment(features: List[VariantFeature],
                               assignment: StrainAssignment) -> List[Haplotype]:
    """One haplotype per exclusive strain of the posterior assignment."""
    haplotypes = []
    for strain in assignment.strains:
        members = set(assignment.members(strain))
        haplotype = Haplotype(None, members, len(members), strain)
        haplotype.add_variants(features)
        haplotypes.append(haplotype)

    exclusive = {row for row, strain in enumerate(assignment.strain_of) if strain != AMBIGUOUS_STRAIN}
    check_partition(haplotypes, exclusive)
    return haplotypes


def ambiguous_calls(features: List[VariantFeature],
                    assignment: StrainAssignment) -> Dict[int, Dict[int, str]]:
    """Calls from the shared ambiguous bucket, applied to every strain."""
    calls: Dict[int, Dict[int, str]] = {}
    for row in assignment.members(AMBIGUOUS_STRAIN):
        feature = features[row]
        calls.setdefault(feature.tid, {}).setdefault(feature.position, feature.variant)
    return calls
