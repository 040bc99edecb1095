"""Compositional features and pairwise structures across variants.

Every alternate allele becomes a feature row of pseudo-counted per-sample
variant and depth values. Per-sample geometric means of those values act as
compositional normalizers, so the resulting profiles do not depend on the
sequencing effort of each sample.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Tuple, NamedTuple

import numpy as np
from scipy.spatial.distance import pdist
from tqdm import tqdm

from strainphase.pileup import PopulationMatrix, is_reference_key


class VariantFeature(NamedTuple):
    """One alternate allele with its per-sample pseudo-counted observations."""
    position: int
    variant: str
    abundances: Tuple[np.ndarray, np.ndarray]  # (depths, freqs), length = sample count
    tid: int

    @property
    def depths(self) -> np.ndarray:
        return self.abundances[0]

    @property
    def freqs(self) -> np.ndarray:
        return self.abundances[1]


class VariantFeatureSet(NamedTuple):
    """Canonical, ordered variant features plus per-sample geometric means."""
    features: List[VariantFeature]
    geom_mean_var: np.ndarray
    geom_mean_dep: np.ndarray

    def __len__(self) -> int:
        return len(self.features)


class _LogSumAccumulator:
    """Per-sample running sum of natural logs, safe to update from worker threads."""

    def __init__(self, sample_count: int):
        self._sums = np.zeros(sample_count, dtype=np.float64)
        self._lock = threading.Lock()

    def add(self, log_values: np.ndarray) -> None:
        with self._lock:
            self._sums += log_values

    def geometric_mean(self, n: int) -> np.ndarray:
        with self._lock:
            return geometric_means(self._sums, n)


def geometric_means(log_sums: np.ndarray, n: int) -> np.ndarray:
    """Convert per-sample log sums over ``n`` values into geometric means."""
    if n == 0:
        return np.ones_like(log_sums)
    return np.exp(log_sums / n)


def _contig_features(tid: int, matrix: PopulationMatrix) -> Tuple[List[VariantFeature], np.ndarray, np.ndarray]:
    """Build pseudo-counted feature rows for every variant on one contig."""
    sample_count = matrix.sample_count
    contig_variants = matrix.variants.get(tid, {})
    if contig_variants:
        # Contigs with variants must have had their coverage recorded
        matrix.coverage_for(tid)

    features = []
    log_var = np.zeros(sample_count, dtype=np.float64)
    log_dep = np.zeros(sample_count, dtype=np.float64)
    for position, variant_map in contig_variants.items():
        for variant, per_sample in variant_map.items():
            if is_reference_key(variant):
                continue
            observed = np.asarray(per_sample, dtype=np.float64).reshape(sample_count, 2)
            freqs = observed[:, 0] + 1.0
            depths = observed[:, 1] + 1.0
            log_var += np.log(freqs)
            log_dep += np.log(depths)
            features.append(VariantFeature(position, variant, (depths, freqs), tid))
    return features, log_var, log_dep


def compute_variant_features(matrix: PopulationMatrix, threads: int = 1) -> VariantFeatureSet:
    """Collect the canonical variant feature list and per-sample geometric means.

    Contigs are processed in parallel; only commutative reductions (log sums
    and list appends) touch shared state, under locks.
    """
    sample_count = matrix.sample_count
    geom_var = _LogSumAccumulator(sample_count)
    geom_dep = _LogSumAccumulator(sample_count)
    all_features: List[VariantFeature] = []
    features_lock = threading.Lock()

    def process_contig(tid: int) -> int:
        features, log_var, log_dep = _contig_features(tid, matrix)
        geom_var.add(log_var)
        geom_dep.add(log_dep)
        with features_lock:
            all_features.extend(features)
        return len(features)

    contig_ids = sorted(matrix.variants)
    if threads > 1 and len(contig_ids) > 1:
        with ThreadPoolExecutor(max_workers=threads) as executor:
            list(tqdm(executor.map(process_contig, contig_ids),
                      total=len(contig_ids), desc="Variant features"))
    else:
        for tid in contig_ids:
            process_contig(tid)

    all_features.sort(key=lambda f: (f.tid, f.position, f.variant))
    n = len(all_features)
    feature_set = VariantFeatureSet(
        features=all_features,
        geom_mean_var=geom_var.geometric_mean(n),
        geom_mean_dep=geom_dep.geometric_mean(n),
    )
    logging.debug(f"Geometric mean variant abundance: {feature_set.geom_mean_var}")
    logging.debug(f"Geometric mean depth: {feature_set.geom_mean_dep}")
    return feature_set


def clr_profiles(feature_set: VariantFeatureSet) -> np.ndarray:
    """Per-variant log-ratio profiles, normalized by sample geometric means and centred.

    Row i is ln(freq/gm_var) - ln(depth/gm_dep) per sample, minus its mean,
    so variants whose abundances move together across samples coincide.
    """
    if not feature_set.features:
        return np.zeros((0, len(feature_set.geom_mean_var)))
    freqs = np.vstack([f.freqs for f in feature_set.features])
    depths = np.vstack([f.depths for f in feature_set.features])
    profiles = (np.log(freqs / feature_set.geom_mean_var)
                - np.log(depths / feature_set.geom_mean_dep))
    return profiles - profiles.mean(axis=1, keepdims=True)


def condensed_distances(feature_set: VariantFeatureSet) -> np.ndarray:
    """Condensed Euclidean distances between variant log-ratio profiles."""
    return pdist(clr_profiles(feature_set), metric="euclidean")


def condensed_constraints(feature_set: VariantFeatureSet, matrix: PopulationMatrix) -> np.ndarray:
    """Condensed pairwise linkage constraints between variants.

    -1 marks alleles at the same contig position (they cannot share a strain);
    a positive value is the Jaccard overlap of supporting reads on the same
    contig; 0 means unconstrained.
    """
    features = feature_set.features
    n = len(features)
    constraints = np.zeros(n * (n - 1) // 2, dtype=np.float64)
    read_sets = [matrix.read_support(f.tid, f.position, f.variant) for f in features]

    def condensed_index(i: int, j: int) -> int:
        return n * i - i * (i + 1) // 2 + (j - i - 1)

    for i in range(n):
        fi = features[i]
        for j in range(i + 1, n):
            fj = features[j]
            if fi.tid != fj.tid:
                # Features are sorted by contig
                break
            if fi.position == fj.position:
                constraints[condensed_index(i, j)] = -1.0
            elif read_sets[i] and read_sets[j]:
                shared = len(read_sets[i] & read_sets[j])
                if shared:
                    constraints[condensed_index(i, j)] = shared / len(read_sets[i] | read_sets[j])

    logging.debug(f"Constraints: {int(np.sum(constraints < 0))} cannot-link, "
                  f"{int(np.sum(constraints > 0))} read-linked pairs")
    return constraints


def write_distance_artifacts(directory: str, distances: np.ndarray,
                             constraints: np.ndarray) -> Tuple[str, str]:
    """Persist condensed distances and constraints for the factorization step.

    Paths carry no extension; the final factorization writes its predictions
    next to the distances as ``{distance_path}.npy``.
    """
    distance_path = os.path.join(directory, "variant-distances")
    constraint_path = os.path.join(directory, "variant-constraints")
    for path, values in ((distance_path, distances), (constraint_path, constraints)):
        with open(path, 'wb') as f:
            np.save(f, values)
    logging.debug(f"Wrote distance artifacts to {directory}")
    return distance_path, constraint_path


def load_distance_artifacts(distance_path: str, constraint_path: str) -> Tuple[np.ndarray, np.ndarray]:
    with open(distance_path, 'rb') as f:
        distances = np.load(f)
    with open(constraint_path, 'rb') as f:
        constraints = np.load(f)
    return distances, constraints
