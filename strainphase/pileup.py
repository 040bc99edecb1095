"""Population-level aggregation of per-sample pileup statistics.

Each sample contributes one ``PileupStats`` per contig. ``PopulationMatrix``
merges them into a single aggregate: scalar per-sample slots are overwritten
by repeated calls, read-support sets are unioned, and per-variant-position
frequency tables are kept per (sample, contig) for the statistics report.
"""

import csv
import logging
from collections import defaultdict
from typing import Dict, List, Set, Tuple, NamedTuple, Optional

import numpy as np

from strainphase.errors import InconsistentMatrixError

# Marker used upstream for the reference allele; never treated as a variant
REFERENCE_MARKER = 'R'


class PileupStats(NamedTuple):
    """Upstream pileup statistics for one contig in one sample."""
    tid: int
    target_name: str
    target_len: int
    coverage: float
    variance: float
    mean_genotypes: float
    variant_abundances: Dict[int, Dict[str, Tuple[float, float]]]  # pos -> variant -> (count, depth)
    snps: Dict[int, Dict[str, Set]]  # pos -> base -> supporting read ids
    indels: Dict[int, Dict[str, Set]]  # pos -> indel -> supporting read ids


def is_reference_key(variant: str) -> bool:
    """True for the reference placeholder rather than an alternate allele."""
    return REFERENCE_MARKER in variant


def _union_read_sets(target: Dict[int, Dict[str, Set]],
                     incoming: Dict[int, Dict[str, Set]]) -> None:
    for pos, allele_map in incoming.items():
        position_sets = target.setdefault(pos, {})
        for allele, read_ids in allele_map.items():
            position_sets.setdefault(allele, set()).update(read_ids)


class PopulationMatrix:
    """Aggregate of variant statistics across all samples and contigs."""

    def __init__(self):
        self.sample_names: List[str] = []
        self.coverages: Dict[int, np.ndarray] = {}
        self.variances: Dict[int, np.ndarray] = {}
        self.average_genotypes: Dict[int, np.ndarray] = {}
        # tid -> pos -> variant -> per-sample [(count, depth)]
        self.variants: Dict[int, Dict[int, Dict[str, List[Tuple[float, float]]]]] = {}
        self.snps_map: Dict[int, Dict[int, Dict[str, Set]]] = {}
        self.indels_map: Dict[int, Dict[int, Dict[str, Set]]] = {}
        self.contigs: Dict[int, bytes] = {}
        self.target_names: Dict[int, str] = {}
        self.target_lengths: Dict[int, int] = {}
        # kmer -> per-contig counts
        self.kfrequencies: Dict[str, List[int]] = {}
        self.variant_counts: Dict[int, Dict[int, int]] = defaultdict(dict)
        # sample -> tid -> 3 x n array of (variant freq, depth, reference freq)
        self.variant_sums: Dict[int, Dict[int, np.ndarray]] = defaultdict(dict)

        self._kmer_contigs: Set[int] = set()
        self._recorded = False
        self._frozen = False

    @property
    def sample_count(self) -> int:
        return len(self.sample_names)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def contig_ids(self) -> List[int]:
        return sorted(self.target_names)

    def add_sample(self, sample_name: str) -> int:
        """Register a sample and return its index."""
        if self._recorded:
            raise InconsistentMatrixError(
                f"Cannot register sample '{sample_name}' after statistics have been recorded")
        self.sample_names.append(sample_name)
        return len(self.sample_names) - 1

    def freeze(self) -> None:
        """Stop accepting aggregation calls."""
        self._frozen = True
        logging.debug(f"Population matrix frozen with {self.sample_count} samples "
                      f"and {len(self.target_names)} contigs")

    def _check_mutable(self) -> None:
        if self._frozen:
            raise InconsistentMatrixError("Population matrix is frozen")

    def add_kmers(self, tid: int, number_of_contigs: int, k_freq: Dict[str, int]) -> None:
        """Merge k-mer counts for a contig, only the first time the contig is seen.

        K-mer counts describe the reference and are sample-independent, so
        later calls for the same contig would double count.
        """
        self._check_mutable()
        if tid in self._kmer_contigs:
            return
        if not 0 <= tid < number_of_contigs:
            raise InconsistentMatrixError(
                f"Contig id {tid} outside k-mer table of {number_of_contigs} contigs")
        self._kmer_contigs.add(tid)
        for kmer, count in k_freq.items():
            counts = self.kfrequencies.setdefault(kmer, [0] * number_of_contigs)
            counts[tid] = count

    def add_contig(self, stats: PileupStats, sample_idx: int, contig: bytes) -> None:
        """Merge one sample's statistics for one contig."""
        self._check_mutable()
        sample_count = self.sample_count
        if not 0 <= sample_idx < sample_count:
            raise InconsistentMatrixError(
                f"Sample index {sample_idx} out of range for {sample_count} registered samples")
        self._recorded = True
        tid = stats.tid

        for table, value in ((self.average_genotypes, stats.mean_genotypes),
                             (self.variances, stats.variance),
                             (self.coverages, stats.coverage)):
            slots = table.setdefault(tid, np.zeros(sample_count, dtype=np.float64))
            slots[sample_idx] = value

        self.target_names.setdefault(tid, stats.target_name)
        self.target_lengths.setdefault(tid, stats.target_len)
        self.contigs.setdefault(tid, contig)

        contig_variants = self.variants.setdefault(tid, {})
        total_variants = len(stats.variant_abundances)

        if total_variants > 0:
            contig_sums = np.zeros((3, total_variants), dtype=np.float64)
            # Position ordinal doubles as the count of distinct variant positions
            for variant_index, pos in enumerate(sorted(stats.variant_abundances)):
                abundance_map = stats.variant_abundances[pos]
                position_variants = contig_variants.setdefault(pos, {})

                variant_depth = 0.0
                depth = 0.0
                for variant, (count, variant_total) in abundance_map.items():
                    sample_map = position_variants.setdefault(variant, [(0.0, 0.0)] * sample_count)
                    sample_map[sample_idx] = (float(count), float(variant_total))
                    depth = max(depth, variant_total)
                    if is_reference_key(variant):
                        continue
                    variant_depth += count

                # Pseudocount on total and variant depth
                total_depth = depth + 1.0
                ref_depth = depth - variant_depth
                contig_sums[0, variant_index] = (variant_depth + 1.0) / total_depth
                contig_sums[1, variant_index] = total_depth
                contig_sums[2, variant_index] = ref_depth / total_depth

            self.variant_sums[sample_idx][tid] = contig_sums
        else:
            self.variant_sums[sample_idx][tid] = np.zeros((3, 1), dtype=np.float64)
        self.variant_counts[sample_idx][tid] = total_variants

        _union_read_sets(self.indels_map.setdefault(tid, {}), stats.indels)
        _union_read_sets(self.snps_map.setdefault(tid, {}), stats.snps)

    def coverage_for(self, tid: int) -> np.ndarray:
        try:
            return self.coverages[tid]
        except KeyError:
            raise InconsistentMatrixError(f"No coverage recorded for contig {tid}") from None

    def read_support(self, tid: int, pos: int, variant: str) -> Set:
        """Read ids supporting a variant, from the SNP or indel table."""
        if len(variant) == 1:
            table = self.snps_map.get(tid, {})
        else:
            table = self.indels_map.get(tid, {})
        return table.get(pos, {}).get(variant, set())

    def write_variant_stats(self, output_prefix: str) -> str:
        """Write per-contig, per-sample variant density and abundance statistics."""
        output_file = f"{output_prefix}.tsv"
        header = ["contigName", "contigLen"]
        for name in self.sample_names:
            header.extend([f"{name}.subsPer10kb", f"{name}.variants", f"{name}.meanRefAbd",
                           f"{name}.refStdDev", f"{name}.meanVarAbd", f"{name}.varStdDev"])

        with open(output_file, 'w', newline='') as f:
            writer = csv.writer(f, delimiter='\t', lineterminator='\n')
            writer.writerow(header)
            for tid in self.contig_ids():
                contig_len = self.target_lengths[tid]
                row = [self.target_names[tid], contig_len]
                for sample_idx in range(self.sample_count):
                    total_variants = self.variant_counts.get(sample_idx, {}).get(tid, 0)
                    if total_variants > 0:
                        sums = self.variant_sums[sample_idx][tid]
                        ten_kbs = contig_len / 10000.0
                        row.extend([f"{total_variants / ten_kbs:.3f}", total_variants,
                                    f"{sums[2].mean():.3f}", f"{sums[2].std():.3f}",
                                    f"{sums[0].mean():.3f}", f"{sums[0].std():.3f}"])
                    else:
                        row.extend([0] * 6)
                writer.writerow(row)

        logging.info(f"Wrote variant statistics to {output_file}")
        return output_file

    def write_kmer_table(self, output_prefix: str, kmer_size: int) -> str:
        """Write the per-contig k-mer count table.

        No header row: each line is the contig name followed by its counts in
        sorted k-mer order.
        """
        output_file = f"{output_prefix}_{kmer_size}mer_counts.tsv"
        kmers = sorted(self.kfrequencies)
        with open(output_file, 'w', newline='') as f:
            writer = csv.writer(f, delimiter='\t', lineterminator='\n')
            for tid in self.contig_ids():
                writer.writerow([self.target_names[tid]] +
                                [self.kfrequencies[kmer][tid] for kmer in kmers])

        logging.info(f"Wrote {len(kmers)} k-mer counts for {len(self.target_names)} contigs to {output_file}")
        return output_file

    def write_variant_matrix(self, output_prefix: str) -> Optional[str]:
        """Write per-sample variant/depth ratios for every variant seen."""
        output_file = f"{output_prefix}_variant_matrix.tsv"
        with open(output_file, 'w', newline='') as f:
            writer = csv.writer(f, delimiter='\t', lineterminator='\n')
            writer.writerow(["contigName", "position", "variant"] + self.sample_names)
            for tid in self.contig_ids():
                for pos in sorted(self.variants.get(tid, {})):
                    for variant, depths in sorted(self.variants[tid][pos].items()):
                        ratios = [f"{count / depth:.4f}" if depth > 0 else "0"
                                  for count, depth in depths]
                        writer.writerow([self.target_names[tid], pos, variant] + ratios)

        logging.debug(f"Wrote variant matrix to {output_file}")
        return output_file
