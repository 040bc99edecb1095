#!/usr/bin/env python3

import argparse
import json
import logging
import os
import sys
import tempfile
from datetime import datetime
from typing import List, Optional, Dict, Any

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt

try:
    from strainphase import __version__
except ImportError:
    __version__ = "dev"

from strainphase.config import DeconvolutionConfig
from strainphase.distances import (
    VariantFeatureSet,
    compute_variant_features,
    condensed_distances,
    condensed_constraints,
    write_distance_artifacts,
)
from strainphase.emit import write_strain_sequences
from strainphase.errors import StrainPhaseError
from strainphase.factorization import RankSearch, RankSearchResult, make_factorizer
from strainphase.haplotypes import (
    AMBIGUOUS_STRAIN,
    Haplotype,
    StrainAssignment,
    assign_strains,
    ambiguous_calls,
    build_dendrogram,
    haplotypes_from_assignment,
    haplotypes_from_dendrogram,
)
from strainphase.inputs import load_reference, load_sample_stats, build_matrix
from strainphase.pileup import PopulationMatrix


class StrainDeconvolver:
    """Deconvolve a population matrix into strain haplotypes and sequences."""

    def __init__(self, matrix: PopulationMatrix, config: Optional[DeconvolutionConfig] = None,
                 output_prefix: str = "strainphase"):
        self.matrix = matrix
        self.config = config or DeconvolutionConfig()
        self.config.validate()
        self.output_prefix = output_prefix

        output_dir = os.path.dirname(os.path.abspath(output_prefix))
        os.makedirs(output_dir, exist_ok=True)

        # Populated as the run progresses
        self.feature_set: Optional[VariantFeatureSet] = None
        self.rank_result: Optional[RankSearchResult] = None
        self.assignment: Optional[StrainAssignment] = None
        self.haplotypes: List[Haplotype] = []
        self.strain_files: List[str] = []

    def write_reports(self) -> None:
        """Write variant statistics, k-mer and variant matrix tables."""
        self.matrix.write_variant_stats(self.output_prefix)
        self.matrix.write_kmer_table(self.output_prefix, self.config.kmer_size)
        self.matrix.write_variant_matrix(self.output_prefix)

    def _run_rank_search(self, temp_dir: str, distances, constraints) -> RankSearchResult:
        distance_path, constraint_path = write_distance_artifacts(temp_dir, distances, constraints)
        search = RankSearch(
            make_factorizer(self.config),
            threads=self.config.threads,
            min_rank=self.config.min_rank,
            max_rank=self.config.max_rank,
        )
        return search.run(len(self.feature_set), distance_path, constraint_path,
                          self.matrix.sample_count)

    def _build_haplotypes(self, distances) -> List[Haplotype]:
        features = self.feature_set.features
        if self.config.use_dendrogram:
            dendrogram = build_dendrogram(distances, method=self.config.linkage_method)
            if dendrogram is not None:
                logging.debug(f"Beginning haplotyping of dendrogram of length {len(dendrogram)}")
                return haplotypes_from_dendrogram(dendrogram, features, self.assignment.cluster_count)
        return haplotypes_from_assignment(features, self.assignment)

    def run(self) -> List[str]:
        """Run the full pipeline and return the strain sequence files written.

        Pipeline:
            1. Variant statistics and k-mer reports
            2. Variant features and geometric-mean normalizers
            3. Condensed distances and constraints
            4. Rank search and final factorization
            5. Posterior assignment and haplotype reconstruction
            6. Strain sequence output
        """
        self.write_reports()
        self.matrix.freeze()

        self.feature_set = compute_variant_features(self.matrix, threads=self.config.threads)
        n_variants = len(self.feature_set)
        if n_variants < 2:
            logging.info(f"Not enough variants found ({n_variants}), population is not heterogeneous")
            self.write_summary()
            return []

        logging.info(f"Generating variant distances with {n_variants} variants")
        distances = condensed_distances(self.feature_set)
        constraints = condensed_constraints(self.feature_set, self.matrix)

        with tempfile.TemporaryDirectory(prefix="strainphase-") as temp_dir:
            self.rank_result = self._run_rank_search(temp_dir, distances, constraints)

        self.assignment = assign_strains(self.rank_result.predictions)
        self.haplotypes = self._build_haplotypes(distances)
        shared = ambiguous_calls(self.feature_set.features, self.assignment)

        self.strain_files = write_strain_sequences(self.output_prefix, self.haplotypes,
                                                   shared, self.matrix)
        if self.config.plot_ranks:
            self.plot_rank_residuals()
        self.write_summary()
        return self.strain_files

    def summary(self) -> Dict[str, Any]:
        summary = {
            "version": __version__,
            "timestamp": datetime.now().isoformat(),
            "samples": self.matrix.sample_names,
            "contigs": len(self.matrix.target_names),
            "variants": len(self.feature_set) if self.feature_set is not None else 0,
            "parameters": self.config.to_dict(),
        }
        if self.rank_result is not None:
            summary["best_rank"] = self.rank_result.best_rank
            summary["residuals"] = {str(rank): residual
                                    for rank, residual in sorted(self.rank_result.residuals.items())}
        if self.assignment is not None:
            geom_means = self.assignment.geometric_means()
            summary["clusters"] = self.assignment.cluster_count
            summary["strains"] = {
                str(strain): {
                    "variants": count,
                    "ambiguous": strain == AMBIGUOUS_STRAIN,
                    "feature_weight": self.assignment.feature_weights[strain],
                    "geometric_mean_posterior": geom_means.get(strain, 0.0),
                }
                for strain, count in sorted(self.assignment.counts.items())
            }
            summary["haplotypes"] = [
                {"strain": h.strain_index, "root": h.root_label, "size": h.node_size,
                 "variants": len(h.variant_indices)}
                for h in self.haplotypes
            ]
            summary["strain_files"] = self.strain_files
        return summary

    def write_summary(self) -> str:
        """Write run parameters and strain statistics to JSON."""
        summary_file = f"{self.output_prefix}_strain_summary.json"
        with open(summary_file, 'w') as f:
            json.dump(self.summary(), f, indent=2)
        logging.debug(f"Wrote run summary to {summary_file}")
        return summary_file

    def plot_rank_residuals(self) -> Optional[str]:
        """Plot residual against rank for the scanned ranks."""
        if self.rank_result is None or not self.rank_result.residuals:
            return None
        ranks = sorted(self.rank_result.residuals)
        residuals = [self.rank_result.residuals[r] for r in ranks]

        plot_file = f"{self.output_prefix}_rank_residuals.png"
        fig, ax = plt.subplots(figsize=(6, 4))
        ax.plot(ranks, residuals, marker='o')
        ax.axvline(self.rank_result.best_rank, color='red', linestyle='--',
                   label=f"selected rank {self.rank_result.best_rank}")
        ax.set_xlabel("Rank")
        ax.set_ylabel("Reconstruction residual")
        ax.legend()
        fig.tight_layout()
        fig.savefig(plot_file, dpi=150)
        plt.close(fig)
        logging.info(f"Wrote rank residual plot to {plot_file}")
        return plot_file


def setup_logging(log_level: str, log_file: str = None):
    """Setup logging configuration with optional file output."""
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        return log_file

    return None


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Deconvolve mixed-population variant statistics into strain haplotypes"
    )
    parser.add_argument("--reference", required=True, help="Reference contigs (FASTA)")
    parser.add_argument("--sample-stats", required=True, nargs='+', metavar="JSON",
                        help="Per-sample pileup statistics, one JSON file per sample")
    parser.add_argument("-o", "--output-prefix", default="strainphase",
                        help="Prefix for all output files (default: strainphase)")
    parser.add_argument("--threads", type=int, default=1, metavar="N",
                        help="Max threads for internal parallelism (default: 1)")
    parser.add_argument("--min-rank", type=int, default=4,
                        help="Smallest strain count to consider (default: 4)")
    parser.add_argument("--max-rank", type=int, default=25,
                        help="Largest strain count to consider (default: 25)")
    parser.add_argument("--exploratory-iter", type=int, default=100,
                        help="NMF iterations for each candidate rank (default: 100)")
    parser.add_argument("--final-iter", type=int, default=500,
                        help="NMF iterations for the selected rank (default: 500)")
    parser.add_argument("--seed", choices=["nndsvd", "none"], default="nndsvd",
                        help="Factor initialization (default: nndsvd)")
    parser.add_argument("--nmf-solver", choices=["cd", "mu"], default="cd",
                        help="NMF solver (default: cd)")
    parser.add_argument("--factorizer", choices=["internal", "external"], default="internal",
                        help="Run factorization in-process or through --nmf-command (default: internal)")
    parser.add_argument("--nmf-command", default=None,
                        help="External factorization command (default: bundled strainphase-nmf worker)")
    parser.add_argument("--no-dendrogram", action="store_true",
                        help="Build haplotypes from posterior assignment only, without a merge tree")
    parser.add_argument("--linkage-method", choices=["single", "complete", "average", "weighted"],
                        default="average", help="Merge tree linkage (default: average)")
    parser.add_argument("--codon-table", type=int, default=11,
                        help="NCBI translation table id (default: 11)")
    parser.add_argument("--kmer-size", type=int, default=4,
                        help="K-mer length of the supplied k-mer counts (default: 4)")
    parser.add_argument("--plot-ranks", action="store_true",
                        help="Write a residual-versus-rank plot")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", default=None, help="Also write log messages to this file")
    parser.add_argument("--version", action="version",
                        version=f"strainphase {__version__}",
                        help="Show program's version number and exit")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_arguments(argv)
    setup_logging(args.log_level, args.log_file)

    config = DeconvolutionConfig.from_args(args)
    try:
        config.validate()

        reference = load_reference(args.reference)
        samples = [load_sample_stats(path, reference) for path in args.sample_stats]
        logging.info(f"Loaded statistics for {len(samples)} samples")

        matrix = build_matrix(reference, samples)
        deconvolver = StrainDeconvolver(matrix, config, output_prefix=args.output_prefix)
        strain_files = deconvolver.run()
    except StrainPhaseError as e:
        logging.error(str(e))
        sys.exit(1)
    except OSError as e:
        logging.error(f"I/O error: {e}")
        sys.exit(1)

    logging.info(f"Finished: {len(strain_files)} strain sequence files written")


if __name__ == "__main__":
    main()
