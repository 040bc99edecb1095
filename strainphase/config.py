"""Configuration for a strain deconvolution run."""

import sys
from dataclasses import dataclass, asdict
from typing import Dict, Any

from Bio.Data import CodonTable

from strainphase.errors import ConfigurationError

# NCBI translation tables with start/stop definitions we accept
SUPPORTED_CODON_TABLES = (1, 11)

SEED_MODES = ("nndsvd", "none")
NMF_SOLVERS = ("cd", "mu")
FACTORIZERS = ("internal", "external")
LINKAGE_METHODS = ("single", "complete", "average", "weighted")

DEFAULT_NMF_COMMAND = f"{sys.executable} -m strainphase.factorization.worker"


@dataclass
class DeconvolutionConfig:
    """Configuration for strain deconvolution.

    Attributes:
        threads: Worker threads for contigs, NNDSVD components and rank scans
        min_rank: Lower bound of the rank search (clamped to the variant count)
        max_rank: Upper bound of the rank search (clamped to the variant count)
        exploratory_max_iter: Iteration budget for each exploratory rank
        final_max_iter: Iteration budget for the final factorization
        seed: Factor initialization ('nndsvd' or 'none')
        nmf_solver: scikit-learn NMF solver ('cd' or 'mu')
        factorizer: 'internal' (in-process NMF) or 'external' (subprocess)
        nmf_command: Command line used by the external factorizer
        use_dendrogram: Refine strain assignment with an agglomerative merge tree
        linkage_method: scipy linkage method for the merge tree
        codon_table: NCBI translation table id (default: 11, bacterial)
        kmer_size: K-mer length reported in the k-mer table file name
        plot_ranks: Write a PNG of residual versus rank
    """
    threads: int = 1
    min_rank: int = 4
    max_rank: int = 25
    exploratory_max_iter: int = 100
    final_max_iter: int = 500
    seed: str = 'nndsvd'
    nmf_solver: str = 'cd'
    factorizer: str = 'internal'
    nmf_command: str = DEFAULT_NMF_COMMAND
    use_dendrogram: bool = True
    linkage_method: str = 'average'
    codon_table: int = 11
    kmer_size: int = 4
    plot_ranks: bool = False

    @classmethod
    def from_args(cls, args) -> 'DeconvolutionConfig':
        """Create config from command-line arguments."""
        return cls(
            threads=getattr(args, 'threads', 1),
            min_rank=getattr(args, 'min_rank', 4),
            max_rank=getattr(args, 'max_rank', 25),
            exploratory_max_iter=getattr(args, 'exploratory_iter', 100),
            final_max_iter=getattr(args, 'final_iter', 500),
            seed=getattr(args, 'seed', 'nndsvd'),
            nmf_solver=getattr(args, 'nmf_solver', 'cd'),
            factorizer=getattr(args, 'factorizer', 'internal'),
            nmf_command=getattr(args, 'nmf_command', None) or DEFAULT_NMF_COMMAND,
            use_dendrogram=not getattr(args, 'no_dendrogram', False),
            linkage_method=getattr(args, 'linkage_method', 'average'),
            codon_table=getattr(args, 'codon_table', 11),
            kmer_size=getattr(args, 'kmer_size', 4),
            plot_ranks=getattr(args, 'plot_ranks', False),
        )

    def validate(self) -> None:
        """Reject unusable settings before any work starts."""
        load_codon_table(self.codon_table)

        if self.threads < 1:
            raise ConfigurationError(f"threads must be at least 1, got {self.threads}")
        if self.min_rank < 1 or self.max_rank < self.min_rank:
            raise ConfigurationError(
                f"Invalid rank bounds: min_rank={self.min_rank}, max_rank={self.max_rank}")
        if self.exploratory_max_iter < 1 or self.final_max_iter < 1:
            raise ConfigurationError("Iteration budgets must be positive")
        if self.seed not in SEED_MODES:
            raise ConfigurationError(f"Unknown seed mode '{self.seed}' (choose from {', '.join(SEED_MODES)})")
        if self.seed == 'none':
            # Both factorizers always seed; there is no fallback initializer
            raise ConfigurationError("Seeding requested with seed mode 'none'")
        if self.nmf_solver not in NMF_SOLVERS:
            raise ConfigurationError(f"Unknown NMF solver '{self.nmf_solver}'")
        if self.factorizer not in FACTORIZERS:
            raise ConfigurationError(f"Unknown factorizer '{self.factorizer}'")
        if self.factorizer == 'external' and not self.nmf_command.strip():
            raise ConfigurationError("External factorizer selected but no command given")
        if self.linkage_method not in LINKAGE_METHODS:
            raise ConfigurationError(f"Unknown linkage method '{self.linkage_method}'")
        if self.kmer_size < 1:
            raise ConfigurationError(f"kmer_size must be positive, got {self.kmer_size}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_codon_table(table_id: int) -> CodonTable.CodonTable:
    """Return the NCBI DNA codon table for a supported translation table id."""
    if table_id not in SUPPORTED_CODON_TABLES:
        raise ConfigurationError(f"Translation table {table_id} not yet implemented "
                                 f"(supported: {', '.join(map(str, SUPPORTED_CODON_TABLES))})")
    return CodonTable.unambiguous_dna_by_id[table_id]
