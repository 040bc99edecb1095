"""
StrainPhase: Strain-level haplotype deconvolution from multi-sample variant statistics.

Builds a population matrix of variant abundances across samples, factorizes a
variant affinity matrix to estimate the number of strains, and writes one
consensus sequence per strain.
"""

__version__ = "0.1.0"

from .core import main as strainphase_main
from .factorization.worker import main as nmf_worker_main

__all__ = ["strainphase_main", "nmf_worker_main", "__version__"]
