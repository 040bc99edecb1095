"""Factor seeding, in-process NMF and rank search."""

from .seeding import nndsvd, initialize_factors
from .nmf import affinity_matrix, factorize, predictions_from_factors
from .rank_search import (
    RankSearch,
    RankSearchResult,
    InProcessFactorizer,
    SubprocessFactorizer,
    candidate_ranks,
    select_best_rank,
    make_factorizer,
)

__all__ = [
    "nndsvd",
    "initialize_factors",
    "affinity_matrix",
    "factorize",
    "predictions_from_factors",
    "RankSearch",
    "RankSearchResult",
    "InProcessFactorizer",
    "SubprocessFactorizer",
    "candidate_ranks",
    "select_best_rank",
    "make_factorizer",
]
