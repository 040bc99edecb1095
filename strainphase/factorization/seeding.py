"""NNDSVD initialization for nonnegative matrix factorization.

Boutsidis & Gallopoulos (2008): each singular triplet beyond the first is
split into positive and negative parts, and the sign pairing carrying more
energy seeds one column of W and one row of H.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from typing import Tuple

import numpy as np

from strainphase.errors import ConfigurationError

# Entries below exp(1)^-11 are set to exactly zero
CLAMP_THRESHOLD = math.exp(1) ** -11


def positive_part(x: np.ndarray) -> np.ndarray:
    return np.where(x >= 0, x, 0.0)


def negative_part(x: np.ndarray) -> np.ndarray:
    return np.where(x < 0, -x, 0.0)


def _seed_component(i: int, u: np.ndarray, s: np.ndarray, vt: np.ndarray,
                    w: np.ndarray, h: np.ndarray) -> None:
    """Fill column i of W and row i of H. Each call owns its column and row."""
    uu = u[:, i]
    vv = vt[i, :]
    uup, uun = positive_part(uu), negative_part(uu)
    vvp, vvn = positive_part(vv), negative_part(vv)
    n_uup, n_uun = np.linalg.norm(uup), np.linalg.norm(uun)
    n_vvp, n_vvn = np.linalg.norm(vvp), np.linalg.norm(vvn)
    termp = n_uup * n_vvp
    termn = n_uun * n_vvn

    # Ties favour the positive pairing
    if termp >= termn:
        part_u, part_v, norm_u, norm_v, term = uup, vvp, n_uup, n_vvp, termp
    else:
        part_u, part_v, norm_u, norm_v, term = uun, vvn, n_uun, n_vvn, termn

    if term <= 0:
        return
    scale = math.sqrt(s[i] * term)
    w[:, i] = scale * part_u / norm_u
    h[i, :] = scale * part_v / norm_v


def nndsvd(v: np.ndarray, rank: int, threads: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """Nonnegative factors W (rows x rank) and H (rank x cols) with W @ H ~ V."""
    v = np.asarray(v, dtype=np.float64)
    if v.ndim != 2:
        raise ValueError(f"Expected a 2-D matrix, got shape {v.shape}")
    if not 0 < rank <= min(v.shape):
        raise ValueError(f"Rank {rank} must be in (0, {min(v.shape)}] for matrix of shape {v.shape}")
    if np.any(v < 0):
        raise ValueError("NNDSVD requires a nonnegative matrix")

    u, s, vt = np.linalg.svd(v, full_matrices=False)
    u, s, vt = u[:, :rank], s[:rank], vt[:rank, :]

    w = np.zeros((v.shape[0], rank), dtype=np.float64)
    h = np.zeros((rank, v.shape[1]), dtype=np.float64)

    # The leading singular vectors of a nonnegative matrix share one sign
    w[:, 0] = math.sqrt(s[0]) * np.abs(u[:, 0])
    h[0, :] = math.sqrt(s[0]) * np.abs(vt[0, :])

    if threads > 1 and rank > 2:
        with ThreadPoolExecutor(max_workers=threads) as executor:
            list(executor.map(lambda i: _seed_component(i, u, s, vt, w, h), range(1, rank)))
    else:
        for i in range(1, rank):
            _seed_component(i, u, s, vt, w, h)

    w[w < CLAMP_THRESHOLD] = 0.0
    h[h < CLAMP_THRESHOLD] = 0.0
    return w, h


def initialize_factors(v: np.ndarray, rank: int, seed: str = 'nndsvd',
                       threads: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """Seed factors for a rank-``rank`` factorization of V.

    There is no fallback initializer: asking to seed with ``seed='none'`` is
    a configuration error.
    """
    if seed == 'nndsvd':
        return nndsvd(v, rank, threads=threads)
    if seed == 'none':
        raise ConfigurationError("Factor seeding requested but seed mode is 'none'")
    raise ConfigurationError(f"Unknown seed mode '{seed}'")
