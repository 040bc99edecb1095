"""In-process nonnegative matrix factorization of the variant affinity matrix."""

import logging
import warnings
from typing import Tuple

import numpy as np
from scipy.spatial.distance import squareform
from sklearn.decomposition import NMF
from sklearn.exceptions import ConvergenceWarning

from strainphase.errors import FactorizationError
from strainphase.factorization.seeding import initialize_factors


def affinity_matrix(distances: np.ndarray, constraints: np.ndarray) -> np.ndarray:
    """Square nonnegative affinity between variants from condensed structures.

    Gaussian kernel on the distances with the median positive distance as
    bandwidth; cannot-link pairs drop to zero and read-linked pairs are pulled
    toward 1 by their overlap.
    """
    distances = np.asarray(distances, dtype=np.float64)
    constraints = np.asarray(constraints, dtype=np.float64)
    if distances.shape != constraints.shape:
        raise FactorizationError(
            f"Distance and constraint artifacts disagree: {distances.shape} vs {constraints.shape}")

    positive = distances[distances > 0]
    sigma = float(np.median(positive)) if positive.size else 1.0
    affinity = np.exp(-(distances ** 2) / (2.0 * sigma ** 2))

    linked = constraints > 0
    affinity[linked] += constraints[linked] * (1.0 - affinity[linked])
    affinity[constraints < 0] = 0.0

    square = squareform(affinity, checks=False)
    np.fill_diagonal(square, 1.0)
    return square


def factorize(a: np.ndarray, rank: int, max_iter: int, seed: str = 'nndsvd',
              solver: str = 'cd', threads: int = 1) -> Tuple[np.ndarray, np.ndarray, float]:
    """Factorize A ~ W @ H at the given rank, seeded by NNDSVD.

    Returns (W, H, residual) where residual is the Frobenius reconstruction error.
    """
    w0, h0 = initialize_factors(a, rank, seed=seed, threads=threads)
    model = NMF(n_components=rank, init='custom', solver=solver, max_iter=max_iter)

    with warnings.catch_warnings():
        # Small exploratory budgets are expected to stop before convergence
        warnings.simplefilter("ignore", category=ConvergenceWarning)
        try:
            w = model.fit_transform(a, W=w0, H=h0)
        except ValueError as e:
            raise FactorizationError(f"NMF failed at rank {rank}: {e}") from e

    residual = float(model.reconstruction_err_)
    logging.debug(f"NMF rank {rank}: residual={residual:.6f} after {model.n_iter_} iterations")
    return w, model.components_, residual


def predictions_from_factors(w: np.ndarray) -> np.ndarray:
    """Per-variant (cluster id, posterior, weight) rows from the variant loadings."""
    clusters = np.argmax(w, axis=1)
    rows = np.arange(w.shape[0])
    weights = w[rows, clusters]
    totals = w.sum(axis=1)
    posteriors = np.divide(weights, totals, out=np.zeros_like(weights), where=totals > 0)
    return np.column_stack([clusters.astype(np.float64), posteriors, weights])
