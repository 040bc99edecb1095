"""Rank search and final factorization across candidate strain counts.

Each candidate rank is factorized with a small iteration budget; the first
local minimum of the residual series picks the rank, which is then run once
more with a larger budget to obtain per-variant cluster assignments.
"""

import logging
import shlex
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple, NamedTuple

import numpy as np

from strainphase.config import DeconvolutionConfig
from strainphase.distances import load_distance_artifacts
from strainphase.errors import FactorizationError
from strainphase.factorization.nmf import affinity_matrix, factorize, predictions_from_factors


class RankSearchResult(NamedTuple):
    best_rank: int
    residuals: Dict[int, float]
    predictions: np.ndarray  # rows of (cluster id, posterior, weight), in feature order


class InProcessFactorizer:
    """Factorize the affinity matrix built from the distance artifacts in this process."""

    def __init__(self, exploratory_max_iter: int = 100, final_max_iter: int = 500,
                 seed: str = 'nndsvd', solver: str = 'cd'):
        self.exploratory_max_iter = exploratory_max_iter
        self.final_max_iter = final_max_iter
        self.seed = seed
        self.solver = solver
        self._affinity_cache: Dict[Tuple[str, str], np.ndarray] = {}
        self._cache_lock = threading.Lock()

    def _affinity(self, distance_path: str, constraint_path: str) -> np.ndarray:
        key = (distance_path, constraint_path)
        with self._cache_lock:
            if key not in self._affinity_cache:
                distances, constraints = load_distance_artifacts(distance_path, constraint_path)
                self._affinity_cache[key] = affinity_matrix(distances, constraints)
            return self._affinity_cache[key]

    def __call__(self, rank: int, exploratory: bool, distance_path: str, constraint_path: str,
                 sample_count: int, threads: int):
        a = self._affinity(distance_path, constraint_path)
        max_iter = self.exploratory_max_iter if exploratory else self.final_max_iter
        w, _h, residual = factorize(a, rank, max_iter, seed=self.seed,
                                    solver=self.solver, threads=threads)
        if exploratory:
            return residual
        return predictions_from_factors(w)


class SubprocessFactorizer:
    """Run an external factorization command following the positional contract.

    ``command RANK EXPLORATORY DISTANCES CONSTRAINTS SAMPLE_COUNT THREADS``.
    Exploratory runs print a residual to stdout; final runs write the
    prediction matrix to ``{DISTANCES}.npy``. Seed, solver and iteration
    budget follow the positionals as ``--seed``, ``--solver`` and
    ``--max-iter`` options when set.
    """

    def __init__(self, command: str, seed: Optional[str] = None, solver: Optional[str] = None,
                 exploratory_max_iter: Optional[int] = None, final_max_iter: Optional[int] = None):
        self.command = shlex.split(command)
        self.seed = seed
        self.solver = solver
        self.exploratory_max_iter = exploratory_max_iter
        self.final_max_iter = final_max_iter

    def build_command(self, rank: int, exploratory: bool, distance_path: str, constraint_path: str,
                      sample_count: int, threads: int) -> List[str]:
        cmd = self.command + [str(rank), str(exploratory), distance_path, constraint_path,
                              str(sample_count), str(threads)]
        if self.seed is not None:
            cmd += ["--seed", self.seed]
        if self.solver is not None:
            cmd += ["--solver", self.solver]
        max_iter = self.exploratory_max_iter if exploratory else self.final_max_iter
        if max_iter is not None:
            cmd += ["--max-iter", str(max_iter)]
        return cmd

    def __call__(self, rank: int, exploratory: bool, distance_path: str, constraint_path: str,
                 sample_count: int, threads: int):
        cmd = self.build_command(rank, exploratory, distance_path, constraint_path,
                                 sample_count, threads)
        logging.info(f"Running factorization: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True
            )
        except subprocess.CalledProcessError as e:
            logging.error(f"Factorization failed with return code {e.returncode}")
            logging.error(f"Command: {' '.join(cmd)}")
            logging.error(f"Stderr: {e.stderr}")
            raise FactorizationError(f"Factorization command exited with status {e.returncode}") from e
        except FileNotFoundError as e:
            raise FactorizationError(f"Factorization command not found: {cmd[0]}") from e

        logging.debug(f"Factorization stderr: {result.stderr}")
        if exploratory:
            return parse_residual(result.stdout)
        with open(distance_path + ".npy", 'rb') as f:
            return np.load(f)


def parse_residual(output: str) -> float:
    """Residual printed by an exploratory run; unparsable output counts as 0.0.

    The 0.0 substitution biases rank selection toward that rank.
    """
    try:
        return float(output.strip())
    except ValueError as e:
        logging.debug(f"Unable to parse residual {output!r}: {e}")
        return 0.0


def make_factorizer(config: DeconvolutionConfig):
    if config.factorizer == 'external':
        return SubprocessFactorizer(
            config.nmf_command,
            seed=config.seed,
            solver=config.nmf_solver,
            exploratory_max_iter=config.exploratory_max_iter,
            final_max_iter=config.final_max_iter,
        )
    return InProcessFactorizer(
        exploratory_max_iter=config.exploratory_max_iter,
        final_max_iter=config.final_max_iter,
        seed=config.seed,
        solver=config.nmf_solver,
    )


def candidate_ranks(n_variants: int, min_rank: int = 4, max_rank: int = 25) -> List[int]:
    """Ranks to scan for ``n_variants`` variants, bounds clamped to the variant count."""
    return list(range(max(1, min(min_rank, n_variants)), min(max_rank, n_variants) + 1))


def select_best_rank(residuals: Sequence[Tuple[int, float]]) -> Tuple[Optional[int], bool]:
    """Walk residuals in rank order and pick the first local minimum.

    Later ranks replace the best when their residual is less than or equal to
    it; the walk stops the first time a residual exceeds the best.

    Returns:
        (best_rank, stopped) where stopped is True once an increase was seen
    """
    best_rank = None
    best_residual = None
    for rank, residual in residuals:
        if best_rank is None:
            best_rank, best_residual = rank, residual
        elif residual <= best_residual:
            best_rank, best_residual = rank, residual
        else:
            return best_rank, True
    return best_rank, False


class RankSearch:
    """Drive a factorizer over candidate ranks and run the final factorization."""

    def __init__(self, factorizer, threads: int = 1, min_rank: int = 4, max_rank: int = 25):
        self.factorizer = factorizer
        self.threads = threads
        self.min_rank = min_rank
        self.max_rank = max_rank

    def scan(self, n_variants: int, distance_path: str, constraint_path: str,
             sample_count: int) -> Tuple[int, Dict[int, float]]:
        """Scan ranks in waves of ``threads`` tasks until the residual first increases."""
        ranks = candidate_ranks(n_variants, self.min_rank, self.max_rank)
        if not ranks:
            raise FactorizationError(f"No candidate ranks for {n_variants} variants")

        inner_threads = max(1, self.threads // len(ranks))
        wave_size = max(1, self.threads)
        residuals: Dict[int, float] = {}

        def explore(rank: int) -> Tuple[int, float]:
            residual = self.factorizer(rank, True, distance_path, constraint_path,
                                       sample_count, inner_threads)
            logging.debug(f"Rank {rank}: residual {residual}")
            return rank, residual

        best_rank = None
        with ThreadPoolExecutor(max_workers=wave_size) as executor:
            for start in range(0, len(ranks), wave_size):
                wave = ranks[start:start + wave_size]
                residuals.update(executor.map(explore, wave))
                best_rank, stopped = select_best_rank(
                    [(rank, residuals[rank]) for rank in sorted(residuals)])
                if stopped:
                    remaining = len(ranks) - start - len(wave)
                    if remaining:
                        logging.debug(f"Residual increased; skipping {remaining} remaining ranks")
                    break

        logging.info("Residuals by rank: " +
                     ", ".join(f"{rank}={residuals[rank]:.4f}" for rank in sorted(residuals)))
        logging.info(f"Selected rank {best_rank}")
        return best_rank, residuals

    def run(self, n_variants: int, distance_path: str, constraint_path: str,
            sample_count: int) -> RankSearchResult:
        best_rank, residuals = self.scan(n_variants, distance_path, constraint_path, sample_count)

        logging.info(f"Running final factorization at rank {best_rank}")
        predictions = np.asarray(self.factorizer(best_rank, False, distance_path, constraint_path,
                                                 sample_count, self.threads))
        if predictions.ndim != 2 or predictions.shape[0] != n_variants or predictions.shape[1] < 3:
            raise FactorizationError(
                f"Expected {n_variants} prediction rows of (cluster, posterior, weight), "
                f"got shape {predictions.shape}")
        return RankSearchResult(best_rank, residuals, predictions)
