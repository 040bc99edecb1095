#!/usr/bin/env python3
"""
Tests for rank selection, wave scheduling and factorizer boundaries.
"""

import os
import sys
import tempfile
import threading

import numpy as np
import pytest

from strainphase.config import DeconvolutionConfig
from strainphase.errors import FactorizationError
from strainphase.factorization import (
    InProcessFactorizer,
    RankSearch,
    SubprocessFactorizer,
    candidate_ranks,
    make_factorizer,
    select_best_rank,
)
from strainphase.factorization.rank_search import parse_residual


class FakeFactorizer:
    """Returns canned residuals and records which ranks were explored."""

    def __init__(self, residuals, n_variants=30):
        self.residuals = residuals
        self.n_variants = n_variants
        self.explored = []
        self.final_rank = None
        self._lock = threading.Lock()

    def __call__(self, rank, exploratory, distance_path, constraint_path, sample_count, threads):
        if exploratory:
            with self._lock:
                self.explored.append(rank)
            return self.residuals[rank]
        self.final_rank = rank
        predictions = np.zeros((self.n_variants, 3))
        predictions[:, 1] = 1.0
        return predictions


# ==============================================================================
# Selection rule
# ==============================================================================

def test_first_local_minimum_selected():
    best, stopped = select_best_rank([(4, 10.0), (5, 8.0), (6, 7.0), (7, 9.0), (8, 1.0)])
    assert best == 6
    assert stopped


def test_ties_move_best_forward():
    best, stopped = select_best_rank([(4, 5.0), (5, 5.0), (6, 5.0)])
    assert best == 6
    assert not stopped


def test_zero_residual_biases_selection():
    best, _ = select_best_rank([(4, 3.0), (5, parse_residual("not a number")), (6, 2.0)])
    assert best == 5


def test_parse_residual():
    assert parse_residual("12.5\n") == 12.5
    assert parse_residual("") == 0.0
    assert parse_residual("nan-ish") == 0.0


def test_candidate_ranks_clamped_to_variant_count():
    assert candidate_ranks(30) == list(range(4, 26))
    assert candidate_ranks(6) == [4, 5, 6]
    assert candidate_ranks(2) == [2]
    assert candidate_ranks(10, min_rank=2, max_rank=3) == [2, 3]


# ==============================================================================
# Wave scheduling
# ==============================================================================

def test_scan_stops_scheduling_after_increase():
    residuals = {rank: 100.0 - rank for rank in range(4, 26)}
    residuals[7] = 200.0
    factorizer = FakeFactorizer(residuals)
    search = RankSearch(factorizer, threads=2)

    best, scanned = search.scan(30, "d", "c", 3)

    # Waves of two: [4, 5], [6, 7]; the increase at 7 ends the scan
    assert best == 6
    assert sorted(factorizer.explored) == [4, 5, 6, 7]
    assert sorted(scanned) == [4, 5, 6, 7]


def test_scan_covers_all_ranks_when_residual_decreases():
    residuals = {rank: 100.0 - rank for rank in range(4, 10)}
    factorizer = FakeFactorizer(residuals, n_variants=9)
    best, scanned = RankSearch(factorizer, threads=4).scan(9, "d", "c", 2)
    assert best == 9
    assert sorted(scanned) == list(range(4, 10))


def test_run_uses_selected_rank_for_final_factorization():
    residuals = {4: 5.0, 5: 4.0, 6: 6.0, 7: 1.0}
    factorizer = FakeFactorizer(residuals, n_variants=7)
    result = RankSearch(factorizer, threads=1).run(7, "d", "c", 2)

    assert result.best_rank == 5
    assert factorizer.final_rank == 5
    assert result.predictions.shape == (7, 3)
    assert 7 not in result.residuals


def test_run_rejects_misshapen_predictions():
    class ShortFactorizer(FakeFactorizer):
        def __call__(self, rank, exploratory, *args):
            if exploratory:
                return 1.0
            return np.zeros((2, 3))

    with pytest.raises(FactorizationError):
        RankSearch(ShortFactorizer({}), threads=1).run(5, "d", "c", 1)


def test_no_candidate_ranks():
    with pytest.raises(FactorizationError):
        RankSearch(FakeFactorizer({}), threads=1).scan(0, "d", "c", 1)


# ==============================================================================
# Factorizers
# ==============================================================================

def test_make_factorizer_follows_config():
    assert isinstance(make_factorizer(DeconvolutionConfig()), InProcessFactorizer)
    external = make_factorizer(DeconvolutionConfig(factorizer='external', nmf_command="my-nmf --x"))
    assert isinstance(external, SubprocessFactorizer)
    assert external.command == ["my-nmf", "--x"]


def test_external_command_carries_run_settings():
    config = DeconvolutionConfig(factorizer='external', nmf_command="my-nmf", nmf_solver='mu',
                                 exploratory_max_iter=7, final_max_iter=70)
    factorizer = make_factorizer(config)

    exploratory = factorizer.build_command(5, True, "d", "c", 3, 2)
    assert exploratory == ["my-nmf", "5", "True", "d", "c", "3", "2",
                           "--seed", "nndsvd", "--solver", "mu", "--max-iter", "7"]
    final = factorizer.build_command(5, False, "d", "c", 3, 2)
    assert final[-2:] == ["--max-iter", "70"]


def test_bare_subprocess_factorizer_passes_positionals_only():
    factorizer = SubprocessFactorizer("my-nmf")
    assert factorizer.build_command(4, False, "d", "c", 1, 1) == \
        ["my-nmf", "4", "False", "d", "c", "1", "1"]


def test_subprocess_failure_raises_factorization_error():
    factorizer = SubprocessFactorizer(f"{sys.executable} -c 'import sys; sys.exit(3)'")
    with pytest.raises(FactorizationError):
        factorizer(4, True, "d", "c", 1, 1)


def test_missing_command_raises_factorization_error():
    factorizer = SubprocessFactorizer("strainphase-no-such-command-xyz")
    with pytest.raises(FactorizationError):
        factorizer(4, True, "d", "c", 1, 1)


def test_subprocess_exploratory_output_parsed():
    factorizer = SubprocessFactorizer(f"{sys.executable} -c 'print(2.5)'")
    assert factorizer(4, True, "d", "c", 1, 1) == 2.5


def test_subprocess_final_reads_predictions_file():
    with tempfile.TemporaryDirectory() as temp_dir:
        dpath = os.path.join(temp_dir, "variant-distances")
        with open(dpath + ".npy", 'wb') as f:
            np.save(f, np.ones((4, 3)))
        factorizer = SubprocessFactorizer(f"{sys.executable} -c 'pass'")
        predictions = factorizer(4, False, dpath, "c", 1, 1)
    assert predictions.shape == (4, 3)
