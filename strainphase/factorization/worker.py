#!/usr/bin/env python3
"""Standalone factorization process for the subprocess factorizer.

Usage:
    strainphase-nmf RANK EXPLORATORY DISTANCES CONSTRAINTS SAMPLE_COUNT THREADS
        [--seed nndsvd] [--solver cd|mu] [--max-iter N]

Exploratory runs print the residual on stdout. Final runs write the
(cluster, posterior, weight) matrix to ``DISTANCES.npy``.
"""

import argparse
import logging
import sys

import numpy as np

from strainphase.distances import load_distance_artifacts
from strainphase.errors import StrainPhaseError
from strainphase.factorization.nmf import affinity_matrix, factorize, predictions_from_factors

EXPLORATORY_MAX_ITER = 100
FINAL_MAX_ITER = 500


def parse_flag(value: str) -> bool:
    if value in ("True", "true", "1"):
        return True
    if value in ("False", "false", "0"):
        return False
    raise argparse.ArgumentTypeError(f"Expected True or False, got '{value}'")


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Factorize condensed variant distances for strainphase"
    )
    parser.add_argument("rank", type=int, help="Factorization rank")
    parser.add_argument("exploratory", type=parse_flag,
                        help="True: print residual only; False: write predictions")
    parser.add_argument("distances", help="Condensed distance artifact")
    parser.add_argument("constraints", help="Condensed constraint artifact")
    parser.add_argument("sample_count", type=int, help="Number of samples")
    parser.add_argument("threads", type=int, help="Threads available to this run")
    parser.add_argument("--seed", default="nndsvd", choices=["nndsvd", "none"])
    parser.add_argument("--solver", default="cd", choices=["cd", "mu"])
    parser.add_argument("--max-iter", type=int, default=None,
                        help=f"Iteration budget (default: {EXPLORATORY_MAX_ITER} exploratory, "
                             f"{FINAL_MAX_ITER} final)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_arguments(argv)
    logging.basicConfig(
        level=logging.WARNING,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    try:
        distances, constraints = load_distance_artifacts(args.distances, args.constraints)
        a = affinity_matrix(distances, constraints)
        max_iter = args.max_iter
        if max_iter is None:
            max_iter = EXPLORATORY_MAX_ITER if args.exploratory else FINAL_MAX_ITER
        w, _h, residual = factorize(a, args.rank, max_iter, seed=args.seed,
                                    solver=args.solver, threads=args.threads)
    except (StrainPhaseError, OSError, ValueError) as e:
        logging.error(f"Factorization failed: {e}")
        sys.exit(1)

    if args.exploratory:
        print(residual)
    else:
        with open(args.distances + ".npy", 'wb') as f:
            np.save(f, predictions_from_factors(w))


if __name__ == "__main__":
    main()
