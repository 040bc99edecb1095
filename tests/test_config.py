#!/usr/bin/env python3
"""
Tests for run configuration and argument handling.
"""

import pytest

from strainphase.config import DEFAULT_NMF_COMMAND, DeconvolutionConfig, load_codon_table
from strainphase.core import parse_arguments
from strainphase.errors import ConfigurationError, StrainPhaseError


def test_defaults_are_valid():
    config = DeconvolutionConfig()
    config.validate()
    assert config.exploratory_max_iter == 100
    assert config.final_max_iter == 500
    assert config.min_rank == 4 and config.max_rank == 25


def test_from_args():
    args = parse_arguments([
        "--reference", "ref.fna", "--sample-stats", "a.json", "b.json",
        "--threads", "4", "--min-rank", "2", "--max-rank", "8",
        "--no-dendrogram", "--factorizer", "external", "--plot-ranks",
    ])
    config = DeconvolutionConfig.from_args(args)

    assert args.sample_stats == ["a.json", "b.json"]
    assert config.threads == 4
    assert config.min_rank == 2 and config.max_rank == 8
    assert config.use_dendrogram is False
    assert config.factorizer == "external"
    assert config.nmf_command == DEFAULT_NMF_COMMAND
    assert config.plot_ranks is True
    config.validate()


@pytest.mark.parametrize("overrides", [
    {"threads": 0},
    {"min_rank": 0},
    {"min_rank": 6, "max_rank": 5},
    {"final_max_iter": 0},
    {"nmf_solver": "als"},
    {"factorizer": "remote"},
    {"linkage_method": "ward-ish"},
    {"kmer_size": 0},
    {"codon_table": 4},
    {"seed": "none"},
    {"factorizer": "external", "nmf_command": "  "},
])
def test_invalid_settings_rejected(overrides):
    with pytest.raises(ConfigurationError):
        DeconvolutionConfig(**overrides).validate()


def test_seed_none_rejected_for_external_factorizer():
    with pytest.raises(ConfigurationError):
        DeconvolutionConfig(seed="none", factorizer="external").validate()


def test_codon_tables():
    assert load_codon_table(11).id == 11
    assert "TAA" in load_codon_table(1).stop_codons
    with pytest.raises(ConfigurationError):
        load_codon_table(2)


def test_configuration_error_is_value_error():
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(ConfigurationError, StrainPhaseError)


def test_to_dict_round_trips_fields():
    config = DeconvolutionConfig(threads=3)
    as_dict = config.to_dict()
    assert as_dict["threads"] == 3
    assert DeconvolutionConfig(**as_dict) == config
