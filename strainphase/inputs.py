"""Loading of reference contigs and per-sample upstream statistics.

Sample statistics are JSON documents::

    {"sample": "S1",
     "contigs": [{"name": "contig_1", "coverage": 12.5, "variance": 3.1,
                  "mean_genotypes": 1.0,
                  "variants": {"10": {"A": [5, 10]}},
                  "snps": {"10": {"A": [1, 2, 3]}},
                  "indels": {},
                  "kmers": {"ACGT": 3}}]}

Positions are 0-based. Contig ids follow the order of the reference FASTA.
"""

import json
import logging
import os
from typing import Dict, List, Tuple, NamedTuple, Optional

from Bio import SeqIO

from strainphase.errors import ConfigurationError
from strainphase.pileup import PileupStats, PopulationMatrix


class ReferenceContig(NamedTuple):
    tid: int
    name: str
    sequence: bytes


class SampleStats(NamedTuple):
    sample_name: str
    contigs: List[PileupStats]
    kmers: Dict[int, Dict[str, int]]  # tid -> kmer -> count


def load_reference(reference_file: str) -> Dict[str, ReferenceContig]:
    """Read reference contigs keyed by name."""
    contigs = {}
    for tid, record in enumerate(SeqIO.parse(reference_file, "fasta")):
        contigs[record.id] = ReferenceContig(tid, record.id, str(record.seq).upper().encode('ascii'))
    if not contigs:
        raise ConfigurationError(f"No contigs found in reference file {reference_file}")
    logging.info(f"Loaded {len(contigs)} reference contigs from {reference_file}")
    return contigs


def _number(entry: dict, field: str, source: str) -> float:
    try:
        return float(entry[field])
    except KeyError:
        raise ConfigurationError(f"{source}: missing field '{field}'") from None
    except (TypeError, ValueError):
        raise ConfigurationError(f"{source}: malformed numeric field '{field}': {entry[field]!r}") from None


def _position(key: str, source: str) -> int:
    try:
        return int(key)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{source}: malformed position {key!r}") from None


def _parse_abundances(raw: dict, source: str) -> Dict[int, Dict[str, Tuple[float, float]]]:
    abundances = {}
    for pos_key, variant_map in raw.items():
        pos = _position(pos_key, source)
        abundances[pos] = {}
        for variant, values in variant_map.items():
            try:
                count, depth = float(values[0]), float(values[1])
            except (TypeError, ValueError, IndexError):
                raise ConfigurationError(
                    f"{source}: malformed (count, depth) for {variant} at {pos}: {values!r}") from None
            abundances[pos][variant] = (count, depth)
    return abundances


def _parse_read_sets(raw: dict, source: str) -> Dict[int, Dict[str, set]]:
    return {_position(pos_key, source): {allele: set(reads) for allele, reads in allele_map.items()}
            for pos_key, allele_map in raw.items()}


def _parse_contig(entry: dict, reference: Dict[str, ReferenceContig],
                  stats_file: str) -> Tuple[PileupStats, Optional[Dict[str, int]]]:
    name = entry.get("name")
    if name not in reference:
        raise ConfigurationError(f"{stats_file}: contig '{name}' not in reference")
    ref = reference[name]
    source = f"{stats_file}:{name}"
    stats = PileupStats(
        tid=ref.tid,
        target_name=name,
        target_len=len(ref.sequence),
        coverage=_number(entry, "coverage", source),
        variance=_number(entry, "variance", source),
        mean_genotypes=_number(entry, "mean_genotypes", source),
        variant_abundances=_parse_abundances(entry.get("variants", {}), source),
        snps=_parse_read_sets(entry.get("snps", {}), source),
        indels=_parse_read_sets(entry.get("indels", {}), source),
    )
    contig_kmers = None
    if "kmers" in entry:
        contig_kmers = {kmer: int(_number(entry["kmers"], kmer, source)) for kmer in entry["kmers"]}
    return stats, contig_kmers


def load_sample_stats(stats_file: str, reference: Dict[str, ReferenceContig]) -> SampleStats:
    """Parse one sample's JSON statistics against the reference contigs."""
    with open(stats_file, 'r') as f:
        try:
            document = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{stats_file}: invalid JSON: {e}") from e

    if not isinstance(document, dict):
        raise ConfigurationError(f"{stats_file}: expected a JSON object at top level")

    sample_name = document.get("sample") or os.path.splitext(os.path.basename(stats_file))[0]
    contigs = []
    kmers = {}
    for index, entry in enumerate(document.get("contigs", [])):
        try:
            stats, contig_kmers = _parse_contig(entry, reference, stats_file)
        except (AttributeError, TypeError) as e:
            raise ConfigurationError(f"{stats_file}: malformed contig entry {index}: {e}") from e
        contigs.append(stats)
        if contig_kmers is not None:
            kmers[stats.tid] = contig_kmers

    logging.debug(f"Loaded statistics for {len(contigs)} contigs from {stats_file}")
    return SampleStats(sample_name, contigs, kmers)


def build_matrix(reference: Dict[str, ReferenceContig], samples: List[SampleStats]) -> PopulationMatrix:
    """Register all samples, then merge their statistics."""
    matrix = PopulationMatrix()
    for sample in samples:
        matrix.add_sample(sample.sample_name)

    number_of_contigs = len(reference)
    by_tid = {contig.tid: contig for contig in reference.values()}
    for sample_idx, sample in enumerate(samples):
        for tid, k_freq in sample.kmers.items():
            matrix.add_kmers(tid, number_of_contigs, k_freq)
        for stats in sample.contigs:
            matrix.add_contig(stats, sample_idx, by_tid[stats.tid].sequence)
    return matrix
