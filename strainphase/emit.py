"""Strain consensus sequences from haplotype calls."""

import logging
from typing import Dict, List, Tuple

from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from strainphase.haplotypes import Haplotype
from strainphase.pileup import PopulationMatrix


def apply_haplotype(reference: str, calls: Dict[int, str]) -> Tuple[str, int]:
    """Apply per-position calls to a reference contig.

    Returns:
        Tuple of (strain sequence, number of calls applied)
    """
    pieces = []
    applied = 0
    skip = 0
    for pos, base in enumerate(reference):
        if skip:
            skip -= 1
            continue
        call = calls.get(pos)
        if call is None:
            pieces.append(base)
            continue

        applied += 1
        if 'N' in call:
            # Ambiguous run: keep its first base and consume the reference it spans
            pieces.append(call[0])
            skip = len(call) - 1
        elif len(call) > 1:
            # Insertions carry the reference base as a prefix
            pieces.append(call[1:])
        else:
            # Substitutions and single-character deletion calls replace the base
            pieces.append(call)
    return ''.join(pieces), applied


def strain_calls(haplotype: Haplotype, shared: Dict[int, Dict[int, str]], tid: int) -> Dict[int, str]:
    """Haplotype calls for a contig, filled in with shared ambiguous calls."""
    calls = dict(shared.get(tid, {}))
    calls.update(haplotype.calls_for(tid))
    return calls


def write_strain_sequences(output_prefix: str, haplotypes: List[Haplotype],
                           shared: Dict[int, Dict[int, str]],
                           matrix: PopulationMatrix) -> List[str]:
    """Write one FASTA file per strain with one record per contig."""
    written = []
    for haplotype in haplotypes:
        output_file = f"{output_prefix}_strain_{haplotype.strain_index}.fna"
        records = []
        for tid in matrix.contig_ids():
            reference = matrix.contigs[tid].decode('ascii')
            sequence, variations = apply_haplotype(reference, strain_calls(haplotype, shared, tid))
            records.append(SeqRecord(
                Seq(sequence),
                id=f"{matrix.target_names[tid]}_strain_{haplotype.strain_index}",
                description=f"#variants_{variations}",
            ))

        with open(output_file, 'w') as f:
            # Biopython wraps FASTA sequence lines at 60 characters
            SeqIO.write(records, f, "fasta")
        logging.info(f"Wrote strain {haplotype.strain_index} "
                     f"({len(haplotype.variant_indices)} variants) to {output_file}")
        written.append(output_file)
    return written
