"""Merging of denoised forward and reverse variants into full-length amplicons."""

import logging
from collections import Counter, defaultdict
from typing import Dict, Optional, Tuple

from Bio.Seq import reverse_complement

from ampdenoise.config import MergeConfig
from ampdenoise.exceptions import InputMismatchError
from ampdenoise.types import Dereplication, DenoiseResult, MergedVariant, MergeReport


def merge_pair(forward: str, reverse: str,
               config: Optional[MergeConfig] = None) -> Tuple[Optional[str], int, int]:
    """Merge a forward sequence with a reverse sequence via their overlap.

    The reverse sequence is reverse-complemented and its start is aligned
    against the 3' end of the forward sequence without gaps. Among overlaps of
    at least min_overlap bases with at most max_mismatch mismatches, the one
    with the most matching bases is used. Mismatched overlap columns keep the
    forward base.

    Args:
        forward: Forward sequence (5' -> 3')
        reverse: Reverse read sequence as sequenced
        config: Overlap requirements, or concatenation mode

    Returns:
        Tuple of (merged sequence or None, overlap length, mismatches in overlap)
    """
    config = config or MergeConfig()
    reverse_rc = reverse_complement(reverse)

    if config.just_concatenate:
        return forward + "N" * config.spacer_length + reverse_rc, 0, 0

    best = None  # (matches, overlap, mismatches)
    shortest = max(config.min_overlap, 1)
    for overlap in range(min(len(forward), len(reverse_rc)), shortest - 1, -1):
        mismatches = sum(a != b for a, b in zip(forward[-overlap:], reverse_rc[:overlap]))
        if mismatches > config.max_mismatch:
            continue
        matches = overlap - mismatches
        if best is None or matches > best[0]:
            best = (matches, overlap, mismatches)

    if best is None:
        return None, 0, 0

    _, overlap, mismatches = best
    return forward + reverse_rc[overlap:], overlap, mismatches


def merge_sample(forward_derep: Dereplication, forward_result: DenoiseResult,
                 reverse_derep: Dereplication, reverse_result: DenoiseResult,
                 config: Optional[MergeConfig] = None,
                 sample: Optional[str] = None) -> MergeReport:
    """Merge the denoised variants of one sample using read-pair co-occurrence.

    Each read pair is traced through dereplication and denoising to the
    (forward variant, reverse variant) combination it supports. Every distinct
    combination is merged once, and its abundance is the number of read pairs
    supporting it. Combinations that fail to merge are kept in the report as
    rejected and contribute to the rejected pair count.

    Raises:
        InputMismatchError: if the forward and reverse read maps differ in length
    """
    config = config or MergeConfig()
    if len(forward_derep.read_map) != len(reverse_derep.read_map):
        raise InputMismatchError(
            sample,
            f"{len(forward_derep.read_map)} forward reads but {len(reverse_derep.read_map)} reverse reads"
        )

    combinations = Counter()
    for f_unique, r_unique in zip(forward_derep.read_map, reverse_derep.read_map):
        combinations[(forward_result.unique_to_variant[f_unique],
                      reverse_result.unique_to_variant[r_unique])] += 1

    merged = []
    for (f_variant, r_variant), count in sorted(combinations.items(), key=lambda item: (-item[1], item[0])):
        sequence, overlap, mismatches = merge_pair(
            forward_result.variants[f_variant].sequence,
            reverse_result.variants[r_variant].sequence,
            config,
        )
        merged.append(MergedVariant(
            sequence=sequence,
            abundance=count,
            forward=f_variant,
            reverse=r_variant,
            overlap=overlap,
            mismatches=mismatches,
            accepted=sequence is not None,
        ))

    accepted_pairs = sum(m.abundance for m in merged if m.accepted)
    rejected_pairs = len(forward_derep.read_map) - accepted_pairs
    if rejected_pairs:
        logging.debug(f"{sample or 'sample'}: {rejected_pairs} read pairs failed to merge "
                      f"({sum(1 for m in merged if not m.accepted)} variant combinations)")
    return MergeReport(tuple(merged), accepted_pairs, rejected_pairs)


def merged_abundances(report: MergeReport) -> Dict[str, int]:
    """Sum accepted merge abundances by merged sequence."""
    totals: Dict[str, int] = defaultdict(int)
    for m in report.accepted:
        totals[m.sequence] += m.abundance
    return dict(totals)
