"""Dereplication: collapse reads into unique sequences with consensus quality."""

import logging
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np

from ampdenoise.types import Dereplication, Read, UniqueSequence


class _UniqueAccumulator:
    """Running state for one distinct sequence while reads are folded in."""

    __slots__ = ("sequence", "abundance", "quality_sum")

    def __init__(self, sequence: str):
        self.sequence = sequence
        self.abundance = 0
        self.quality_sum = np.zeros(len(sequence), dtype=np.float64)

    def add(self, quality: Sequence[float], weight: int) -> None:
        if len(quality) != len(self.sequence):
            raise ValueError(
                f"Quality length {len(quality)} does not match sequence length {len(self.sequence)}"
            )
        # Sum of weighted qualities; dividing by abundance gives the count-weighted mean
        self.quality_sum += np.asarray(quality, dtype=np.float64) * weight
        self.abundance += weight

    def finish(self) -> UniqueSequence:
        mean_quality = self.quality_sum / self.abundance
        return UniqueSequence(self.sequence, self.abundance, tuple(float(q) for q in mean_quality))


def _collapse(items: Iterable[Tuple[str, Sequence[float], int]]) -> Dereplication:
    """Fold (sequence, quality, weight) items into a Dereplication.

    Uniques are ordered by abundance (descending) then by sequence so that
    output is reproducible regardless of input order.
    """
    accumulators: Dict[str, _UniqueAccumulator] = {}
    item_keys: List[str] = []

    for sequence, quality, weight in items:
        if weight < 1:
            raise ValueError(f"Weight must be >= 1, got {weight}")
        acc = accumulators.get(sequence)
        if acc is None:
            # Distinct strings (including any length difference) start a new unique
            acc = _UniqueAccumulator(sequence)
            accumulators[sequence] = acc
        acc.add(quality, weight)
        item_keys.append(sequence)

    ordered = sorted(accumulators.values(), key=lambda a: (-a.abundance, a.sequence))
    index_of = {acc.sequence: idx for idx, acc in enumerate(ordered)}

    uniques = tuple(acc.finish() for acc in ordered)
    read_map = tuple(index_of[seq] for seq in item_keys)
    return Dereplication(uniques, read_map)


def dereplicate(reads: Iterable[Read]) -> Dereplication:
    """Collapse reads of one sample into unique sequences.

    Args:
        reads: Reads in file order

    Returns:
        Dereplication with uniques and the read -> unique index map
    """
    derep = _collapse((read.sequence, read.quality, 1) for read in reads)
    logging.debug(f"Dereplicated {len(derep.read_map)} reads into {len(derep.uniques)} unique sequences")
    return derep


def dereplicate_uniques(uniques: Iterable[UniqueSequence]) -> Dereplication:
    """Re-dereplicate unique sequences, treating each as one read weighted by its abundance.

    Applied to an existing dereplication this reproduces the same uniques. It is
    also how uniques from several samples are unioned for pooled denoising.
    """
    return _collapse((u.sequence, u.quality, u.abundance) for u in uniques)
