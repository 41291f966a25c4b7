"""Shared data structures for ampdenoise.

All records are immutable value types. Components own what they produce and
never mutate records produced by another component.
"""

from typing import List, NamedTuple, Optional, Tuple

import numpy as np


BASES = "ACGT"
BASE_INDEX = {base: i for i, base in enumerate(BASES)}


class Read(NamedTuple):
    """A single read as delivered by the upstream parser."""
    sequence: str
    quality: Tuple[int, ...]  # Phred scores, one per base
    id: Optional[str] = None


class UniqueSequence(NamedTuple):
    """A distinct sequence observed one or more times in a sample."""
    sequence: str
    abundance: int
    quality: Tuple[float, ...]  # Abundance-weighted mean Phred score per position


class Dereplication(NamedTuple):
    """Result of collapsing a read set into unique sequences."""
    uniques: Tuple[UniqueSequence, ...]
    read_map: Tuple[int, ...]  # read index -> index into uniques

    @property
    def total_reads(self) -> int:
        return sum(u.abundance for u in self.uniques)


class Partition(NamedTuple):
    """Cluster membership of the uniques of one sample and direction.

    Clusters are stored as an arena: ``centers[k]`` is the index of the unique
    at the center of cluster ``k`` and ``assignment[i]`` is the cluster index of
    unique ``i``.
    """
    uniques: Tuple[UniqueSequence, ...]
    centers: Tuple[int, ...]
    assignment: Tuple[int, ...]

    def members(self, cluster: int) -> List[int]:
        return [i for i, k in enumerate(self.assignment) if k == cluster]

    def cluster_abundances(self) -> List[int]:
        totals = [0] * len(self.centers)
        for unique, k in zip(self.uniques, self.assignment):
            totals[k] += unique.abundance
        return totals


class DenoisedVariant(NamedTuple):
    """A finalized cluster: the inferred true sequence and its read support."""
    sequence: str
    abundance: int
    members: Tuple[int, ...]  # Indices of supporting uniques
    center_abundance: int
    birth_log_pvalue: Optional[float] = None  # Log p-value at promotion (None for the seed cluster)


class DenoiseResult(NamedTuple):
    """Denoising output for one sample and direction."""
    variants: Tuple[DenoisedVariant, ...]
    unique_to_variant: Tuple[int, ...]  # unique index -> variant index
    partition: Optional[Partition]
    converged: bool = True
    sample: Optional[str] = None

    @property
    def total_abundance(self) -> int:
        return sum(v.abundance for v in self.variants)


class MergedVariant(NamedTuple):
    """A forward/reverse variant combination and its merge outcome."""
    sequence: Optional[str]
    abundance: int  # Number of read pairs supporting this combination
    forward: int  # Forward variant index
    reverse: int  # Reverse variant index
    overlap: int
    mismatches: int
    accepted: bool


class MergeReport(NamedTuple):
    """All merge candidates of one sample plus diagnostic counts."""
    merged: Tuple[MergedVariant, ...]
    accepted_pairs: int
    rejected_pairs: int

    @property
    def accepted(self) -> List[MergedVariant]:
        return [m for m in self.merged if m.accepted]


def encode_sequence(sequence: str) -> np.ndarray:
    """Encode a nucleotide string as base indices (A=0, C=1, G=2, T=3)."""
    try:
        return np.fromiter((BASE_INDEX[base] for base in sequence), dtype=np.intp, count=len(sequence))
    except KeyError as e:
        raise ValueError(f"Unsupported base {e.args[0]!r} in sequence; only A, C, G and T are modeled") from None
