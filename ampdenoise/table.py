"""Sample by sequence abundance table."""

from collections import defaultdict
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np


class SequenceTable:
    """Read-only abundance matrix with samples as rows and sequences as columns."""

    def __init__(self, samples: Sequence[str], sequences: Sequence[str], counts):
        self._samples = tuple(samples)
        self._sequences = tuple(sequences)
        matrix = np.array(counts, dtype=np.int64).reshape(len(self._samples), len(self._sequences))
        if np.any(matrix < 0):
            raise ValueError("Abundances must be non-negative")
        if len(set(self._sequences)) != len(self._sequences):
            raise ValueError("Sequence columns must be distinct")
        matrix.setflags(write=False)
        self._counts = matrix

    @property
    def samples(self) -> Tuple[str, ...]:
        return self._samples

    @property
    def sequences(self) -> Tuple[str, ...]:
        return self._sequences

    @property
    def counts(self) -> np.ndarray:
        return self._counts

    @property
    def shape(self) -> Tuple[int, int]:
        return self._counts.shape

    def totals(self) -> np.ndarray:
        """Total abundance of each sequence across samples."""
        return self._counts.sum(axis=0)

    def sample_totals(self) -> np.ndarray:
        """Total abundance of each sample."""
        return self._counts.sum(axis=1)

    def abundance(self, sample: str, sequence: str) -> int:
        if sequence not in self._sequences:
            return 0
        return int(self._counts[self._samples.index(sample), self._sequences.index(sequence)])

    def drop_columns(self, mask) -> 'SequenceTable':
        """New table without the columns where mask is True."""
        keep = ~np.asarray(mask, dtype=bool)
        sequences = [s for s, k in zip(self._sequences, keep) if k]
        return SequenceTable(self._samples, sequences, self._counts[:, keep])

    def zero_cells(self, mask) -> 'SequenceTable':
        """New table with masked cells set to zero; columns left empty are dropped."""
        counts = np.where(np.asarray(mask, dtype=bool), 0, self._counts)
        empty = counts.sum(axis=0) == 0
        return SequenceTable(self._samples, self._sequences, counts).drop_columns(empty)

    def to_matrix(self) -> Tuple[np.ndarray, List[str], List[str]]:
        """Plain matrix plus row and column labels for handoff."""
        return self._counts.copy(), list(self._samples), list(self._sequences)

    def __eq__(self, other):
        if not isinstance(other, SequenceTable):
            return NotImplemented
        return (self._samples == other.samples and self._sequences == other.sequences
                and np.array_equal(self._counts, other.counts))

    def __repr__(self):
        return f"SequenceTable({len(self._samples)} samples x {len(self._sequences)} sequences)"


def make_sequence_table(per_sample: Mapping[str, Mapping[str, int]]) -> SequenceTable:
    """Build a SequenceTable from per-sample sequence abundances.

    Rows follow the input sample order, including samples without any
    sequence. Columns are ordered by total abundance (descending), then by
    sequence; sequences with zero total abundance get no column.
    """
    samples = list(per_sample)
    totals: Dict[str, int] = defaultdict(int)
    for abundances in per_sample.values():
        for sequence, count in abundances.items():
            totals[sequence] += count

    sequences = sorted((s for s, t in totals.items() if t > 0), key=lambda s: (-totals[s], s))
    column = {s: j for j, s in enumerate(sequences)}
    counts = np.zeros((len(samples), len(sequences)), dtype=np.int64)
    for i, sample in enumerate(samples):
        for sequence, count in per_sample[sample].items():
            if sequence in column:
                counts[i, column[sequence]] += count
    return SequenceTable(samples, sequences, counts)
