"""
De novo bimera detection.

A bimera is a sequence formed when an incomplete extension product of one
template primes the next cycle on another. Such a sequence is reconstructed
exactly as a prefix of one more abundant parent joined to a suffix of another.
Parents that differ from the candidate by fewer than ``min_diffs`` positions
are not used, following UCHIME's requirement that each segment carries
differences supporting its parent.
"""

import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

import numpy as np

from ampdenoise.config import ChimeraConfig
from ampdenoise.table import SequenceTable


class BimeraCall(NamedTuple):
    """A two-parent reconstruction of a candidate sequence."""
    sequence: str
    left_parent: str  # Contributes candidate[:breakpoint]
    right_parent: str  # Contributes candidate[breakpoint:]
    breakpoint: int
    parent_abundance: float  # Combined abundance of the two parents


class ChimeraReport(NamedTuple):
    """Outcome of bimera removal on a sequence table."""
    table: SequenceTable
    bimeras: Tuple[str, ...]  # Sequences called bimeric (in any sample for per-sample mode)
    removed_columns: int
    removed_abundance: int
    calls: Dict[str, BimeraCall]


class _ParentMatch(NamedTuple):
    sequence: str
    abundance: float
    left: int
    right: int


def _matching_prefix(query: str, parent: str, max_mismatch: int) -> int:
    """Length of the longest prefix of query matching parent with at most max_mismatch mismatches."""
    mismatches = 0
    n = min(len(query), len(parent))
    for i in range(n):
        if query[i] != parent[i]:
            mismatches += 1
            if mismatches > max_mismatch:
                return i
    return n


def _matching_suffix(query: str, parent: str, max_mismatch: int) -> int:
    """Length of the longest suffix of query matching parent with at most max_mismatch mismatches."""
    return _matching_prefix(query[::-1], parent[::-1], max_mismatch)


def _differences(query: str, parent: str) -> int:
    """Positional mismatches plus length difference."""
    return sum(a != b for a, b in zip(query, parent)) + abs(len(query) - len(parent))


def _match_parent(candidate: str, parent: str, abundance: float,
                  config: ChimeraConfig) -> Optional[_ParentMatch]:
    """Score one potential parent, or None if it cannot act as a parent.

    Parents identical to the candidate, parents that explain the whole
    candidate on their own and parents closer than min_diffs are excluded.
    """
    if parent == candidate or _differences(candidate, parent) < config.min_diffs:
        return None
    left = _matching_prefix(candidate, parent, config.max_mismatch)
    right = _matching_suffix(candidate, parent, config.max_mismatch)
    if left + right >= len(candidate):
        return None
    return _ParentMatch(parent, abundance, left, right)


def _best_decomposition(candidate: str, matches: List[_ParentMatch]) -> Optional[BimeraCall]:
    """Pick the parent pair with the highest combined abundance whose segments cover the candidate.

    Ties are broken by the lexicographically first (left, right) pair.
    """
    length = len(candidate)
    if len(matches) < 2 or length == 0:
        return None

    def rank(m: _ParentMatch):
        return (-m.abundance, m.sequence)

    # top[r] holds the two best-ranked parents with a matching suffix of at least r bases
    by_right = sorted(matches, key=lambda m: -m.right)
    top: List[List[_ParentMatch]] = [[] for _ in range(length + 1)]
    current: List[_ParentMatch] = []
    pointer = 0
    for r in range(length, -1, -1):
        while pointer < len(by_right) and by_right[pointer].right >= r:
            current = sorted(current + [by_right[pointer]], key=rank)[:2]
            pointer += 1
        top[r] = current

    best = None
    best_key = None
    for left_parent in matches:
        need = length - left_parent.left
        if need <= 0 or need > length:
            continue
        for right_parent in top[need]:
            if right_parent.sequence == left_parent.sequence:
                continue
            key = (-(left_parent.abundance + right_parent.abundance),
                   left_parent.sequence, right_parent.sequence)
            if best_key is None or key < best_key:
                best_key = key
                best = BimeraCall(
                    sequence=candidate,
                    left_parent=left_parent.sequence,
                    right_parent=right_parent.sequence,
                    breakpoint=length - right_parent.right,
                    parent_abundance=left_parent.abundance + right_parent.abundance,
                )
            break
    return best


def is_bimera(candidate: str, parents: Iterable[Tuple[str, float]],
              config: Optional[ChimeraConfig] = None) -> Optional[BimeraCall]:
    """Test whether a candidate is a two-parent recombinant of the given parents.

    Args:
        candidate: Sequence to test
        parents: (sequence, abundance) pairs of potential parents
        config: Mismatch tolerance and minimum parent divergence

    Returns:
        The BimeraCall for the best decomposition, or None
    """
    config = config or ChimeraConfig()
    matches = []
    for sequence, abundance in parents:
        match = _match_parent(candidate, sequence, abundance, config)
        if match is not None:
            matches.append(match)
    return _best_decomposition(candidate, matches)


class _MatchCache:
    """Candidate/parent scores reused across samples of the same table."""

    def __init__(self, sequences: Tuple[str, ...], config: ChimeraConfig):
        self.sequences = sequences
        self.config = config
        self._cache: Dict[Tuple[int, int], Optional[_ParentMatch]] = {}

    def call(self, j: int, parent_columns: Iterable[int], abundances: np.ndarray) -> Optional[BimeraCall]:
        candidate = self.sequences[j]
        matches = []
        for k in parent_columns:
            key = (j, k)
            if key not in self._cache:
                self._cache[key] = _match_parent(candidate, self.sequences[k], 0.0, self.config)
            match = self._cache[key]
            if match is not None:
                matches.append(match._replace(abundance=float(abundances[k])))
        return _best_decomposition(candidate, matches)


def _remove_pooled(table: SequenceTable, config: ChimeraConfig) -> ChimeraReport:
    totals = table.totals()
    sequences = table.sequences
    cache = _MatchCache(sequences, config)
    flagged = np.zeros(len(sequences), dtype=bool)
    calls = {}

    order = sorted(range(len(sequences)), key=lambda j: (totals[j], sequences[j]))
    for j in order:
        threshold = totals[j] * config.min_fold_parent_over_abundance
        parents = [k for k in range(len(sequences)) if k != j and totals[k] > threshold]
        call = cache.call(j, parents, totals)
        if call is not None:
            flagged[j] = True
            calls[sequences[j]] = call

    removed_abundance = int(totals[flagged].sum())
    return ChimeraReport(table.drop_columns(flagged), tuple(s for s, f in zip(sequences, flagged) if f),
                         int(flagged.sum()), removed_abundance, calls)


def _sample_calls(table: SequenceTable, config: ChimeraConfig) -> Tuple[np.ndarray, np.ndarray, Dict[str, BimeraCall]]:
    """Call every (sample, candidate) cell independently.

    Returns:
        (judged, flagged, calls): boolean matrices of judged and flagged cells,
        and the call from the highest-abundance flagged sample per sequence
    """
    counts = table.counts
    sequences = table.sequences
    cache = _MatchCache(sequences, config)
    judged = np.zeros(counts.shape, dtype=bool)
    flagged = np.zeros(counts.shape, dtype=bool)
    calls: Dict[str, BimeraCall] = {}
    best_abundance: Dict[str, int] = {}

    for i in range(counts.shape[0]):
        row = counts[i]
        for j in np.argsort(row, kind="stable"):
            if row[j] < max(config.min_sample_abundance, 1):
                continue
            judged[i, j] = True
            threshold = row[j] * config.min_fold_parent_over_abundance
            parents = np.nonzero(row > threshold)[0]
            call = cache.call(int(j), (int(k) for k in parents if k != j), row)
            if call is None:
                continue
            flagged[i, j] = True
            sequence = sequences[j]
            if row[j] > best_abundance.get(sequence, -1):
                best_abundance[sequence] = int(row[j])
                calls[sequence] = call
    return judged, flagged, calls


def _remove_consensus(table: SequenceTable, config: ChimeraConfig) -> ChimeraReport:
    judged, flagged_cells, calls = _sample_calls(table, config)
    n_judged = judged.sum(axis=0)
    n_flagged = flagged_cells.sum(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        fraction = np.where(n_judged > 0, n_flagged / np.maximum(n_judged, 1), 0.0)
    flagged = (n_flagged > 0) & (fraction >= config.min_sample_fraction)

    sequences = table.sequences
    bimeras = tuple(s for s, f in zip(sequences, flagged) if f)
    removed_abundance = int(table.totals()[flagged].sum())
    return ChimeraReport(table.drop_columns(flagged), bimeras, int(flagged.sum()), removed_abundance,
                         {s: calls[s] for s in bimeras})


def _remove_per_sample(table: SequenceTable, config: ChimeraConfig) -> ChimeraReport:
    _, flagged_cells, calls = _sample_calls(table, config)
    cleaned = table.zero_cells(flagged_cells)
    bimeras = tuple(s for s, f in zip(table.sequences, flagged_cells.any(axis=0)) if f)
    removed_abundance = int(table.counts[flagged_cells].sum())
    removed_columns = table.shape[1] - cleaned.shape[1]
    return ChimeraReport(cleaned, bimeras, removed_columns, removed_abundance, calls)


def remove_bimeras(table: SequenceTable, config: Optional[ChimeraConfig] = None) -> ChimeraReport:
    """Remove bimeric sequences from a sequence table.

    Methods:
        pooled: test each column against columns of greater total abundance,
            from the least to the most abundant, and drop flagged columns.
        consensus: test each column within every sample where it occurs and
            drop it when the flagged fraction of those samples reaches
            min_sample_fraction.
        per-sample: test within each sample and zero only the flagged cells.

    Retained cells are never changed, so no column total increases.
    """
    config = config or ChimeraConfig()
    if table.shape[1] == 0:
        return ChimeraReport(table, (), 0, 0, {})

    if config.method == "pooled":
        report = _remove_pooled(table, config)
    elif config.method == "consensus":
        report = _remove_consensus(table, config)
    elif config.method == "per-sample":
        report = _remove_per_sample(table, config)
    else:
        raise ValueError(f"Unknown chimera removal method: {config.method}")

    total = int(table.counts.sum())
    fraction = report.removed_abundance / total if total else 0.0
    logging.info(f"Identified {len(report.bimeras)} bimeras out of {table.shape[1]} input sequences "
                 f"({config.method}); removed {report.removed_abundance} reads ({fraction:.1%})")
    return report
