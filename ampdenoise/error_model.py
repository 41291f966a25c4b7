"""
Quality-aware substitution error model.

The model gives, for every reference base, observed base and quality score,
the probability that a read shows the observed base where the true sequence
has the reference base. Rates are estimated from transition counts between
cluster members and their centers, smoothed across quality scores.
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from ampdenoise.align import align_to_center
from ampdenoise.types import BASES, Partition, UniqueSequence, encode_sequence


# Bounds on fitted substitution rates
MIN_ERROR_RATE = 1e-7
MAX_ERROR_RATE = 0.25

# Fraction of points in each local regression window
LOESS_SPAN = 0.75

DEFAULT_MAX_QUALITY = 41


def transition_labels() -> List[str]:
    """Labels of the 16 transitions in model order (A2A, A2C, ..., T2T)."""
    return [f"{ref}2{obs}" for ref in BASES for obs in BASES]


class ErrorModel:
    """Read-only table of P(observed base | reference base, quality).

    The underlying array has shape (4, 4, max_quality + 1). Off-diagonal
    entries are substitution probabilities; diagonal entries are derived so
    that each (reference, quality) row sums to one.
    """

    def __init__(self, probabilities: np.ndarray):
        probs = np.array(probabilities, dtype=np.float64)
        if probs.ndim != 3 or probs.shape[:2] != (4, 4):
            raise ValueError(f"Error model must have shape (4, 4, Q), got {probs.shape}")
        if np.any(probs < 0):
            raise ValueError("Error probabilities must be non-negative")

        off_diagonal = probs.sum(axis=1) - probs[np.arange(4), np.arange(4), :]
        if np.any(off_diagonal > 1.0 + 1e-9):
            raise ValueError("Substitution probabilities for a reference base sum to more than 1")
        for base in range(4):
            probs[base, base, :] = np.clip(1.0 - off_diagonal[base], 0.0, 1.0)

        probs.setflags(write=False)
        self._probs = probs
        with np.errstate(divide="ignore"):
            log_probs = np.log(probs)
        log_probs.setflags(write=False)
        self._log_probs = log_probs

    @property
    def probabilities(self) -> np.ndarray:
        return self._probs

    @property
    def log_probabilities(self) -> np.ndarray:
        return self._log_probs

    @property
    def max_quality(self) -> int:
        return self._probs.shape[2] - 1

    def quality_index(self, qualities) -> np.ndarray:
        """Round consensus qualities to model rows, clipping into range."""
        q = np.rint(np.asarray(qualities, dtype=np.float64))
        return np.clip(q, 0, self.max_quality).astype(np.intp)

    def error_rates(self) -> np.ndarray:
        """Off-diagonal probabilities as an array of shape (12, Q)."""
        mask = ~np.eye(4, dtype=bool)
        return self._probs[mask]

    def max_delta(self, other: 'ErrorModel') -> float:
        """Largest absolute difference between any two probabilities."""
        if other.probabilities.shape != self._probs.shape:
            return float("inf")
        return float(np.max(np.abs(self._probs - other.probabilities)))

    def to_rows(self) -> List[List]:
        """Rows of (transition, p_q0, p_q1, ...) for tabular output."""
        rows = []
        for label, values in zip(transition_labels(), self._probs.reshape(16, -1)):
            rows.append([label] + [float(v) for v in values])
        return rows

    @classmethod
    def uniform(cls, error_rate: float, max_quality: int = DEFAULT_MAX_QUALITY) -> 'ErrorModel':
        """Model where every base is misread with total probability error_rate at any quality."""
        if not 0.0 <= error_rate <= 1.0:
            raise ValueError(f"error_rate must be within [0, 1], got {error_rate}")
        probs = np.full((4, 4, max_quality + 1), error_rate / 3.0)
        return cls(probs)

    @classmethod
    def from_phred(cls, max_quality: int = DEFAULT_MAX_QUALITY) -> 'ErrorModel':
        """Model taking the nominal Phred error probability at face value."""
        q = np.arange(max_quality + 1)
        per_base = np.minimum(10.0 ** (-q / 10.0), 0.75)
        probs = np.broadcast_to(per_base / 3.0, (4, 4, max_quality + 1)).copy()
        return cls(probs)

    def __repr__(self):
        return f"ErrorModel(max_quality={self.max_quality}, mean_error={float(self.error_rates().mean()):.2e})"


def initial_partition(uniques: Tuple[UniqueSequence, ...]) -> Partition:
    """Maximally pessimistic partition: every unique belongs to the most abundant one."""
    if not uniques:
        return Partition(uniques, (), ())
    center = min(range(len(uniques)), key=lambda i: (-uniques[i].abundance, uniques[i].sequence))
    return Partition(uniques, (center,), (0,) * len(uniques))


def count_transitions(partition: Partition, max_quality: int = DEFAULT_MAX_QUALITY) -> np.ndarray:
    """Count center -> member base transitions per member quality score.

    Each aligned column contributes the member's abundance to
    counts[center_base, member_base, quality]. Gapped columns are skipped.

    Returns:
        Array of shape (4, 4, max_quality + 1)
    """
    counts = np.zeros((4, 4, max_quality + 1), dtype=np.float64)
    if not partition.centers:
        return counts

    groups: Dict[int, List[int]] = defaultdict(list)
    for i, k in enumerate(partition.assignment):
        groups[k].append(i)

    for k, center_idx in enumerate(partition.centers):
        center = partition.uniques[center_idx]
        center_codes = encode_sequence(center.sequence)
        for i in groups.get(k, ()):
            member = partition.uniques[i]
            columns = align_to_center(center.sequence, member.sequence)
            if len(columns.center_positions) == 0:
                continue
            member_codes = encode_sequence(member.sequence)
            q = np.rint(np.asarray(member.quality, dtype=np.float64)[columns.member_positions])
            q = np.clip(q, 0, max_quality).astype(np.intp)
            np.add.at(
                counts,
                (center_codes[columns.center_positions], member_codes[columns.member_positions], q),
                member.abundance,
            )
    return counts


def _loess(x: np.ndarray, y: np.ndarray, weights: np.ndarray, span: float = LOESS_SPAN) -> np.ndarray:
    """Weighted local linear regression with a tricube kernel, evaluated at x."""
    n = len(x)
    if n < 3:
        return np.full(n, np.average(y, weights=weights))

    window = min(n, max(3, int(np.ceil(span * n))))
    fitted = np.empty(n)
    for i, x0 in enumerate(x):
        distance = np.abs(x - x0)
        radius = np.sort(distance)[window - 1]
        # Widen slightly so the window's outermost point keeps a small weight
        u = distance / (radius * 1.001)
        kernel = np.where(u < 1.0, (1.0 - u ** 3) ** 3, 0.0)
        w = kernel * weights
        used = w > 0
        if np.count_nonzero(used) >= 2:
            slope, intercept = np.polyfit(x[used], y[used], 1, w=np.sqrt(w[used]))
            fitted[i] = slope * x0 + intercept
        else:
            fitted[i] = y[i]
    return fitted


def fit_error_model(transitions: np.ndarray, method: str = "loess") -> ErrorModel:
    """Estimate an ErrorModel from transition counts.

    For the 'loess' method each substitution rate is modeled as
    log10((count + 1) / total) and smoothed across quality scores with a
    weighted local regression (weights are the per-quality totals). The
    'raw' method uses count / total directly. Qualities outside the observed
    range take the value at the nearest observed quality; reference bases
    never observed fall back to nominal Phred rates. All rates are clipped to
    [MIN_ERROR_RATE, MAX_ERROR_RATE].

    Args:
        transitions: Counts of shape (4, 4, Q)
        method: 'loess' or 'raw'

    Returns:
        Fitted ErrorModel
    """
    if method not in ("loess", "raw"):
        raise ValueError(f"Unknown error model fit method: {method}")

    n_quality = transitions.shape[2]
    qualities = np.arange(n_quality)
    nominal = np.minimum(10.0 ** (-qualities / 10.0), 0.75) / 3.0
    probs = np.zeros((4, 4, n_quality))

    for ref in range(4):
        totals = transitions[ref].sum(axis=0)
        observed = totals > 0
        for obs in range(4):
            if obs == ref:
                continue
            if not observed.any():
                probs[ref, obs] = nominal
                continue

            q_obs = qualities[observed]
            tot = totals[observed]
            errs = transitions[ref, obs][observed]
            if method == "raw":
                rates = errs / tot
            else:
                log_rates = np.log10((errs + 1.0) / tot)
                rates = 10.0 ** _loess(q_obs.astype(np.float64), log_rates, tot)
            # np.interp holds the edge values beyond the observed range
            probs[ref, obs] = np.interp(qualities, q_obs, rates)

    mask = ~np.eye(4, dtype=bool)
    probs[mask] = np.clip(probs[mask], MIN_ERROR_RATE, MAX_ERROR_RATE)
    return ErrorModel(probs)


def monotonicity_violations(model: ErrorModel, relative_tolerance: float = 1e-6) -> List[Tuple[str, int]]:
    """Points where a substitution rate increases with quality score.

    Higher quality should never mean a higher error rate; violations indicate a
    poor fit and are reported, not corrected.

    Returns:
        List of (transition label, quality) pairs where rate[q] > rate[q - 1]
    """
    violations = []
    labels = transition_labels()
    probs = model.probabilities
    for ref in range(4):
        for obs in range(4):
            if ref == obs:
                continue
            rates = probs[ref, obs]
            increases = np.nonzero(rates[1:] > rates[:-1] * (1.0 + relative_tolerance))[0]
            label = labels[ref * 4 + obs]
            violations.extend((label, int(q) + 1) for q in increases)
    return violations


def sum_transitions(partitions: Iterable[Partition], max_quality: int = DEFAULT_MAX_QUALITY) -> np.ndarray:
    """Total transition counts over several partitions."""
    total = np.zeros((4, 4, max_quality + 1), dtype=np.float64)
    for partition in partitions:
        total += count_transitions(partition, max_quality)
    return total


def log_fit_quality(model: ErrorModel, label: Optional[str] = None) -> None:
    """Warn when the fitted rates are not monotone in quality."""
    violations = monotonicity_violations(model)
    if violations:
        prefix = f"{label}: " if label else ""
        logging.warning(f"{prefix}Error model has {len(violations)} points where the error rate "
                        f"increases with quality score (e.g. {violations[0][0]} at Q{violations[0][1]})")
