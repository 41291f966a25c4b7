#!/usr/bin/env python3

"""
Denoising engine: infer true sequence variants from unique sequences.

Unique sequences are partitioned by greedy divisive clustering. Starting from
a single cluster centered on the most abundant unique, the unique whose
abundance is least consistent with being error-derived from its current
center is promoted to a new center, and all uniques are reassigned. The
consistency test compares the observed abundance with the number of reads the
error model expects the center to produce, under a Poisson model.
"""

import logging
import math
import warnings
from collections import defaultdict
from concurrent.futures import ProcessPoolExecutor
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.special import gammaln
from scipy.stats import poisson
from tqdm import tqdm

from ampdenoise.align import align_to_center
from ampdenoise.config import DenoiseConfig
from ampdenoise.derep import dereplicate_uniques
from ampdenoise.error_model import ErrorModel
from ampdenoise.exceptions import ConvergenceWarning
from ampdenoise.types import (
    Dereplication,
    DenoisedVariant,
    DenoiseResult,
    Partition,
    UniqueSequence,
    encode_sequence,
)


def log_abundance_pvalue(abundance: int, log_expected: float) -> float:
    """Log of P(X >= abundance | X >= 1) for X ~ Poisson(expected).

    Conditioning on X >= 1 reflects that only sequences observed at least once
    are tested. Computed in log space; very small expectations use the leading
    term of the series, E^(a-1) / a!.
    """
    if abundance <= 1:
        return 0.0
    if log_expected == -math.inf:
        return -math.inf
    expected = math.exp(log_expected)
    if expected < 1e-10:
        return (abundance - 1) * log_expected - float(gammaln(abundance + 1))
    return float(poisson.logsf(abundance - 1, expected) - math.log(-math.expm1(-expected)))


class _LengthGroup:
    """Uniques of one length, stacked for vectorized comparison."""

    def __init__(self, indices: List[int], codes: np.ndarray, qualities: np.ndarray):
        self.indices = np.array(indices, dtype=np.intp)
        self.codes = codes
        self.qualities = qualities


class _Partitioner:
    """State of one divisive partitioning run.

    Comparisons of each center against every unique are computed once, when
    the center is created, and kept as rows of log-lambda and distance.
    """

    def __init__(self, uniques: Sequence[UniqueSequence], error_model: ErrorModel, config: DenoiseConfig):
        self.uniques = uniques
        self.config = config
        self.n = len(uniques)
        self.log_probs = error_model.log_probabilities
        self.abundances = np.array([u.abundance for u in uniques], dtype=np.float64)
        self.codes = [encode_sequence(u.sequence) for u in uniques]
        self.qualities = [error_model.quality_index(u.quality) for u in uniques]

        by_length: Dict[int, List[int]] = defaultdict(list)
        for i, u in enumerate(uniques):
            by_length[len(u.sequence)].append(i)
        self.length_groups: Dict[int, _LengthGroup] = {}
        for length, indices in by_length.items():
            if length == 0:
                continue
            self.length_groups[length] = _LengthGroup(
                indices,
                np.vstack([self.codes[i] for i in indices]),
                np.vstack([self.qualities[i] for i in indices]),
            )

        self.centers: List[int] = []
        self.births: List[Optional[float]] = []
        self.log_lambda = np.zeros((0, self.n))
        self.distance = np.zeros((0, self.n), dtype=np.intp)
        self.assignment = np.zeros(self.n, dtype=np.intp)

    def _compare(self, center: int) -> Tuple[np.ndarray, np.ndarray]:
        """Log-probability of producing each unique from the center, and distances."""
        log_lambda = np.empty(self.n)
        distance = np.empty(self.n, dtype=np.intp)
        center_seq = self.uniques[center].sequence
        center_codes = self.codes[center]

        group = self.length_groups.get(len(center_seq))
        if group is not None:
            # Same length: position-by-position comparison of the whole group at once
            log_lambda[group.indices] = self.log_probs[center_codes[None, :], group.codes, group.qualities].sum(axis=1)
            distance[group.indices] = np.count_nonzero(group.codes != center_codes[None, :], axis=1)

        for length, other in self.length_groups.items():
            if length == len(center_seq):
                continue
            for i in other.indices:
                columns = align_to_center(center_seq, self.uniques[i].sequence)
                c = center_codes[columns.center_positions]
                m = self.codes[i][columns.member_positions]
                q = self.qualities[i][columns.member_positions]
                log_lambda[i] = self.log_probs[c, m, q].sum()
                distance[i] = np.count_nonzero(c != m) + columns.gap_columns

        for i in range(self.n):
            if not self.uniques[i].sequence:
                log_lambda[i] = -math.inf
                distance[i] = len(center_seq)
        return log_lambda, distance

    def add_center(self, index: int, birth: Optional[float]) -> None:
        log_lambda, distance = self._compare(index)
        self.centers.append(index)
        self.births.append(birth)
        self.log_lambda = np.vstack([self.log_lambda, log_lambda])
        self.distance = np.vstack([self.distance, distance])

    def reassign(self) -> None:
        """Move every unique to the center most likely to have produced it.

        Ties go to the more abundant center, then the lexicographically
        smaller center sequence. Centers always stay in their own cluster.
        """
        order = sorted(range(len(self.centers)),
                       key=lambda k: (-self.abundances[self.centers[k]], self.uniques[self.centers[k]].sequence))
        best = np.argmax(self.log_lambda[order], axis=0)
        self.assignment = np.array(order, dtype=np.intp)[best]
        for k, center in enumerate(self.centers):
            self.assignment[center] = k

    def most_significant(self) -> Tuple[Optional[int], float]:
        """Find the non-center unique with the smallest abundance p-value."""
        cols = np.arange(self.n)
        cluster_reads = np.bincount(self.assignment, weights=self.abundances, minlength=len(self.centers))
        own_log_lambda = self.log_lambda[self.assignment, cols]
        own_distance = self.distance[self.assignment, cols]
        with np.errstate(divide="ignore"):
            log_expected = own_log_lambda + np.log(cluster_reads[self.assignment])

        is_center = np.zeros(self.n, dtype=bool)
        is_center[self.centers] = True
        eligible = (
            ~is_center
            & (self.abundances >= max(self.config.min_abundance, 2))
            & (own_distance >= self.config.min_hamming)
            & (self.abundances >= self.config.min_fold * np.exp(log_expected))
        )

        best_index = None
        best_key = None
        for i in np.nonzero(eligible)[0]:
            log_p = log_abundance_pvalue(int(self.abundances[i]), float(log_expected[i]))
            key = (log_p, -self.abundances[i], self.uniques[i].sequence)
            if best_key is None or key < best_key:
                best_key = key
                best_index = int(i)

        if best_index is None:
            return None, 0.0
        return best_index, best_key[0]


def _empty_result(sample: Optional[str]) -> DenoiseResult:
    return DenoiseResult((), (), Partition((), (), ()), True, sample)


def denoise(uniques: Sequence[UniqueSequence], error_model: ErrorModel,
            config: Optional[DenoiseConfig] = None, sample: Optional[str] = None) -> DenoiseResult:
    """Partition the uniques of one sample and direction into denoised variants.

    Args:
        uniques: Unique sequences of the sample
        error_model: Read-only substitution error model
        config: Partitioning thresholds (defaults to DenoiseConfig())
        sample: Sample name used in log messages

    Returns:
        DenoiseResult whose variants are ordered by abundance (descending).
        Cluster k of the partition corresponds to variant k.
    """
    config = config or DenoiseConfig()
    uniques = tuple(uniques)
    if not uniques:
        return _empty_result(sample)

    state = _Partitioner(uniques, error_model, config)
    seed = min(range(len(uniques)), key=lambda i: (-uniques[i].abundance, uniques[i].sequence))
    state.add_center(seed, None)
    state.reassign()

    log_threshold = math.log(config.omega_a) - math.log(len(uniques))
    converged = True
    while True:
        candidate, log_p = state.most_significant()
        if candidate is None or log_p >= log_threshold:
            break
        if config.max_clusters and len(state.centers) >= config.max_clusters:
            converged = False
            message = (f"{sample or 'sample'}: reached the cluster cap ({config.max_clusters}) "
                       f"with significant sequences remaining")
            logging.warning(message)
            warnings.warn(message, ConvergenceWarning)
            break
        state.add_center(candidate, log_p)
        state.reassign()

    # Renumber clusters so that cluster k is the k-th most abundant variant
    assignment = state.assignment
    totals = np.bincount(assignment, weights=state.abundances, minlength=len(state.centers))
    order = sorted(range(len(state.centers)),
                   key=lambda k: (-totals[k], uniques[state.centers[k]].sequence))
    new_index = {old: new for new, old in enumerate(order)}

    variants = []
    for old in order:
        center = state.centers[old]
        members = tuple(int(i) for i in np.nonzero(assignment == old)[0])
        variants.append(DenoisedVariant(
            sequence=uniques[center].sequence,
            abundance=int(totals[old]),
            members=members,
            center_abundance=uniques[center].abundance,
            birth_log_pvalue=state.births[old],
        ))

    unique_to_variant = tuple(new_index[int(k)] for k in assignment)
    partition = Partition(
        uniques=uniques,
        centers=tuple(state.centers[old] for old in order),
        assignment=unique_to_variant,
    )
    logging.debug(f"{sample or 'sample'}: {len(uniques)} unique sequences -> {len(variants)} variants")
    return DenoiseResult(tuple(variants), unique_to_variant, partition, converged, sample)


def _denoise_task(task: Tuple[Tuple[UniqueSequence, ...], ErrorModel, DenoiseConfig, Optional[str]]) -> DenoiseResult:
    uniques, error_model, config, sample = task
    return denoise(uniques, error_model, config, sample)


def denoise_samples(dereps: Mapping[str, Dereplication], error_model: ErrorModel,
                    config: Optional[DenoiseConfig] = None, threads: int = 1,
                    desc: str = "Denoising samples") -> Dict[str, DenoiseResult]:
    """Denoise every sample independently against a shared error model.

    Samples share no state, so with threads > 1 they run in a process pool.
    """
    config = config or DenoiseConfig()
    names = list(dereps)
    tasks = [(dereps[name].uniques, error_model, config, name) for name in names]

    if threads > 1 and len(tasks) > 1:
        with ProcessPoolExecutor(max_workers=threads) as executor:
            results = list(tqdm(executor.map(_denoise_task, tasks), total=len(tasks), desc=desc))
    else:
        results = [_denoise_task(task) for task in tqdm(tasks, desc=desc, disable=len(tasks) < 2)]

    unconverged = [name for name, result in zip(names, results) if not result.converged]
    if unconverged:
        message = f"{len(unconverged)} sample(s) stopped at the cluster cap: {', '.join(unconverged)}"
        logging.warning(message)
        warnings.warn(message, ConvergenceWarning)
    return dict(zip(names, results))


def denoise_pooled(dereps: Mapping[str, Dereplication], error_model: ErrorModel,
                   config: Optional[DenoiseConfig] = None) -> Dict[str, DenoiseResult]:
    """Denoise the union of all samples' uniques, then report variants per sample.

    Uniques from every sample are combined (abundances summed, qualities
    averaged by abundance) and partitioned once. Each sample then receives the
    clusters its own uniques fall into, with sample-specific abundances. All
    per-sample results share the pooled partition.
    """
    config = config or DenoiseConfig()
    pooled = dereplicate_uniques(u for derep in dereps.values() for u in derep.uniques)
    logging.info(f"Pooled {len(dereps)} samples into {len(pooled.uniques)} unique sequences")
    result = denoise(pooled.uniques, error_model, config, sample="pooled")
    index_of = {u.sequence: i for i, u in enumerate(pooled.uniques)}

    per_sample = {}
    for name, derep in dereps.items():
        clusters = [result.unique_to_variant[index_of[u.sequence]] for u in derep.uniques]
        abundance: Dict[int, int] = defaultdict(int)
        members: Dict[int, List[int]] = defaultdict(list)
        for local, (u, k) in enumerate(zip(derep.uniques, clusters)):
            abundance[k] += u.abundance
            members[k].append(local)

        present = sorted(abundance, key=lambda k: (-abundance[k], result.variants[k].sequence))
        local_index = {k: i for i, k in enumerate(present)}
        sample_counts = {u.sequence: u.abundance for u in derep.uniques}
        variants = tuple(
            DenoisedVariant(
                sequence=result.variants[k].sequence,
                abundance=abundance[k],
                members=tuple(members[k]),
                center_abundance=sample_counts.get(result.variants[k].sequence, 0),
                birth_log_pvalue=result.variants[k].birth_log_pvalue,
            )
            for k in present
        )
        per_sample[name] = DenoiseResult(
            variants=variants,
            unique_to_variant=tuple(local_index[k] for k in clusters),
            partition=result.partition,
            converged=result.converged,
            sample=name,
        )
    return per_sample
