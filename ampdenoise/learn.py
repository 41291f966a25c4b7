"""
Error model estimation by alternating partitioning and re-fitting.

The loop is built from two pure steps exchanging immutable snapshots:
``partition_round`` denoises the corpus with a fixed model, and
``refit`` turns the resulting partitions into a new model. The loop stops when
two consecutive models agree within a tolerance, or on an iteration or time
cap, in which case the last model is kept and non-convergence is reported.
"""

import logging
import time
import warnings
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from ampdenoise.config import DenoiseConfig, ErrorLearningConfig
from ampdenoise.denoise import denoise_samples
from ampdenoise.error_model import (
    ErrorModel,
    fit_error_model,
    initial_partition,
    log_fit_quality,
    sum_transitions,
)
from ampdenoise.exceptions import ConvergenceWarning
from ampdenoise.types import Dereplication, Partition


class ErrorModelFit(NamedTuple):
    """Outcome of error model estimation."""
    model: ErrorModel
    converged: bool
    iterations: int
    deltas: Tuple[float, ...]  # Max probability change after each iteration
    samples_used: Tuple[str, ...]
    reads_used: int


def select_corpus(dereps: Mapping[str, Dereplication], max_reads: int) -> Dict[str, Dereplication]:
    """Take whole samples, in order, until at least max_reads reads are included.

    Empty samples are skipped. The sample that crosses the cap is included.
    """
    corpus = {}
    reads = 0
    for name, derep in dereps.items():
        if reads >= max_reads:
            break
        if not derep.uniques:
            continue
        corpus[name] = derep
        reads += derep.total_reads
    return corpus


def partition_round(corpus: Mapping[str, Dereplication], model: ErrorModel,
                    denoise_config: DenoiseConfig, threads: int = 1) -> List[Partition]:
    """Denoise every corpus sample with a fixed model and return the partitions."""
    results = denoise_samples(corpus, model, denoise_config, threads=threads,
                              desc="Partitioning error-model corpus")
    return [result.partition for result in results.values()]


def refit(partitions: Sequence[Partition], config: ErrorLearningConfig) -> ErrorModel:
    """Fit a new model from the transitions observed in a set of partitions."""
    transitions = sum_transitions(partitions, config.max_quality)
    return fit_error_model(transitions, config.fit_method)


def learn_error_model(dereps: Mapping[str, Dereplication],
                      config: Optional[ErrorLearningConfig] = None,
                      denoise_config: Optional[DenoiseConfig] = None,
                      threads: int = 1,
                      label: str = "") -> ErrorModelFit:
    """Learn a substitution error model from dereplicated samples.

    The first model comes from the maximally pessimistic partition, in which
    each sample's most abundant unique is the only true sequence. Each further
    iteration denoises the corpus with the current model and re-fits.

    Args:
        dereps: Dereplicated samples, in the order they are added to the corpus
        config: Read cap, iteration cap, tolerance and fit method
        denoise_config: Partitioning thresholds used inside the loop
        threads: Worker processes for the per-sample partitioning
        label: Name used in log messages (e.g. 'forward')

    Returns:
        ErrorModelFit with the final model and convergence details
    """
    config = config or ErrorLearningConfig()
    denoise_config = denoise_config or DenoiseConfig()
    prefix = f"{label} " if label else ""

    corpus = select_corpus(dereps, config.max_reads)
    reads_used = sum(d.total_reads for d in corpus.values())
    logging.info(f"Learning {prefix}error model from {reads_used} reads in {len(corpus)} sample(s)")
    if not corpus:
        logging.warning(f"No reads available to learn the {prefix}error model; using nominal Phred rates")
        return ErrorModelFit(ErrorModel.from_phred(config.max_quality), False, 0, (), (), 0)

    start = time.monotonic()
    model = refit([initial_partition(d.uniques) for d in corpus.values()], config)

    deltas: List[float] = []
    converged = False
    stop_reason = f"the iteration cap ({config.max_iterations})"
    for iteration in range(1, config.max_iterations + 1):
        new_model = refit(partition_round(corpus, model, denoise_config, threads), config)
        delta = new_model.max_delta(model)
        deltas.append(delta)
        model = new_model
        logging.info(f"{prefix}error model iteration {iteration}: max probability change {delta:.3g}")

        if delta < config.tolerance:
            converged = True
            break
        if config.max_seconds is not None and time.monotonic() - start > config.max_seconds:
            stop_reason = f"the time budget ({config.max_seconds:g}s)"
            break

    if not converged:
        message = (f"{prefix}error model did not converge within {stop_reason}; "
                   f"using the last estimate")
        logging.warning(message)
        warnings.warn(message, ConvergenceWarning)

    log_fit_quality(model, label)
    return ErrorModelFit(model, converged, len(deltas), tuple(deltas), tuple(corpus), reads_used)
