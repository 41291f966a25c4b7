"""
End-to-end orchestration: filtered reads in, chimera-free sequence table out.

Each stage consumes the read-only output of the previous one. Samples whose
forward and reverse reads disagree are skipped with an error message; the run
fails only when no sample is usable.
"""

import logging
from typing import Dict, Mapping, NamedTuple, Optional, Sequence, Tuple

from tqdm import tqdm

from ampdenoise.chimera import ChimeraReport, remove_bimeras
from ampdenoise.config import PipelineConfig
from ampdenoise.denoise import denoise_pooled, denoise_samples
from ampdenoise.derep import dereplicate
from ampdenoise.exceptions import InputMismatchError, MalformedInputError
from ampdenoise.filtering import filter_and_trim
from ampdenoise.learn import ErrorModelFit, learn_error_model
from ampdenoise.merge import merge_sample, merged_abundances
from ampdenoise.table import SequenceTable, make_sequence_table
from ampdenoise.types import Dereplication, DenoiseResult, MergeReport, Read


TRACK_COLUMNS = ("input", "filtered", "denoisedF", "denoisedR", "merged", "tabled", "nonchim")

SampleReads = Tuple[Sequence[Read], Optional[Sequence[Read]]]


class PipelineResult(NamedTuple):
    """Everything a run produces, per stage."""
    table: SequenceTable  # Final table (after bimera removal when enabled)
    merged_table: SequenceTable  # Table before bimera removal
    tracking: Dict[str, Dict[str, int]]  # sample -> TRACK_COLUMNS -> reads
    error_models: Dict[str, ErrorModelFit]  # 'forward' and, for paired input, 'reverse'
    forward: Dict[str, DenoiseResult]
    reverse: Dict[str, DenoiseResult]
    merges: Dict[str, MergeReport]
    chimeras: Optional[ChimeraReport]
    skipped: Dict[str, str]  # sample -> reason


def _mate_id(read_id: str) -> str:
    """Read identifier without description or /1, /2 mate suffix."""
    name = read_id.split()[0] if read_id.strip() else read_id
    if name.endswith("/1") or name.endswith("/2"):
        name = name[:-2]
    return name


def validate_pair(sample: str, forward: Sequence[Read], reverse: Sequence[Read]) -> None:
    """Check that forward and reverse reads of a sample pair up one-to-one.

    Raises:
        InputMismatchError: on differing read counts or mismatched read identifiers
    """
    if len(forward) != len(reverse):
        raise InputMismatchError(sample, f"{len(forward)} forward reads but {len(reverse)} reverse reads")
    for i, (f_read, r_read) in enumerate(zip(forward, reverse)):
        if f_read.id is None or r_read.id is None:
            continue
        if _mate_id(f_read.id) != _mate_id(r_read.id):
            raise InputMismatchError(
                sample, f"read {i + 1}: forward id '{f_read.id}' does not match reverse id '{r_read.id}'"
            )


def _paired_mode(samples: Mapping[str, SampleReads]) -> bool:
    kinds = {reverse is not None for _, reverse in samples.values()}
    if len(kinds) > 1:
        raise MalformedInputError("Samples mix single-end and paired-end input")
    return kinds == {True}


def _denoise_direction(dereps: Mapping[str, Dereplication], config: PipelineConfig,
                       label: str) -> Tuple[ErrorModelFit, Dict[str, DenoiseResult]]:
    fit = learn_error_model(dereps, config.errors, config.denoise, threads=config.threads, label=label)
    logging.info(f"Denoising {label} reads of {len(dereps)} samples"
                 f"{' (pooled)' if config.pool else ''}")
    if config.pool:
        results = denoise_pooled(dereps, fit.model, config.denoise)
    else:
        results = denoise_samples(dereps, fit.model, config.denoise, threads=config.threads,
                                  desc=f"Denoising {label} reads")
    return fit, results


def run_pipeline(samples: Mapping[str, SampleReads],
                 config: Optional[PipelineConfig] = None) -> PipelineResult:
    """Run filtering, dereplication, error learning, denoising, merging and bimera removal.

    Args:
        samples: sample name -> (forward reads, reverse reads or None for single-end)
        config: Parameters for every stage

    Returns:
        PipelineResult with the final table, per-stage read tracking and the
        intermediate results of every stage

    Raises:
        MalformedInputError: if no sample is usable or input kinds are mixed
    """
    config = config or PipelineConfig()
    paired = _paired_mode(samples)
    skipped: Dict[str, str] = {}
    tracking: Dict[str, Dict[str, int]] = {}
    filtered: Dict[str, SampleReads] = {}

    for name, (forward, reverse) in tqdm(samples.items(), desc="Filtering samples", disable=len(samples) < 2):
        try:
            if paired:
                validate_pair(name, forward, reverse)
            filtered[name] = filter_and_trim(forward, reverse, config.filtering, sample=name)
        except InputMismatchError as e:
            logging.error(f"Skipping sample {e}")
            skipped[name] = str(e)
            continue
        tracking[name] = dict.fromkeys(TRACK_COLUMNS, 0)
        tracking[name]["input"] = len(forward)
        tracking[name]["filtered"] = len(filtered[name][0])
        if not filtered[name][0]:
            logging.warning(f"{name}: no reads passed filtering")

    if not filtered:
        raise MalformedInputError("No usable samples in input")
    logging.info(f"{len(filtered)} samples usable, {len(skipped)} skipped")

    forward_dereps = {name: dereplicate(f) for name, (f, _) in filtered.items()}
    error_models: Dict[str, ErrorModelFit] = {}
    error_models["forward"], forward_results = _denoise_direction(forward_dereps, config, "forward")
    for name, result in forward_results.items():
        tracking[name]["denoisedF"] = result.total_abundance

    reverse_results: Dict[str, DenoiseResult] = {}
    merges: Dict[str, MergeReport] = {}
    per_sample: Dict[str, Dict[str, int]] = {}
    if paired:
        reverse_dereps = {name: dereplicate(r) for name, (_, r) in filtered.items()}
        error_models["reverse"], reverse_results = _denoise_direction(reverse_dereps, config, "reverse")
        for name in filtered:
            tracking[name]["denoisedR"] = reverse_results[name].total_abundance
            merges[name] = merge_sample(forward_dereps[name], forward_results[name],
                                        reverse_dereps[name], reverse_results[name],
                                        config.merge, sample=name)
            per_sample[name] = merged_abundances(merges[name])
            tracking[name]["merged"] = merges[name].accepted_pairs
        rejected = sum(report.rejected_pairs for report in merges.values())
        logging.info(f"Merged read pairs: {sum(r.accepted_pairs for r in merges.values())} accepted, "
                     f"{rejected} rejected")
    else:
        for name, result in forward_results.items():
            per_sample[name] = {v.sequence: v.abundance for v in result.variants}
            tracking[name]["merged"] = result.total_abundance

    merged_table = make_sequence_table(per_sample)
    for name, total in zip(merged_table.samples, merged_table.sample_totals()):
        tracking[name]["tabled"] = int(total)
    logging.info(f"Sequence table: {merged_table.shape[0]} samples x {merged_table.shape[1]} sequences")

    chimeras = None
    table = merged_table
    if config.remove_chimeras:
        chimeras = remove_bimeras(merged_table, config.chimera)
        table = chimeras.table
    for name, total in zip(table.samples, table.sample_totals()):
        tracking[name]["nonchim"] = int(total)

    return PipelineResult(
        table=table,
        merged_table=merged_table,
        tracking=tracking,
        error_models=error_models,
        forward=forward_results,
        reverse=reverse_results,
        merges=merges,
        chimeras=chimeras,
        skipped=skipped,
    )
