#!/usr/bin/env python3

import argparse
import csv
import glob
import gzip
import json
import logging
import os
import re
import sys
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from ampdenoise import __version__
from ampdenoise.config import CHIMERA_METHODS, ERROR_FIT_METHODS, PipelineConfig
from ampdenoise.error_model import ErrorModel
from ampdenoise.exceptions import AmpdenoiseError, MalformedInputError
from ampdenoise.pipeline import TRACK_COLUMNS, PipelineResult, run_pipeline
from ampdenoise.types import Read


FASTQ_PATTERN = re.compile(r"^(?P<sample>[^_]+)_.*?_?R(?P<mate>[12])(?:_[^.]*)?\.f(?:ast)?q(?:\.gz)?$")


def setup_logging(log_level: str, log_file: str = None):
    """Setup logging configuration with optional file output."""
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        return log_file

    return None


def discover_samples(input_dir: str) -> Dict[str, Tuple[str, Optional[str]]]:
    """Find forward/reverse FASTQ files in a directory, keyed by sample name.

    Files are matched by an _R1 / _R2 mate marker; the sample name is the text
    before the first underscore. A directory without any _R2 file is treated as
    single-end.

    Raises:
        MalformedInputError: if no FASTQ files are found or forward and reverse sample sets differ
    """
    forward: Dict[str, str] = {}
    reverse: Dict[str, str] = {}
    for path in sorted(glob.glob(os.path.join(input_dir, "*"))):
        match = FASTQ_PATTERN.match(os.path.basename(path))
        if not match:
            continue
        target = forward if match.group("mate") == "1" else reverse
        sample = match.group("sample")
        if sample in target:
            raise MalformedInputError(f"Multiple R{match.group('mate')} files for sample {sample}")
        target[sample] = path

    if not forward and not reverse:
        raise MalformedInputError(f"No FASTQ files found in {input_dir}")
    if reverse and set(forward) != set(reverse):
        missing = sorted(set(forward) ^ set(reverse))
        raise MalformedInputError(f"Forward and reverse files do not pair up for: {', '.join(missing)}")

    return {sample: (forward[sample], reverse.get(sample)) for sample in sorted(forward)}


def read_fastq(path: str) -> List[Read]:
    """Load reads from a (optionally gzipped) FASTQ file."""
    opener = gzip.open if path.endswith(".gz") else open
    with opener(path, "rt") as handle:
        return [
            Read(str(record.seq).upper(), tuple(record.letter_annotations["phred_quality"]), record.id)
            for record in SeqIO.parse(handle, "fastq")
        ]


def write_sequence_table(result: PipelineResult, path: str) -> None:
    counts, samples, sequences = result.table.to_matrix()
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter='\t')
        writer.writerow(["sample"] + sequences)
        for sample, row in zip(samples, counts):
            writer.writerow([sample] + [int(v) for v in row])


def write_tracking(result: PipelineResult, path: str) -> None:
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter='\t')
        writer.writerow(["sample"] + list(TRACK_COLUMNS))
        for sample, counts in result.tracking.items():
            writer.writerow([sample] + [counts[column] for column in TRACK_COLUMNS])


def write_asvs(result: PipelineResult, path: str) -> None:
    """Write final variants as FASTA, named ASV1, ASV2, ... in table column order."""
    totals = result.table.totals()
    records = [
        SeqRecord(Seq(sequence), id=f"ASV{i + 1}", description=f"size={int(total)}")
        for i, (sequence, total) in enumerate(zip(result.table.sequences, totals))
    ]
    with open(path, 'w') as f:
        SeqIO.write(records, f, "fasta")


def write_error_model(model: ErrorModel, path: str) -> None:
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter='\t')
        writer.writerow(["transition"] + [f"Q{q}" for q in range(model.max_quality + 1)])
        for row in model.to_rows():
            writer.writerow([row[0]] + [f"{v:.6g}" for v in row[1:]])


def write_metadata(args, result: PipelineResult, path: str) -> None:
    """Write run metadata to JSON file for use by post-processing tools."""
    metadata = {
        "version": __version__,
        "timestamp": datetime.now().isoformat(),
        "input_dir": os.path.abspath(args.input_dir),
        "parameters": {
            "trim_left": list(args.trim_left),
            "trunc_len": list(args.trunc_len),
            "trunc_q": args.trunc_q,
            "max_ee": list(args.max_ee),
            "min_len": args.min_len,
            "pool": args.pool,
            "omega_a": args.omega_a,
            "max_clusters": args.max_clusters,
            "error_read_cap": args.error_read_cap,
            "error_max_iterations": args.error_max_iterations,
            "error_max_seconds": args.error_max_seconds,
            "error_fit": args.error_fit,
            "min_overlap": args.min_overlap,
            "max_mismatch": args.max_mismatch,
            "just_concatenate": args.just_concatenate,
            "chimera_method": None if args.disable_chimera_removal else args.chimera_method,
            "min_sample_fraction": args.min_sample_fraction,
            "threads": args.threads,
        },
        "error_models": {
            label: {
                "converged": fit.converged,
                "iterations": fit.iterations,
                "reads_used": fit.reads_used,
                "samples_used": list(fit.samples_used),
            }
            for label, fit in result.error_models.items()
        },
        "skipped_samples": result.skipped,
        "bimeras_removed": len(result.chimeras.bimeras) if result.chimeras else 0,
    }
    with open(path, 'w') as f:
        json.dump(metadata, f, indent=2)
    logging.debug(f"Wrote run metadata to {path}")


def write_outputs(args, result: PipelineResult) -> None:
    os.makedirs(args.output_dir, exist_ok=True)
    write_sequence_table(result, os.path.join(args.output_dir, "seqtab.tsv"))
    write_tracking(result, os.path.join(args.output_dir, "track.tsv"))
    write_asvs(result, os.path.join(args.output_dir, "asvs.fasta"))
    for label, suffix in (("forward", "F"), ("reverse", "R")):
        if label in result.error_models:
            write_error_model(result.error_models[label].model,
                              os.path.join(args.output_dir, f"error_model_{suffix}.tsv"))
    write_metadata(args, result, os.path.join(args.output_dir, "run-metadata.json"))
    logging.info(f"Wrote {result.table.shape[1]} sequence variants to {args.output_dir}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Amplicon sequence variant inference from paired-end short reads"
    )
    parser.add_argument("input_dir", help="Directory of per-sample *_R1/*_R2 FASTQ files")
    parser.add_argument("-O", "--output-dir", default="ampdenoise_output",
                        help="Output directory (default: ampdenoise_output)")

    filtering = parser.add_argument_group("filtering")
    filtering.add_argument("--trim-left", type=int, nargs=2, default=[0, 0], metavar=("F", "R"),
                           help="Bases to remove from the start of forward and reverse reads (default: 0 0)")
    filtering.add_argument("--trunc-len", type=int, nargs=2, default=[0, 0], metavar=("F", "R"),
                           help="Truncate reads to this length; shorter reads are discarded (default: 0 0, no truncation)")
    filtering.add_argument("--trunc-q", type=int, default=2,
                           help="Truncate reads at the first base with quality <= this value (default: 2)")
    filtering.add_argument("--max-ee", type=float, nargs=2, default=[float("inf"), float("inf")],
                           metavar=("F", "R"),
                           help="Maximum expected errors for forward and reverse reads (default: no limit)")
    filtering.add_argument("--min-len", type=int, default=20,
                           help="Minimum read length after trimming (default: 20)")

    errors = parser.add_argument_group("error model")
    errors.add_argument("--error-read-cap", type=int, default=1_000_000,
                        help="Reads used to learn each error model; whole samples are added until reached (default: 1000000)")
    errors.add_argument("--error-max-iterations", type=int, default=10,
                        help="Maximum error model re-estimation rounds (default: 10)")
    errors.add_argument("--error-max-seconds", type=float, default=None,
                        help="Wall-clock budget for error model estimation")
    errors.add_argument("--error-fit", choices=ERROR_FIT_METHODS, default="loess",
                        help="Error rate fit across quality scores (default: loess)")

    denoising = parser.add_argument_group("denoising")
    denoising.add_argument("--pool", action="store_true",
                           help="Denoise all samples together instead of independently")
    denoising.add_argument("--omega-a", type=float, default=1e-40,
                           help="Abundance p-value threshold for new variants (default: 1e-40)")
    denoising.add_argument("--max-clusters", type=int, default=0,
                           help="Maximum variants per sample (default: 0, unlimited)")

    merging = parser.add_argument_group("merging")
    merging.add_argument("--min-overlap", type=int, default=12,
                         help="Minimum overlap for merging forward and reverse variants (default: 12)")
    merging.add_argument("--max-mismatch", type=int, default=0,
                         help="Mismatches allowed in the overlap (default: 0)")
    merging.add_argument("--just-concatenate", action="store_true",
                         help="Join forward and reverse variants with an N spacer instead of overlapping")

    chimeras = parser.add_argument_group("chimera removal")
    chimeras.add_argument("--chimera-method", choices=CHIMERA_METHODS, default="consensus",
                          help="Bimera removal method (default: consensus)")
    chimeras.add_argument("--min-sample-fraction", type=float, default=1.0,
                          help="Fraction of samples that must flag a bimera in consensus mode (default: 1.0)")
    chimeras.add_argument("--disable-chimera-removal", action="store_true",
                          help="Keep bimeric sequences in the output table")

    parser.add_argument("--threads", type=int, default=1, metavar="N",
                        help="Worker processes for per-sample denoising (default: 1)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", default=None,
                        help="Also write log messages to this file")
    parser.add_argument("--version", action="version",
                        version=f"ampdenoise {__version__}",
                        help="Show program's version number and exit")
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.log_level, args.log_file)

    try:
        config = PipelineConfig.from_args(args)
        sample_files = discover_samples(args.input_dir)
    except (ValueError, MalformedInputError) as e:
        logging.error(str(e))
        sys.exit(1)

    paired = any(r is not None for _, r in sample_files.values())
    logging.info(f"Found {len(sample_files)} {'paired-end' if paired else 'single-end'} samples in {args.input_dir}")

    samples = {}
    for sample, (forward_path, reverse_path) in sample_files.items():
        logging.debug(f"Reading {sample} from {forward_path}" + (f" and {reverse_path}" if reverse_path else ""))
        forward = read_fastq(forward_path)
        reverse = read_fastq(reverse_path) if reverse_path else None
        samples[sample] = (forward, reverse)

    try:
        result = run_pipeline(samples, config)
    except AmpdenoiseError as e:
        logging.error(str(e))
        sys.exit(1)

    write_outputs(args, result)


if __name__ == "__main__":
    main()
