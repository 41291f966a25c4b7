"""Configuration for the denoising pipeline stages."""

from dataclasses import dataclass, field
from typing import Optional, Tuple


CHIMERA_METHODS = ("consensus", "per-sample", "pooled")
ERROR_FIT_METHODS = ("loess", "raw")


@dataclass
class FilterConfig:
    """Configuration for read filtering and trimming.

    Paired values are (forward, reverse).

    Attributes:
        trim_left: Bases removed from the start of each read (default: 0)
        trunc_len: Length reads are truncated to; shorter reads are discarded (0 = no truncation)
        trunc_q: Truncate at the first base with quality <= trunc_q (default: 2)
        max_ee: Maximum expected errors after truncation (default: no limit)
        min_len: Minimum read length after trimming (default: 20)
    """
    trim_left: Tuple[int, int] = (0, 0)
    trunc_len: Tuple[int, int] = (0, 0)
    trunc_q: int = 2
    max_ee: Tuple[float, float] = (float("inf"), float("inf"))
    min_len: int = 20

    @classmethod
    def from_args(cls, args) -> 'FilterConfig':
        """Create config from command-line arguments."""
        return cls(
            trim_left=tuple(getattr(args, 'trim_left', (0, 0))),
            trunc_len=tuple(getattr(args, 'trunc_len', (0, 0))),
            trunc_q=getattr(args, 'trunc_q', 2),
            max_ee=tuple(getattr(args, 'max_ee', (float("inf"), float("inf")))),
            min_len=getattr(args, 'min_len', 20),
        )


@dataclass
class ErrorLearningConfig:
    """Configuration for error model estimation.

    Attributes:
        max_reads: Read cap for the estimation corpus; whole samples are added until reached
        max_iterations: Maximum number of re-estimation rounds (default: 10)
        tolerance: Maximum absolute change in any probability to call convergence (default: 1e-5)
        max_seconds: Optional wall-clock budget for the estimation loop
        fit_method: 'loess' (smoothed across quality) or 'raw' (empirical rates)
        max_quality: Highest quality score represented in the model (default: 41)
    """
    max_reads: int = 1_000_000
    max_iterations: int = 10
    tolerance: float = 1e-5
    max_seconds: Optional[float] = None
    fit_method: str = "loess"
    max_quality: int = 41

    def __post_init__(self):
        if self.fit_method not in ERROR_FIT_METHODS:
            raise ValueError(f"Unknown error model fit method: {self.fit_method}")

    @classmethod
    def from_args(cls, args) -> 'ErrorLearningConfig':
        """Create config from command-line arguments."""
        return cls(
            max_reads=getattr(args, 'error_read_cap', 1_000_000),
            max_iterations=getattr(args, 'error_max_iterations', 10),
            max_seconds=getattr(args, 'error_max_seconds', None),
            fit_method=getattr(args, 'error_fit', 'loess'),
        )


@dataclass
class DenoiseConfig:
    """Configuration for the divisive partitioning algorithm.

    Attributes:
        omega_a: Significance threshold for the Bonferroni-corrected abundance p-value (default: 1e-40)
        min_fold: Minimum ratio of observed to expected abundance for a new center (default: 1)
        min_hamming: Minimum distance from its current center for a new center (default: 1)
        min_abundance: Minimum abundance for a new center (default: 1)
        max_clusters: Cap on the number of clusters (0 = unlimited)
    """
    omega_a: float = 1e-40
    min_fold: float = 1.0
    min_hamming: int = 1
    min_abundance: int = 1
    max_clusters: int = 0

    @classmethod
    def from_args(cls, args) -> 'DenoiseConfig':
        """Create config from command-line arguments."""
        return cls(
            omega_a=getattr(args, 'omega_a', 1e-40),
            min_fold=getattr(args, 'min_fold', 1.0),
            max_clusters=getattr(args, 'max_clusters', 0),
        )


@dataclass
class MergeConfig:
    """Configuration for merging denoised forward and reverse variants.

    Attributes:
        min_overlap: Minimum overlap between forward and reverse-complemented reverse (default: 12)
        max_mismatch: Mismatches tolerated in the overlap (default: 0)
        just_concatenate: Join forward and reverse with an N spacer instead of overlapping
        spacer_length: Length of the N spacer used when concatenating (default: 10)
    """
    min_overlap: int = 12
    max_mismatch: int = 0
    just_concatenate: bool = False
    spacer_length: int = 10

    @classmethod
    def from_args(cls, args) -> 'MergeConfig':
        """Create config from command-line arguments."""
        return cls(
            min_overlap=getattr(args, 'min_overlap', 12),
            max_mismatch=getattr(args, 'max_mismatch', 0),
            just_concatenate=getattr(args, 'just_concatenate', False),
        )


@dataclass
class ChimeraConfig:
    """Configuration for de novo bimera removal.

    Attributes:
        method: 'consensus', 'per-sample' or 'pooled' (default: consensus)
        max_mismatch: Mismatches tolerated within each parent segment (default: 0)
        min_diffs: Minimum differences between the candidate and each parent (default: 2)
        min_fold_parent_over_abundance: Parents must exceed this multiple of the candidate's abundance
        min_sample_abundance: Minimum in-sample abundance for a sample to judge a candidate
        min_sample_fraction: Fraction of judging samples that must flag a candidate (consensus)
    """
    method: str = "consensus"
    max_mismatch: int = 0
    min_diffs: int = 2
    min_fold_parent_over_abundance: float = 1.0
    min_sample_abundance: int = 1
    min_sample_fraction: float = 1.0

    def __post_init__(self):
        if self.method not in CHIMERA_METHODS:
            raise ValueError(f"Unknown chimera removal method: {self.method}")

    @classmethod
    def from_args(cls, args) -> 'ChimeraConfig':
        """Create config from command-line arguments."""
        return cls(
            method=getattr(args, 'chimera_method', 'consensus'),
            min_sample_fraction=getattr(args, 'min_sample_fraction', 1.0),
        )


@dataclass
class PipelineConfig:
    """Configuration for a complete pipeline run."""
    filtering: FilterConfig = field(default_factory=FilterConfig)
    errors: ErrorLearningConfig = field(default_factory=ErrorLearningConfig)
    denoise: DenoiseConfig = field(default_factory=DenoiseConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    chimera: ChimeraConfig = field(default_factory=ChimeraConfig)
    pool: bool = False
    remove_chimeras: bool = True
    threads: int = 1

    @classmethod
    def from_args(cls, args) -> 'PipelineConfig':
        """Create the full pipeline config from command-line arguments."""
        return cls(
            filtering=FilterConfig.from_args(args),
            errors=ErrorLearningConfig.from_args(args),
            denoise=DenoiseConfig.from_args(args),
            merge=MergeConfig.from_args(args),
            chimera=ChimeraConfig.from_args(args),
            pool=getattr(args, 'pool', False),
            remove_chimeras=not getattr(args, 'disable_chimera_removal', False),
            threads=getattr(args, 'threads', 1),
        )
