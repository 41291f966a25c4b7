"""
ampdenoise: Amplicon sequence variant inference for paired-end short reads.

Dereplicates reads, learns a quality-aware substitution error model, partitions
unique sequences into error-model consistent clusters, merges read pairs and
removes bimeric sequences from the final sequence table.
"""

__version__ = "0.1.0"

from .derep import dereplicate, dereplicate_uniques
from .error_model import ErrorModel
from .learn import learn_error_model
from .denoise import denoise, denoise_pooled, denoise_samples
from .merge import merge_pair, merge_sample
from .table import SequenceTable, make_sequence_table
from .chimera import is_bimera, remove_bimeras
from .pipeline import run_pipeline

__all__ = [
    "__version__",
    "dereplicate",
    "dereplicate_uniques",
    "ErrorModel",
    "learn_error_model",
    "denoise",
    "denoise_pooled",
    "denoise_samples",
    "merge_pair",
    "merge_sample",
    "SequenceTable",
    "make_sequence_table",
    "is_bimera",
    "remove_bimeras",
    "run_pipeline",
]
