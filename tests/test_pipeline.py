"""Tests for the end-to-end pipeline."""

import random

import pytest
from Bio.Seq import reverse_complement

from ampdenoise.config import PipelineConfig
from ampdenoise.exceptions import InputMismatchError, MalformedInputError
from ampdenoise.pipeline import TRACK_COLUMNS, run_pipeline, validate_pair
from ampdenoise.types import Read


def generate_dna_sequence(seed_str: str, length: int) -> str:
    """Generate a deterministic DNA sequence from a seed string."""
    rng = random.Random(seed_str)
    return ''.join(rng.choice('ACGT') for _ in range(length))


AMPLICON_A = generate_dna_sequence("pipeline_a", 150)
AMPLICON_B = generate_dna_sequence("pipeline_b", 150)


def read_pairs(sample: str, amplicons, read_length: int = 100):
    """Error-free read pairs for the given (amplicon, count) list."""
    forward, reverse = [], []
    for amplicon, count in amplicons:
        for _ in range(count):
            name = f"{sample}_{len(forward)}"
            forward.append(Read(amplicon[:read_length], (35,) * read_length, f"{name}/1"))
            reverse.append(Read(reverse_complement(amplicon)[:read_length], (35,) * read_length, f"{name}/2"))
    return forward, reverse


@pytest.fixture
def samples():
    return {
        "s1": read_pairs("s1", [(AMPLICON_A, 60), (AMPLICON_B, 40)]),
        "s2": read_pairs("s2", [(AMPLICON_A, 50)]),
    }


class TestValidatePair:

    def test_matching_ids(self):
        forward, reverse = read_pairs("s", [(AMPLICON_A, 3)])

        validate_pair("s", forward, reverse)

    def test_count_mismatch(self):
        forward, reverse = read_pairs("s", [(AMPLICON_A, 3)])

        with pytest.raises(InputMismatchError):
            validate_pair("s", forward, reverse[:2])

    def test_id_mismatch(self):
        forward, reverse = read_pairs("s", [(AMPLICON_A, 3)])
        reverse = [reverse[1], reverse[0], reverse[2]]

        with pytest.raises(InputMismatchError, match="read 1"):
            validate_pair("s", forward, reverse)

    def test_descriptions_ignored(self):
        forward = [Read("ACGT", (30,) * 4, "M01:1:1 1:N:0:1")]
        reverse = [Read("ACGT", (30,) * 4, "M01:1:1 2:N:0:1")]

        validate_pair("s", forward, reverse)


class TestRunPipeline:
    """Full runs on simulated error-free amplicons."""

    def test_paired_end_table(self, samples):
        result = run_pipeline(samples)

        assert result.table.samples == ("s1", "s2")
        assert result.table.sequences == (AMPLICON_A, AMPLICON_B)
        assert result.table.counts.tolist() == [[60, 40], [50, 0]]
        assert result.skipped == {}
        assert set(result.error_models) == {"forward", "reverse"}

    def test_tracking(self, samples):
        result = run_pipeline(samples)

        assert list(result.tracking["s1"]) == list(TRACK_COLUMNS)
        assert result.tracking["s1"] == {
            "input": 100, "filtered": 100, "denoisedF": 100,
            "denoisedR": 100, "merged": 100, "tabled": 100, "nonchim": 100,
        }
        assert result.tracking["s2"]["nonchim"] == 50

    def test_mismatched_sample_skipped(self, samples):
        forward, reverse = read_pairs("s3", [(AMPLICON_A, 10)])
        samples["s3"] = (forward, reverse[:9])

        result = run_pipeline(samples)

        assert "s3" in result.skipped
        assert result.table.samples == ("s1", "s2")
        assert "s3" not in result.tracking

    def test_no_usable_samples(self):
        forward, reverse = read_pairs("s1", [(AMPLICON_A, 10)])

        with pytest.raises(MalformedInputError):
            run_pipeline({"s1": (forward, reverse[:5])})

    def test_mixed_input_kinds_rejected(self, samples):
        samples["single"] = (samples["s2"][0], None)

        with pytest.raises(MalformedInputError):
            run_pipeline(samples)

    def test_empty_sample_is_zero_row(self, samples):
        samples["empty"] = ([], [])

        result = run_pipeline(samples)

        assert result.table.samples == ("s1", "s2", "empty")
        assert result.table.sample_totals().tolist() == [100, 50, 0]
        assert result.tracking["empty"]["input"] == 0

    def test_single_end(self, samples):
        single = {name: (forward, None) for name, (forward, _) in samples.items()}

        result = run_pipeline(single)

        assert result.table.sequences == (AMPLICON_A[:100], AMPLICON_B[:100])
        assert result.merges == {}
        assert set(result.error_models) == {"forward"}

    def test_pooled_matches_independent(self, samples):
        independent = run_pipeline(samples)
        pooled = run_pipeline(samples, PipelineConfig(pool=True))

        assert pooled.table == independent.table

    def test_bimeras_removed(self, samples):
        chimera = AMPLICON_A[:75] + AMPLICON_B[75:]
        forward, reverse = read_pairs("s1", [(AMPLICON_A, 60), (AMPLICON_B, 40), (chimera, 8)])
        samples["s1"] = (forward, reverse)

        result = run_pipeline(samples)
        unfiltered = run_pipeline(samples, PipelineConfig(remove_chimeras=False))

        assert chimera in unfiltered.table.sequences
        assert chimera not in result.table.sequences
        assert result.tracking["s1"]["merged"] == 108
        assert result.tracking["s1"]["tabled"] == 108
        assert result.tracking["s1"]["nonchim"] == 100
