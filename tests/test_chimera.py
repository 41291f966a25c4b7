"""Tests for de novo bimera detection and removal."""

import random

import numpy as np
import pytest

from ampdenoise.chimera import is_bimera, remove_bimeras
from ampdenoise.config import ChimeraConfig
from ampdenoise.table import SequenceTable


def generate_dna_sequence(seed_str: str, length: int) -> str:
    """Generate a deterministic DNA sequence from a seed string."""
    rng = random.Random(seed_str)
    return ''.join(rng.choice('ACGT') for _ in range(length))


PARENT_A = generate_dna_sequence("parent_a", 80)
PARENT_B = generate_dna_sequence("parent_b", 80)
BIMERA = PARENT_A[:40] + PARENT_B[40:]
UNRELATED = generate_dna_sequence("unrelated", 80)


class TestIsBimera:
    """Two-parent reconstruction of a single candidate."""

    def test_short_example_not_flagged(self):
        """Candidates one substitution from a parent are not reconstructions."""
        parents = [("AAAACCCC", 100), ("AAAAGGGG", 80)]

        assert is_bimera("AAAATCCC", parents) is None
        assert is_bimera("AAAAGCCC", parents) is None

    def test_true_bimera_flagged(self):
        call = is_bimera(BIMERA, [(PARENT_A, 100), (PARENT_B, 80)])

        assert call is not None
        assert call.left_parent == PARENT_A
        assert call.right_parent == PARENT_B
        assert 0 < call.breakpoint <= 40
        assert call.parent_abundance == 180

    def test_reversed_orientation_flagged(self):
        candidate = PARENT_B[:30] + PARENT_A[30:]

        call = is_bimera(candidate, [(PARENT_A, 100), (PARENT_B, 80)])

        assert call.left_parent == PARENT_B
        assert call.right_parent == PARENT_A

    def test_single_parent_is_not_enough(self):
        assert is_bimera(BIMERA, [(PARENT_A, 100)]) is None

    def test_unrelated_sequence_not_flagged(self):
        assert is_bimera(UNRELATED, [(PARENT_A, 100), (PARENT_B, 80)]) is None

    def test_identical_parent_ignored(self):
        assert is_bimera(PARENT_A, [(PARENT_A, 100), (PARENT_B, 80)]) is None

    def test_most_abundant_pair_wins(self):
        """Among valid decompositions the highest combined parent abundance is reported."""
        # Differs from PARENT_B only in the left half, so it is an equally good right parent
        alt_b = PARENT_B[:5] + ("A" if PARENT_B[5] != "A" else "C") + PARENT_B[6:]

        call = is_bimera(BIMERA, [(PARENT_A, 100), (PARENT_B, 50), (alt_b, 70)])

        assert call.right_parent == alt_b
        assert call.parent_abundance == 170

    def test_mismatch_tolerance(self):
        """A point difference within a segment is tolerated when allowed."""
        position = 60
        substitute = "A" if BIMERA[position] != "A" else "C"
        candidate = BIMERA[:position] + substitute + BIMERA[position + 1:]
        parents = [(PARENT_A, 100), (PARENT_B, 80)]

        assert is_bimera(candidate, parents) is None
        assert is_bimera(candidate, parents, ChimeraConfig(max_mismatch=1)) is not None


def chimera_table(samples, rows):
    return SequenceTable(samples, [PARENT_A, PARENT_B, BIMERA, UNRELATED], rows)


class TestRemoveBimeras:
    """Table-level bimera removal methods."""

    def test_pooled_removes_column(self):
        table = chimera_table(["s1"], [[100, 80, 10, 30]])

        report = remove_bimeras(table, ChimeraConfig(method="pooled"))

        assert report.bimeras == (BIMERA,)
        assert report.table.sequences == (PARENT_A, PARENT_B, UNRELATED)
        assert report.removed_columns == 1
        assert report.removed_abundance == 10
        assert report.calls[BIMERA].left_parent == PARENT_A

    def test_parents_must_be_more_abundant(self):
        table = chimera_table(["s1"], [[10, 8, 100, 30]])

        report = remove_bimeras(table, ChimeraConfig(method="pooled"))

        assert report.bimeras == ()
        assert report.table == table

    def test_consensus_requires_agreement(self):
        """A sample without the parents judges the candidate but does not flag it."""
        table = chimera_table(["s1", "s2"], [[100, 80, 10, 0], [0, 0, 10, 30]])

        strict = remove_bimeras(table, ChimeraConfig(method="consensus"))
        lenient = remove_bimeras(table, ChimeraConfig(method="consensus", min_sample_fraction=0.5))

        assert strict.bimeras == ()
        assert lenient.bimeras == (BIMERA,)
        assert BIMERA not in lenient.table.sequences

    def test_consensus_flags_when_all_samples_agree(self):
        table = chimera_table(["s1", "s2"], [[100, 80, 10, 0], [50, 60, 5, 30]])

        report = remove_bimeras(table)

        assert report.bimeras == (BIMERA,)
        assert report.removed_abundance == 15

    def test_per_sample_zeroes_only_flagged_cells(self):
        table = chimera_table(["s1", "s2"], [[100, 80, 10, 0], [0, 0, 10, 30]])

        report = remove_bimeras(table, ChimeraConfig(method="per-sample"))

        assert report.table.abundance("s1", BIMERA) == 0
        assert report.table.abundance("s2", BIMERA) == 10
        assert report.removed_columns == 0
        assert report.removed_abundance == 10

    def test_per_sample_drops_emptied_columns(self):
        table = chimera_table(["s1"], [[100, 80, 10, 30]])

        report = remove_bimeras(table, ChimeraConfig(method="per-sample"))

        assert BIMERA not in report.table.sequences
        assert report.removed_columns == 1

    @pytest.mark.parametrize("method", ["pooled", "consensus", "per-sample"])
    def test_retained_totals_never_grow(self, method):
        table = chimera_table(["s1", "s2", "s3"], [[100, 80, 10, 3], [0, 40, 12, 30], [90, 0, 1, 5]])

        report = remove_bimeras(table, ChimeraConfig(method=method))

        before = dict(zip(table.sequences, table.totals()))
        for sequence, total in zip(report.table.sequences, report.table.totals()):
            assert total <= before[sequence]
        assert report.table.counts.sum() + report.removed_abundance == table.counts.sum()

    def test_empty_table(self):
        table = SequenceTable(["s1"], [], np.zeros((1, 0)))

        report = remove_bimeras(table)

        assert report.table == table
        assert report.bimeras == ()

    def test_unknown_method_rejected(self):
        with pytest.raises(ValueError):
            ChimeraConfig(method="denovo")
