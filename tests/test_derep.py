"""Tests for dereplication of reads into unique sequences."""

import pytest

from ampdenoise.derep import dereplicate, dereplicate_uniques
from ampdenoise.types import Read, UniqueSequence


def make_read(sequence: str, quality: int = 30, read_id: str = None) -> Read:
    return Read(sequence, (quality,) * len(sequence), read_id)


class TestDereplicate:
    """Collapsing reads by exact sequence identity."""

    def test_identical_reads_collapse(self):
        """Duplicate reads become one unique with summed abundance."""
        derep = dereplicate([make_read("ACGT"), make_read("ACGT"), make_read("TTTT")])

        assert len(derep.uniques) == 2
        assert derep.uniques[0].sequence == "ACGT"
        assert derep.uniques[0].abundance == 2
        assert derep.uniques[1].abundance == 1
        assert derep.total_reads == 3

    def test_read_map_points_to_uniques(self):
        """Each read index maps to the unique it collapsed into."""
        reads = [make_read("TTTT"), make_read("ACGT"), make_read("ACGT")]
        derep = dereplicate(reads)

        for read, unique_index in zip(reads, derep.read_map):
            assert derep.uniques[unique_index].sequence == read.sequence

    def test_quality_is_abundance_weighted_mean(self):
        """Consensus quality is the per-position mean over collapsed reads."""
        derep = dereplicate([
            Read("ACG", (30, 20, 10)),
            Read("ACG", (20, 20, 30)),
        ])

        assert derep.uniques[0].quality == pytest.approx((25.0, 20.0, 20.0))

    def test_ordering_is_abundance_then_sequence(self):
        """Uniques are sorted by abundance descending, ties by sequence."""
        derep = dereplicate([make_read("GGGG"), make_read("CCCC"), make_read("AAAA"), make_read("AAAA")])

        assert [u.sequence for u in derep.uniques] == ["AAAA", "CCCC", "GGGG"]

    def test_different_lengths_never_collapse(self):
        """A prefix of another read is a distinct unique."""
        derep = dereplicate([make_read("ACGT"), make_read("ACG")])

        assert len(derep.uniques) == 2

    def test_empty_input(self):
        """No reads gives no uniques and an empty map."""
        derep = dereplicate([])

        assert derep.uniques == ()
        assert derep.read_map == ()
        assert derep.total_reads == 0

    def test_quality_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            dereplicate([Read("ACGT", (30, 30))])


class TestDereplicateUniques:
    """Re-dereplicating weighted uniques."""

    def test_idempotent(self):
        """Dereplicating the uniques of a dereplication reproduces them."""
        derep = dereplicate([
            Read("ACGT", (30, 31, 32, 33)),
            Read("ACGT", (20, 21, 22, 23)),
            Read("ACGA", (35, 35, 35, 35)),
            Read("TCGA", (12, 14, 16, 18)),
            Read("TCGA", (18, 16, 14, 12)),
            Read("TCGA", (30, 30, 30, 30)),
        ])
        again = dereplicate_uniques(derep.uniques)

        assert [u.sequence for u in again.uniques] == [u.sequence for u in derep.uniques]
        assert [u.abundance for u in again.uniques] == [u.abundance for u in derep.uniques]
        for a, b in zip(again.uniques, derep.uniques):
            assert a.quality == pytest.approx(b.quality)

    def test_union_across_samples(self):
        """Uniques from several samples combine with weighted quality."""
        sample_a = [UniqueSequence("ACGT", 3, (30.0,) * 4)]
        sample_b = [UniqueSequence("ACGT", 1, (10.0,) * 4), UniqueSequence("AAAA", 2, (20.0,) * 4)]

        pooled = dereplicate_uniques(sample_a + sample_b)

        assert pooled.uniques[0].sequence == "ACGT"
        assert pooled.uniques[0].abundance == 4
        assert pooled.uniques[0].quality == pytest.approx((25.0,) * 4)
        assert pooled.read_map == (0, 0, 1)

    def test_zero_abundance_rejected(self):
        with pytest.raises(ValueError):
            dereplicate_uniques([UniqueSequence("ACGT", 0, (30.0,) * 4)])
