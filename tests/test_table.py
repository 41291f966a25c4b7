"""Tests for the sample by sequence table."""

import numpy as np
import pytest

from ampdenoise.table import SequenceTable, make_sequence_table


class TestMakeSequenceTable:
    """Building tables from per-sample abundances."""

    def test_columns_sorted_by_total_abundance(self):
        table = make_sequence_table({
            "s1": {"AAAA": 5, "CCCC": 10},
            "s2": {"AAAA": 7, "GGGG": 1},
        })

        assert table.samples == ("s1", "s2")
        assert table.sequences == ("AAAA", "CCCC", "GGGG")
        assert table.counts.tolist() == [[5, 10, 0], [7, 0, 1]]

    def test_ties_broken_by_sequence(self):
        table = make_sequence_table({"s1": {"TTTT": 3, "AAAA": 3}})

        assert table.sequences == ("AAAA", "TTTT")

    def test_empty_sample_kept_as_zero_row(self):
        table = make_sequence_table({"s1": {"AAAA": 4}, "empty": {}})

        assert table.samples == ("s1", "empty")
        assert table.sample_totals().tolist() == [4, 0]

    def test_zero_total_sequences_have_no_column(self):
        table = make_sequence_table({"s1": {"AAAA": 4, "CCCC": 0}})

        assert table.sequences == ("AAAA",)

    def test_no_samples(self):
        table = make_sequence_table({})

        assert table.shape == (0, 0)


class TestSequenceTable:
    """Table operations used by chimera removal and output."""

    @pytest.fixture
    def table(self):
        return SequenceTable(["s1", "s2"], ["AAAA", "CCCC", "GGGG"], [[5, 10, 0], [7, 0, 1]])

    def test_counts_are_read_only(self, table):
        with pytest.raises(ValueError):
            table.counts[0, 0] = 99

    def test_negative_counts_rejected(self):
        with pytest.raises(ValueError):
            SequenceTable(["s1"], ["AAAA"], [[-1]])

    def test_duplicate_columns_rejected(self):
        with pytest.raises(ValueError):
            SequenceTable(["s1"], ["AAAA", "AAAA"], [[1, 2]])

    def test_totals(self, table):
        assert table.totals().tolist() == [12, 10, 1]
        assert table.sample_totals().tolist() == [15, 8]

    def test_abundance_lookup(self, table):
        assert table.abundance("s2", "AAAA") == 7
        assert table.abundance("s2", "TTTT") == 0

    def test_drop_columns(self, table):
        dropped = table.drop_columns([False, True, False])

        assert dropped.sequences == ("AAAA", "GGGG")
        assert dropped.counts.tolist() == [[5, 0], [7, 1]]
        # The original is untouched
        assert table.shape == (2, 3)

    def test_zero_cells_drops_empty_columns(self, table):
        mask = np.zeros(table.shape, dtype=bool)
        mask[1, 2] = True
        mask[0, 0] = True

        cleaned = table.zero_cells(mask)

        assert cleaned.sequences == ("AAAA", "CCCC")
        assert cleaned.counts.tolist() == [[0, 10], [7, 0]]

    def test_to_matrix_is_a_copy(self, table):
        matrix, samples, sequences = table.to_matrix()
        matrix[0, 0] = 100

        assert table.counts[0, 0] == 5
        assert samples == ["s1", "s2"]
        assert sequences == ["AAAA", "CCCC", "GGGG"]

    def test_equality(self, table):
        same = SequenceTable(["s1", "s2"], ["AAAA", "CCCC", "GGGG"], [[5, 10, 0], [7, 0, 1]])

        assert table == same
        assert table != table.drop_columns([True, False, False])
