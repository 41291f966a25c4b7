"""Tests for read trimming and filtering."""

import pytest

from ampdenoise.config import FilterConfig
from ampdenoise.exceptions import InputMismatchError
from ampdenoise.filtering import expected_errors, filter_and_trim, filter_read
from ampdenoise.types import Read


def make_read(sequence: str, quality=35, read_id=None) -> Read:
    if isinstance(quality, int):
        quality = (quality,) * len(sequence)
    return Read(sequence, tuple(quality), read_id)


class TestExpectedErrors:

    def test_sum_of_error_probabilities(self):
        assert expected_errors([10, 20, 30]) == pytest.approx(0.111)

    def test_empty(self):
        assert expected_errors([]) == 0.0


class TestFilterRead:
    """Trimming steps applied to a single read."""

    def test_passing_read_unchanged(self):
        read = make_read("ACGT" * 10, read_id="r1")

        assert filter_read(read, FilterConfig()) == read

    def test_truncate_at_low_quality(self):
        read = make_read("ACGTACGT", [30, 30, 30, 30, 30, 2, 30, 30])

        trimmed = filter_read(read, FilterConfig(min_len=1))

        assert trimmed.sequence == "ACGTA"
        assert trimmed.quality == (30,) * 5

    def test_truncated_read_below_min_len_discarded(self):
        read = make_read("ACGTACGT", [30, 2, 30, 30, 30, 30, 30, 30])

        assert filter_read(read, FilterConfig(min_len=4)) is None

    def test_trunc_len_per_direction(self):
        read = make_read("ACGT" * 10)
        config = FilterConfig(trunc_len=(30, 20), min_len=1)

        assert len(filter_read(read, config, direction=0).sequence) == 30
        assert len(filter_read(read, config, direction=1).sequence) == 20

    def test_shorter_than_trunc_len_discarded(self):
        read = make_read("ACGT" * 5)

        assert filter_read(read, FilterConfig(trunc_len=(30, 30), min_len=1)) is None

    def test_trim_left(self):
        read = make_read("GGGG" + "ACGT" * 10)

        trimmed = filter_read(read, FilterConfig(trim_left=(4, 0)))

        assert trimmed.sequence == "ACGT" * 10

    def test_ambiguous_bases_discarded(self):
        assert filter_read(make_read("ACGTN" + "ACGT" * 10), FilterConfig()) is None
        assert filter_read(make_read("ACGTR" + "ACGT" * 10), FilterConfig()) is None

    def test_max_ee(self):
        read = make_read("ACGT" * 10, 20)  # 40 * 0.01 = 0.4 expected errors

        assert filter_read(read, FilterConfig(max_ee=(0.5, 0.5))) is not None
        assert filter_read(read, FilterConfig(max_ee=(0.3, 0.3))) is None


class TestFilterAndTrim:
    """Single-end and paired filtering."""

    def test_single_end(self):
        reads = [make_read("ACGT" * 10), make_read("ACGTN" * 8)]

        forward, reverse = filter_and_trim(reads)

        assert len(forward) == 1
        assert reverse is None

    def test_pair_kept_only_when_both_pass(self):
        good = make_read("ACGT" * 10)
        bad = make_read("ACGTN" * 8)
        forward = [good, good, bad]
        reverse = [good, bad, good]

        kept_forward, kept_reverse = filter_and_trim(forward, reverse)

        assert len(kept_forward) == len(kept_reverse) == 1

    def test_pair_count_mismatch(self):
        with pytest.raises(InputMismatchError):
            filter_and_trim([make_read("ACGT" * 10)] * 2, [make_read("ACGT" * 10)], sample="s1")
