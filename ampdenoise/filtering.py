"""Quality trimming and filtering of reads ahead of dereplication."""

import logging
from typing import List, Optional, Sequence, Tuple

from ampdenoise.config import FilterConfig
from ampdenoise.exceptions import InputMismatchError
from ampdenoise.types import BASE_INDEX, Read


def expected_errors(quality: Sequence[int]) -> float:
    """Expected number of incorrect bases, sum of 10^(-Q/10) over the read."""
    return sum(10 ** (-q / 10) for q in quality)


def filter_read(read: Read, config: FilterConfig, direction: int = 0) -> Optional[Read]:
    """Trim and filter one read.

    Steps, in order: truncate before the first base with quality <= trunc_q;
    truncate to trunc_len (discarding shorter reads); remove trim_left bases
    from the start; discard reads shorter than min_len, containing any base
    other than A, C, G or T, or with more than max_ee expected errors.

    Args:
        read: Read to process
        config: Filtering parameters
        direction: 0 for forward, 1 for reverse (selects the paired parameters)

    Returns:
        The trimmed read, or None if it was discarded
    """
    sequence, quality = read.sequence, tuple(read.quality)

    for i, q in enumerate(quality):
        if q <= config.trunc_q:
            sequence, quality = sequence[:i], quality[:i]
            break

    trunc_len = config.trunc_len[direction]
    if trunc_len > 0:
        if len(sequence) < trunc_len:
            return None
        sequence, quality = sequence[:trunc_len], quality[:trunc_len]

    trim_left = config.trim_left[direction]
    sequence, quality = sequence[trim_left:], quality[trim_left:]

    if len(sequence) < max(config.min_len, 1):
        return None
    if any(base not in BASE_INDEX for base in sequence):
        return None
    if expected_errors(quality) > config.max_ee[direction]:
        return None
    return Read(sequence, quality, read.id)


def filter_and_trim(forward: Sequence[Read], reverse: Optional[Sequence[Read]] = None,
                    config: Optional[FilterConfig] = None,
                    sample: Optional[str] = None) -> Tuple[List[Read], Optional[List[Read]]]:
    """Filter single-end reads or read pairs.

    A pair is kept only when both mates pass, so the returned forward and
    reverse lists stay aligned by index.

    Raises:
        InputMismatchError: if forward and reverse read counts differ
    """
    config = config or FilterConfig()
    if reverse is None:
        kept = [r for r in (filter_read(read, config, 0) for read in forward) if r is not None]
        logging.debug(f"{sample or 'sample'}: {len(kept)} of {len(forward)} reads passed filtering")
        return kept, None

    if len(forward) != len(reverse):
        raise InputMismatchError(sample, f"{len(forward)} forward reads but {len(reverse)} reverse reads")

    kept_forward, kept_reverse = [], []
    for f_read, r_read in zip(forward, reverse):
        f_kept = filter_read(f_read, config, 0)
        if f_kept is None:
            continue
        r_kept = filter_read(r_read, config, 1)
        if r_kept is None:
            continue
        kept_forward.append(f_kept)
        kept_reverse.append(r_kept)

    logging.debug(f"{sample or 'sample'}: {len(kept_forward)} of {len(forward)} read pairs passed filtering")
    return kept_forward, kept_reverse
