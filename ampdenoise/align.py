"""Pairwise alignment of unique sequences against cluster centers."""

from typing import NamedTuple

import edlib
import numpy as np


class AlignedColumns(NamedTuple):
    """Positions of ungapped alignment columns in each sequence."""
    center_positions: np.ndarray
    member_positions: np.ndarray
    gap_columns: int


def align_to_center(center: str, member: str) -> AlignedColumns:
    """Align a member sequence to a cluster center.

    Equal-length sequences are compared position by position (the usual case
    for reads truncated to a fixed length). Otherwise a global alignment is
    computed with edlib and gapped columns are counted but not paired.
    """
    if len(center) == len(member):
        positions = np.arange(len(center))
        return AlignedColumns(positions, positions, 0)

    if not center or not member:
        empty = np.zeros(0, dtype=np.intp)
        return AlignedColumns(empty, empty, max(len(center), len(member)))

    result = edlib.align(member, center, mode="NW", task="path")
    alignment = edlib.getNiceAlignment(result, member, center)
    member_aligned = alignment["query_aligned"]
    center_aligned = alignment["target_aligned"]

    center_positions = []
    member_positions = []
    gaps = 0
    c_pos = m_pos = 0
    for c_base, m_base in zip(center_aligned, member_aligned):
        if c_base == "-":
            gaps += 1
            m_pos += 1
        elif m_base == "-":
            gaps += 1
            c_pos += 1
        else:
            center_positions.append(c_pos)
            member_positions.append(m_pos)
            c_pos += 1
            m_pos += 1

    return AlignedColumns(
        np.array(center_positions, dtype=np.intp),
        np.array(member_positions, dtype=np.intp),
        gaps,
    )


def hamming_distance(center_codes: np.ndarray, member_codes: np.ndarray, columns: AlignedColumns) -> int:
    """Number of substituted columns plus gapped columns."""
    substitutions = int(np.count_nonzero(
        center_codes[columns.center_positions] != member_codes[columns.member_positions]
    ))
    return substitutions + columns.gap_columns
