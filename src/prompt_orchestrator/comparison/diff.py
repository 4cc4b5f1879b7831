"""Positional line diff between two text blobs.

Lines are compared by index, not by longest common subsequence: inserting a
line near the top marks every later line as a removed/added pair. Callers
that render version history rely on this exact output.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

DiffLineType = Literal["added", "removed", "unchanged"]


class DiffLine(BaseModel):
    type: DiffLineType
    content: str
    # 1-based position in the longer of the two inputs.
    line_number: int


class DiffCounts(BaseModel):
    added: int = 0
    removed: int = 0
    unchanged: int = 0


def diff_text(text_a: str, text_b: str) -> list[DiffLine]:
    lines_a = text_a.split("\n")
    lines_b = text_b.split("\n")
    changes: list[DiffLine] = []
    for index in range(max(len(lines_a), len(lines_b))):
        line_number = index + 1
        if index >= len(lines_a):
            changes.append(DiffLine(type="added", content=lines_b[index], line_number=line_number))
        elif index >= len(lines_b):
            changes.append(
                DiffLine(type="removed", content=lines_a[index], line_number=line_number)
            )
        elif lines_a[index] != lines_b[index]:
            changes.append(
                DiffLine(type="removed", content=lines_a[index], line_number=line_number)
            )
            changes.append(DiffLine(type="added", content=lines_b[index], line_number=line_number))
        else:
            changes.append(
                DiffLine(type="unchanged", content=lines_a[index], line_number=line_number)
            )
    return changes


def summarize_diff(lines: list[DiffLine]) -> DiffCounts:
    counts = DiffCounts()
    for line in lines:
        setattr(counts, line.type, getattr(counts, line.type) + 1)
    return counts
