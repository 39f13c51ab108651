"""
Postings and inverted lists.

An inverted list is the materialized output of every posting-producing query
node: document ids strictly increase, and each posting's positions strictly
increase.  Both invariants are checked on append.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator


@dataclass(frozen=True)
class Posting:
    """One (document, positions) record.  Term frequency is the position count."""

    docid: int
    positions: tuple[int, ...]

    @property
    def tf(self) -> int:
        return len(self.positions)


@dataclass
class InvertedList:
    """
    Ordered postings for one term (or derived operator) in one field.

    Args:
        field: Field the postings were read from.
        postings: Postings in increasing document order.
    """

    field: str
    postings: list[Posting] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.postings)

    def __iter__(self) -> Iterator[Posting]:
        return iter(self.postings)

    def __getitem__(self, index: int) -> Posting:
        return self.postings[index]

    @property
    def df(self) -> int:
        """Number of documents in the list."""
        return len(self.postings)

    @property
    def ctf(self) -> int:
        """Total occurrences across all documents."""
        return sum(p.tf for p in self.postings)

    def append_posting(self, docid: int, positions: list[int] | tuple[int, ...]) -> None:
        """Append a posting, enforcing document and position order."""
        if self.postings and docid <= self.postings[-1].docid:
            raise ValueError(
                f"docid {docid} is not greater than last docid {self.postings[-1].docid}"
            )
        positions = tuple(positions)
        for prev, cur in zip(positions, positions[1:]):
            if cur <= prev:
                raise ValueError(f"positions for docid {docid} are not strictly increasing")
        self.postings.append(Posting(docid, positions))


__all__ = ["Posting", "InvertedList"]
