"""
Result lists and TREC run files.

Run file line format::

    queryId  Q0  externalDocId  rank  score  runTag

Fields are tab separated on output; input accepts any whitespace.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

logger = logging.getLogger(__name__)

DEFAULT_RUN_TAG = "run-1"
DEFAULT_OUTPUT_LENGTH = 100

# Written for a query that retrieved nothing, so every query appears in the run.
PLACEHOLDER_DOCID = "dummy"


@dataclass
class ScoreEntry:
    docid: int
    external_id: str
    score: float


class ScoreList:
    """
    Scored documents for one query.

    ``sort`` orders by descending score; ties are broken by ascending
    external id so runs are reproducible.
    """

    def __init__(self, entries: Iterable[ScoreEntry] = ()):
        self.entries: list[ScoreEntry] = list(entries)

    def add(self, docid: int, external_id: str, score: float) -> None:
        self.entries.append(ScoreEntry(docid, external_id, score))

    def sort(self) -> ScoreList:
        self.entries.sort(key=lambda e: (-e.score, e.external_id))
        return self

    def truncate(self, n: int) -> ScoreList:
        del self.entries[n:]
        return self

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ScoreEntry]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> ScoreEntry:
        return self.entries[index]


def format_trec_lines(
    query_id: str,
    results: ScoreList,
    run_tag: str = DEFAULT_RUN_TAG,
    max_results: int = DEFAULT_OUTPUT_LENGTH,
) -> list[str]:
    """Run file lines for one (already sorted) query result."""
    if len(results) == 0:
        return [f"{query_id}\tQ0\t{PLACEHOLDER_DOCID}\t1\t0\t{run_tag}"]
    return [
        f"{query_id}\tQ0\t{entry.external_id}\t{rank}\t{entry.score}\t{run_tag}"
        for rank, entry in enumerate(results.entries[:max_results], start=1)
    ]


def write_trec_results(
    out: TextIO,
    query_id: str,
    results: ScoreList,
    run_tag: str = DEFAULT_RUN_TAG,
    max_results: int = DEFAULT_OUTPUT_LENGTH,
) -> None:
    """Append one query's results to an open run file."""
    for line in format_trec_lines(query_id, results, run_tag, max_results):
        out.write(line + "\n")


def read_trec_ranking(path: str | Path) -> OrderedDict[str, list[tuple[str, float]]]:
    """
    Read a run file.

    Returns:
        ``{query_id: [(external_id, score), ...]}`` in file order.
    """
    rankings: OrderedDict[str, list[tuple[str, float]]] = OrderedDict()
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            parts = line.split()
            if not parts:
                continue
            if len(parts) < 5:
                logger.warning("Skipping malformed ranking line %d in %s", line_no, path)
                continue
            query_id, _, external_id, _, score = parts[:5]
            rankings.setdefault(query_id, []).append((external_id, float(score)))
    return rankings


__all__ = [
    "DEFAULT_OUTPUT_LENGTH",
    "DEFAULT_RUN_TAG",
    "ScoreEntry",
    "ScoreList",
    "format_trec_lines",
    "read_trec_ranking",
    "write_trec_results",
]
