"""
Index access layer.

The evaluator only depends on ``IndexReader``.  ``InMemoryIndex`` is a small
reference implementation backed by numpy length arrays and per-field
postings, used by the command line runner and the tests.  It is built once
and only read afterwards, so concurrent queries may share it.
"""

from __future__ import annotations

import json
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np

from structured_retrieval.analysis import Analyzer
from structured_retrieval.errors import IndexAccessError
from structured_retrieval.inverted_list import InvertedList, Posting

if TYPE_CHECKING:
    from numpy.typing import NDArray

FIELDS: tuple[str, ...] = ("body", "title", "url", "keywords", "inlink")


# =============================================================================
# Term vectors
# =============================================================================


@dataclass(frozen=True)
class TermVector:
    """
    Forward index of one document field.

    Attributes:
        stems: Distinct stems in the field, sorted.
        stem_freqs: Occurrences of each stem in this document.
        collection_freqs: Occurrences of each stem in the whole collection field.
        document_freqs: Documents containing each stem in this field.
        positions: Stem index at every token position of the field.
    """

    stems: tuple[str, ...]
    stem_freqs: tuple[int, ...]
    collection_freqs: tuple[int, ...]
    document_freqs: tuple[int, ...]
    positions: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.stems)

    @property
    def length(self) -> int:
        """Field length in tokens."""
        return len(self.positions)

    def stem_index(self, stem: str) -> int | None:
        try:
            return self.stems.index(stem)
        except ValueError:
            return None


# =============================================================================
# Protocol (duck typing)
# =============================================================================


class IndexReader(Protocol):
    """Read-only statistics and postings consumed by the evaluator."""

    def num_docs(self) -> int: ...

    def document_count(self, field: str) -> int: ...

    def sum_of_field_lengths(self, field: str) -> int: ...

    def field_length(self, field: str, docid: int) -> int: ...

    def internal_id(self, external_id: str) -> int: ...

    def external_id(self, docid: int) -> str: ...

    def document_frequency(self, term: str, field: str) -> int: ...

    def collection_frequency(self, term: str, field: str) -> int: ...

    def postings(self, term: str, field: str) -> InvertedList: ...

    def term_vector(self, docid: int, field: str) -> TermVector: ...

    def attribute(self, name: str, docid: int) -> str | None: ...


# =============================================================================
# In-memory index
# =============================================================================


class InMemoryIndex:
    """
    Positional inverted index held in memory.

    Args:
        external_ids: External document id for each internal id.
        field_tokens: Analyzed tokens per field, one mapping per document.
        attributes: Optional per-document string attributes (``rawUrl``, ``score``...).
    """

    def __init__(
        self,
        external_ids: list[str],
        field_tokens: list[dict[str, list[str]]],
        attributes: list[dict[str, str]] | None = None,
    ):
        if len(external_ids) != len(field_tokens):
            raise ValueError("external_ids and field_tokens must have the same length")
        if len(set(external_ids)) != len(external_ids):
            raise ValueError("external ids must be unique")

        self.N = len(external_ids)
        self._external_ids = list(external_ids)
        self._internal_ids = {ext: i for i, ext in enumerate(external_ids)}
        self._attributes = attributes or [{} for _ in external_ids]
        self._tokens = field_tokens

        self._field_lengths: dict[str, NDArray[np.int64]] = {}
        self._postings: dict[str, dict[str, list[Posting]]] = {}
        self._ctf: dict[str, Counter[str]] = {}

        for field in FIELDS:
            lengths = np.zeros(self.N, dtype=np.int64)
            postings: dict[str, list[Posting]] = defaultdict(list)
            ctf: Counter[str] = Counter()
            for docid, fields in enumerate(field_tokens):
                tokens = fields.get(field, [])
                lengths[docid] = len(tokens)
                positions: dict[str, list[int]] = defaultdict(list)
                for pos, token in enumerate(tokens):
                    positions[token].append(pos)
                for term, locs in positions.items():
                    postings[term].append(Posting(docid, tuple(locs)))
                    ctf[term] += len(locs)
            self._field_lengths[field] = lengths
            self._postings[field] = dict(postings)
            self._ctf[field] = ctf

    @classmethod
    def from_documents(
        cls,
        documents: Iterable[dict],
        analyzer: Callable[[str], list[str]] | None = None,
    ) -> InMemoryIndex:
        """
        Build an index from ``{"id", "fields", "attributes"}`` mappings.

        Field text is run through ``analyzer`` (default ``Analyzer()``).
        """
        analyzer = analyzer or Analyzer()
        ids: list[str] = []
        tokens: list[dict[str, list[str]]] = []
        attributes: list[dict[str, str]] = []
        for doc in documents:
            ids.append(str(doc["id"]))
            fields = doc.get("fields", {})
            unknown = set(fields) - set(FIELDS)
            if unknown:
                raise ValueError(f"Unknown fields {sorted(unknown)} in document {doc['id']}")
            tokens.append({name: analyzer(text) for name, text in fields.items()})
            attributes.append({k: str(v) for k, v in doc.get("attributes", {}).items()})
        return cls(ids, tokens, attributes)

    @classmethod
    def from_jsonl(
        cls,
        path: str | Path,
        analyzer: Callable[[str], list[str]] | None = None,
    ) -> InMemoryIndex:
        """Load one JSON document per line (see ``from_documents``)."""
        try:
            with open(path, encoding="utf-8") as f:
                documents = [json.loads(line) for line in f if line.strip()]
        except (OSError, json.JSONDecodeError) as e:
            raise IndexAccessError(f"Cannot read index file {path}: {e}") from e
        return cls.from_documents(documents, analyzer)

    def _check_field(self, field: str) -> None:
        if field not in self._field_lengths:
            raise IndexAccessError(f"Unknown field {field!r}")

    def _check_docid(self, docid: int) -> None:
        if not 0 <= docid < self.N:
            raise IndexAccessError(f"Unknown internal docid {docid}")

    def num_docs(self) -> int:
        return self.N

    def document_count(self, field: str) -> int:
        """Number of documents with a non-empty ``field``."""
        self._check_field(field)
        return int(np.count_nonzero(self._field_lengths[field]))

    def sum_of_field_lengths(self, field: str) -> int:
        self._check_field(field)
        return int(self._field_lengths[field].sum())

    def field_length(self, field: str, docid: int) -> int:
        self._check_field(field)
        self._check_docid(docid)
        return int(self._field_lengths[field][docid])

    def internal_id(self, external_id: str) -> int:
        try:
            return self._internal_ids[external_id]
        except KeyError:
            raise IndexAccessError(f"Unknown external docid {external_id!r}") from None

    def external_id(self, docid: int) -> str:
        self._check_docid(docid)
        return self._external_ids[docid]

    def document_frequency(self, term: str, field: str) -> int:
        self._check_field(field)
        return len(self._postings[field].get(term, ()))

    def collection_frequency(self, term: str, field: str) -> int:
        self._check_field(field)
        return self._ctf[field].get(term, 0)

    def postings(self, term: str, field: str) -> InvertedList:
        self._check_field(field)
        return InvertedList(field, list(self._postings[field].get(term, ())))

    def term_vector(self, docid: int, field: str) -> TermVector:
        self._check_field(field)
        self._check_docid(docid)
        tokens = self._tokens[docid].get(field, [])
        counts = Counter(tokens)
        stems = tuple(sorted(counts))
        lookup = {stem: i for i, stem in enumerate(stems)}
        return TermVector(
            stems=stems,
            stem_freqs=tuple(counts[s] for s in stems),
            collection_freqs=tuple(self._ctf[field][s] for s in stems),
            document_freqs=tuple(len(self._postings[field][s]) for s in stems),
            positions=tuple(lookup[t] for t in tokens),
        )

    def attribute(self, name: str, docid: int) -> str | None:
        self._check_docid(docid)
        return self._attributes[docid].get(name)


__all__ = ["FIELDS", "IndexReader", "InMemoryIndex", "TermVector"]
