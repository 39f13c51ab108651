"""
Pseudo-relevance feedback (Indri-style query expansion).

For every candidate stem ``t`` in the body field of the top ``fb_docs``
documents ``d`` of an initial ranking:

    P(t|C)  = ctf(t) / |C|
    P(t|d)  = (tf(t, d) + mu * P(t|C)) / (|d| + mu)
    s(t)    = sum_d  P(t|d) * score(d) * log(1 / P(t|C))

The ``fb_terms`` best stems form ``#WAND( s1 t1 s2 t2 ... )``, which is
combined with the original query as

    #WAND( w original  (1 - w) expansion )
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

import numpy as np

from structured_retrieval.errors import ConfigurationError, IndexAccessError
from structured_retrieval.index import IndexReader
from structured_retrieval.results import read_trec_ranking

logger = logging.getLogger(__name__)

FEEDBACK_FIELD = "body"

# Upper bound on documents read from an initial ranking.
MAX_FEEDBACK_DOCS = 100


class FeedbackExpander:
    """
    Build expanded queries from an initial ranking.

    Args:
        index: Index providing body term vectors and statistics.
        fb_docs: Number of top documents used for expansion.
        fb_terms: Number of expansion terms.
        fb_mu: Dirichlet prior for P(t|d).
        orig_weight: Weight of the original query in the combined query.
        initial_ranking_file: Optional TREC run file with initial rankings.
    """

    def __init__(
        self,
        index: IndexReader,
        fb_docs: int = 10,
        fb_terms: int = 10,
        fb_mu: float = 0.0,
        orig_weight: float = 0.5,
        initial_ranking_file: str | Path | None = None,
    ):
        if fb_docs <= 0 or fb_terms <= 0:
            raise ConfigurationError("fbDocs and fbTerms must be positive")
        if fb_mu < 0.0:
            raise ConfigurationError(f"fbMu must be >= 0, got {fb_mu}")
        if not 0.0 <= orig_weight <= 1.0:
            raise ConfigurationError(f"fbOrigWeight must be in [0, 1], got {orig_weight}")

        self.index = index
        self.fb_docs = min(fb_docs, MAX_FEEDBACK_DOCS)
        self.fb_terms = fb_terms
        self.fb_mu = fb_mu
        self.orig_weight = orig_weight
        self._rankings = None
        if initial_ranking_file is not None:
            try:
                self._rankings = read_trec_ranking(initial_ranking_file)
            except (OSError, ValueError) as e:
                raise ConfigurationError(
                    f"Cannot read fbInitialRankingFile {initial_ranking_file}: {e}"
                ) from e

    @property
    def uses_ranking_file(self) -> bool:
        return self._rankings is not None

    def initial_ranking(self, query_id: str) -> list[tuple[str, float]]:
        """Top documents for ``query_id`` from the initial ranking file."""
        if self._rankings is None:
            raise ConfigurationError("No fbInitialRankingFile configured")
        ranking = self._rankings.get(query_id)
        if ranking is None:
            logger.warning("Query %s is missing from the initial ranking file", query_id)
            return []
        return ranking[: self.fb_docs]

    def expansion_terms(self, ranking: Sequence[tuple[str, float]]) -> list[tuple[str, float]]:
        """
        Score candidate expansion stems.

        Args:
            ranking: ``(external_id, score)`` pairs, best first.

        Returns:
            Up to ``fb_terms`` ``(stem, score)`` pairs by descending score.
        """
        docs = []
        for external_id, score in ranking[: self.fb_docs]:
            try:
                docid = self.index.internal_id(external_id)
            except IndexAccessError:
                logger.warning("Skipping unknown document %s in feedback ranking", external_id)
                continue
            vector = self.index.term_vector(docid, FEEDBACK_FIELD)
            if vector.length > 0:
                docs.append((vector, score))
        if not docs:
            return []

        # Candidate vocabulary across the feedback documents.
        ctf: dict[str, int] = {}
        for vector, _ in docs:
            for stem, freq in zip(vector.stems, vector.collection_freqs):
                if "." in stem or "," in stem:
                    continue
                ctf[stem] = freq
        if not ctf:
            return []
        vocab = sorted(ctf)
        column = {stem: i for i, stem in enumerate(vocab)}

        corpus_length = float(self.index.sum_of_field_lengths(FEEDBACK_FIELD))
        p_collection = np.array([ctf[t] for t in vocab], dtype=np.float64) / corpus_length
        idf = np.log(1.0 / p_collection)

        scores = np.zeros(len(vocab), dtype=np.float64)
        for vector, doc_score in docs:
            tf = np.zeros(len(vocab), dtype=np.float64)
            for stem, freq in zip(vector.stems, vector.stem_freqs):
                i = column.get(stem)
                if i is not None:
                    tf[i] = freq
            p_document = (tf + self.fb_mu * p_collection) / (vector.length + self.fb_mu)
            scores += p_document * doc_score * idf

        order = sorted(range(len(vocab)), key=lambda i: (-scores[i], vocab[i]))
        return [(vocab[i], float(scores[i])) for i in order[: self.fb_terms]]

    def expansion_query(self, ranking: Sequence[tuple[str, float]]) -> str:
        terms = self.expansion_terms(ranking)
        inner = " ".join(f"{score:.4f} {term}" for term, score in terms)
        return f"#WAND( {inner} )"

    def reformulate(self, original_query: str, expansion_query: str) -> str:
        """Combine an (already wrapped) original query with its expansion."""
        expansion_weight = 1.0 - self.orig_weight
        return (
            f"#WAND( {self.orig_weight!r} {original_query} "
            f"{expansion_weight!r} {expansion_query} )"
        )


def write_expansion_queries(path: str | Path, expansions: Sequence[tuple[str, str]]) -> None:
    """Write ``qid: expansion-query`` lines."""
    with open(path, "w", encoding="utf-8") as f:
        for query_id, expansion in expansions:
            f.write(f"{query_id}: {expansion}\n")


__all__ = ["FEEDBACK_FIELD", "FeedbackExpander", "write_expansion_queries"]
