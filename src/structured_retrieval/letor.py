"""
Learning-to-rank reranker.

Feature vector (1-based slots)::

    1       spam score (``score`` attribute)
    2       URL depth (``rawUrl`` split on "/" minus 3)
    3       from Wikipedia (``rawUrl`` contains wikipedia.org)
    4       PageRank (from the page rank file)
    5-7     body:   BM25, Indri, term overlap
    8-10    title:  BM25, Indri, term overlap
    11-13   url:    BM25, Indri, term overlap
    14-16   inlink: BM25, Indri, term overlap
    17-18   reserved (0.0)

Missing values are NaN.  Features are min-max normalized per query over the
non-missing values of each slot and written in SVMrank format.  Feature ids
number the enabled slots densely from 1 and are fixed for a run; a value a
document lacks is left off its line without shifting the ids after it.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter, OrderedDict
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TextIO

import numpy as np

from structured_retrieval.analysis import Analyzer
from structured_retrieval.errors import ConfigurationError, IndexAccessError, QuerySyntaxError, SolverError
from structured_retrieval.index import IndexReader
from structured_retrieval.inverted_operators import TermNode
from structured_retrieval.models import Letor
from structured_retrieval.parser import parse_query
from structured_retrieval.query_tree import QueryNode
from structured_retrieval.results import ScoreList

logger = logging.getLogger(__name__)

NUM_FEATURES = 18
CONTENT_FIELDS: tuple[str, ...] = ("body", "title", "url", "inlink")
MISSING = float("nan")

# Candidates taken from the initial ranking when reranking.
RERANK_DEPTH = 100


# =============================================================================
# File helpers
# =============================================================================


def read_page_ranks(path: str | Path) -> dict[str, float]:
    """Read ``externalId<TAB>score`` lines."""
    ranks: dict[str, float] = {}
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2:
                    ranks[parts[0]] = float(parts[1])
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read page rank file {path}: {e}") from e
    return ranks


def read_queries(path: str | Path) -> list[tuple[str, str]]:
    """Read ``qid:query`` lines, in file order."""
    queries = []
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            query_id, sep, text = line.partition(":")
            if not sep:
                raise QuerySyntaxError(f"missing ':' in query line {line_no} of {path}")
            queries.append((query_id.strip(), text.strip()))
    return queries


def read_qrels(path: str | Path) -> OrderedDict[str, list[tuple[str, int]]]:
    """Read ``qid 0 docid relevance`` lines grouped by query."""
    qrels: OrderedDict[str, list[tuple[str, int]]] = OrderedDict()
    with open(path, encoding="utf-8") as f:
        for line in f:
            parts = line.split()
            if len(parts) < 4:
                continue
            qrels.setdefault(parts[0], []).append((parts[2], int(parts[3])))
    return qrels


def _term_leaves(node: QueryNode) -> list[str]:
    if isinstance(node, TermNode):
        return [node.term]
    terms: list[str] = []
    for arg in node.args:
        terms.extend(_term_leaves(arg))
    return terms


def query_terms(text: str, analyzer: Callable[[str], list[str]]) -> list[str]:
    """
    Stems of every term leaf of a query, left to right.

    Operators, weights and field suffixes are dropped; a repeated term is
    listed once per occurrence.
    """
    return _term_leaves(parse_query(text, analyzer, default_operator="#and"))


# =============================================================================
# Normalization and output
# =============================================================================


def normalize_features(features: np.ndarray) -> np.ndarray:
    """
    Min-max normalize each column over its non-missing values.

    A column whose values are all equal normalizes to 0.0; missing values
    stay missing.
    """
    features = np.asarray(features, dtype=np.float64)
    present = ~np.isnan(features)
    lo = np.where(present, features, np.inf).min(axis=0)
    hi = np.where(present, features, -np.inf).max(axis=0)
    span = hi - lo
    scaled = np.divide(
        features - lo,
        span,
        out=np.zeros_like(features),
        where=present & (span > 0),
    )
    return np.where(present, scaled, MISSING)


def feature_ids(disabled_features: frozenset[int] = frozenset()) -> dict[int, int]:
    """
    Map 0-based feature slots to SVMrank feature ids.

    Enabled slots are numbered densely from 1; disabled slots get no id.
    The map is the same for every line of a run, so an id always names the
    same feature.
    """
    enabled = [slot for slot in range(NUM_FEATURES) if slot + 1 not in disabled_features]
    return {slot: i for i, slot in enumerate(enabled, start=1)}


def format_feature_line(
    relevance: int,
    query_id: str,
    vector: np.ndarray,
    external_id: str,
    ids: dict[int, int] | None = None,
) -> str:
    """
    One SVMrank line.  Slots without an id, and missing values, are left out.

    Args:
        ids: Slot to feature id map from ``feature_ids``; by default every
            slot ``i`` is feature ``i + 1``.
    """
    if ids is None:
        ids = {slot: slot + 1 for slot in range(len(vector))}
    values = " ".join(
        f"{ids[slot]}:{vector[slot]:.6f}"
        for slot in sorted(ids)
        if slot < len(vector) and not np.isnan(vector[slot])
    )
    return f"{relevance} qid:{query_id} {values} # {external_id}"


def write_feature_lines(
    out: TextIO,
    query_id: str,
    relevances: Sequence[int],
    features: np.ndarray,
    external_ids: Sequence[str],
    ids: dict[int, int] | None = None,
) -> None:
    for relevance, vector, external_id in zip(relevances, features, external_ids):
        out.write(format_feature_line(relevance, query_id, vector, external_id, ids) + "\n")


# =============================================================================
# Features
# =============================================================================


class FeatureExtractor:
    """
    Compute raw (unnormalized) feature vectors.

    Args:
        index: Index providing attributes and term vectors.
        model: Letor model; its BM25 and Indri parameters drive the
            content features.
        page_ranks: External id to PageRank score.
    """

    def __init__(self, index: IndexReader, model: Letor, page_ranks: dict[str, float] | None = None):
        self.index = index
        self.model = model
        self.page_ranks = page_ranks or {}

    def _spam_score(self, docid: int) -> float:
        value = self.index.attribute("score", docid)
        if value is None:
            return MISSING
        try:
            return float(value)
        except ValueError:
            logger.warning(
                "Non-numeric spam score %r for %s", value, self.index.external_id(docid)
            )
            return MISSING

    def _attribute_features(self, docid: int, external_id: str) -> list[float]:
        raw_url = self.index.attribute("rawUrl", docid)
        return [
            self._spam_score(docid),
            float(len(raw_url.split("/")) - 3) if raw_url is not None else MISSING,
            (1.0 if "wikipedia.org" in raw_url else 0.0) if raw_url is not None else MISSING,
            self.page_ranks.get(external_id, MISSING),
        ]

    def content_features(self, terms: Sequence[str], docid: int, field: str) -> tuple[float, float, float]:
        """BM25, Indri and term overlap of ``terms`` in one field of one document."""
        vector = self.index.term_vector(docid, field)
        doclen = vector.length
        if doclen == 0 or not terms:
            return MISSING, MISSING, MISSING

        bm25 = self.model.bm25
        indri = self.model.indri
        n_docs = self.index.num_docs()
        field_total = self.index.sum_of_field_lengths(field)
        avg_doclen = field_total / self.index.document_count(field)
        power = 1.0 / len(terms)

        bm25_score = 0.0
        indri_score = 1.0
        matched = 0
        for term, qtf in Counter(terms).items():
            i = vector.stem_index(term)
            if i is None:
                continue
            matched += 1
            tf = vector.stem_freqs[i]
            rsj = max(0.0, bm25.rsj_weight(n_docs, vector.document_freqs[i]))
            bm25_score += rsj * bm25.tf_weight(tf, doclen, avg_doclen) * bm25.user_weight(qtf)
            p = indri.term_probability(tf, vector.collection_freqs[i], field_total, doclen)
            indri_score *= p**power

        if matched == 0:
            indri_score = 0.0
        return bm25_score, indri_score, matched / len(terms)

    def feature_vector(self, terms: Sequence[str], docid: int) -> np.ndarray:
        external_id = self.index.external_id(docid)
        values = self._attribute_features(docid, external_id)
        for field in CONTENT_FIELDS:
            values.extend(self.content_features(terms, docid, field))
        values.extend([0.0, 0.0])

        vector = np.array(values, dtype=np.float64)
        for feature in self.model.disabled_features:
            vector[feature - 1] = MISSING
        return vector

    def feature_matrix(self, terms: Sequence[str], docids: Sequence[int]) -> np.ndarray:
        """Normalized features, one row per document."""
        if not docids:
            return np.empty((0, NUM_FEATURES), dtype=np.float64)
        raw = np.vstack([self.feature_vector(terms, docid) for docid in docids])
        return normalize_features(raw)


# =============================================================================
# Reranker
# =============================================================================


class LetorReranker:
    """
    Train the solver and rerank initial rankings with it.

    Args:
        index: Index used for features.
        model: Letor model (must carry a solver).
        analyzer: Query analyzer.
        testing_feature_file: Where per-query test features are written.
        testing_scores_file: Where the solver writes per-query scores.
    """

    def __init__(
        self,
        index: IndexReader,
        model: Letor,
        analyzer: Callable[[str], list[str]] | None = None,
        testing_feature_file: str | Path = "letor-test-features.txt",
        testing_scores_file: str | Path = "letor-test-scores.txt",
    ):
        if model.solver is None:
            raise ConfigurationError("letor requires svmRank solver parameters")
        for feature in model.disabled_features:
            if not 1 <= feature <= NUM_FEATURES:
                raise ConfigurationError(f"letor:featureDisable index {feature} is out of range")

        self.index = index
        self.model = model
        self.analyzer = analyzer or Analyzer()
        page_ranks = read_page_ranks(model.page_rank_file) if model.page_rank_file else {}
        self.features = FeatureExtractor(index, model, page_ranks)
        self.feature_ids = feature_ids(model.disabled_features)
        self.testing_feature_file = Path(testing_feature_file)
        self.testing_scores_file = Path(testing_scores_file)
        # One solver invocation at a time: the feature and score files are shared.
        self._lock = threading.Lock()

    def write_training_features(self, query_file: str | Path, qrels_file: str | Path, feature_file: str | Path) -> int:
        """
        Write training features for every judged document of every query.

        Returns:
            Number of feature lines written.
        """
        qrels = read_qrels(qrels_file)
        written = 0
        with open(feature_file, "w", encoding="utf-8") as out:
            for query_id, text in read_queries(query_file):
                judged = qrels.get(query_id, [])
                docids, labels, external_ids = [], [], []
                for external_id, relevance in judged:
                    try:
                        docids.append(self.index.internal_id(external_id))
                    except IndexAccessError:
                        logger.warning("Skipping unknown document %s in qrels for query %s", external_id, query_id)
                        continue
                    labels.append(relevance)
                    external_ids.append(external_id)
                terms = query_terms(text, self.analyzer)
                matrix = self.features.feature_matrix(terms, docids)
                write_feature_lines(out, query_id, labels, matrix, external_ids, self.feature_ids)
                written += len(docids)
        logger.info("Wrote %d training feature vectors to %s", written, feature_file)
        return written

    def train(self, query_file: str | Path, qrels_file: str | Path, feature_file: str | Path) -> None:
        self.write_training_features(query_file, qrels_file, feature_file)
        self.model.solver.learn(feature_file)

    def rerank(self, query_id: str, query_text: str, initial: ScoreList) -> ScoreList:
        """Replace the scores of the top candidates with solver scores."""
        candidates = list(initial.sort().entries[:RERANK_DEPTH])
        if not candidates:
            return ScoreList()
        terms = query_terms(query_text, self.analyzer)
        matrix = self.features.feature_matrix(terms, [e.docid for e in candidates])

        with self._lock:
            with open(self.testing_feature_file, "w", encoding="utf-8") as out:
                write_feature_lines(
                    out,
                    query_id,
                    [0] * len(candidates),
                    matrix,
                    [e.external_id for e in candidates],
                    self.feature_ids,
                )
            scores = self.model.solver.classify(self.testing_feature_file, self.testing_scores_file)

        if len(scores) < len(candidates):
            raise SolverError(
                f"Solver returned {len(scores)} scores for {len(candidates)} candidates of query {query_id}"
            )
        reranked = ScoreList()
        for entry, score in zip(candidates, scores):
            if math.isnan(score):
                raise SolverError(f"Solver returned NaN for {entry.external_id} in query {query_id}")
            reranked.add(entry.docid, entry.external_id, score)
        logger.info("Reranked %d candidates for query %s", len(reranked), query_id)
        return reranked.sort()


__all__ = [
    "CONTENT_FIELDS",
    "FeatureExtractor",
    "LetorReranker",
    "MISSING",
    "NUM_FEATURES",
    "RERANK_DEPTH",
    "feature_ids",
    "format_feature_line",
    "normalize_features",
    "query_terms",
    "read_page_ranks",
    "read_qrels",
    "read_queries",
    "write_feature_lines",
]
