"""
Query evaluation driver.

``QueryEvaluator`` turns query text into a ranked ``ScoreList``:

    parse -> (expand) -> evaluate (document at a time) -> sort -> (rerank)

and runs whole query files, optionally on a thread pool.  Every evaluation
builds its own tree and ``EvaluationContext``; the index and the model are
shared read-only.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from structured_retrieval.analysis import Analyzer
from structured_retrieval.errors import ConfigurationError, QueryCancelled, QuerySyntaxError
from structured_retrieval.feedback import FeedbackExpander, write_expansion_queries
from structured_retrieval.index import IndexReader
from structured_retrieval.letor import LetorReranker
from structured_retrieval.models import Letor, RetrievalModel
from structured_retrieval.parser import parse_query
from structured_retrieval.query_tree import EvaluationContext, QueryNode
from structured_retrieval.results import (
    DEFAULT_OUTPUT_LENGTH,
    DEFAULT_RUN_TAG,
    ScoreList,
    write_trec_results,
)

logger = logging.getLogger(__name__)

DEFAULT_NUM_WORKERS = 1
MIN_QUERIES_FOR_PARALLEL = 2


@dataclass
class QueryFailure:
    query_id: str
    error: QuerySyntaxError


@dataclass
class QueryOutcome:
    query_id: str
    results: ScoreList | None = None
    expansion: str | None = None
    failure: QueryFailure | None = None


def read_query_file(path: str | Path) -> list[tuple[str, str | QuerySyntaxError]]:
    """
    Read ``qid:query`` lines.

    A malformed line does not stop the file: it is returned as a
    ``QuerySyntaxError`` attributed to ``line N``.
    """
    queries: list[tuple[str, str | QuerySyntaxError]] = []
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            query_id, sep, text = line.partition(":")
            if not sep:
                label = f"line {line_no}"
                queries.append((label, QuerySyntaxError("missing ':' in query line", label)))
                continue
            queries.append((query_id.strip(), text.strip()))
    return queries


class QueryEvaluator:
    """
    Evaluate structured queries against an index.

    Args:
        index: Read-only index.
        model: Ranking model.
        analyzer: Query term analyzer; must match the one used for indexing.
        feedback: Optional query expander (Indri only).
        reranker: Learning-to-rank reranker; required when ``model`` is Letor.
    """

    def __init__(
        self,
        index: IndexReader,
        model: RetrievalModel,
        analyzer: Callable[[str], list[str]] | None = None,
        feedback: FeedbackExpander | None = None,
        reranker: LetorReranker | None = None,
    ):
        if isinstance(model, Letor) and reranker is None:
            raise ConfigurationError("The letor model needs a LetorReranker")
        self.index = index
        self.model = model
        self.analyzer = analyzer or Analyzer()
        self.feedback = feedback
        self.reranker = reranker

    @property
    def ranking_model(self) -> RetrievalModel:
        """Model used for the document-at-a-time pass (Letor ranks with BM25 first)."""
        return self.model.bm25 if isinstance(self.model, Letor) else self.model

    # -- single query -----------------------------------------------------------

    def parse(self, query_text: str, query_id: str | None = None, wrap: bool = True) -> QueryNode:
        """Parse ``query_text``, wrapped in the ranking model's default operator."""
        default_operator = self.ranking_model.default_operator if wrap else None
        return parse_query(query_text, self.analyzer, default_operator, query_id)

    def evaluate(self, query_tree: QueryNode, cancel_event: threading.Event | None = None) -> ScoreList:
        """
        Score every document matched by ``query_tree``.

        Raises:
            ConfigurationError: The tree uses an operator the model does not support.
            QueryCancelled: ``cancel_event`` was set during evaluation.
        """
        results = ScoreList()
        if not query_tree.args:
            logger.warning("Query %s has no terms left after analysis", query_tree)
            return results
        context = EvaluationContext(self.ranking_model, self.index, cancel_event=cancel_event)
        query_tree.initialize(context)
        while query_tree.has_match(context):
            if context.cancelled:
                raise QueryCancelled("query evaluation was cancelled")
            docid = query_tree.get_match()
            results.add(docid, self.index.external_id(docid), query_tree.get_score(context))
            query_tree.advance_past(docid)
        return results

    def _expand(
        self, query_id: str, query_text: str, cancel_event: threading.Event | None
    ) -> tuple[str, str]:
        """Expanded query text and the expansion query alone."""
        if self.feedback.uses_ranking_file:
            initial = self.feedback.initial_ranking(query_id)
        else:
            ranked = self.evaluate(self.parse(query_text, query_id), cancel_event).sort()
            initial = [(e.external_id, e.score) for e in ranked.entries[: self.feedback.fb_docs]]
        expansion = self.feedback.expansion_query(initial)
        logger.debug("Expansion for query %s: %s", query_id, expansion)
        original = f"{self.ranking_model.default_operator}({query_text})"
        return self.feedback.reformulate(original, expansion), expansion

    def _run(
        self, query_id: str, query_text: str, cancel_event: threading.Event | None = None
    ) -> tuple[ScoreList, str | None]:
        expansion = None
        if self.feedback is not None:
            expanded_text, expansion = self._expand(query_id, query_text, cancel_event)
            tree = self.parse(expanded_text, query_id, wrap=False)
        else:
            tree = self.parse(query_text, query_id)

        results = self.evaluate(tree, cancel_event).sort()
        if self.reranker is not None:
            results = self.reranker.rerank(query_id, query_text, results)
        logger.info("Query %s: %d results", query_id, len(results))
        return results, expansion

    def process_query(
        self, query_id: str, query_text: str, cancel_event: threading.Event | None = None
    ) -> ScoreList:
        """Sorted results for one query, with feedback and reranking applied."""
        results, _ = self._run(query_id, query_text, cancel_event)
        return results

    # -- batches ----------------------------------------------------------------

    def _outcome(
        self, query_id: str, query: str | QuerySyntaxError, cancel_event: threading.Event | None
    ) -> QueryOutcome:
        if isinstance(query, QuerySyntaxError):
            error = query
        else:
            try:
                results, expansion = self._run(query_id, query, cancel_event)
                return QueryOutcome(query_id, results, expansion)
            except QuerySyntaxError as e:
                error = e
        logger.error("Skipping query %s: %s", query_id, error)
        return QueryOutcome(query_id, failure=QueryFailure(query_id, error))

    def process_query_file(
        self,
        path: str | Path,
        output_path: str | Path,
        num_workers: int = DEFAULT_NUM_WORKERS,
        max_results: int = DEFAULT_OUTPUT_LENGTH,
        run_tag: str = DEFAULT_RUN_TAG,
        expansion_query_file: str | Path | None = None,
        cancel_event: threading.Event | None = None,
    ) -> list[QueryFailure]:
        """
        Evaluate every query in ``path`` and write a TREC run to ``output_path``.

        Queries that fail to parse are logged and skipped; the others are
        still evaluated and written in query-file order.

        Returns:
            One ``QueryFailure`` per skipped query.
        """
        queries = read_query_file(path)

        def run(item: tuple[str, str | QuerySyntaxError]) -> QueryOutcome:
            return self._outcome(item[0], item[1], cancel_event)

        if num_workers <= 1 or len(queries) < MIN_QUERIES_FOR_PARALLEL:
            outcomes = [run(item) for item in queries]
        else:
            with ThreadPoolExecutor(max_workers=num_workers) as ex:
                outcomes = list(ex.map(run, queries))

        with open(output_path, "w", encoding="utf-8") as out:
            for outcome in outcomes:
                if outcome.results is None:
                    continue
                write_trec_results(out, outcome.query_id, outcome.results, run_tag, max_results)

        if expansion_query_file is not None:
            write_expansion_queries(
                expansion_query_file,
                [(o.query_id, o.expansion) for o in outcomes if o.expansion is not None],
            )

        failures = [o.failure for o in outcomes if o.failure is not None]
        logger.info(
            "Processed %d queries (%d failed), results in %s",
            len(outcomes),
            len(failures),
            output_path,
        )
        return failures


__all__ = [
    "DEFAULT_NUM_WORKERS",
    "QueryEvaluator",
    "QueryFailure",
    "QueryOutcome",
    "read_query_file",
]
