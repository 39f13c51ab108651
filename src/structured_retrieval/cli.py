"""Command line runner: evaluate a query file described by a parameter file."""

from __future__ import annotations

import argparse
import logging
import sys
import time

from structured_retrieval.analysis import Analyzer
from structured_retrieval.config import Parameters, build_feedback, build_model, read_parameter_file
from structured_retrieval.engine import QueryEvaluator
from structured_retrieval.errors import RetrievalError
from structured_retrieval.index import InMemoryIndex
from structured_retrieval.letor import LetorReranker
from structured_retrieval.logging_config import setup_logging
from structured_retrieval.models import Letor

logger = logging.getLogger(__name__)


def build_evaluator(parameters: Parameters) -> QueryEvaluator:
    """Load the index and wire up model, feedback and reranker from parameters."""
    analyzer = Analyzer()
    model = build_model(parameters)
    index = InMemoryIndex.from_jsonl(parameters["indexPath"], analyzer)
    logger.info("Loaded index %s (%d documents)", parameters["indexPath"], index.num_docs())

    reranker = None
    if isinstance(model, Letor):
        reranker = LetorReranker(
            index,
            model,
            analyzer,
            testing_feature_file=parameters["letor:testingFeatureVectorsFile"],
            testing_scores_file=parameters["letor:testingDocumentScores"],
        )
        logger.info("Training the ranking model")
        reranker.train(
            parameters["letor:trainingQueryFile"],
            parameters["letor:trainingQrelsFile"],
            parameters["letor:trainingFeatureVectorsFile"],
        )

    return QueryEvaluator(
        index,
        model,
        analyzer,
        feedback=build_feedback(parameters, index),
        reranker=reranker,
    )


def run(parameter_file: str) -> int:
    """
    Run a parameter file end to end.

    Returns:
        Process exit status: 0 on success, 1 if any query failed.
    """
    parameters = read_parameter_file(parameter_file)
    evaluator = build_evaluator(parameters)
    start = time.perf_counter()
    failures = evaluator.process_query_file(
        parameters["queryFilePath"],
        parameters["trecEvalOutputPath"],
        num_workers=parameters.num_workers,
        max_results=parameters.output_length,
        run_tag=parameters.run_tag,
        expansion_query_file=parameters.get("fbExpansionQueryFile"),
    )
    logger.info("Finished in %.2fs", time.perf_counter() - start)
    for failure in failures:
        logger.error("Query %s failed: %s", failure.query_id, failure.error)
    return 1 if failures else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Evaluate structured queries over an index and write a TREC run.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  structured-retrieval params/bm25.param
  structured-retrieval params/indri-fb.param --log-file logs/run.log -v
""",
    )
    parser.add_argument("parameter_file", help="Path to a key=value parameter file.")
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write detailed logs to this file.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show debug output on the console.",
    )
    args = parser.parse_args(argv)

    setup_logging(args.log_file, console_level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        return run(args.parameter_file)
    except RetrievalError as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
