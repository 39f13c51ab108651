"""
Parameter file handling.

A parameter file holds ``key=value`` lines::

    indexPath=data/index.jsonl
    queryFilePath=queries.txt
    trecEvalOutputPath=run.teIn
    retrievalAlgorithm=BM25
    BM25:k_1=1.2
    BM25:b=0.75
    BM25:k_3=0

Blank lines and lines starting with ``#`` are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from structured_retrieval.errors import ConfigurationError
from structured_retrieval.feedback import FeedbackExpander
from structured_retrieval.index import IndexReader
from structured_retrieval.models import (
    BM25,
    Indri,
    Letor,
    ModelKind,
    RankedBoolean,
    RetrievalModel,
    UnrankedBoolean,
)
from structured_retrieval.results import DEFAULT_OUTPUT_LENGTH, DEFAULT_RUN_TAG
from structured_retrieval.svm_rank import SVMRankSolver

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("indexPath", "queryFilePath", "trecEvalOutputPath", "retrievalAlgorithm")


@dataclass
class Parameters:
    """Raw parameter values with typed accessors."""

    values: dict[str, str] = field(default_factory=dict)
    source: str = "<parameters>"

    def __contains__(self, key: str) -> bool:
        return key in self.values

    def __getitem__(self, key: str) -> str:
        try:
            return self.values[key]
        except KeyError:
            raise ConfigurationError(f"Missing required parameter {key!r} in {self.source}") from None

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.values.get(key, default)

    def get_float(self, key: str, default: float | None = None) -> float:
        if key not in self.values:
            if default is None:
                raise ConfigurationError(f"Missing required parameter {key!r} in {self.source}")
            return default
        try:
            return float(self.values[key])
        except ValueError:
            raise ConfigurationError(f"Parameter {key!r} must be a number, got {self.values[key]!r}") from None

    def get_int(self, key: str, default: int | None = None) -> int:
        if key not in self.values:
            if default is None:
                raise ConfigurationError(f"Missing required parameter {key!r} in {self.source}")
            return default
        try:
            return int(self.values[key])
        except ValueError:
            raise ConfigurationError(f"Parameter {key!r} must be an integer, got {self.values[key]!r}") from None

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.values.get(key)
        if value is None:
            return default
        if value.lower() in ("true", "1", "yes"):
            return True
        if value.lower() in ("false", "0", "no"):
            return False
        raise ConfigurationError(f"Parameter {key!r} must be true or false, got {value!r}")

    # -- common settings --------------------------------------------------------

    @property
    def output_length(self) -> int:
        return self.get_int("trecEvalOutputLength", DEFAULT_OUTPUT_LENGTH)

    @property
    def run_tag(self) -> str:
        return self.get("runTag", DEFAULT_RUN_TAG)

    @property
    def num_workers(self) -> int:
        workers = self.get_int("numWorkers", 1)
        if workers < 1:
            raise ConfigurationError(f"numWorkers must be >= 1, got {workers}")
        return workers

    @property
    def feedback_enabled(self) -> bool:
        return self.get_bool("fb")


def parse_parameters(text: str, source: str = "<parameters>") -> Parameters:
    values: dict[str, str] = {}
    for line_no, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            raise ConfigurationError(f"{source}:{line_no}: expected key=value, got {line!r}")
        values[key.strip()] = value.strip()
    return Parameters(values, source)


def read_parameter_file(path: str | Path) -> Parameters:
    """
    Read and check a parameter file.

    Raises:
        ConfigurationError: Unreadable file, malformed line, or a missing
            required key.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Can't read {path}: {e}") from e
    parameters = parse_parameters(text, str(path))
    missing = [key for key in REQUIRED_KEYS if key not in parameters]
    if missing:
        raise ConfigurationError(f"Required parameters missing from {path}: {', '.join(missing)}")
    return parameters


def _bm25(parameters: Parameters) -> BM25:
    return BM25(
        k1=parameters.get_float("BM25:k_1"),
        b=parameters.get_float("BM25:b"),
        k3=parameters.get_float("BM25:k_3"),
    )


def _indri(parameters: Parameters) -> Indri:
    return Indri(
        mu=parameters.get_float("Indri:mu"),
        lambda_=parameters.get_float("Indri:lambda"),
    )


def _disabled_features(parameters: Parameters) -> frozenset[int]:
    value = parameters.get("letor:featureDisable", "")
    try:
        return frozenset(int(v) for v in value.split(",") if v.strip())
    except ValueError:
        raise ConfigurationError(f"letor:featureDisable must list integers, got {value!r}") from None


def build_solver(parameters: Parameters) -> SVMRankSolver:
    timeout = parameters.get("letor:solverTimeout")
    return SVMRankSolver(
        learn_path=parameters["letor:svmRankLearnPath"],
        classify_path=parameters["letor:svmRankClassifyPath"],
        c=parameters.get_float("letor:svmRankParamC"),
        model_path=parameters["letor:svmRankModelFile"],
        timeout=parameters.get_float("letor:solverTimeout") if timeout is not None else None,
    )


def build_model(parameters: Parameters) -> RetrievalModel:
    """
    Construct the ranking model named by ``retrievalAlgorithm``.

    Raises:
        ConfigurationError: Unknown model name, or a missing, non-numeric or
            out-of-range model parameter.
    """
    name = parameters["retrievalAlgorithm"].strip().lower()
    try:
        kind = ModelKind(name)
    except ValueError:
        raise ConfigurationError(f"Unknown retrieval model {parameters['retrievalAlgorithm']!r}") from None

    if kind is ModelKind.UNRANKED_BOOLEAN:
        model: RetrievalModel = UnrankedBoolean()
    elif kind is ModelKind.RANKED_BOOLEAN:
        model = RankedBoolean()
    elif kind is ModelKind.BM25:
        model = _bm25(parameters)
    elif kind is ModelKind.INDRI:
        model = _indri(parameters)
    else:
        model = Letor(
            bm25=_bm25(parameters),
            indri=_indri(parameters),
            solver=build_solver(parameters),
            disabled_features=_disabled_features(parameters),
            page_rank_file=parameters.get("letor:pageRankFile"),
        )

    if parameters.feedback_enabled and kind is not ModelKind.INDRI:
        raise ConfigurationError("Query expansion (fb=true) requires the Indri model")
    logger.debug("Built retrieval model %r", model)
    return model


def build_feedback(parameters: Parameters, index: IndexReader) -> FeedbackExpander | None:
    """The query expander configured by the fb* keys, or None when fb is off."""
    if not parameters.feedback_enabled:
        return None
    return FeedbackExpander(
        index,
        fb_docs=parameters.get_int("fbDocs"),
        fb_terms=parameters.get_int("fbTerms"),
        fb_mu=parameters.get_float("fbMu"),
        orig_weight=parameters.get_float("fbOrigWeight"),
        initial_ranking_file=parameters.get("fbInitialRankingFile"),
    )


__all__ = [
    "REQUIRED_KEYS",
    "Parameters",
    "build_feedback",
    "build_model",
    "build_solver",
    "parse_parameters",
    "read_parameter_file",
]
