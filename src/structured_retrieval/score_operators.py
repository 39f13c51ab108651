"""
Scoring operators: #SCORE, #AND, #OR, #SUM, #WAND, #WSUM.

Support matrix (anything else raises ``ConfigurationError`` at initialize):

    operator  unranked  ranked  bm25  indri
    #SCORE       x        x      x     x
    #AND         x        x            x
    #OR          x        x            x
    #SUM                         x
    #WAND                              x
    #WSUM                              x

Under the boolean models #AND matches documents every argument matches and
scores with MIN.  Under Indri every combinator matches any document an
argument matches and substitutes default scores for the arguments that do
not match it.
"""

from __future__ import annotations

import math
from typing import ClassVar

from structured_retrieval.errors import ConfigurationError, QuerySyntaxError
from structured_retrieval.models import BOOLEAN_KINDS, ModelKind
from structured_retrieval.query_tree import EvaluationContext, InvertedNode, QueryNode

# Background count used for terms that never occur in the collection field.
UNSEEN_CTF = 0.5


def wrap_inverted(args) -> tuple[QueryNode, ...]:
    """Wrap posting-producing arguments in #SCORE so a scoring parent can use them."""
    return tuple(ScoreNode([a]) if isinstance(a, InvertedNode) else a for a in args)


# =============================================================================
# Base
# =============================================================================


class ScoringNode(QueryNode):
    """
    A node that produces a score for the current document.

    ``scorers`` maps each supported model kind to a method name.  The method
    is looked up once in ``initialize`` so documents are never re-checked
    against the model.
    """

    scorers: ClassVar[dict[ModelKind, str]] = {}

    def __init__(self, args=()):
        super().__init__(wrap_inverted(args))
        self._score_fn = None

    def initialize(self, context: EvaluationContext) -> None:
        super().initialize(context)
        method = self.scorers.get(context.model.kind)
        if method is None:
            raise ConfigurationError(
                f"{context.model.name} doesn't support the {self.display_name} operator"
            )
        self._score_fn = getattr(self, method)

    def has_match(self, context: EvaluationContext) -> bool:
        self._match = self._match_min(context)
        return self._match is not None

    def get_score(self, context: EvaluationContext) -> float:
        return self._score_fn(context)

    def get_default_score(self, context: EvaluationContext, docid: int) -> float:
        """Score for ``docid`` when this node does not match it (Indri only)."""
        raise ConfigurationError(
            f"{context.model.name} doesn't support a default score for {self.display_name}"
        )

    def _argument_scores(self, context: EvaluationContext):
        """Yield (argument, score) for the current document, with defaults for misses."""
        docid = self._match
        for arg in self.args:
            if arg.has_match(context) and arg.get_match() == docid:
                yield arg, arg.get_score(context)
            else:
                yield arg, arg.get_default_score(context, docid)


# =============================================================================
# #SCORE
# =============================================================================


class ScoreNode(ScoringNode):
    """Turns the posting of its single argument into a model-specific score."""

    display_name = "#SCORE"
    scorers = {
        ModelKind.UNRANKED_BOOLEAN: "_score_unranked_boolean",
        ModelKind.RANKED_BOOLEAN: "_score_ranked_boolean",
        ModelKind.BM25: "_score_bm25",
        ModelKind.INDRI: "_score_indri",
    }

    def __init__(self, args=()):
        args = tuple(args)
        if len(args) > 1 or any(not isinstance(a, InvertedNode) for a in args):
            raise QuerySyntaxError("#SCORE takes exactly one posting-producing argument")
        QueryNode.__init__(self, args)
        self._score_fn = None
        self._stats: dict[str, float] = {}

    def initialize(self, context: EvaluationContext) -> None:
        super().initialize(context)
        arg = self.args[0]
        index = context.index
        field = arg.field
        n_docs = index.document_count(field)
        field_total = index.sum_of_field_lengths(field)
        self._stats = {
            "n_docs": float(n_docs),
            "avg_doclen": field_total / n_docs if n_docs else 0.0,
            "corpus_length": float(field_total),
            "df": float(arg.inverted_list.df),
            "ctf": float(arg.inverted_list.ctf) or UNSEEN_CTF,
        }

    def has_match(self, context: EvaluationContext) -> bool:
        arg = self.args[0]
        self._match = arg.get_match() if arg.has_match(context) else None
        return self._match is not None

    def _tf(self) -> int:
        return self.args[0].get_match_posting().tf

    def _score_unranked_boolean(self, context: EvaluationContext) -> float:
        return 1.0 if self._tf() > 0 else 0.0

    def _score_ranked_boolean(self, context: EvaluationContext) -> float:
        return float(self._tf())

    def _score_bm25(self, context: EvaluationContext) -> float:
        arg = self.args[0]
        doclen = context.index.field_length(arg.field, self._match)
        return context.model.term_score(
            tf=self._tf(),
            df=self._stats["df"],
            n_docs=self._stats["n_docs"],
            doclen=doclen,
            avg_doclen=self._stats["avg_doclen"],
            qtf=context.query_frequency(self),
        )

    def _score_indri(self, context: EvaluationContext) -> float:
        return self._indri_probability(context, self._tf(), self._match)

    def _indri_probability(self, context: EvaluationContext, tf: int, docid: int) -> float:
        arg = self.args[0]
        return context.model.term_probability(
            tf=tf,
            ctf=self._stats["ctf"],
            corpus_length=self._stats["corpus_length"],
            doclen=context.index.field_length(arg.field, docid),
        )

    def get_default_score(self, context: EvaluationContext, docid: int) -> float:
        if context.model.kind is not ModelKind.INDRI:
            return super().get_default_score(context, docid)
        return self._indri_probability(context, 0, docid)

    def signature(self) -> tuple:
        return ("#score", self.args[0].signature() if self.args else None)


# =============================================================================
# #AND / #OR
# =============================================================================


class AndNode(ScoringNode):
    display_name = "#AND"
    scorers = {
        ModelKind.UNRANKED_BOOLEAN: "_score_unranked_boolean",
        ModelKind.RANKED_BOOLEAN: "_score_ranked_boolean",
        ModelKind.INDRI: "_score_indri",
    }

    def initialize(self, context: EvaluationContext) -> None:
        super().initialize(context)
        self._match_policy = (
            self._match_all if context.model.kind in BOOLEAN_KINDS else self._match_min
        )

    def has_match(self, context: EvaluationContext) -> bool:
        self._match = self._match_policy(context)
        return self._match is not None

    def _score_ranked_boolean(self, context: EvaluationContext) -> float:
        return min(arg.get_score(context) for arg in self.args)

    def _score_unranked_boolean(self, context: EvaluationContext) -> float:
        return 1.0 if self._score_ranked_boolean(context) > 0.0 else 0.0

    def _score_indri(self, context: EvaluationContext) -> float:
        power = 1.0 / len(self.args)
        score = 1.0
        for _, s in self._argument_scores(context):
            score *= s**power
        return score

    def get_default_score(self, context: EvaluationContext, docid: int) -> float:
        if context.model.kind is not ModelKind.INDRI:
            return super().get_default_score(context, docid)
        power = 1.0 / len(self.args)
        score = 1.0
        for arg in self.args:
            score *= arg.get_default_score(context, docid) ** power
        return score


class OrNode(ScoringNode):
    display_name = "#OR"
    scorers = {
        ModelKind.UNRANKED_BOOLEAN: "_score_unranked_boolean",
        ModelKind.RANKED_BOOLEAN: "_score_ranked_boolean",
        ModelKind.INDRI: "_score_indri",
    }

    def _score_ranked_boolean(self, context: EvaluationContext) -> float:
        docid = self._match
        score = 0.0
        for arg in self.args:
            if arg.has_match(context) and arg.get_match() == docid:
                score = max(score, arg.get_score(context))
        return score

    def _score_unranked_boolean(self, context: EvaluationContext) -> float:
        return 1.0 if self._score_ranked_boolean(context) > 0.0 else 0.0

    def _score_indri(self, context: EvaluationContext) -> float:
        miss = 1.0
        for _, s in self._argument_scores(context):
            miss *= 1.0 - s
        return 1.0 - miss

    def get_default_score(self, context: EvaluationContext, docid: int) -> float:
        if context.model.kind is not ModelKind.INDRI:
            return super().get_default_score(context, docid)
        miss = 1.0
        for arg in self.args:
            miss *= 1.0 - arg.get_default_score(context, docid)
        return 1.0 - miss


# =============================================================================
# #SUM (BM25)
# =============================================================================


class SumNode(ScoringNode):
    """
    Sum of matching arguments' BM25 scores.

    Repeated leaf arguments (e.g. ``#SUM(dog cat dog)``) are scored once,
    with the repeat count as their query term frequency.
    """

    display_name = "#SUM"
    scorers = {ModelKind.BM25: "_score_bm25"}

    def initialize(self, context: EvaluationContext) -> None:
        super().initialize(context)
        representatives: dict[tuple, QueryNode] = {}
        self._scored: list[QueryNode] = []
        for arg in self.args:
            if not isinstance(arg, ScoreNode):
                self._scored.append(arg)
                continue
            key = arg.signature()
            rep = representatives.get(key)
            if rep is None:
                representatives[key] = arg
                self._scored.append(arg)
                context.query_frequencies[arg.node_id] = 1
            else:
                context.query_frequencies[rep.node_id] += 1

    def _score_bm25(self, context: EvaluationContext) -> float:
        docid = self._match
        score = 0.0
        for arg in self._scored:
            if arg.has_match(context) and arg.get_match() == docid:
                score += arg.get_score(context)
        return score


# =============================================================================
# Weighted operators (Indri)
# =============================================================================


class WeightedNode(ScoringNode):
    """
    Base for operators whose arguments carry weights.

    Arguments and weights are fixed at construction and always the same
    length; only positively weighted arguments are match sources.
    """

    scorers = {ModelKind.INDRI: "_score_indri"}

    def __init__(self, args=(), weights=()):
        super().__init__(args)
        self.weights: tuple[float, ...] = tuple(float(w) for w in weights)
        if len(self.weights) != len(self.args):
            raise QuerySyntaxError(
                f"{self.display_name} has {len(self.args)} arguments but {len(self.weights)} weights"
            )
        if any(w < 0.0 for w in self.weights):
            raise QuerySyntaxError(f"{self.display_name} weights must be non-negative")
        self.sum_of_weights = math.fsum(self.weights)
        self._sources = tuple(a for a, w in zip(self.args, self.weights) if w > 0.0)

    def _params(self) -> dict:
        return {"weights": self.weights}

    def replace_args(self, args, weights=None) -> QueryNode:
        return type(self)(args, self.weights if weights is None else weights)

    def _powers(self):
        total = self.sum_of_weights
        return [w / total if total > 0.0 else 0.0 for w in self.weights]

    def has_match(self, context: EvaluationContext) -> bool:
        self._match = self._match_min(context, self._sources)
        return self._match is not None

    def signature(self) -> tuple:
        return (
            self.display_name.lower(),
            tuple(a.signature() for a in self.args),
            self.weights,
        )

    def __str__(self) -> str:
        inner = " ".join(f"{w} {a}" for w, a in zip(self.weights, self.args))
        return f"{self.display_name}( {inner} )"


class WeightedAndNode(WeightedNode):
    """Weighted geometric mean: prod(score_i ** (w_i / sum(w)))."""

    display_name = "#WAND"

    def _score_indri(self, context: EvaluationContext) -> float:
        score = 1.0
        for (_, s), power in zip(self._argument_scores(context), self._powers()):
            score *= s**power
        return score

    def get_default_score(self, context: EvaluationContext, docid: int) -> float:
        if context.model.kind is not ModelKind.INDRI:
            return super().get_default_score(context, docid)
        score = 1.0
        for arg, power in zip(self.args, self._powers()):
            score *= arg.get_default_score(context, docid) ** power
        return score


class WeightedSumNode(WeightedNode):
    """Weighted arithmetic mean: sum(w_i / sum(w) * score_i)."""

    display_name = "#WSUM"

    def _score_indri(self, context: EvaluationContext) -> float:
        return math.fsum(
            power * s for (_, s), power in zip(self._argument_scores(context), self._powers())
        )

    def get_default_score(self, context: EvaluationContext, docid: int) -> float:
        if context.model.kind is not ModelKind.INDRI:
            return super().get_default_score(context, docid)
        return math.fsum(
            power * arg.get_default_score(context, docid)
            for arg, power in zip(self.args, self._powers())
        )


__all__ = [
    "ScoringNode",
    "ScoreNode",
    "AndNode",
    "OrNode",
    "SumNode",
    "WeightedNode",
    "WeightedAndNode",
    "WeightedSumNode",
    "wrap_inverted",
]
