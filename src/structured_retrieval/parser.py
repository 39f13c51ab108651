"""
Structured query parser.

Grammar (operators are case-insensitive)::

    query    := node
    node     := OPERATOR "(" args ")" | TERM
    args     := node*                         # #and #or #sum #syn #near/n #window/n
              | (WEIGHT node)*                # #wand #wsum
    TERM     := token | token.field

Tokens are separated by whitespace, commas and parentheses.  A term is run
through the analyzer and may expand to zero or more leaf nodes; inside a
weighted operator every expansion shares the declared weight.

After parsing, ``prune_to_fixpoint`` removes argument-less operators and
collapses single-argument operators into their argument when both are of
the same family (scoring or posting-producing).
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable

from structured_retrieval.analysis import Analyzer
from structured_retrieval.errors import QuerySyntaxError
from structured_retrieval.index import FIELDS
from structured_retrieval.inverted_operators import NearNode, SynonymNode, TermNode, WindowNode
from structured_retrieval.query_tree import InvertedNode, QueryNode
from structured_retrieval.score_operators import (
    AndNode,
    OrNode,
    ScoreNode,
    ScoringNode,
    SumNode,
    WeightedAndNode,
    WeightedNode,
    WeightedSumNode,
)

logger = logging.getLogger(__name__)

DEFAULT_FIELD = "body"

_TOKEN_PATTERN = re.compile(r"[()]|[^\s,()]+")

_OPERATORS: dict[str, type[QueryNode]] = {
    "#and": AndNode,
    "#or": OrNode,
    "#sum": SumNode,
    "#wand": WeightedAndNode,
    "#wsum": WeightedSumNode,
    "#syn": SynonymNode,
}

_DISTANCE_OPERATORS: dict[str, type[QueryNode]] = {
    "#near": NearNode,
    "#window": WindowNode,
}


def tokenize(text: str) -> list[str]:
    """Split a query string into operator, parenthesis, weight and term tokens."""
    return _TOKEN_PATTERN.findall(text)


class QueryParser:
    """
    Recursive-descent parser producing immutable query trees.

    Args:
        analyzer: Callable turning a raw term into stems (default ``Analyzer()``).
    """

    def __init__(self, analyzer: Callable[[str], list[str]] | None = None):
        self.analyzer = analyzer or Analyzer()

    def parse(self, text: str, query_id: str | None = None) -> QueryNode:
        self._query_id = query_id
        self._tokens = tokenize(text)
        self._pos = 0
        if not self._tokens:
            raise self._error("empty query")
        nodes = self._parse_node()
        if self._pos < len(self._tokens):
            raise self._error(f"unexpected trailing input {' '.join(self._tokens[self._pos:])!r}")
        if len(nodes) != 1 or not isinstance(nodes[0], ScoringNode):
            raise self._error("a query must be a single scoring operator")
        return nodes[0]

    # -- helpers ----------------------------------------------------------------

    def _error(self, message: str) -> QuerySyntaxError:
        return QuerySyntaxError(message, self._query_id)

    def _peek(self) -> str | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _next(self) -> str:
        token = self._peek()
        if token is None:
            raise self._error("unexpected end of query (missing ')')")
        self._pos += 1
        return token

    def _operator_class(self, token: str) -> tuple[type[QueryNode], dict]:
        name, _, suffix = token.lower().partition("/")
        if name in _OPERATORS and not suffix:
            return _OPERATORS[name], {}
        if name in _DISTANCE_OPERATORS:
            try:
                distance = int(suffix)
            except ValueError:
                raise self._error(f"{token} needs an integer distance, e.g. {name}/3") from None
            return _DISTANCE_OPERATORS[name], {"distance": distance}
        raise self._error(f"unknown operator {token!r}")

    # -- grammar ----------------------------------------------------------------

    def _parse_node(self) -> list[QueryNode]:
        """Parse one node.  A term may expand into several leaves (or none)."""
        token = self._next()
        if token == "(":
            raise self._error("'(' must follow an operator")
        if token == ")":
            raise self._error("unbalanced ')'")
        if token.startswith("#"):
            return [self._parse_operator(token)]
        return self._parse_term(token)

    def _parse_operator(self, token: str) -> QueryNode:
        cls, params = self._operator_class(token)
        if self._next() != "(":
            raise self._error(f"{token} must be followed by '('")

        weighted = issubclass(cls, WeightedNode)
        args: list[QueryNode] = []
        weights: list[float] = []
        while self._peek() != ")":
            if self._peek() is None:
                raise self._error(f"unexpected end of query inside {token} (missing ')')")
            if weighted:
                weight = self._parse_weight(token)
                children = self._parse_node()
                args.extend(children)
                weights.extend([weight] * len(children))
            else:
                args.extend(self._parse_node())
        self._next()

        if weighted:
            params = {"weights": weights}
        elif issubclass(cls, InvertedNode):
            for arg in args:
                if not isinstance(arg, InvertedNode):
                    raise self._error(f"{token} arguments must be terms or posting operators")
        try:
            return cls(args, **params)
        except QuerySyntaxError as e:
            raise self._error(str(e)) from e

    def _parse_weight(self, operator: str) -> float:
        token = self._next()
        try:
            weight = float(token)
        except ValueError:
            raise self._error(f"{operator} expects a weight before each argument, got {token!r}") from None
        if not math.isfinite(weight) or weight < 0.0:
            raise self._error(f"{operator} weight must be a non-negative number, got {token!r}")
        return weight

    def _parse_term(self, token: str) -> list[QueryNode]:
        text, dot, field = token.rpartition(".")
        if not dot:
            text, field = token, DEFAULT_FIELD
        field = field.lower()
        if field not in FIELDS:
            raise self._error(f"unknown field in {token!r}; expected one of {', '.join(FIELDS)}")
        return [TermNode(term=stem, field=field) for stem in self.analyzer(text)]


# =============================================================================
# Cleanup
# =============================================================================


def _family(node: QueryNode) -> type[QueryNode]:
    return ScoringNode if isinstance(node, ScoringNode) else InvertedNode


def _collapsible(node: QueryNode) -> bool:
    """A single-argument operator that can be replaced by its argument."""
    if len(node.args) != 1 or isinstance(node, (ScoreNode, TermNode)):
        return False
    if isinstance(node, WeightedNode) and node.weights[0] == 0.0:
        return False
    return _family(node) is _family(node.args[0])


def prune(node: QueryNode) -> tuple[QueryNode, bool]:
    """
    One cleanup pass over ``node``'s subtree.

    Returns:
        The (possibly rebuilt) node and whether anything changed.
    """
    weights = node.weights if isinstance(node, WeightedNode) else (None,) * len(node.args)
    changed = False
    new_args: list[QueryNode] = []
    new_weights: list[float | None] = []
    for arg, weight in zip(node.args, weights):
        if not arg.args and not isinstance(arg, TermNode):
            changed = True
            continue
        if _collapsible(arg):
            arg = arg.args[0]
            changed = True
        else:
            arg, arg_changed = prune(arg)
            changed = changed or arg_changed
        new_args.append(arg)
        new_weights.append(weight)

    if not changed:
        return node, False
    if isinstance(node, WeightedNode):
        return node.replace_args(new_args, new_weights), True
    return node.replace_args(new_args), True


def prune_to_fixpoint(root: QueryNode) -> QueryNode:
    """Apply ``prune`` until the tree stops changing."""
    changed = True
    while changed:
        root, changed = prune(root)
    return root


def collapse_root(root: QueryNode) -> QueryNode:
    """Drop a root whose only argument is itself a scoring operator."""
    if len(root.args) == 1 and isinstance(root.args[0], ScoringNode) and _collapsible(root):
        return root.args[0]
    return root


def parse_query(
    text: str,
    analyzer: Callable[[str], list[str]] | None = None,
    default_operator: str | None = None,
    query_id: str | None = None,
) -> QueryNode:
    """
    Parse, wrap, collapse and prune a query string.

    Args:
        text: Structured query.
        analyzer: Term analyzer passed to ``QueryParser``.
        default_operator: Operator wrapped around ``text`` (e.g. ``"#sum"``),
            or None to parse ``text`` as is.
        query_id: Attached to any ``QuerySyntaxError``.

    Returns:
        Root of the cleaned-up query tree.
    """
    if default_operator:
        text = f"{default_operator}({text})"
    root = QueryParser(analyzer).parse(text, query_id)
    root = collapse_root(prune_to_fixpoint(collapse_root(root)))
    logger.debug("Parsed query %s: %s", query_id, root)
    return root


__all__ = [
    "DEFAULT_FIELD",
    "QueryParser",
    "collapse_root",
    "parse_query",
    "prune",
    "prune_to_fixpoint",
    "tokenize",
]
