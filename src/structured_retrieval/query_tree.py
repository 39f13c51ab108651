"""
Document-at-a-time iteration protocol shared by every query node.

Every node exposes a forward-only cursor:

    has_match(context)   is there a current document for the consumer?
    get_match()          id of that document (valid after has_match is True)
    advance_past(docid)  move to the first result with id > docid
    advance_to(docid)    move to the first result with id >= docid

Posting-producing nodes (``InvertedNode``) materialize an inverted list during
``initialize`` and walk it.  Scoring nodes (``ScoringNode``) drive their
arguments and turn the current document into a number.

Per-query mutable state lives in ``EvaluationContext``, never on the model
or on shared objects, so trees of different queries can run concurrently.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from structured_retrieval.errors import QuerySyntaxError

if TYPE_CHECKING:
    from structured_retrieval.index import IndexReader
    from structured_retrieval.inverted_list import InvertedList, Posting
    from structured_retrieval.models import RetrievalModel

# Arena-style ids: stable small integers, one per constructed node.
_node_ids = itertools.count()


@dataclass
class EvaluationContext:
    """
    State owned by a single query evaluation.

    Attributes:
        model: Active ranking model.
        index: Index the tree reads postings and statistics from.
        query_frequencies: Repeat count of coalesced leaf scoring nodes, by node id.
        cancel_event: Optional event checked between documents.
    """

    model: RetrievalModel
    index: IndexReader
    query_frequencies: dict[int, int] = field(default_factory=dict)
    cancel_event: threading.Event | None = None

    def query_frequency(self, node: QueryNode) -> int:
        return self.query_frequencies.get(node.node_id, 1)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


# =============================================================================
# Base node
# =============================================================================


class QueryNode:
    """Common cursor behavior for all query operators."""

    display_name = "#NODE"

    def __init__(self, args=()):
        self.node_id = next(_node_ids)
        self.args: tuple[QueryNode, ...] = tuple(args)
        self._match: int | None = None

    # -- protocol ---------------------------------------------------------------

    def initialize(self, context: EvaluationContext) -> None:
        for arg in self.args:
            arg.initialize(context)

    def has_match(self, context: EvaluationContext) -> bool:
        raise NotImplementedError

    def get_match(self) -> int | None:
        return self._match

    def advance_past(self, docid: int) -> None:
        for arg in self.args:
            arg.advance_past(docid)
        self._match = None

    def advance_to(self, docid: int) -> None:
        for arg in self.args:
            arg.advance_to(docid)
        self._match = None

    # -- match policies ---------------------------------------------------------

    def _match_all(self, context: EvaluationContext, args=None) -> int | None:
        """
        Docid every argument currently points at, or None if any is exhausted.

        Leapfrogs: the first argument proposes a docid, the others are moved
        to it, and a larger docid sends the first argument forward.
        """
        args = self.args if args is None else args
        if not args:
            return None
        first = args[0]
        while True:
            if not first.has_match(context):
                return None
            docid = first.get_match()
            agreed = True
            for arg in args[1:]:
                arg.advance_to(docid)
                if not arg.has_match(context):
                    return None
                other = arg.get_match()
                if other != docid:
                    first.advance_to(other)
                    agreed = False
                    break
            if agreed:
                return docid

    def _match_min(self, context: EvaluationContext, args=None) -> int | None:
        """Smallest docid over arguments that still have a match."""
        args = self.args if args is None else args
        min_docid = None
        for arg in args:
            if arg.has_match(context):
                docid = arg.get_match()
                if min_docid is None or docid < min_docid:
                    min_docid = docid
        return min_docid

    # -- structure --------------------------------------------------------------

    def _params(self) -> dict:
        """Constructor keywords other than ``args``."""
        return {}

    def replace_args(self, args) -> QueryNode:
        """A new node of the same type and parameters with different arguments."""
        return type(self)(args, **self._params())

    def signature(self) -> tuple:
        """Structural identity: equal signatures mean equal subtrees."""
        return (self.display_name.lower(), tuple(a.signature() for a in self.args))

    def __str__(self) -> str:
        inner = " ".join(str(a) for a in self.args)
        return f"{self.display_name}( {inner} )"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self}>"


# =============================================================================
# Posting-producing nodes
# =============================================================================


class InvertedNode(QueryNode):
    """
    A node that evaluates to an inverted list.

    ``evaluate`` builds ``self.inverted_list`` once during ``initialize``;
    iteration afterwards is a cursor over that list.
    """

    def __init__(self, args=()):
        super().__init__(args)
        fields = {a.field for a in self.args if isinstance(a, InvertedNode)}
        if len(fields) > 1:
            raise QuerySyntaxError(
                f"{self.display_name} arguments must share one field, got {sorted(fields)}"
            )
        self.inverted_list: InvertedList | None = None
        self._cursor = 0

    @property
    def field(self) -> str | None:
        return self.args[0].field if self.args else None

    def initialize(self, context: EvaluationContext) -> None:
        super().initialize(context)
        self.inverted_list = self.evaluate(context)
        self._cursor = 0

    def evaluate(self, context: EvaluationContext) -> InvertedList:
        raise NotImplementedError

    def has_match(self, context: EvaluationContext | None = None) -> bool:
        if self.inverted_list is None or self._cursor >= len(self.inverted_list):
            self._match = None
            return False
        self._match = self.inverted_list[self._cursor].docid
        return True

    def get_match(self) -> int | None:
        if self.inverted_list is None or self._cursor >= len(self.inverted_list):
            return None
        return self.inverted_list[self._cursor].docid

    def get_match_posting(self) -> Posting:
        return self.inverted_list[self._cursor]

    def advance_past(self, docid: int) -> None:
        postings = self.inverted_list
        while self._cursor < len(postings) and postings[self._cursor].docid <= docid:
            self._cursor += 1

    def advance_to(self, docid: int) -> None:
        postings = self.inverted_list
        while self._cursor < len(postings) and postings[self._cursor].docid < docid:
            self._cursor += 1


__all__ = ["EvaluationContext", "QueryNode", "InvertedNode"]
