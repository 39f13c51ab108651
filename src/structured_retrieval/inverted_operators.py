"""
Posting-producing operators: #TERM, #SYN, #NEAR/n, #WINDOW/n.

Each operator is fully evaluated during ``initialize`` into an inverted list;
afterwards it behaves like any other posting cursor.  #NEAR and #WINDOW only
emit documents that contain at least one valid match.
"""

from __future__ import annotations

from structured_retrieval.errors import QuerySyntaxError
from structured_retrieval.inverted_list import InvertedList
from structured_retrieval.query_tree import EvaluationContext, InvertedNode


class TermNode(InvertedNode):
    """The posting list of one stem in one field, read verbatim from the index."""

    display_name = "#TERM"

    def __init__(self, args=(), term: str = "", field: str = "body"):
        if args:
            raise QuerySyntaxError("#TERM takes no arguments")
        super().__init__()
        self.term = term
        self._field = field

    @property
    def field(self) -> str:
        return self._field

    def _params(self) -> dict:
        return {"term": self.term, "field": self._field}

    def evaluate(self, context: EvaluationContext) -> InvertedList:
        return context.index.postings(self.term, self._field)

    def signature(self) -> tuple:
        return ("#term", self.term, self._field)

    def __str__(self) -> str:
        return f"{self.term}.{self._field}"


class SynonymNode(InvertedNode):
    """Union of argument postings; positions of a shared document are merged."""

    display_name = "#SYN"

    def evaluate(self, context: EvaluationContext) -> InvertedList:
        result = InvertedList(self.field)
        while True:
            docid = self._match_min(context)
            if docid is None:
                return result
            positions: set[int] = set()
            for arg in self.args:
                if arg.has_match(context) and arg.get_match() == docid:
                    positions.update(arg.get_match_posting().positions)
                    arg.advance_past(docid)
            result.append_posting(docid, sorted(positions))


class _ProximityNode(InvertedNode):
    """Shared document alignment for #NEAR and #WINDOW."""

    def __init__(self, args=(), distance: int = 1):
        if distance < 1:
            raise QuerySyntaxError(f"{self.display_name} distance must be >= 1, got {distance}")
        super().__init__(args)
        self.distance = distance

    def _params(self) -> dict:
        return {"distance": self.distance}

    def match_positions(self, position_lists: list[tuple[int, ...]]) -> list[int]:
        raise NotImplementedError

    def evaluate(self, context: EvaluationContext) -> InvertedList:
        result = InvertedList(self.field)
        while True:
            docid = self._match_all(context)
            if docid is None:
                return result
            position_lists = []
            for arg in self.args:
                position_lists.append(arg.get_match_posting().positions)
                arg.advance_past(docid)
            positions = sorted(self.match_positions(position_lists))
            if positions:
                result.append_posting(docid, positions)

    def signature(self) -> tuple:
        return (self.display_name.lower(), self.distance, tuple(a.signature() for a in self.args))

    def __str__(self) -> str:
        inner = " ".join(str(a) for a in self.args)
        return f"{self.display_name}/{self.distance}( {inner} )"


class NearNode(_ProximityNode):
    """
    Ordered proximity: arguments appear in order, each within ``distance``
    positions after the previous one.

    Each match consumes the positions it used and records the position of
    the last argument.
    """

    display_name = "#NEAR"

    def match_positions(self, position_lists: list[tuple[int, ...]]) -> list[int]:
        cursors = [0] * len(position_lists)
        matches: list[int] = []
        while True:
            steps = [0] * len(position_lists)
            prev = -1
            for i, positions in enumerate(position_lists):
                if cursors[i] >= len(positions):
                    return matches
                position = positions[cursors[i]]
                cursors[i] += 1
                steps[i] = 1
                if i == 0:
                    prev = position
                    continue
                while position <= prev and cursors[i] < len(positions):
                    position = positions[cursors[i]]
                    cursors[i] += 1
                    steps[i] += 1
                if prev < position <= prev + self.distance:
                    prev = position
                else:
                    # Undo this attempt for every argument after the anchor.
                    for k in range(1, i + 1):
                        cursors[k] -= steps[k]
                    break
            else:
                matches.append(prev)


class WindowNode(_ProximityNode):
    """
    Unordered window: one position per argument, in any order, spanning at
    most ``distance`` positions (max - min + 1).

    Each match records the window's largest position.
    """

    display_name = "#WINDOW"

    def match_positions(self, position_lists: list[tuple[int, ...]]) -> list[int]:
        cursors = [0] * len(position_lists)
        matches: list[int] = []
        window: list[int] = []
        while True:
            if not window:
                for i, positions in enumerate(position_lists):
                    if cursors[i] >= len(positions):
                        return matches
                    window.append(positions[cursors[i]])
                    cursors[i] += 1
            else:
                i = window.index(min(window))
                if cursors[i] >= len(position_lists[i]):
                    return matches
                window[i] = position_lists[i][cursors[i]]
                cursors[i] += 1

            high = max(window)
            if high - min(window) + 1 <= self.distance:
                matches.append(high)
                window = []


__all__ = ["TermNode", "SynonymNode", "NearNode", "WindowNode"]
