"""
Lexical analysis shared by indexing and query parsing.

The evaluator treats this as a black box: it hands over a raw query token and
gets back zero or more stems.  The same analyzer must be used to build the
index, otherwise query stems will not line up with indexed stems.
"""

from __future__ import annotations

import re

from nltk.stem.porter import PorterStemmer

# Lucene English stopwords
STOPWORDS: frozenset[str] = frozenset(
    [
        "a",
        "an",
        "and",
        "are",
        "as",
        "at",
        "be",
        "but",
        "by",
        "for",
        "if",
        "in",
        "into",
        "is",
        "it",
        "no",
        "not",
        "of",
        "on",
        "or",
        "such",
        "that",
        "the",
        "their",
        "then",
        "there",
        "these",
        "they",
        "this",
        "to",
        "was",
        "will",
        "with",
    ]
)

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


class Analyzer:
    """
    Lowercase, split on non-alphanumerics, drop stopwords, Porter-stem.

    Args:
        stopwords: Words removed before stemming. ``None`` disables stopping.
        stem: Whether to apply the Porter stemmer.
    """

    def __init__(self, stopwords: frozenset[str] | None = STOPWORDS, stem: bool = True):
        self.stopwords = stopwords or frozenset()
        self._stemmer = PorterStemmer() if stem else None

    def __call__(self, text: str) -> list[str]:
        tokens = _TOKEN_PATTERN.findall(text.lower())
        tokens = [t for t in tokens if t not in self.stopwords]
        if self._stemmer is None:
            return tokens
        return [self._stemmer.stem(t) for t in tokens]


__all__ = ["Analyzer", "STOPWORDS"]
