import pytest

from structured_retrieval.analysis import STOPWORDS, Analyzer


@pytest.mark.parametrize(
    "text, expected",
    [
        ("cats", ["cat"]),
        ("Running", ["run"]),
        ("happy", ["happi"]),
        ("The cat, and THE dog!", ["cat", "dog"]),
        ("near-death", ["near", "death"]),
        ("", []),
    ],
)
def test_analyzer(text, expected):
    assert Analyzer()(text) == expected


def test_without_stemming():
    assert Analyzer(stem=False)("Cats running") == ["cats", "running"]


def test_without_stopwords():
    assert Analyzer(stopwords=None, stem=False)("the cat") == ["the", "cat"]


def test_stopwords_are_lowercase():
    assert all(word == word.lower() for word in STOPWORDS)
