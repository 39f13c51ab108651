import math

import pytest

from conftest import build_index
from structured_retrieval.analysis import Analyzer
from structured_retrieval.engine import QueryEvaluator
from structured_retrieval.errors import ConfigurationError
from structured_retrieval.feedback import FeedbackExpander
from structured_retrieval.models import Indri

LN3 = math.log(3)
LN6 = math.log(6)


@pytest.fixture
def analyzer():
    return Analyzer(stem=False)


@pytest.fixture
def fruit_index(analyzer):
    # body lengths 3 + 2 + 1 = 6
    return build_index(
        {
            "A": "apple banana apple",
            "B": "banana cherry",
            "C": "durian",
        },
        analyzer,
    )


def test_expansion_terms(fruit_index):
    expander = FeedbackExpander(fruit_index, fb_docs=2, fb_terms=3, fb_mu=0.0)
    terms = expander.expansion_terms([("A", 0.5), ("B", 0.25)])
    assert [t for t, _ in terms] == ["apple", "banana", "cherry"]
    scores = dict(terms)
    assert scores["apple"] == pytest.approx((2 / 3) * 0.5 * LN3)
    assert scores["banana"] == pytest.approx((1 / 3) * 0.5 * LN3 + (1 / 2) * 0.25 * LN3)
    assert scores["cherry"] == pytest.approx((1 / 2) * 0.25 * LN6)


def test_smoothing_credits_documents_without_the_term(fruit_index):
    expander = FeedbackExpander(fruit_index, fb_docs=2, fb_terms=3, fb_mu=2.0)
    scores = dict(expander.expansion_terms([("A", 0.5), ("B", 0.25)]))
    p_cherry = 1 / 6
    from_a = (0 + 2.0 * p_cherry) / (3 + 2.0) * 0.5 * LN6
    from_b = (1 + 2.0 * p_cherry) / (2 + 2.0) * 0.25 * LN6
    assert scores["cherry"] == pytest.approx(from_a + from_b)


def test_expansion_query_format(fruit_index):
    expander = FeedbackExpander(fruit_index, fb_docs=2, fb_terms=2, fb_mu=0.0)
    assert expander.expansion_query([("A", 0.5), ("B", 0.25)]) == "#WAND( 0.3662 apple 0.3204 banana )"


def test_reformulate(fruit_index):
    expander = FeedbackExpander(fruit_index, orig_weight=0.75)
    assert expander.reformulate("#and(apple)", "#WAND( 1.0000 x )") == (
        "#WAND( 0.75 #and(apple) 0.25 #WAND( 1.0000 x ) )"
    )


def test_initial_ranking_file(fruit_index, tmp_path):
    run = tmp_path / "initial.teIn"
    run.write_text(
        "1 Q0 A 1 0.5 run\n"
        "1 Q0 X 2 0.4 run\n"
        "1 Q0 B 3 0.25 run\n"
        "1 Q0 C 4 0.1 run\n"
        "2 Q0 C 1 0.9 run\n"
    )
    expander = FeedbackExpander(fruit_index, fb_docs=3, fb_terms=3, fb_mu=0.0, initial_ranking_file=run)
    initial = expander.initial_ranking("1")
    assert initial == [("A", 0.5), ("X", 0.4), ("B", 0.25)]
    # the unknown document is skipped
    assert expander.expansion_terms(initial) == expander.expansion_terms([("A", 0.5), ("B", 0.25)])
    assert expander.initial_ranking("3") == []


@pytest.mark.parametrize(
    "kwargs",
    [{"fb_docs": 0}, {"fb_terms": 0}, {"fb_mu": -1.0}, {"orig_weight": 1.5}],
)
def test_invalid_parameters(fruit_index, kwargs):
    with pytest.raises(ConfigurationError):
        FeedbackExpander(fruit_index, **kwargs)


def test_original_weight_one_reproduces_ranking(fruit_index, analyzer):
    model = Indri(mu=10.0, lambda_=0.2)
    plain = QueryEvaluator(fruit_index, model, analyzer)
    expander = FeedbackExpander(fruit_index, fb_docs=2, fb_terms=3, fb_mu=0.0, orig_weight=1.0)
    expanded = QueryEvaluator(fruit_index, model, analyzer, feedback=expander)

    for query in ["apple banana", "#OR(cherry durian)", "banana"]:
        before = [(e.external_id, e.score) for e in plain.process_query("1", query)]
        after = [(e.external_id, e.score) for e in expanded.process_query("1", query)]
        assert after == before


def test_expansion_adds_documents(fruit_index, analyzer):
    model = Indri(mu=10.0, lambda_=0.2)
    expander = FeedbackExpander(fruit_index, fb_docs=1, fb_terms=2, fb_mu=0.0, orig_weight=0.5)
    evaluator = QueryEvaluator(fruit_index, model, analyzer, feedback=expander)
    # "apple" only occurs in A; its expansion brings in banana, which also matches B
    assert [e.external_id for e in evaluator.process_query("1", "apple")] == ["A", "B"]
