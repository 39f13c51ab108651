import pytest

from structured_retrieval.analysis import Analyzer
from structured_retrieval.errors import QuerySyntaxError
from structured_retrieval.inverted_operators import NearNode, TermNode
from structured_retrieval.parser import QueryParser, parse_query, prune, tokenize
from structured_retrieval.score_operators import AndNode, ScoreNode, WeightedAndNode, WeightedSumNode


@pytest.fixture
def analyzer():
    return Analyzer(stem=False)


def test_tokenize():
    assert tokenize("#AND(fox, dog.title)") == ["#AND", "(", "fox", "dog.title", ")"]


class TestParse:
    def test_terms_and_fields(self, analyzer):
        root = QueryParser(analyzer).parse("#AND(fox dog.TITLE)")
        assert isinstance(root, AndNode)
        terms = [score.args[0] for score in root.args]
        assert [(t.term, t.field) for t in terms] == [("fox", "body"), ("dog", "title")]

    def test_operators_are_case_insensitive(self, analyzer):
        assert str(QueryParser(analyzer).parse("#and(#near/2(a1 b1) c1)")) == (
            "#AND( #SCORE( #NEAR/2( a1.body b1.body ) ) #SCORE( c1.body ) )"
        )

    def test_weights_bind_to_arguments(self, analyzer):
        root = QueryParser(analyzer).parse("#WAND(0.3 fox 0.7 #AND(cat dog))")
        assert isinstance(root, WeightedAndNode)
        assert root.weights == (0.3, 0.7)
        assert isinstance(root.args[1], AndNode)

    def test_term_expansion_shares_weight(self, analyzer):
        root = QueryParser(analyzer).parse("#WSUM(0.4 near-death 0.6 fox)")
        assert isinstance(root, WeightedSumNode)
        assert root.weights == (0.4, 0.4, 0.6)
        assert [s.args[0].term for s in root.args] == ["near", "death", "fox"]

    def test_terms_are_analyzed(self):
        root = QueryParser(Analyzer()).parse("#OR(Running the cats)")
        assert [s.args[0].term for s in root.args] == ["run", "cat"]

    @pytest.mark.parametrize(
        "query",
        [
            "#WAND(fox 0.7 cat)",
            "#WAND(0.3 fox cat)",
            "#WAND(-1 fox)",
            "#AND(fox cat",
            "#AND(fox))",
            "#AND fox",
            "#AND((fox))",
            "#FOO(fox)",
            "#NEAR(fox cat)",
            "#NEAR/x(fox cat)",
            "#NEAR/0(fox cat)",
            "#AND(fox.author)",
            "#SYN(fox.title fox.body)",
            "#NEAR/1(#AND(fox) cat)",
            "fox",
            "",
        ],
    )
    def test_syntax_errors(self, analyzer, query):
        with pytest.raises(QuerySyntaxError):
            QueryParser(analyzer).parse(query)

    def test_error_names_query(self, analyzer):
        with pytest.raises(QuerySyntaxError) as info:
            parse_query("#AND(fox", analyzer, query_id="7")
        assert info.value.query_id == "7"
        assert str(info.value).startswith("query 7: ")


class TestCleanup:
    def test_root_with_single_scoring_child_collapses(self, analyzer):
        root = parse_query("#AND(fox dog)", analyzer, default_operator="#and")
        assert str(root) == "#AND( #SCORE( fox.body ) #SCORE( dog.body ) )"

    def test_operator_without_arguments_is_removed(self, analyzer):
        root = parse_query("#AND(#NEAR/1(of the) fox)", Analyzer())
        assert isinstance(root, ScoreNode)
        assert str(root) == "#SCORE( fox.body )"

    def test_single_argument_collapses_within_family(self, analyzer):
        root = parse_query("#AND(#SYN(fox) #OR(cat) dog)", analyzer)
        assert [type(a.args[0]) if isinstance(a, ScoreNode) else type(a) for a in root.args] == [
            TermNode,
            TermNode,
            TermNode,
        ]

    def test_weights_stay_in_step(self, analyzer):
        root = parse_query("#WAND(0.2 #NEAR/1(of the) 0.3 cat 0.5 fox)", Analyzer())
        assert root.weights == (0.3, 0.5)
        assert [str(a) for a in root.args] == ["#SCORE( cat.body )", "#SCORE( fox.body )"]

    def test_near_keeps_two_arguments(self, analyzer):
        root = parse_query("#NEAR/3(the fox dog)", Analyzer(), default_operator="#and")
        assert isinstance(root, ScoreNode)
        assert isinstance(root.args[0], NearNode)
        assert len(root.args[0].args) == 2

    @pytest.mark.parametrize(
        "query",
        [
            "#AND(#NEAR/1(of the) fox)",
            "#WAND(0.2 #NEAR/1(of the) 0.3 cat 0.5 #OR(#SYN(fox)))",
            "#SUM(#SUM(a1) #SUM(#SUM(b1 c1)))",
            "#OR(#AND(#AND(the)) fox)",
        ],
    )
    def test_cleanup_is_idempotent(self, query):
        root = parse_query(query, Analyzer())
        again, changed = prune(root)
        assert not changed
        assert again is root
