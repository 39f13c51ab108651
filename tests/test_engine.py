import io
import threading

import pytest

from structured_retrieval.engine import QueryEvaluator, read_query_file
from structured_retrieval.errors import QueryCancelled, QuerySyntaxError
from structured_retrieval.feedback import FeedbackExpander
from structured_retrieval.models import Indri, RankedBoolean
from structured_retrieval.results import ScoreList, format_trec_lines, read_trec_ranking, write_trec_results

QUERIES = "1:fox\n2:zebra\nbad line\n3:#AND(fox\n4:#OR(fox cat)\n"


@pytest.fixture
def query_file(tmp_path):
    path = tmp_path / "queries.txt"
    path.write_text(QUERIES)
    return path


def run_lines(path):
    return [line.split("\t") for line in path.read_text().splitlines()]


# -----------------------------------------------------------------------------
# Query files
# -----------------------------------------------------------------------------


def test_read_query_file(query_file):
    queries = read_query_file(query_file)
    assert [qid for qid, _ in queries] == ["1", "2", "line 3", "3", "4"]
    assert isinstance(queries[2][1], QuerySyntaxError)
    assert queries[4][1] == "#OR(fox cat)"


class TestProcessQueryFile:
    def test_writes_run_in_query_order(self, fox_dog_index, query_file, tmp_path):
        out = tmp_path / "run.teIn"
        failures = QueryEvaluator(fox_dog_index, RankedBoolean()).process_query_file(query_file, out)

        lines = run_lines(out)
        assert [(l[0], l[2], l[3]) for l in lines] == [
            ("1", "A", "1"),
            ("2", "dummy", "1"),
            ("4", "A", "1"),
            ("4", "B", "2"),
        ]
        assert lines[1] == ["2", "Q0", "dummy", "1", "0", "run-1"]
        assert all(l[1] == "Q0" and l[5] == "run-1" for l in lines)
        assert float(lines[2][4]) == 2.0

        assert [f.query_id for f in failures] == ["line 3", "3"]
        assert str(failures[1].error).startswith("query 3: ")

    def test_run_tag_and_length(self, fox_dog_index, query_file, tmp_path):
        out = tmp_path / "run.teIn"
        QueryEvaluator(fox_dog_index, RankedBoolean()).process_query_file(
            query_file, out, max_results=1, run_tag="mine"
        )
        lines = run_lines(out)
        assert [l[0] for l in lines] == ["1", "2", "4"]
        assert {l[5] for l in lines} == {"mine"}

    def test_parallel_output_matches_sequential(self, fox_dog_index, query_file, tmp_path):
        evaluator = QueryEvaluator(fox_dog_index, RankedBoolean())
        sequential = tmp_path / "seq.teIn"
        parallel = tmp_path / "par.teIn"
        evaluator.process_query_file(query_file, sequential, num_workers=1)
        failures = evaluator.process_query_file(query_file, parallel, num_workers=4)
        assert parallel.read_text() == sequential.read_text()
        assert [f.query_id for f in failures] == ["line 3", "3"]

    def test_expansion_queries_are_written(self, fox_dog_index, tmp_path):
        queries = tmp_path / "queries.txt"
        queries.write_text("7:fox\n8:cat\n")
        expander = FeedbackExpander(fox_dog_index, fb_docs=1, fb_terms=1)
        evaluator = QueryEvaluator(fox_dog_index, Indri(), feedback=expander)
        expansions = tmp_path / "expansions.txt"

        evaluator.process_query_file(queries, tmp_path / "run.teIn", expansion_query_file=expansions)

        lines = expansions.read_text().splitlines()
        assert [line.split(":", 1)[0] for line in lines] == ["7", "8"]
        assert all(line.split(": ", 1)[1].startswith("#WAND( ") for line in lines)


def test_cancelled_query_raises(fox_dog_index):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(QueryCancelled):
        QueryEvaluator(fox_dog_index, RankedBoolean()).process_query("1", "#OR(fox dog)", cancel)


def test_cleaned_away_query_has_no_results(fox_dog_index):
    # every term is a stopword, so the root ends up without arguments
    assert len(QueryEvaluator(fox_dog_index, RankedBoolean()).process_query("1", "the of")) == 0


# -----------------------------------------------------------------------------
# Result lists and run files
# -----------------------------------------------------------------------------


class TestScoreList:
    def test_sort_breaks_ties_by_external_id(self):
        results = ScoreList()
        results.add(0, "b", 1.0)
        results.add(1, "c", 2.0)
        results.add(2, "a", 1.0)
        assert [e.external_id for e in results.sort()] == ["c", "a", "b"]

    def test_truncate(self):
        results = ScoreList()
        for i in range(5):
            results.add(i, str(i), float(i))
        assert len(results.sort().truncate(2)) == 2
        assert results[0].external_id == "4"


def test_write_trec_results_limits_length():
    results = ScoreList()
    results.add(0, "A", 3.5)
    results.add(1, "B", 1.25)
    out = io.StringIO()
    write_trec_results(out, "9", results.sort(), run_tag="t", max_results=1)
    assert out.getvalue() == "9\tQ0\tA\t1\t3.5\tt\n"


def test_empty_result_placeholder():
    assert format_trec_lines("5", ScoreList(), "t") == ["5\tQ0\tdummy\t1\t0\tt"]


def test_read_trec_ranking(tmp_path):
    path = tmp_path / "run.teIn"
    path.write_text("1 Q0 A 1 2.5 r\n1 Q0 B 2 1.5 r\nbroken\n2\tQ0\tC\t1\t0.5\tr\n")
    assert read_trec_ranking(path) == {"1": [("A", 2.5), ("B", 1.5)], "2": [("C", 0.5)]}
