import json
import sys

import pytest

from structured_retrieval import cli

DOCUMENTS = [
    {"id": "A", "fields": {"body": "fox fox dog", "title": "fox"}, "attributes": {"score": "10"}},
    {"id": "B", "fields": {"body": "dog cat"}, "attributes": {"score": "90"}},
    {"id": "C", "fields": {"body": "bird"}},
]


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "index.jsonl").write_text("\n".join(json.dumps(d) for d in DOCUMENTS) + "\n")
    (tmp_path / "queries.txt").write_text("1:fox\n2:dog cat\n")
    return tmp_path


def write_params(workspace, *lines):
    path = workspace / "run.param"
    base = [
        f"indexPath={workspace / 'index.jsonl'}",
        f"queryFilePath={workspace / 'queries.txt'}",
        f"trecEvalOutputPath={workspace / 'run.teIn'}",
    ]
    path.write_text("\n".join(base + list(lines)) + "\n")
    return str(path)


def ranked_ids(workspace):
    run = {}
    for line in (workspace / "run.teIn").read_text().splitlines():
        qid, _, docid, *_ = line.split("\t")
        run.setdefault(qid, []).append(docid)
    return run


def test_bm25_run(workspace):
    params = write_params(
        workspace, "retrievalAlgorithm=BM25", "BM25:k_1=1.2", "BM25:b=0.75", "BM25:k_3=0"
    )
    assert cli.run(params) == 0
    run = ranked_ids(workspace)
    assert run["1"] == ["A"]
    # "cat" is rarer than "dog", so B outranks A
    assert run["2"] == ["B", "A"]


def test_indri_feedback_run(workspace):
    params = write_params(
        workspace,
        "retrievalAlgorithm=Indri",
        "Indri:mu=10",
        "Indri:lambda=0.2",
        "fb=true",
        "fbDocs=1",
        "fbTerms=2",
        "fbMu=0",
        "fbOrigWeight=0.5",
        f"fbExpansionQueryFile={workspace / 'expansions.txt'}",
        "runTag=indri-fb",
    )
    assert cli.run(params) == 0
    assert {line.split("\t")[5] for line in (workspace / "run.teIn").read_text().splitlines()} == {"indri-fb"}
    assert [line.split(":")[0] for line in (workspace / "expansions.txt").read_text().splitlines()] == ["1", "2"]


def test_failed_query_sets_status(workspace):
    (workspace / "queries.txt").write_text("1:fox\n2:#AND(dog\n")
    params = write_params(workspace, "retrievalAlgorithm=RankedBoolean")
    assert cli.run(params) == 1
    assert list(ranked_ids(workspace)) == ["1"]


@pytest.mark.skipif(sys.platform == "win32", reason="fake solver uses /bin/sh")
def test_letor_run(workspace):
    learn = workspace / "learn.sh"
    learn.write_text('#!/bin/sh\necho trained > "$4"\n')
    classify = workspace / "classify.sh"
    classify.write_text("#!/bin/sh\nawk '{print NR}' \"$1\" > \"$3\"\n")
    for script in (learn, classify):
        script.chmod(0o755)
    (workspace / "train-queries.txt").write_text("9:dog\n")
    (workspace / "train.qrels").write_text("9 0 A 1\n9 0 B 0\n")

    params = write_params(
        workspace,
        "retrievalAlgorithm=letor",
        "BM25:k_1=1.2",
        "BM25:b=0.75",
        "BM25:k_3=0",
        "Indri:mu=2500",
        "Indri:lambda=0.4",
        f"letor:trainingQueryFile={workspace / 'train-queries.txt'}",
        f"letor:trainingQrelsFile={workspace / 'train.qrels'}",
        f"letor:trainingFeatureVectorsFile={workspace / 'train-features.txt'}",
        f"letor:testingFeatureVectorsFile={workspace / 'test-features.txt'}",
        f"letor:testingDocumentScores={workspace / 'test-scores.txt'}",
        f"letor:svmRankLearnPath={learn}",
        f"letor:svmRankClassifyPath={classify}",
        "letor:svmRankParamC=0.001",
        f"letor:svmRankModelFile={workspace / 'model.dat'}",
    )
    assert cli.run(params) == 0
    assert (workspace / "model.dat").read_text().strip() == "trained"
    assert len((workspace / "train-features.txt").read_text().splitlines()) == 2
    # the fake solver scores candidates by their BM25 rank, reversing the order
    assert ranked_ids(workspace)["2"] == ["A", "B"]


class TestMain:
    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        calls = []
        monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: calls.append((args, kwargs)))
        return calls

    def test_success(self, workspace, quiet_logging):
        params = write_params(workspace, "retrievalAlgorithm=UnrankedBoolean")
        assert cli.main([params, "-v"]) == 0
        assert quiet_logging[0][1]["console_level"] == 10

    def test_configuration_error(self, workspace):
        params = write_params(workspace, "retrievalAlgorithm=tfidf")
        assert cli.main([params]) == 2

    def test_missing_parameter_file(self, tmp_path):
        assert cli.main([str(tmp_path / "missing.param")]) == 2
