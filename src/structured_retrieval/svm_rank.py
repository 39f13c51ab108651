"""
Wrapper around the external SVMrank executables.

Only the input/output contract matters here:

    svm_rank_learn    -c C  train_file  model_file
    svm_rank_classify test_file  model_file  scores_file

Both run as blocking subprocesses with captured (drained) output.  A non-zero
exit is a ``SolverError``; exceeding ``timeout`` is a ``SolverTimeout``.
Failures are not retried because the model file may be partially written.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from structured_retrieval.errors import SolverError, SolverTimeout

logger = logging.getLogger(__name__)


class SVMRankSolver:
    """
    Args:
        learn_path: Path of the training executable.
        classify_path: Path of the scoring executable.
        c: Regularization parameter passed to training.
        model_path: Model file written by training and read by scoring.
        timeout: Seconds allowed per invocation, or None for no limit.
    """

    def __init__(
        self,
        learn_path: str,
        classify_path: str,
        c: float,
        model_path: str,
        timeout: float | None = None,
    ):
        self.learn_path = learn_path
        self.classify_path = classify_path
        self.c = c
        self.model_path = model_path
        self.timeout = timeout

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        logger.debug("Running solver: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise SolverTimeout(
                f"{cmd[0]} did not finish within {self.timeout}s", command=cmd
            ) from e
        except OSError as e:
            raise SolverError(f"Cannot run {cmd[0]}: {e}", command=cmd) from e

        if result.stdout:
            logger.debug("%s stdout:\n%s", cmd[0], result.stdout.rstrip())
        if result.returncode != 0:
            raise SolverError(
                f"{cmd[0]} exited with status {result.returncode}",
                command=cmd,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    def learn(self, train_file: str | Path) -> None:
        """Fit a model from a feature file and write it to ``model_path``."""
        self._run([self.learn_path, "-c", str(self.c), str(train_file), self.model_path])
        logger.info("Trained ranking model %s", self.model_path)

    def classify(self, test_file: str | Path, scores_file: str | Path) -> list[float]:
        """
        Score a feature file with the trained model.

        Returns:
            One score per line of ``test_file``, in input order.
        """
        self._run([self.classify_path, str(test_file), self.model_path, str(scores_file)])
        return read_scores(scores_file)


def read_scores(path: str | Path) -> list[float]:
    try:
        with open(path, encoding="utf-8") as f:
            lines = [line.strip() for line in f if line.strip()]
    except OSError as e:
        raise SolverError(f"Cannot read solver scores {path}: {e}") from e
    try:
        return [float(line) for line in lines]
    except ValueError as e:
        raise SolverError(f"Non-numeric solver score in {path}: {e}") from e


__all__ = ["SVMRankSolver", "read_scores"]
