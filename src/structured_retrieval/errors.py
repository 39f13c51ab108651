"""
Exception hierarchy for query evaluation.

Configuration problems are fatal for the whole run, syntax problems are fatal
for a single query, and solver problems are fatal for a single rerank step.
"""

from __future__ import annotations


class RetrievalError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(RetrievalError):
    """Unknown model, missing parameter, or unsupported operator/model combination."""


class QuerySyntaxError(RetrievalError):
    """A structured query string could not be parsed."""

    def __init__(self, message: str, query_id: str | None = None):
        super().__init__(message)
        self.query_id = query_id

    def __str__(self) -> str:
        message = super().__str__()
        if self.query_id is None:
            return message
        return f"query {self.query_id}: {message}"


class IndexAccessError(RetrievalError):
    """The index could not answer a request (unknown id, unreadable file)."""


class SolverError(RetrievalError):
    """The external ranking solver failed or produced unusable output."""

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class SolverTimeout(SolverError):
    """The external ranking solver did not finish within its time limit."""


class QueryCancelled(RetrievalError):
    """Evaluation was stopped because its cancellation event was set."""


__all__ = [
    "RetrievalError",
    "ConfigurationError",
    "QuerySyntaxError",
    "IndexAccessError",
    "SolverError",
    "SolverTimeout",
    "QueryCancelled",
]
