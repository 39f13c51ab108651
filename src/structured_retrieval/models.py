"""
Ranking models.

A model is an immutable parameter bundle plus the name of the operator used
to wrap bare query strings.  Scoring operators resolve their behavior from
``model.kind`` once, when the query tree is initialized.

Formulas:
    BM25 (per term):
        RSJ(t)    = log((N - df + 0.5) / (df + 0.5))
        tf weight = tf / (tf + k1 * (1 - b + b * doclen / avgdoclen))
        user wt   = (k3 + 1) * qtf / (k3 + qtf)

    Indri (per term, Dirichlet prior + background interpolation):
        P(t|C) = ctf / |C|
        P(t|d) = (1 - λ) * (tf + μ * P(t|C)) / (|d| + μ) + λ * P(t|C)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

from structured_retrieval.errors import ConfigurationError

if TYPE_CHECKING:
    from structured_retrieval.svm_rank import SVMRankSolver


class ModelKind(str, Enum):
    UNRANKED_BOOLEAN = "unrankedboolean"
    RANKED_BOOLEAN = "rankedboolean"
    BM25 = "bm25"
    INDRI = "indri"
    LETOR = "letor"


BOOLEAN_KINDS = frozenset({ModelKind.UNRANKED_BOOLEAN, ModelKind.RANKED_BOOLEAN})


@dataclass(frozen=True)
class RetrievalModel:
    kind: ClassVar[ModelKind]
    default_operator: ClassVar[str]

    @property
    def name(self) -> str:
        return self.kind.value


@dataclass(frozen=True)
class UnrankedBoolean(RetrievalModel):
    kind: ClassVar[ModelKind] = ModelKind.UNRANKED_BOOLEAN
    default_operator: ClassVar[str] = "#and"


@dataclass(frozen=True)
class RankedBoolean(RetrievalModel):
    kind: ClassVar[ModelKind] = ModelKind.RANKED_BOOLEAN
    default_operator: ClassVar[str] = "#and"


# -----------------------------------------------------------------------------
# BM25
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class BM25(RetrievalModel):
    """
    Okapi BM25 with a query-term-frequency (user) weight.

    Args:
        k1: Term frequency saturation.
        b: Length normalization.
        k3: Query term frequency saturation.
    """

    kind: ClassVar[ModelKind] = ModelKind.BM25
    default_operator: ClassVar[str] = "#sum"

    k1: float = 1.2
    b: float = 0.75
    k3: float = 0.0

    def __post_init__(self) -> None:
        if self.k1 < 0.0:
            raise ConfigurationError(f"BM25:k_1 must be >= 0, got {self.k1}")
        if not 0.0 <= self.b <= 1.0:
            raise ConfigurationError(f"BM25:b must be in [0, 1], got {self.b}")
        if self.k3 < 0.0:
            raise ConfigurationError(f"BM25:k_3 must be >= 0, got {self.k3}")

    @staticmethod
    def rsj_weight(n_docs: float, df: float) -> float:
        return math.log((n_docs - df + 0.5) / (df + 0.5))

    def tf_weight(self, tf: float, doclen: float, avg_doclen: float) -> float:
        norm = 1.0 - self.b + self.b * doclen / avg_doclen if avg_doclen > 0 else 1.0
        return tf / (tf + self.k1 * norm)

    def user_weight(self, qtf: float) -> float:
        return (self.k3 + 1.0) * qtf / (self.k3 + qtf)

    def term_score(
        self,
        tf: float,
        df: float,
        n_docs: float,
        doclen: float,
        avg_doclen: float,
        qtf: float = 1.0,
    ) -> float:
        """RSJ x tf weight x user weight for one term in one document."""
        return (
            self.rsj_weight(n_docs, df)
            * self.tf_weight(tf, doclen, avg_doclen)
            * self.user_weight(qtf)
        )


# -----------------------------------------------------------------------------
# Indri
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Indri(RetrievalModel):
    """
    Indri query likelihood.

    Args:
        mu: Dirichlet prior.
        lambda_: Weight of the collection background model.
    """

    kind: ClassVar[ModelKind] = ModelKind.INDRI
    default_operator: ClassVar[str] = "#and"

    mu: float = 2500.0
    lambda_: float = 0.4

    def __post_init__(self) -> None:
        if self.mu < 0.0:
            raise ConfigurationError(f"Indri:mu must be >= 0, got {self.mu}")
        if not 0.0 <= self.lambda_ <= 1.0:
            raise ConfigurationError(f"Indri:lambda must be in [0, 1], got {self.lambda_}")

    def term_probability(self, tf: float, ctf: float, corpus_length: float, doclen: float) -> float:
        """Smoothed P(t|d).  ``tf=0`` gives the default score."""
        p_collection = ctf / corpus_length if corpus_length > 0 else 0.0
        denominator = doclen + self.mu
        p_document = (tf + self.mu * p_collection) / denominator if denominator > 0 else 0.0
        return (1.0 - self.lambda_) * p_document + self.lambda_ * p_collection


# -----------------------------------------------------------------------------
# Letor
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Letor(RetrievalModel):
    """
    Learning-to-rank meta model.

    The initial ranking comes from ``bm25``; ``bm25`` and ``indri`` also
    parameterize the per-field content features.  ``solver`` trains and
    applies the learned reranker.

    Args:
        bm25: Embedded BM25 model.
        indri: Embedded Indri model.
        solver: External ranking solver.
        disabled_features: 1-based feature indices forced to the missing value.
        page_rank_file: ``externalId<TAB>score`` file, or None.
    """

    kind: ClassVar[ModelKind] = ModelKind.LETOR
    default_operator: ClassVar[str] = "#and"

    bm25: BM25
    indri: Indri
    solver: SVMRankSolver | None = None
    disabled_features: frozenset[int] = field(default_factory=frozenset)
    page_rank_file: str | None = None


__all__ = [
    "ModelKind",
    "BOOLEAN_KINDS",
    "RetrievalModel",
    "UnrankedBoolean",
    "RankedBoolean",
    "BM25",
    "Indri",
    "Letor",
]
