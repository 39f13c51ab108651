import pytest

from structured_retrieval.analysis import Analyzer
from structured_retrieval.index import InMemoryIndex


def build_index(bodies, analyzer=None, **extra_fields):
    """Index ``{external_id: body}`` plus optional ``field={external_id: text}`` maps."""
    documents = []
    for external_id, body in bodies.items():
        fields = {"body": body}
        for field, texts in extra_fields.items():
            if external_id in texts:
                fields[field] = texts[external_id]
        documents.append({"id": external_id, "fields": fields})
    return InMemoryIndex.from_documents(documents, analyzer or Analyzer())


@pytest.fixture
def fox_dog_index():
    # Doc A body = "fox fox dog", doc B body = "dog cat"
    return build_index({"A": "fox fox dog", "B": "dog cat"})


@pytest.fixture
def animals_index():
    return build_index(
        {
            "A": "fox cat dog",
            "B": "dog bird",
            "C": "bird owl fox",
        }
    )
