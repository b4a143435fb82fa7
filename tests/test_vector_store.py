"""Tests for the Qdrant-backed vector store (in-process Qdrant)."""
import pytest

from infrastructure.errors import ValidationError, VectorStoreError
from memory.schemas import VectorDocument
from services.vector_service.vector_store import VectorStore, build_filter, keyword_score, point_id


class DictEmbedder:
    """Returns hand-picked vectors so similarity is known in advance."""

    def __init__(self, vectors):
        self.vectors = vectors

    def embed_query(self, text):
        return self.vectors[text]

    def embed_documents(self, texts):
        return [self.vectors[t] for t in texts]


@pytest.fixture
def store(qdrant, embedder):
    return VectorStore(client=qdrant, collection="test_vectors", embedder=embedder)


def doc(doc_id, vector, **metadata):
    return VectorDocument(id=doc_id, vector=vector, metadata=metadata)


class TestHelpers:

    def test_point_id_is_stable_uuid(self):
        assert point_id("doc-1") == point_id("doc-1")
        assert point_id("doc-1") != point_id("doc-2")
        assert len(point_id("doc-1")) == 36

    def test_keyword_score(self):
        assert keyword_score("Red apple", "a red apple pie") == 1.0
        assert keyword_score("red banana", "red apple") == 0.5
        assert keyword_score("", "anything") == 0.0

    def test_build_filter(self):
        assert build_filter(None) is None
        flt = build_filter({"kind": "faq", "lang": ["en", "de"]})
        assert len(flt.must) == 2


class TestCore:

    def test_query_before_any_upsert(self, store):
        assert store.query([1.0, 0.0]) == []
        assert store.info() == {"name": "test_vectors", "points_count": 0}

    def test_upsert_and_query_best_first(self, store):
        written = store.upsert([
            doc("north", [0.0, 1.0], kind="a"),
            doc("east", [1.0, 0.0], kind="b"),
            {"id": "northeast", "vector": [0.7, 0.7], "metadata": {"kind": "a"}},
        ])
        assert written == 3
        results = store.query([1.0, 0.1], top_k=2)
        assert [r["id"] for r in results] == ["east", "northeast"]
        assert results[0]["metadata"] == {"kind": "b"}
        assert "vector" not in results[0]
        assert store.info()["points_count"] == 3

    def test_query_filter_and_vectors(self, store):
        store.upsert([doc("north", [0.0, 1.0], kind="a"), doc("east", [1.0, 0.0], kind="b")])
        results = store.query([1.0, 0.0], filter={"kind": "a"}, include_vectors=True, include_metadata=False)
        assert [r["id"] for r in results] == ["north"]
        assert len(results[0]["vector"]) == 2
        assert "metadata" not in results[0]

    def test_invalid_documents_write_nothing(self, store):
        with pytest.raises(ValidationError):
            store.upsert([doc("ok", [1.0, 0.0]), VectorDocument(id="", vector=[1.0, 0.0])])
        assert store.info()["points_count"] == 0

    def test_inconsistent_sizes_rejected(self, store):
        with pytest.raises(ValidationError, match="inconsistent"):
            store.upsert([doc("a", [1.0, 0.0]), doc("b", [1.0, 0.0, 0.0])])
        store.upsert([doc("a", [1.0, 0.0])])
        with pytest.raises(ValidationError):
            store.upsert([doc("c", [1.0, 0.0, 0.0])])

    def test_sparse_vector_kept_out_of_metadata(self, store):
        store.upsert([VectorDocument(id="s", vector=[1.0, 0.0], metadata={"k": 1},
                                     sparse_vector={"indices": [3], "values": [0.5]})])
        assert store.query([1.0, 0.0])[0]["metadata"] == {"k": 1}

    def test_fetch_delete_reset(self, store):
        store.upsert([doc("a", [1.0, 0.0]), doc("b", [0.0, 1.0])])
        assert [r["id"] for r in store.fetch(["a", "ghost"])] == ["a"]
        assert store.delete(["a"]) == 1
        assert store.fetch(["a"]) == []
        store.reset()
        assert store.info()["points_count"] == 0
        assert store.query([1.0, 0.0]) == []

    def test_reset_accepts_new_vector_size(self, store):
        store.upsert([doc("a", [1.0, 0.0])])
        store.reset()
        store.upsert([doc("b", [0.0, 0.0, 1.0])])
        assert store.dim == 3
        assert [r["id"] for r in store.query([0.0, 0.0, 1.0])] == ["b"]

    def test_reset_keeps_explicit_size(self, qdrant):
        store = VectorStore(client=qdrant, collection="fixed", dim=2)
        store.upsert([doc("a", [1.0, 0.0])])
        store.reset()
        with pytest.raises(ValidationError):
            store.upsert([doc("b", [0.0, 0.0, 1.0])])

    def test_client_failure_wrapped(self):
        class BrokenClient:
            def get_collections(self):
                raise ConnectionError("qdrant offline")

        with pytest.raises(VectorStoreError) as info:
            VectorStore(client=BrokenClient(), collection="x").query([1.0])
        assert isinstance(info.value.cause, ConnectionError)


class TestTextHelpers:

    def test_upsert_texts_and_search(self, store):
        ids = store.upsert_texts(
            ["refund policy for orders", "shipping times to europe"],
            metadatas=[{"kind": "faq"}, {"kind": "faq"}],
            ids=["refund", "shipping"],
        )
        assert ids == ["refund", "shipping"]
        best = store.search_text("refund policy", top_k=1)[0]
        assert best["id"] == "refund"
        assert best["metadata"] == {"kind": "faq", "text": "refund policy for orders"}

    def test_generated_ids(self, store):
        ids = store.upsert_texts(["one", "two"])
        assert len(set(ids)) == 2

    def test_length_mismatch(self, store):
        with pytest.raises(ValidationError):
            store.upsert_texts(["a", "b"], ids=["only-one"])

    def test_embedding_failure(self, qdrant, failing_embedder):
        store = VectorStore(client=qdrant, collection="x", embedder=failing_embedder)
        with pytest.raises(VectorStoreError):
            store.upsert_texts(["a"])
        with pytest.raises(VectorStoreError):
            store.search_text("a")

    def test_hybrid_rerank_by_keywords(self, qdrant):
        embedder = DictEmbedder({
            "red apple": [1.0, 0.0],
            "green banana": [1.0, 0.0],
            "red apple pie": [0.8, 0.6],
            "blue sky": [0.0, 1.0],
        })
        store = VectorStore(client=qdrant, collection="hybrid", embedder=embedder)
        store.upsert_texts(["green banana", "red apple pie", "blue sky"], ids=["A", "B", "C"])

        assert [r["id"] for r in store.search_text("red apple", top_k=2)] == ["A", "B"]

        results = store.hybrid_search("red apple", top_k=2)
        assert [r["id"] for r in results] == ["B", "A"]
        assert results[0]["keyword_score"] == 1.0
        assert results[0]["score"] == pytest.approx(0.7 * results[0]["vector_score"] + 0.3)
        assert results[1]["keyword_score"] == 0.0
