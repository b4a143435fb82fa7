"""
Vector store adapter over Qdrant.

Documents are :class:`memory.schemas.VectorDocument` records with
arbitrary string ids. Qdrant only accepts unsigned ints or UUIDs as point
ids, so each string id maps to a deterministic UUIDv5 and the original id
travels in the payload under ``_id``.

Hybrid search:
    1. over-fetch ``top_k * 3`` candidates by vector similarity;
    2. score keyword overlap: share of query tokens present in the
       candidate's ``text`` metadata;
    3. ``score = vector_weight * vector_score + keyword_weight * keyword_score``;
    4. re-rank and keep ``top_k``.
"""

from loguru import logger
import re
import uuid
from typing import Any, Dict, List, Optional, Sequence, Union

from qdrant_client import QdrantClient
from qdrant_client.http.models import (
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PointIdsList,
    PointStruct,
)

from infrastructure.config import (
    HYBRID_KEYWORD_WEIGHT,
    HYBRID_VECTOR_WEIGHT,
    QDRANT_COLLECTION_NAME,
    VECTOR_DEFAULT_TOP_K,
    VECTOR_UPSERT_BATCH_SIZE,
)
from infrastructure.db.qdrant_client import (
    collection_exists,
    collection_info,
    delete_collection,
    ensure_collection,
    get_qdrant_client,
)
from infrastructure.errors import ValidationError, VectorStoreError
from memory.schemas import Embedder, VectorDocument

ID_FIELD = "_id"
SPARSE_FIELD = "_sparse"
_TOKEN_RE = re.compile(r"\w+")


def point_id(doc_id: str) -> str:
    """Deterministic Qdrant point id for a string document id."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, str(doc_id)))


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall((text or "").lower())


def keyword_score(query: str, text: str) -> float:
    """Fraction of distinct query tokens that occur in *text* (0..1)."""
    query_tokens = set(tokenize(query))
    if not query_tokens:
        return 0.0
    doc_tokens = set(tokenize(text))
    return len(query_tokens & doc_tokens) / len(query_tokens)


def build_filter(conditions: Optional[Dict[str, Any]]) -> Optional[Filter]:
    """``{"key": value}`` → Qdrant must-match filter (lists match any)."""
    if not conditions:
        return None
    must = []
    for key, value in conditions.items():
        if isinstance(value, (list, tuple, set)):
            must.append(FieldCondition(key=key, match=MatchAny(any=list(value))))
        else:
            must.append(FieldCondition(key=key, match=MatchValue(value=value)))
    return Filter(must=must)


class VectorStore:
    """
    Qdrant-backed document vectors.

    Args:
        client: QdrantClient (default: shared singleton)
        collection: Collection name
        embedder: Object with ``embed_query`` / ``embed_documents``;
                  only needed by the text helpers
        dim: Vector size; inferred from the first upsert when omitted
    """

    def __init__(
        self,
        client: Optional[QdrantClient] = None,
        collection: str = QDRANT_COLLECTION_NAME,
        embedder: Optional[Embedder] = None,
        dim: Optional[int] = None,
    ):
        self._client = client
        self.collection = collection
        self._embedder = embedder
        self.dim = dim
        self._fixed_dim = dim is not None

    @property
    def client(self) -> QdrantClient:
        if self._client is None:
            self._client = get_qdrant_client()
        return self._client

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            from infrastructure.llm import get_default_embeddings
            self._embedder = get_default_embeddings()
        return self._embedder

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _exists(self) -> bool:
        return collection_exists(self.collection, client=self.client)

    def _ensure(self, size: int) -> None:
        if self.dim is None:
            self.dim = size
        ensure_collection(self.collection, vector_size=self.dim, client=self.client)

    @staticmethod
    def _to_result(point, include_metadata: bool, include_vectors: bool) -> Dict[str, Any]:
        payload = dict(point.payload or {})
        result: Dict[str, Any] = {
            "id": payload.pop(ID_FIELD, str(point.id)),
            "score": getattr(point, "score", None),
        }
        payload.pop(SPARSE_FIELD, None)
        if include_metadata:
            result["metadata"] = payload
        if include_vectors:
            result["vector"] = point.vector
        return result

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def upsert(self, documents: Sequence[Union[VectorDocument, Dict[str, Any]]],
               batch_size: int = VECTOR_UPSERT_BATCH_SIZE) -> int:
        """
        Validate and upsert documents in batches.

        Returns:
            Number of documents written

        Raises:
            ValidationError: If any document is malformed (nothing is written)
            VectorStoreError: On index failures
        """
        docs = [
            (d if isinstance(d, VectorDocument) else VectorDocument.from_dict(d)).validate()
            for d in documents
        ]
        if not docs:
            return 0
        sizes = {len(d.vector) for d in docs}
        if len(sizes) != 1 or (self.dim is not None and sizes != {self.dim}):
            raise ValidationError("Invalid vectors", [f"inconsistent vector sizes {sorted(sizes)}"])

        try:
            self._ensure(sizes.pop())
            for start in range(0, len(docs), batch_size):
                points = []
                for doc in docs[start: start + batch_size]:
                    payload = {**(doc.metadata or {}), ID_FIELD: doc.id}
                    if doc.sparse_vector:
                        payload[SPARSE_FIELD] = doc.sparse_vector
                    points.append(PointStruct(id=point_id(doc.id), vector=list(doc.vector), payload=payload))
                self.client.upsert(collection_name=self.collection, points=points)
            logger.debug("Upserted {} vectors into '{}'", len(docs), self.collection)
            return len(docs)
        except Exception as exc:
            logger.error("Vector upsert failed: {}", exc)
            raise VectorStoreError("Failed to upsert vectors", cause=exc)

    def query(
        self,
        vector: Sequence[float],
        top_k: int = VECTOR_DEFAULT_TOP_K,
        include_metadata: bool = True,
        include_vectors: bool = False,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Nearest documents to *vector*, best first."""
        try:
            if not self._exists():
                return []
            response = self.client.query_points(
                collection_name=self.collection,
                query=list(vector),
                query_filter=build_filter(filter),
                limit=top_k,
                with_payload=True,
                with_vectors=include_vectors,
            )
        except Exception as exc:
            logger.error("Vector query failed: {}", exc)
            raise VectorStoreError("Failed to perform vector search", cause=exc)
        return [self._to_result(p, include_metadata, include_vectors) for p in response.points]

    def fetch(self, ids: Sequence[str], include_vectors: bool = False) -> List[Dict[str, Any]]:
        """Documents by original id; missing ids are skipped."""
        if not ids:
            return []
        try:
            if not self._exists():
                return []
            points = self.client.retrieve(
                collection_name=self.collection,
                ids=[point_id(i) for i in ids],
                with_payload=True,
                with_vectors=include_vectors,
            )
        except Exception as exc:
            logger.error("Vector fetch failed: {}", exc)
            raise VectorStoreError("Failed to fetch vectors", cause=exc)
        return [self._to_result(p, True, include_vectors) for p in points]

    def delete(self, ids: Sequence[str]) -> int:
        """Delete documents by original id; returns how many were requested."""
        if not ids:
            return 0
        try:
            if not self._exists():
                return 0
            self.client.delete(
                collection_name=self.collection,
                points_selector=PointIdsList(points=[point_id(i) for i in ids]),
            )
            return len(ids)
        except Exception as exc:
            logger.error("Vector delete failed: {}", exc)
            raise VectorStoreError("Failed to delete vectors", cause=exc)

    def reset(self) -> None:
        """Drop every document; the next upsert recreates the collection at its own vector size."""
        try:
            if self._exists():
                delete_collection(self.collection, client=self.client)
            if not self._fixed_dim:
                self.dim = None
        except Exception as exc:
            logger.error("Vector reset failed: {}", exc)
            raise VectorStoreError("Failed to reset vector store", cause=exc)

    def info(self) -> Dict[str, Any]:
        """Collection stats, or ``{"name", "points_count": 0}`` when absent."""
        try:
            if not self._exists():
                return {"name": self.collection, "points_count": 0}
            return collection_info(self.collection, client=self.client)
        except Exception as exc:
            raise VectorStoreError("Failed to read vector store info", cause=exc)

    # ------------------------------------------------------------------
    # Text helpers
    # ------------------------------------------------------------------

    def upsert_texts(
        self,
        texts: Sequence[str],
        metadatas: Optional[Sequence[Dict[str, Any]]] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """
        Embed and upsert *texts*; each text lands in ``metadata["text"]``.

        Returns:
            Document ids (generated when *ids* is omitted)
        """
        if metadatas is not None and len(metadatas) != len(texts):
            raise ValidationError("Invalid texts", ["metadatas and texts differ in length"])
        if ids is not None and len(ids) != len(texts):
            raise ValidationError("Invalid texts", ["ids and texts differ in length"])
        if not texts:
            return []
        doc_ids = list(ids) if ids is not None else [str(uuid.uuid4()) for _ in texts]
        try:
            vectors = self.embedder.embed_documents(list(texts))
        except Exception as exc:
            logger.error("Embedding failed: {}", exc)
            raise VectorStoreError("Failed to generate embeddings", cause=exc)
        metas = list(metadatas) if metadatas is not None else [{} for _ in texts]
        docs = [
            VectorDocument(id=doc_id, vector=[float(x) for x in vec], metadata={**(meta or {}), "text": text})
            for doc_id, vec, meta, text in zip(doc_ids, vectors, metas, texts)
        ]
        self.upsert(docs)
        return doc_ids

    def _embed_query(self, text: str) -> List[float]:
        try:
            return self.embedder.embed_query(text)
        except Exception as exc:
            logger.error("Embedding failed: {}", exc)
            raise VectorStoreError("Failed to generate embeddings", cause=exc)

    def search_text(self, query: str, top_k: int = VECTOR_DEFAULT_TOP_K,
                    filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Embed *query* and return the nearest documents."""
        return self.query(self._embed_query(query), top_k=top_k, filter=filter)

    def hybrid_search(
        self,
        query: str,
        top_k: int = VECTOR_DEFAULT_TOP_K,
        vector_weight: float = HYBRID_VECTOR_WEIGHT,
        keyword_weight: float = HYBRID_KEYWORD_WEIGHT,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Vector search re-ranked by keyword overlap.

        Each result carries ``vector_score``, ``keyword_score`` and the
        combined ``score``.
        """
        candidates = self.query(self._embed_query(query), top_k=top_k * 3, filter=filter)
        for c in candidates:
            c["vector_score"] = c["score"] or 0.0
            c["keyword_score"] = keyword_score(query, (c.get("metadata") or {}).get("text", ""))
            c["score"] = vector_weight * c["vector_score"] + keyword_weight * c["keyword_score"]
        candidates.sort(key=lambda c: c["score"], reverse=True)
        return candidates[:top_k]


_vector_store: Optional[VectorStore] = None


def get_vector_store() -> VectorStore:
    """Shared store over the default collection."""
    global _vector_store
    if _vector_store is None:
        _vector_store = VectorStore()
    return _vector_store
