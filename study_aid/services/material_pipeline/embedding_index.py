"""
Vector index for material chunk embeddings (Qdrant).
"""

from __future__ import annotations

import os
import uuid
from typing import Any, Dict, List, Optional, Sequence

from services.material_pipeline.errors import StoreError
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_COLLECTION = "material_chunks_v1"


class EmbeddingIndex:
    def __init__(
        self,
        qdrant_url: Optional[str] = None,
        qdrant_api_key: Optional[str] = None,
        collection_name: Optional[str] = None,
        qdrant_timeout_seconds: float = 10.0,
    ) -> None:
        env_collection = os.getenv("QDRANT_COLLECTION", DEFAULT_COLLECTION).strip() or DEFAULT_COLLECTION
        self.qdrant_url = (qdrant_url if qdrant_url is not None else os.getenv("QDRANT_URL", "")).strip()
        api_key = qdrant_api_key if qdrant_api_key is not None else os.getenv("QDRANT_API_KEY", "")
        self.qdrant_api_key = str(api_key or "").strip() or None
        self.collection_name = (collection_name or env_collection).strip()
        self.qdrant_timeout_seconds = max(1.0, float(qdrant_timeout_seconds))

    def is_configured(self) -> bool:
        return bool(self.qdrant_url)

    def index(
        self,
        material_id: str,
        chunks: Sequence[str],
        vectors: Sequence[Sequence[float]],
        owner_id: Optional[str] = None,
    ) -> bool:
        """Upsert one point per chunk. Returns False when indexing is skipped."""
        if not vectors:
            return False
        if not self.is_configured():
            logger.warning("Qdrant is not configured (QDRANT_URL missing); skipping vector index")
            return False
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must have the same length")

        client, models = self._get_qdrant_client()
        if client is None or models is None:
            raise StoreError("Qdrant client is unavailable")
        self._ensure_collection(client, models, vector_size=len(vectors[0]))

        points = []
        for chunk_index, (chunk, vector) in enumerate(zip(chunks, vectors)):
            payload: Dict[str, Any] = {
                "material_id": str(material_id),
                "chunk_index": chunk_index,
                "text": chunk,
            }
            if owner_id is not None:
                payload["owner_id"] = str(owner_id)
            points.append(
                models.PointStruct(
                    id=point_id(material_id, chunk_index),
                    vector=list(vector),
                    payload=payload,
                )
            )
        try:
            client.upsert(collection_name=self.collection_name, points=points, wait=True)
        except Exception as exc:
            raise StoreError("Qdrant upsert failed") from exc
        logger.info("Indexed material_id=%s chunks=%s", material_id, len(points))
        return True

    def search_chunks(self, material_id: str, query_vector: Sequence[float], limit: int = 8) -> List[Dict[str, Any]]:
        if not self.is_configured() or not query_vector:
            return []
        client, models = self._get_qdrant_client()
        if client is None or models is None:
            raise StoreError("Qdrant client is unavailable")
        query_filter = models.Filter(
            must=[
                models.FieldCondition(
                    key="material_id",
                    match=models.MatchValue(value=str(material_id)),
                )
            ]
        )
        try:
            response = client.query_points(
                collection_name=self.collection_name,
                query=list(query_vector),
                limit=max(1, int(limit)),
                query_filter=query_filter,
            )
        except Exception as exc:
            logger.warning("Qdrant search failed: %s", exc)
            raise StoreError("Qdrant search failed") from exc
        hits = getattr(response, "points", []) or []
        return [
            {"score": float(getattr(hit, "score", 0.0) or 0.0), "payload": dict(getattr(hit, "payload", {}) or {})}
            for hit in hits
        ]

    def _get_qdrant_client(self):
        try:
            from qdrant_client import QdrantClient, models
        except Exception:
            return None, None
        try:
            client = QdrantClient(
                url=self.qdrant_url,
                api_key=self.qdrant_api_key,
                timeout=self.qdrant_timeout_seconds,
            )
            return client, models
        except Exception as exc:
            logger.warning("Qdrant client init failed: %s", exc)
            return None, None

    def _ensure_collection(self, client, models, vector_size: int) -> None:
        try:
            if client.collection_exists(self.collection_name):
                return
            client.create_collection(
                collection_name=self.collection_name,
                vectors_config=models.VectorParams(size=vector_size, distance=models.Distance.COSINE),
            )
        except Exception as exc:
            raise StoreError(f"Qdrant collection setup failed: {exc}") from exc


def point_id(material_id: str, chunk_index: int) -> str:
    # Stable ids make a job retry overwrite the points of the previous attempt.
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"material:{material_id}:chunk:{chunk_index}"))
