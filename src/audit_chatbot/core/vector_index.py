"""
Production collaborators for the semantic fallback.

Installed with the `semantic` extra (qdrant-client, sentence-transformers).
The index is treated as a read-only snapshot; building and refreshing it
happens elsewhere.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from qdrant_client import QdrantClient
from sentence_transformers import SentenceTransformer

from audit_chatbot.config import EMBEDDING_MODEL, QDRANT_API_KEY, QDRANT_COLLECTION, QDRANT_URL

logger = logging.getLogger(__name__)

# Payload key holding the finding id on each point
ID_PAYLOAD_KEY = "finding_id"


class QdrantVectorIndex:
    def __init__(
        self,
        url: Optional[str] = None,
        collection: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[QdrantClient] = None,
    ):
        self._collection = collection or QDRANT_COLLECTION
        self._client = client or QdrantClient(
            url=url or QDRANT_URL,
            api_key=(api_key or QDRANT_API_KEY) or None,
            timeout=timeout,
        )

    def nearest_neighbors(self, vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        response = self._client.query_points(
            collection_name=self._collection,
            query=list(vector),
            limit=k,
            with_payload=True,
            with_vectors=False,
        )

        hits: List[Tuple[str, float]] = []
        for point in response.points:
            payload = point.payload or {}
            finding_id = payload.get(ID_PAYLOAD_KEY)
            if not finding_id:
                logger.warning("Point %s has no %s payload", point.id, ID_PAYLOAD_KEY)
                continue
            hits.append((str(finding_id), float(point.score)))
        return hits


class SentenceTransformerEmbedder:
    """Callable text -> normalised embedding, loading the model on first use."""

    def __init__(self, model_name: Optional[str] = None, device: str = "cpu"):
        self._model_name = model_name or EMBEDDING_MODEL
        self._device = device
        self._model: Optional[SentenceTransformer] = None

    def _get_model(self) -> SentenceTransformer:
        if self._model is None:
            logger.info("Loading embedding model %s", self._model_name)
            self._model = SentenceTransformer(self._model_name, device=self._device)
            self._model.eval()
        return self._model

    def __call__(self, text: str) -> List[float]:
        return self._get_model().encode(
            text,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        ).tolist()
