"""Embedding client for chunk and query vectors.

The same watsonx.ai model embeds chunk content at ingestion time and the
student response at retrieval time; vectors from different models are never
compared.
"""

import logging
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Protocol

from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import Embeddings as WXEmbeddings

from feedback_engine.config import Settings
from feedback_engine.errors import EmbeddingProviderError, EmbeddingTimeout
from feedback_engine.rag.timeouts import call_with_timeout

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Anything that turns text into vectors of one fixed dimensionality."""

    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...

    def embed_query(self, text: str) -> list[float]: ...


def _vector_from_item(item: Any) -> list[float] | None:
    if isinstance(item, dict):
        for key in ("embedding", "vector", "values"):
            if key in item:
                return item[key]
        return None
    if isinstance(item, list):
        return item
    return None


def parse_embeddings(data: Any) -> list[list[float]]:
    """Normalize the shapes watsonx.ai returns for a batch of embeddings.

    Supported shapes:
    1) {"results": [{"embedding"|"vector"|"values": [...]}, ...]}
    2) {"embeddings": [[...], ...]}
    3) direct list of vectors

    Raises:
        EmbeddingProviderError: Unknown shape or a non-numeric vector.
    """
    vectors: list[list[float]] | None = None
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        parsed = [_vector_from_item(item) for item in data["results"]]
        if all(v is not None for v in parsed):
            vectors = parsed  # type: ignore[assignment]
    elif isinstance(data, dict) and isinstance(data.get("embeddings"), list):
        vectors = data["embeddings"]
    elif isinstance(data, list) and all(isinstance(v, list) for v in data):
        vectors = data

    if vectors is None:
        raise EmbeddingProviderError(
            "Unexpected embeddings response format from watsonx.ai",
            detail=f"type={type(data).__name__} keys="
            f"{list(data.keys()) if isinstance(data, dict) else 'n/a'}",
        )
    try:
        return [[float(x) for x in vec] for vec in vectors]
    except (TypeError, ValueError) as e:
        raise EmbeddingProviderError(f"Non-numeric embedding values: {e}") from e


def check_vectors(vectors: list[list[float]], expected_count: int) -> int:
    """Validate count and dimensionality of a batch; return the dimension.

    Raises:
        EmbeddingProviderError: Wrong count, empty vectors, or ragged lengths.
    """
    if len(vectors) != expected_count:
        raise EmbeddingProviderError(
            f"Embedding count ({len(vectors)}) doesn't match input count ({expected_count})"
        )
    if not vectors:
        return 0
    dim = len(vectors[0])
    if dim == 0:
        raise EmbeddingProviderError("Embedding provider returned an empty vector")
    for vec in vectors:
        if len(vec) != dim:
            raise EmbeddingProviderError(
                f"Embedding provider returned mixed dimensions ({dim} and {len(vec)})"
            )
    return dim


class EmbeddingClient:
    """watsonx.ai embedding client with batching and a per-call timeout."""

    def __init__(self, settings: Settings, client: Any = None):
        self.settings = settings
        if client is None:
            credentials = Credentials(
                api_key=settings.ibm_cloud_api_key,
                url=f"https://{settings.watsonx_region}.ml.cloud.ibm.com",
            )
            client = WXEmbeddings(
                model_id=settings.watsonx_embed_model,
                project_id=settings.watsonx_project_id,
                credentials=credentials,
            )
        self.client = client

    def _call(self, texts: list[str]) -> list[list[float]]:
        try:
            data = call_with_timeout(
                lambda: self.client.embed_documents(texts),
                self.settings.provider_timeout,
            )
        except FutureTimeout as e:
            raise EmbeddingTimeout(
                f"Embedding call timed out after {self.settings.provider_timeout}s"
            ) from e
        except Exception as e:
            logger.error(f"Embedding error: {e}")
            raise EmbeddingProviderError(f"Embedding call failed: {e}") from e
        if hasattr(data, "get_result"):
            data = data.get_result()
        vectors = parse_embeddings(data)
        check_vectors(vectors, len(texts))
        return vectors

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in batches of settings.embed_batch_size.

        Raises:
            EmbeddingProviderError: Any batch failed; no partial result is returned.
        """
        if not texts:
            return []
        batch_size = max(1, self.settings.embed_batch_size)
        out: list[list[float]] = []
        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            logger.debug(
                f"Embedding batch {i // batch_size + 1} ({len(batch)} texts)"
            )
            out.extend(self._call(batch))
        check_vectors(out, len(texts))
        return out

    def embed_query(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingProviderError("Cannot embed empty query text")
        return self._call([text])[0]
