"""Feedback engine settings.

Provider credentials, retrieval and chunking parameters, read once from the
environment by Settings.from_env().
"""

from dataclasses import dataclass
import os


@dataclass
class Settings:
    """Engine settings loaded from environment variables.

    Attributes:
        ibm_cloud_api_key: IBM Cloud API key for authentication.
        watsonx_region: Watsonx.ai service region.
        watsonx_project_id: Watsonx.ai project ID.
        watsonx_embed_model: Embedding model ID, shared by ingestion and retrieval.
        watsonx_gen_model: Chat model ID used for feedback generation.
        cos_endpoint: Cloud Object Storage endpoint.
        cos_bucket: Bucket holding the original source PDFs.
        cos_instance_crn: Cloud Object Storage instance CRN.
        cos_api_key: COS API key; falls back to the IBM Cloud API key.
        cos_auth_endpoint: Cloud Object Storage auth endpoint.
        cos_hmac_access_key_id: HMAC access key ID.
        cos_hmac_secret_access_key: HMAC secret access key.
        chunk_store_path: Directory for persisted chunk records (empty = in memory).
        max_chunk_chars: Maximum characters per chunk.
        chunk_overlap: Character overlap between consecutive chunks of a page.
        per_source_top_n: Chunks kept per source before the global pass (None = no cap).
        top_k: Chunks kept after the global pass.
        temperature: Generation temperature.
        max_new_tokens: Token budget for generated feedback.
        embed_batch_size: Texts per embedding call during ingestion.
        provider_timeout: Seconds allowed for each embedding or generation call.
        search_workers: Threads used for the per-source similarity pass.
        excerpt_chars: Characters of chunk content shown in a citation.
        max_upload_bytes: Largest accepted PDF upload.
        embedding_dim: Expected embedding dimension (0 = infer from data).
        detect_metadata: Guess title and author from the PDF when no title is given.
    """

    ibm_cloud_api_key: str
    watsonx_region: str
    watsonx_project_id: str
    watsonx_embed_model: str
    watsonx_gen_model: str

    cos_endpoint: str
    cos_bucket: str
    cos_instance_crn: str
    cos_api_key: str | None
    cos_auth_endpoint: str
    cos_hmac_access_key_id: str
    cos_hmac_secret_access_key: str

    chunk_store_path: str

    max_chunk_chars: int = 1500
    chunk_overlap: int = 200
    per_source_top_n: int | None = 3
    top_k: int = 5
    temperature: float = 0.7
    max_new_tokens: int = 500
    embed_batch_size: int = 10
    provider_timeout: float = 30.0
    search_workers: int = 4
    excerpt_chars: int = 200
    max_upload_bytes: int = 128 * 1024 * 1024
    embedding_dim: int = 0
    detect_metadata: bool = True

    @staticmethod
    def _get_bool(value: str | None, default: bool = False) -> bool:
        """Convert string value to boolean.

        Args:
            value: String value to convert.
            default: Default value if value is None.

        Returns:
            Boolean value.
        """
        if value is None:
            return default
        return value.lower() in {"1", "true", "t", "yes", "y"}

    @staticmethod
    def _get_cap(value: str | None, default: int | None = 3) -> int | None:
        """Parse the per-source cap; zero or a negative value disables it."""
        if value is None or not value.strip():
            return default
        cap = int(value)
        return cap if cap > 0 else None

    @classmethod
    def from_env(cls) -> "Settings":
        """Create Settings instance from environment variables.

        Returns:
            Settings instance with values loaded from environment.
        """
        return cls(
            ibm_cloud_api_key=os.getenv("IBM_CLOUD_API_KEY", ""),
            watsonx_region=os.getenv("WATSONX_REGION", "us-south"),
            watsonx_project_id=os.getenv("WATSONX_PROJECT_ID", ""),
            watsonx_embed_model=os.getenv(
                "WATSONX_EMBED_MODEL",
                "ibm/slate-125m-english-rtrvr-v2",
            ),
            watsonx_gen_model=os.getenv(
                "WATSONX_GEN_MODEL", "ibm/granite-3-8b-instruct"
            ),
            cos_endpoint=os.getenv("COS_ENDPOINT", ""),
            cos_bucket=os.getenv("COS_BUCKET", ""),
            cos_instance_crn=os.getenv("COS_INSTANCE_CRN", ""),
            cos_api_key=os.getenv("COS_API_KEY") or os.getenv("IBM_CLOUD_API_KEY"),
            cos_auth_endpoint=os.getenv(
                "COS_AUTH_ENDPOINT",
                "https://iam.cloud.ibm.com/identity/token",
            ),
            cos_hmac_access_key_id=os.getenv("COS_HMAC_ACCESS_KEY_ID", ""),
            cos_hmac_secret_access_key=os.getenv("COS_HMAC_SECRET_ACCESS_KEY", ""),
            chunk_store_path=os.getenv("CHUNK_STORE_PATH", "data/sources"),
            max_chunk_chars=int(os.getenv("MAX_CHUNK_CHARS", "1500")),
            chunk_overlap=int(os.getenv("CHUNK_OVERLAP", "200")),
            per_source_top_n=cls._get_cap(os.getenv("PER_SOURCE_TOP_N")),
            top_k=int(os.getenv("TOP_K", "5")),
            temperature=float(os.getenv("TEMPERATURE", "0.7")),
            max_new_tokens=int(os.getenv("MAX_NEW_TOKENS", "500")),
            embed_batch_size=int(os.getenv("EMBED_BATCH_SIZE", "10")),
            provider_timeout=float(os.getenv("PROVIDER_TIMEOUT", "30")),
            search_workers=int(os.getenv("SEARCH_WORKERS", "4")),
            excerpt_chars=int(os.getenv("EXCERPT_CHARS", "200")),
            max_upload_bytes=int(
                os.getenv("MAX_UPLOAD_BYTES", str(128 * 1024 * 1024))
            ),
            embedding_dim=int(os.getenv("EMBEDDING_DIM", "0")),
            detect_metadata=cls._get_bool(os.getenv("DETECT_METADATA"), True),
        )
