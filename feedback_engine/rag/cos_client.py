from typing import Protocol

import ibm_boto3
from ibm_botocore.client import Config
from ibm_botocore.exceptions import BotoCoreError, ClientError

from feedback_engine.config import Settings


class ObjectStorage(Protocol):
    """Byte storage for original source PDFs, keyed by object key."""

    def upload_bytes(self, key: str, data: bytes, content_type: str = "application/pdf") -> str: ...

    def fetch_bytes(self, key: str) -> bytes: ...


def source_key(document_id: str, filename: str) -> str:
    """Object key for an uploaded source PDF."""
    safe_name = filename.replace("/", "_").replace("\\", "_").strip() or "source.pdf"
    return f"sources/{document_id}/{safe_name}"


def normalize_endpoint(endpoint: str) -> str:
    """Strip quotes and trailing slash, and force https."""
    endpoint = endpoint.strip().strip('"').strip("'").rstrip("/")
    if endpoint.startswith("http://"):
        return endpoint.replace("http://", "https://", 1)
    if not endpoint.startswith("https://"):
        return f"https://{endpoint}"
    return endpoint


class COSClient:
    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        if client is not None:
            self.mode = "injected"
            self.client = client
            return
        if not settings.cos_endpoint or not settings.cos_bucket:
            raise ValueError(
                "Missing COS configuration. Please set COS_ENDPOINT and COS_BUCKET."
            )

        endpoint = normalize_endpoint(settings.cos_endpoint)

        # Prefer HMAC if keys are present; otherwise use IAM
        if settings.cos_hmac_access_key_id and settings.cos_hmac_secret_access_key:
            self.mode = "hmac"
            self.client = ibm_boto3.client(
                "s3",
                aws_access_key_id=settings.cos_hmac_access_key_id,
                aws_secret_access_key=settings.cos_hmac_secret_access_key,
                config=Config(signature_version="s3v4"),
                endpoint_url=endpoint,
            )
        else:
            self.mode = "iam"
            if not settings.cos_api_key or not settings.cos_instance_crn:
                raise ValueError(
                    "Missing IBM Cloud credentials. Please set COS_API_KEY (or "
                    "IBM_CLOUD_API_KEY) and COS_INSTANCE_CRN."
                )
            self.client = ibm_boto3.client(
                "s3",
                ibm_api_key_id=settings.cos_api_key,
                ibm_service_instance_id=settings.cos_instance_crn,
                ibm_auth_endpoint=settings.cos_auth_endpoint,
                config=Config(signature_version="oauth"),
                endpoint_url=endpoint,
            )

    def upload_bytes(
        self, key: str, data: bytes, content_type: str = "application/pdf"
    ) -> str:
        try:
            self.client.put_object(
                Bucket=self.settings.cos_bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise RuntimeError(f"Failed to upload '{key}' to COS: {e}") from e
        return key

    def fetch_bytes(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.settings.cos_bucket, Key=key)
            return obj["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise RuntimeError(f"Failed to fetch '{key}' from COS: {e}") from e
