"""
S3-compatible artifact store (AWS S3, MinIO).
"""
import logging
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from mediaflow.config import config
from .base import ArtifactStore

logger = logging.getLogger(__name__)


def get_s3_client(endpoint_url: Optional[str] = None):
    """SDK client configured from the environment."""
    session = boto3.session.Session(
        aws_access_key_id=config.storage.s3_access_key,
        aws_secret_access_key=config.storage.s3_secret_key,
        region_name=config.storage.s3_region,
    )
    return session.client(
        "s3",
        endpoint_url=endpoint_url or config.storage.s3_endpoint_url,
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


class S3ArtifactStore(ArtifactStore):

    def __init__(self, bucket: Optional[str] = None, client=None, default_ttl_seconds: Optional[int] = None):
        self.bucket = bucket or config.storage.s3_bucket
        if not self.bucket:
            raise ValueError("S3_BUCKET must be set for the s3 artifact backend")
        self.client = client or get_s3_client()
        self.default_ttl_seconds = default_ttl_seconds or config.storage.default_ttl_seconds

    @property
    def name(self) -> str:
        return "s3"

    def _exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def put(self, path: str, key: str, content_type: str) -> None:
        if self._exists(key):
            logger.debug(f"[STORE] s3://{self.bucket}/{key} already stored")
            return
        self.client.upload_file(str(path), self.bucket, key, ExtraArgs={"ContentType": content_type})
        logger.info(f"[STORE] Uploaded s3://{self.bucket}/{key}")

    def signed_url(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        return self.client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl_seconds or self.default_ttl_seconds,
            HttpMethod="GET",
        )
