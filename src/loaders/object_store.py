from __future__ import annotations

"""S3-compatible storage for original uploaded files."""

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class ObjectStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class ObjectStoreConfig:
    bucket: str
    endpoint_url: str | None = None
    region: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    session_token: str | None = None


def build_storage_path(tenant_id: str, filename: str, timestamp_ms: int) -> str:
    safe_name = filename.replace("/", "_").replace("\\", "_")
    return f"docs/{tenant_id}/{timestamp_ms}_{safe_name}"


@dataclass
class ObjectStore:
    config: ObjectStoreConfig
    client: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.client is not None:
            return
        import boto3

        session = boto3.session.Session(
            aws_access_key_id=self.config.access_key,
            aws_secret_access_key=self.config.secret_key,
            aws_session_token=self.config.session_token,
            region_name=self.config.region,
        )
        self.client = session.client("s3", endpoint_url=self.config.endpoint_url)

    def put_object(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.client.put_object(
                Bucket=self.config.bucket, Key=key, Body=data, ContentType=content_type
            )
        except Exception as exc:
            raise ObjectStoreError(f"Failed to store object: {exc}") from exc
        logger.info("object_stored", extra={"key": key, "size": len(data)})
        return key

    def get_object(self, key: str, max_bytes: int | None = None) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.config.bucket, Key=key)
        except Exception as exc:
            raise ObjectStoreError(f"Failed to fetch object: {exc}") from exc
        body = response.get("Body")
        if body is None:
            raise ObjectStoreError("Object body missing in response")
        data = body.read()
        if not isinstance(data, (bytes, bytearray)):
            raise ObjectStoreError("Invalid object body data")
        if max_bytes is not None and len(data) > max_bytes:
            raise ObjectStoreError("Object exceeds configured max_bytes")
        return bytes(data)

    def delete_object(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.config.bucket, Key=key)
        except Exception as exc:
            raise ObjectStoreError(f"Failed to delete object: {exc}") from exc
