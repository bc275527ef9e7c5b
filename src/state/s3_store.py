from __future__ import annotations

import hashlib
import io
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError


logger = logging.getLogger(__name__)

PART_SIZE = 10 * 1024 * 1024
JSON_CONTENT_TYPE = "application/json"
BINARY_CONTENT_TYPE = "application/octet-stream"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def dump_key_value_json(value: Any) -> bytes:
    # Deterministic JSON: stable key order so equal values hash equal
    return json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False).encode("utf-8")


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3ObjectMirror:
    """
    S3-backed, content-addressed mirror for game data.

    Every object carries its content hash in user metadata (`hash`).
    `upload_if_changed` compares that stored hash with the hash of the new
    content and only uploads on mismatch.

    Object layout under `prefix`
    - key/value objects: `<prefix>/<key>.json`
    - asset bundles:     `<prefix>/assetbundle/<key>.unity3d`
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str,
        public_read: bool = True,
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
        waiter_delay: int = 5,
        waiter_max_attempts: int = 12,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", endpoint_url=endpoint_url, region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix.rstrip("/")
        self._public_read = public_read
        self._waiter_config = {"Delay": waiter_delay, "MaxAttempts": waiter_max_attempts}
        self._transfer = TransferConfig(multipart_threshold=PART_SIZE, multipart_chunksize=PART_SIZE)

    @property
    def bucket(self) -> str:
        return self._bucket

    # -------- Object keys --------
    def key_value_key(self, key: str) -> str:
        return f"{self._prefix}/{key}.json"

    def assetbundle_key(self, key: str) -> str:
        return f"{self._prefix}/assetbundle/{key}.unity3d"

    # -------- Core operations --------
    def head_hash(self, key: str) -> Optional[str]:
        """Return the content hash stored with `key`, or None if it doesn't exist.

        Raises:
        - botocore.exceptions.ClientError for S3 issues other than not-found.
        """
        try:
            resp = self._s3.head_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "NotFound", "404"):
                return None
            raise
        return (resp.get("Metadata") or {}).get("hash")

    def put(self, key: str, body: bytes, *, content_type: str, content_hash: str) -> S3ObjectRef:
        """Multi-part upload `body` and wait until the object is visible."""
        extra = {"ContentType": content_type, "Metadata": {"hash": content_hash}}
        if self._public_read:
            extra["ACL"] = "public-read"
        self._s3.upload_fileobj(
            io.BytesIO(body),
            self._bucket,
            key,
            ExtraArgs=extra,
            Config=self._transfer,
        )
        waiter = self._s3.get_waiter("object_exists")
        waiter.wait(Bucket=self._bucket, Key=key, WaiterConfig=self._waiter_config)
        return S3ObjectRef(bucket=self._bucket, key=key)

    def upload_if_changed(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str = BINARY_CONTENT_TYPE,
        content_hash: Optional[str] = None,
    ) -> bool:
        """Upload `body` unless the stored hash already matches.

        `content_hash` defaults to the SHA-256 hex digest of `body`.
        Returns True when an upload happened.
        """
        digest = content_hash or sha256_hex(body)
        if self.head_hash(key) == digest:
            return False

        logger.info("Updating %s", key)
        self.put(key, body, content_type=content_type, content_hash=digest)
        return True
