from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from typing import Optional, Protocol, Set

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from wayne.logging import get_logger

logger = get_logger(__name__)

_ALREADY_OWNED = {"BucketAlreadyOwnedByYou"}
_MISSING = {"404", "NoSuchBucket", "NotFound"}


class ProvisioningError(Exception):
    """The object-storage provider rejected or failed a provisioning call."""


@dataclass
class ProvisionedBucket:
    bucket_name: str
    access_key_id: str
    secret_access_key: str
    endpoint: str


class BucketProvisioner(Protocol):
    def create_user_bucket(self, user_id: str) -> ProvisionedBucket: ...

    def bucket_exists(self, bucket_name: str) -> bool: ...


def bucket_name_for(user_id: str, prefix: str = "aether-user-") -> str:
    return f"{prefix}{user_id.replace('-', '')}"


class StorjProvisioner:
    """Allocates per-user buckets through the Storj S3-compatible gateway.

    Every bucket is created with the master key pair, and that same pair is
    handed back as the user's credential; access is isolated by bucket name
    only. Calls are blocking and should run off the event loop.
    """

    def __init__(
        self,
        access_key_id: Optional[str],
        secret_access_key: Optional[str],
        *,
        endpoint: str = "https://gateway.storjshare.io",
        region: str = "us-east-1",
        bucket_prefix: str = "aether-user-",
        client=None,
    ) -> None:
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.endpoint = endpoint
        self.region = region
        self.bucket_prefix = bucket_prefix
        self._client = client
        if not self.is_configured:
            logger.warning(
                "storj_master_credentials_missing",
                message="automatic bucket provisioning is disabled",
            )

    @property
    def is_configured(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def _s3(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                endpoint_url=self.endpoint,
                region_name=self.region,
                config=Config(s3={"addressing_style": "path"}, retries={"max_attempts": 2}),
            )
        return self._client

    def create_user_bucket(self, user_id: str) -> ProvisionedBucket:
        if not self.is_configured:
            raise ProvisioningError("storj master credentials are not configured")
        bucket_name = bucket_name_for(user_id, self.bucket_prefix)
        client = self._s3()
        try:
            client.create_bucket(Bucket=bucket_name)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code not in _ALREADY_OWNED:
                raise ProvisioningError(f"create_bucket failed: {code}") from exc
            logger.info("storj_bucket_already_owned", bucket_name=bucket_name)
        except BotoCoreError as exc:
            raise ProvisioningError("create_bucket failed") from exc

        try:
            client.put_bucket_versioning(
                Bucket=bucket_name,
                VersioningConfiguration={"Status": "Enabled"},
            )
        except (ClientError, BotoCoreError) as exc:
            # not every gateway supports versioning
            logger.warning(
                "storj_bucket_versioning_failed", bucket_name=bucket_name, error=str(exc)
            )

        logger.info("storj_bucket_created", user_id=user_id, bucket_name=bucket_name)
        return ProvisionedBucket(
            bucket_name=bucket_name,
            access_key_id=self.access_key_id or "",
            secret_access_key=self.secret_access_key or "",
            endpoint=self.endpoint,
        )

    def bucket_exists(self, bucket_name: str) -> bool:
        if not self.is_configured:
            return False
        try:
            self._s3().head_bucket(Bucket=bucket_name)
            return True
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code"))
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code in _MISSING or status == 404:
                return False
            raise ProvisioningError(f"head_bucket failed: {code}") from exc
        except BotoCoreError as exc:
            raise ProvisioningError("head_bucket failed") from exc


class MemoryProvisioner:
    """Deterministic stand-in for local development and tests."""

    def __init__(
        self,
        *,
        endpoint: str = "https://gateway.storjshare.io",
        bucket_prefix: str = "aether-user-",
        fail: bool = False,
    ) -> None:
        self.endpoint = endpoint
        self.bucket_prefix = bucket_prefix
        self.fail = fail
        self.buckets: Set[str] = set()
        self.calls = 0
        self._lock = threading.Lock()

    def create_user_bucket(self, user_id: str) -> ProvisionedBucket:
        with self._lock:
            self.calls += 1
            if self.fail:
                raise ProvisioningError("provisioning disabled")
            bucket_name = bucket_name_for(user_id, self.bucket_prefix)
            self.buckets.add(bucket_name)
        seed = hashlib.sha256(user_id.encode()).hexdigest()
        return ProvisionedBucket(
            bucket_name=bucket_name,
            access_key_id=f"AK{seed[:18].upper()}",
            secret_access_key=f"sk-{seed[18:58]}",
            endpoint=self.endpoint,
        )

    def bucket_exists(self, bucket_name: str) -> bool:
        with self._lock:
            return bucket_name in self.buckets


__all__ = [
    "BucketProvisioner",
    "MemoryProvisioner",
    "ProvisionedBucket",
    "ProvisioningError",
    "StorjProvisioner",
    "bucket_name_for",
]
