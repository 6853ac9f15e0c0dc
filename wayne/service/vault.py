from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

from wayne.logging import get_logger
from wayne.service.cipher import CipherError, SecretCipher
from wayne.service.errors import ConflictError, InternalError, NotFoundError
from wayne.service.provisioning import BucketProvisioner, ProvisioningError
from wayne.storage.errors import ConstraintViolation
from wayne.storage.models import StorjBucket

logger = get_logger(__name__)

ACCESS_KEY_FIELD = "access_key_id"
SECRET_KEY_FIELD = "secret_access_key"


class CredentialStore(Protocol):
    def create_storj_bucket(
        self,
        user_id: str,
        *,
        bucket_name: str,
        access_key_id_encrypted: bytes,
        secret_access_key_encrypted: bytes,
        endpoint: str,
    ) -> StorjBucket: ...

    def get_storj_bucket_for_user(self, user_id: str) -> Optional[StorjBucket]: ...


@dataclass
class DelegatedCredential:
    bucket_id: str
    bucket_name: str
    access_key_id: str
    secret_access_key: str
    endpoint: str


def associated_data(field: str, user_id: str) -> bytes:
    """Bind a ciphertext to one user and one column."""
    return f"wayne:storj:{field}:{user_id}".encode()


class CredentialVault:
    """Custody of per-user object-storage credentials.

    The provider's key pair is encrypted field by field with the configured
    ``SecretCipher`` before it touches storage; plaintext only exists in
    memory while serving the owner's read.
    """

    def __init__(
        self,
        store: CredentialStore,
        cipher: SecretCipher,
        provisioner: BucketProvisioner,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.provisioner = provisioner

    def _seal(self, user_id: str, field: str, value: str) -> bytes:
        return self.cipher.encrypt(
            value.encode("utf-8"), associated_data=associated_data(field, user_id)
        )

    def _open(self, user_id: str, field: str, blob: bytes) -> str:
        plaintext = self.cipher.decrypt(
            blob, associated_data=associated_data(field, user_id)
        )
        return plaintext.decode("utf-8")

    async def create_for_user(self, user_id: str) -> StorjBucket:
        if self.store.get_storj_bucket_for_user(user_id):
            raise ConflictError("storj bucket already exists for this user")
        try:
            provisioned = await asyncio.to_thread(
                self.provisioner.create_user_bucket, user_id
            )
        except ProvisioningError as exc:
            logger.error("storj_provisioning_failed", user_id=user_id, error=str(exc))
            raise InternalError("failed to create storj bucket") from exc

        try:
            bucket = self.store.create_storj_bucket(
                user_id,
                bucket_name=provisioned.bucket_name,
                access_key_id_encrypted=self._seal(
                    user_id, ACCESS_KEY_FIELD, provisioned.access_key_id
                ),
                secret_access_key_encrypted=self._seal(
                    user_id, SECRET_KEY_FIELD, provisioned.secret_access_key
                ),
                endpoint=provisioned.endpoint,
            )
        except ConstraintViolation as exc:
            # lost a race with a concurrent create for the same user
            raise ConflictError("storj bucket already exists for this user") from exc
        logger.info(
            "storj_credential_stored",
            user_id=user_id,
            bucket_id=bucket.id,
            bucket_name=bucket.bucket_name,
        )
        return bucket

    async def ensure_provisioned(self, user_id: str) -> StorjBucket:
        """Idempotent create; safe to retry after a failed registration-time attempt."""
        existing = self.store.get_storj_bucket_for_user(user_id)
        if existing:
            return existing
        try:
            return await self.create_for_user(user_id)
        except ConflictError:
            bucket = self.store.get_storj_bucket_for_user(user_id)
            if bucket is None:
                raise
            return bucket

    def get_for_user(self, user_id: str) -> DelegatedCredential:
        bucket = self.store.get_storj_bucket_for_user(user_id)
        if not bucket:
            raise NotFoundError("no storj bucket found for this user")
        try:
            access_key_id = self._open(
                user_id, ACCESS_KEY_FIELD, bucket.access_key_id_encrypted
            )
            secret_access_key = self._open(
                user_id, SECRET_KEY_FIELD, bucket.secret_access_key_encrypted
            )
        except (CipherError, UnicodeDecodeError) as exc:
            logger.error(
                "credential_decrypt_failed",
                user_id=user_id,
                bucket_id=bucket.id,
                error=str(exc),
            )
            raise InternalError("failed to read storj configuration") from exc
        return DelegatedCredential(
            bucket_id=bucket.id,
            bucket_name=bucket.bucket_name,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            endpoint=bucket.endpoint,
        )

    def bucket_exists(self, bucket_name: str) -> bool:
        try:
            return self.provisioner.bucket_exists(bucket_name)
        except ProvisioningError as exc:
            logger.error("storj_bucket_check_failed", bucket_name=bucket_name, error=str(exc))
            raise InternalError("failed to check storj bucket") from exc


__all__ = [
    "CredentialStore",
    "CredentialVault",
    "DelegatedCredential",
    "associated_data",
]
