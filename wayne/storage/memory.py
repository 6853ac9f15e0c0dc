from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from wayne.logging import get_logger
from wayne.storage.errors import ConstraintViolation
from wayne.storage.models import (
    KeyEnvelope,
    RefreshToken,
    StorjBucket,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store mirroring the relational schema's constraints.

    Uniqueness (user email, one envelope and one bucket per user) and
    cascade-on-user-delete are enforced here the same way Postgres enforces
    them, so services behave identically against either backend. Callers get
    copies of the stored records and cannot mutate state behind the lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.key_envelopes: Dict[str, KeyEnvelope] = {}
        self.storj_buckets: Dict[str, StorjBucket] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()

    # -- users ---------------------------------------------------------------

    def create_user(self, email: str, password_hash: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email"},
                    constraint="users_email_key",
                )
            user = User(id=str(uuid.uuid4()), email=email, password_hash=password_hash)
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = utcnow()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for token_id, token in list(self.refresh_tokens.items()):
                if token.user_id == user_id:
                    self.refresh_tokens.pop(token_id, None)
            for envelope_id, envelope in list(self.key_envelopes.items()):
                if envelope.user_id == user_id:
                    self.key_envelopes.pop(envelope_id, None)
            for bucket_id, bucket in list(self.storj_buckets.items()):
                if bucket.user_id == user_id:
                    self.storj_buckets.pop(bucket_id, None)
            return True

    def _require_user(self, user_id: str) -> None:
        if user_id not in self.users:
            raise ConstraintViolation(
                "user not found", {"user_id": user_id}, constraint="user_id_fkey"
            )

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            self._require_user(user_id)
            token = RefreshToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.refresh_tokens[token.id] = token
            return replace(token)

    def get_refresh_token(
        self, token_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Return the unexpired token row with this digest, if any."""
        now = now or utcnow()
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.token_hash == token_hash and token.expires_at > now:
                    return replace(token)
            return None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(t) for t in self.refresh_tokens.values() if t.user_id == user_id
            ]

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            for token_id, token in list(self.refresh_tokens.items()):
                if token.token_hash == token_hash:
                    self.refresh_tokens.pop(token_id, None)
                    return True
            return False

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [tid for tid, t in self.refresh_tokens.items() if t.user_id == user_id]
            for token_id in doomed:
                self.refresh_tokens.pop(token_id, None)
            return len(doomed)

    def delete_expired_refresh_tokens(self, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            doomed = [tid for tid, t in self.refresh_tokens.items() if t.expires_at <= now]
            for token_id in doomed:
                self.refresh_tokens.pop(token_id, None)
            return len(doomed)

    # -- key envelopes -------------------------------------------------------

    def upsert_key_envelope(
        self,
        user_id: str,
        *,
        version: int,
        password_salt: bytes,
        mkek_nonce: bytes,
        mkek_payload: bytes,
    ) -> KeyEnvelope:
        with self._data_lock:
            self._require_user(user_id)
            existing = next(
                (e for e in self.key_envelopes.values() if e.user_id == user_id), None
            )
            now = utcnow()
            if existing:
                envelope = replace(
                    existing,
                    version=version,
                    password_salt=bytes(password_salt),
                    mkek_nonce=bytes(mkek_nonce),
                    mkek_payload=bytes(mkek_payload),
                    updated_at=now,
                )
            else:
                envelope = KeyEnvelope(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    version=version,
                    password_salt=bytes(password_salt),
                    mkek_nonce=bytes(mkek_nonce),
                    mkek_payload=bytes(mkek_payload),
                    created_at=now,
                    updated_at=now,
                )
            self.key_envelopes[envelope.id] = envelope
            return replace(envelope)

    def get_key_envelope(self, envelope_id: str) -> Optional[KeyEnvelope]:
        with self._data_lock:
            envelope = self.key_envelopes.get(envelope_id)
            return replace(envelope) if envelope else None

    def get_key_envelope_for_user(self, user_id: str) -> Optional[KeyEnvelope]:
        with self._data_lock:
            envelope = next(
                (e for e in self.key_envelopes.values() if e.user_id == user_id), None
            )
            return replace(envelope) if envelope else None

    # -- storj buckets -------------------------------------------------------

    def create_storj_bucket(
        self,
        user_id: str,
        *,
        bucket_name: str,
        access_key_id_encrypted: bytes,
        secret_access_key_encrypted: bytes,
        endpoint: str,
    ) -> StorjBucket:
        with self._data_lock:
            self._require_user(user_id)
            if any(b.user_id == user_id for b in self.storj_buckets.values()):
                raise ConstraintViolation(
                    "storj bucket already exists for user",
                    {"user_id": user_id},
                    constraint="storj_buckets_user_id_key",
                )
            bucket = StorjBucket(
                id=str(uuid.uuid4()),
                user_id=user_id,
                bucket_name=bucket_name,
                access_key_id_encrypted=bytes(access_key_id_encrypted),
                secret_access_key_encrypted=bytes(secret_access_key_encrypted),
                endpoint=endpoint,
            )
            self.storj_buckets[bucket.id] = bucket
            return replace(bucket)

    def get_storj_bucket_for_user(self, user_id: str) -> Optional[StorjBucket]:
        with self._data_lock:
            bucket = next(
                (b for b in self.storj_buckets.values() if b.user_id == user_id), None
            )
            return replace(bucket) if bucket else None

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None


__all__ = ["MemoryStore"]
