from __future__ import annotations

from typing import Optional, Protocol

from wayne.logging import get_logger
from wayne.service.errors import ForbiddenError, NotFoundError, ValidationError
from wayne.storage.models import KeyEnvelope

logger = get_logger(__name__)


class EnvelopeStore(Protocol):
    def upsert_key_envelope(
        self,
        user_id: str,
        *,
        version: int,
        password_salt: bytes,
        mkek_nonce: bytes,
        mkek_payload: bytes,
    ) -> KeyEnvelope: ...

    def get_key_envelope(self, envelope_id: str) -> Optional[KeyEnvelope]: ...

    def get_key_envelope_for_user(self, user_id: str) -> Optional[KeyEnvelope]: ...


class KeyEnvelopeService:
    """One opaque, versioned key envelope per user.

    Salt, nonce and payload are stored exactly as received. Upserts replace
    the previous envelope in place, so no earlier version can be read back.
    ``version`` is client metadata and is not required to increase.
    """

    def __init__(self, store: EnvelopeStore) -> None:
        self.store = store

    def upsert(
        self,
        user_id: str,
        *,
        version: int,
        password_salt: bytes,
        mkek_nonce: bytes,
        mkek_payload: bytes,
    ) -> KeyEnvelope:
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ValidationError("envelope version must be a positive integer")
        for name, value in (
            ("password_salt", password_salt),
            ("mkek.nonce", mkek_nonce),
            ("mkek.payload", mkek_payload),
        ):
            if not value:
                raise ValidationError(f"{name} is required", detail={"field": name})
        envelope = self.store.upsert_key_envelope(
            user_id,
            version=version,
            password_salt=bytes(password_salt),
            mkek_nonce=bytes(mkek_nonce),
            mkek_payload=bytes(mkek_payload),
        )
        logger.info(
            "key_envelope_saved",
            user_id=user_id,
            envelope_id=envelope.id,
            version=version,
        )
        return envelope

    def get(self, user_id: str) -> KeyEnvelope:
        envelope = self.store.get_key_envelope_for_user(user_id)
        if not envelope:
            raise NotFoundError("key envelope not found")
        return envelope

    def get_owned(self, envelope_id: str, user_id: str) -> KeyEnvelope:
        envelope = self.store.get_key_envelope(envelope_id)
        if not envelope:
            raise NotFoundError("key envelope not found")
        if envelope.user_id != user_id:
            logger.warning(
                "key_envelope_access_denied", envelope_id=envelope_id, user_id=user_id
            )
            raise ForbiddenError("access denied")
        return envelope


__all__ = ["EnvelopeStore", "KeyEnvelopeService"]
