"""Unit tests for the delegated credential vault.

Tests for:
- Create/get round trip through the cipher
- Conflict on a second create, idempotent ensure_provisioned
- Provider failures surfacing as internal errors
- Ciphertexts bound to their owner and column
"""

import asyncio

import pytest

from wayne.service.errors import ConflictError, InternalError, NotFoundError
from wayne.service.provisioning import MemoryProvisioner
from wayne.service.vault import (
    ACCESS_KEY_FIELD,
    CredentialVault,
    associated_data,
)


@pytest.fixture
def alice(memory_store):
    return memory_store.create_user("alice@example.com", "hash")


@pytest.fixture
def bob(memory_store):
    return memory_store.create_user("bob@example.com", "hash")


class TestCreateAndRead:
    async def test_round_trip_returns_provisioned_pair(self, vault, provisioner, alice):
        expected = provisioner.create_user_bucket(alice.id)

        bucket = await vault.create_for_user(alice.id)
        credential = vault.get_for_user(alice.id)

        assert credential.bucket_id == bucket.id
        assert credential.bucket_name == expected.bucket_name
        assert credential.access_key_id == expected.access_key_id
        assert credential.secret_access_key == expected.secret_access_key
        assert credential.endpoint == "https://gateway.example.test"

    async def test_stored_row_holds_no_plaintext(self, vault, memory_store, alice):
        await vault.create_for_user(alice.id)
        credential = vault.get_for_user(alice.id)
        row = memory_store.get_storj_bucket_for_user(alice.id)

        assert credential.access_key_id.encode() not in row.access_key_id_encrypted
        assert credential.secret_access_key.encode() not in row.secret_access_key_encrypted

    async def test_bucket_name_uses_prefix_and_compact_user_id(self, vault, alice):
        bucket = await vault.create_for_user(alice.id)
        assert bucket.bucket_name == "aether-user-" + alice.id.replace("-", "")
        assert vault.bucket_exists(bucket.bucket_name) is True

    async def test_second_create_conflicts(self, vault, provisioner, alice):
        await vault.create_for_user(alice.id)
        with pytest.raises(ConflictError):
            await vault.create_for_user(alice.id)
        assert provisioner.calls == 1

    def test_get_without_bucket_is_not_found(self, vault, alice):
        with pytest.raises(NotFoundError):
            vault.get_for_user(alice.id)

    async def test_provider_failure_is_internal_error(self, memory_store, cipher, alice):
        vault = CredentialVault(memory_store, cipher, MemoryProvisioner(fail=True))
        with pytest.raises(InternalError):
            await vault.create_for_user(alice.id)
        assert memory_store.get_storj_bucket_for_user(alice.id) is None


class TestEnsureProvisioned:
    async def test_is_idempotent(self, vault, provisioner, alice):
        first = await vault.ensure_provisioned(alice.id)
        second = await vault.ensure_provisioned(alice.id)
        assert first.id == second.id
        assert provisioner.calls == 1

    async def test_retry_after_failed_attempt(self, memory_store, cipher, alice):
        provisioner = MemoryProvisioner(fail=True)
        vault = CredentialVault(memory_store, cipher, provisioner)
        with pytest.raises(InternalError):
            await vault.ensure_provisioned(alice.id)

        provisioner.fail = False
        bucket = await vault.ensure_provisioned(alice.id)
        assert vault.get_for_user(alice.id).bucket_id == bucket.id

    async def test_concurrent_calls_store_one_row(self, vault, memory_store, alice):
        results = await asyncio.gather(
            *(vault.ensure_provisioned(alice.id) for _ in range(4))
        )
        assert len({bucket.id for bucket in results}) == 1
        rows = [b for b in memory_store.storj_buckets.values() if b.user_id == alice.id]
        assert len(rows) == 1


class TestAssociatedData:
    def test_associated_data_names_field_and_user(self):
        assert associated_data(ACCESS_KEY_FIELD, "u1") == b"wayne:storj:access_key_id:u1"

    async def test_row_swapped_between_users_fails_to_decrypt(
        self, vault, memory_store, alice, bob
    ):
        await vault.create_for_user(alice.id)
        await vault.create_for_user(bob.id)
        alice_row = next(
            b for b in memory_store.storj_buckets.values() if b.user_id == alice.id
        )
        bob_row = next(b for b in memory_store.storj_buckets.values() if b.user_id == bob.id)
        bob_row.access_key_id_encrypted = alice_row.access_key_id_encrypted
        bob_row.secret_access_key_encrypted = alice_row.secret_access_key_encrypted

        with pytest.raises(InternalError):
            vault.get_for_user(bob.id)

    async def test_fields_swapped_within_row_fail_to_decrypt(
        self, vault, memory_store, alice
    ):
        await vault.create_for_user(alice.id)
        row = next(b for b in memory_store.storj_buckets.values() if b.user_id == alice.id)
        row.access_key_id_encrypted, row.secret_access_key_encrypted = (
            row.secret_access_key_encrypted,
            row.access_key_id_encrypted,
        )

        with pytest.raises(InternalError):
            vault.get_for_user(alice.id)
