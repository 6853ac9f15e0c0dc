import base64
import os

import pytest

from wayne.service.cipher import (
    IV_SIZE,
    TAG_SIZE,
    AesGcmSecretCipher,
    CipherError,
    derive_key,
)

AAD = b"wayne:storj:access_key_id:user-1"


class TestDeriveKey:
    def test_hex_key_is_used_verbatim(self):
        raw = os.urandom(32)
        assert derive_key(raw.hex()) == raw

    def test_base64_key_is_used_verbatim(self):
        raw = os.urandom(32)
        assert derive_key(base64.b64encode(raw).decode()) == raw

    def test_passphrase_is_stretched_deterministically(self):
        first = derive_key("a passphrase that is not a key")
        second = derive_key("a passphrase that is not a key")
        assert len(first) == 32
        assert first == second
        assert derive_key("another passphrase") != first


class TestAesGcmSecretCipher:
    def test_round_trip(self):
        cipher = AesGcmSecretCipher(os.urandom(32))
        blob = cipher.encrypt(b"secret", associated_data=AAD)
        assert cipher.decrypt(blob, associated_data=AAD) == b"secret"

    def test_layout_is_iv_tag_ciphertext(self):
        cipher = AesGcmSecretCipher(os.urandom(32))
        blob = cipher.encrypt(b"twelve bytes", associated_data=AAD)
        assert len(blob) == IV_SIZE + TAG_SIZE + len(b"twelve bytes")

    def test_fresh_iv_per_call(self):
        cipher = AesGcmSecretCipher(os.urandom(32))
        first = cipher.encrypt(b"secret", associated_data=AAD)
        second = cipher.encrypt(b"secret", associated_data=AAD)
        assert first[:IV_SIZE] != second[:IV_SIZE]
        assert first != second

    def test_wrong_associated_data_fails(self):
        cipher = AesGcmSecretCipher(os.urandom(32))
        blob = cipher.encrypt(b"secret", associated_data=AAD)
        with pytest.raises(CipherError):
            cipher.decrypt(blob, associated_data=b"wayne:storj:access_key_id:user-2")

    def test_wrong_key_fails(self):
        blob = AesGcmSecretCipher(os.urandom(32)).encrypt(b"secret", associated_data=AAD)
        with pytest.raises(CipherError):
            AesGcmSecretCipher(os.urandom(32)).decrypt(blob, associated_data=AAD)

    def test_tampered_ciphertext_fails(self):
        cipher = AesGcmSecretCipher(os.urandom(32))
        blob = bytearray(cipher.encrypt(b"secret", associated_data=AAD))
        blob[-1] ^= 0x01
        with pytest.raises(CipherError):
            cipher.decrypt(bytes(blob), associated_data=AAD)

    def test_short_blob_fails(self):
        cipher = AesGcmSecretCipher(os.urandom(32))
        with pytest.raises(CipherError):
            cipher.decrypt(b"\x00" * (IV_SIZE + TAG_SIZE - 1), associated_data=AAD)

    def test_rejects_short_key(self):
        with pytest.raises(ValueError):
            AesGcmSecretCipher(b"\x00" * 16)
