import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any imports that might initialize settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PROVISIONER_BACKEND", "memory")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("STORJ_ENCRYPTION_KEY", "test-storj-encryption-key-for-testing-only")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from wayne.config import Settings  # noqa: E402
from wayne.service.auth import AuthService  # noqa: E402
from wayne.service.cipher import AesGcmSecretCipher  # noqa: E402
from wayne.service.envelopes import KeyEnvelopeService  # noqa: E402
from wayne.service.provisioning import MemoryProvisioner  # noqa: E402
from wayne.service.runtime import reset_runtime_for_tests  # noqa: E402
from wayne.service.tokens import TokenService  # noqa: E402
from wayne.service.vault import CredentialVault  # noqa: E402
from wayne.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings for service-level tests, independent of the environment."""
    return Settings(
        test_mode=True,
        use_memory_store=True,
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        credential_encryption_key="unit-test-credential-key",
        provisioner_backend="memory",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def fast_hasher():
    """argon2id with minimal cost so unit tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def token_service(memory_store, settings):
    return TokenService(memory_store, settings)


@pytest.fixture
def envelope_service(memory_store):
    return KeyEnvelopeService(memory_store)


@pytest.fixture
def provisioner():
    return MemoryProvisioner(endpoint="https://gateway.example.test")


@pytest.fixture
def cipher(settings):
    return AesGcmSecretCipher.from_material(settings.credential_encryption_key)


@pytest.fixture
def vault(memory_store, cipher, provisioner):
    return CredentialVault(memory_store, cipher, provisioner)


@pytest.fixture
def auth_service(memory_store, token_service, envelope_service, vault, fast_hasher):
    return AuthService(
        memory_store,
        token_service,
        envelope_service,
        vault,
        password_hasher=fast_hasher,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
