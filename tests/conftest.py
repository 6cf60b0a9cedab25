import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from taptab.config import Settings  # noqa: E402
from taptab.service.auth import AuthService  # noqa: E402
from taptab.service.passwords import PasswordVerifier  # noqa: E402
from taptab.service.runtime import reset_runtime_for_tests  # noqa: E402
from taptab.storage.memory import MemoryStore  # noqa: E402
from taptab.storage.models import Principal, Role  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FrozenClock:
    """Manually advanced clock for time-dependent tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    """Code sender that keeps delivered codes for assertions."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def send_code(self, identifier: str, code: str) -> None:
        self.sent.append((identifier, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


def fast_password_verifier() -> PasswordVerifier:
    """argon2id with minimal cost parameters so tests stay quick."""
    return PasswordVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def passwords():
    return fast_password_verifier()


@pytest.fixture
def auth_service(store, settings, sender, passwords, clock):
    return AuthService(store, settings, sender=sender, passwords=passwords, clock=clock)


@pytest.fixture
def principal():
    return Principal(
        id="principal-1",
        email="cashier@example.com",
        role=Role.CASHIER,
        tenant_id="tenant-1",
    )


@pytest.fixture
def registered_principal(store, passwords, principal):
    """Principal saved in the store with password ``CorrectHorse9!``."""
    store.save_principal(principal, password_hash=passwords.hash("CorrectHorse9!"))
    return principal
