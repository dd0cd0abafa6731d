"""Shared fixtures for coherence sync tests."""

from datetime import datetime, timedelta, timezone

import pytest

from coherence_sync.auth import LocalAuthGateway, TokenMinter
from coherence_sync.identity import LocalStateStore
from coherence_sync.models import Principal, Role
from storage.memory import MemoryProgressStore

ADMIN_EMAIL = "admin@delta.test"


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryProgressStore(clock=clock)


@pytest.fixture
def local():
    return LocalStateStore()


@pytest.fixture
def minter(clock):
    return TokenMinter(secret="test-secret", clock=clock)


@pytest.fixture
def gateway(minter):
    return LocalAuthGateway(minter=minter, admin_emails={ADMIN_EMAIL})


@pytest.fixture
def observer():
    """Anonymous, unanchored observer principal."""
    return Principal(uid="obs-1")


@pytest.fixture
def anchored():
    return Principal(
        uid="anc-1",
        linked_credential_kinds=frozenset({"password"}),
        is_anonymous=False,
        email="anchored@delta.test",
    )


@pytest.fixture
def admin():
    return Principal(
        uid="admin-1",
        role=Role.ADMIN,
        linked_credential_kinds=frozenset({"password"}),
        is_anonymous=False,
        email=ADMIN_EMAIL,
    )
