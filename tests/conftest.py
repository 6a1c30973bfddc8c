"""
Shared fixtures: an isolated test configuration, a controllable clock and a
fully wired banking system over in-memory storage.
"""

from datetime import datetime, timezone, timedelta

import pytest

from netbank.config import load_config
from netbank.rbac import Role
from netbank.storage import InMemoryStorage
from netbank.system import BankingSystem


TEST_SECRET = "test-secret-key-for-netbank-suite-0123456789"
PASSWORD = "correct horse battery staple"


class FakeClock:
    """Wall clock that only moves when told to"""

    def __init__(self, start: datetime = None):
        # Start at real time: PyJWT checks exp against the real clock
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def config():
    """Test configuration that never reads a deployment secret"""
    return load_config(mode="test", jwt_secret=TEST_SECRET, database_url="memory://")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def system(config, clock):
    """Banking system over in-memory storage driven by the fake clock"""
    banking_system = BankingSystem(config, storage=InMemoryStorage(), clock=clock)
    yield banking_system
    banking_system.close()


@pytest.fixture
def client_identity(system):
    return system.identity_manager.create_identity("alice@example.com", PASSWORD, Role.CLIENT)


@pytest.fixture
def admin_identity(system):
    return system.identity_manager.create_identity("admin@example.com", PASSWORD, Role.ADMIN)


@pytest.fixture
def super_admin_identity(system):
    return system.identity_manager.create_identity("root@example.com", PASSWORD, Role.SUPER_ADMIN)
