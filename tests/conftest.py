import pytest
from django.utils import timezone

from a_core.context import ClientContext
from tests.fakes import FakeClock, FakeFirestore, MemoryDeviceStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def frozen_now(monkeypatch, clock):
    """Server timestamps and timezone.now() read the same controllable clock."""
    monkeypatch.setattr(timezone, "now", clock)
    return clock


@pytest.fixture
def db(clock):
    return FakeFirestore(clock)


@pytest.fixture
def make_user(db):
    def _make(uid, **fields):
        data = {
            "userId": uid,
            "displayName": fields.pop("displayName", uid.capitalize()),
            "email": fields.pop("email", f"{uid}@example.com"),
            "photoURL": "",
            "isOnline": False,
        }
        data.update(fields)
        db.seed(f"users/{uid}", data)
        return ClientContext(uid=uid, device=MemoryDeviceStore())

    return _make


@pytest.fixture
def alice(make_user):
    return make_user("alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob")


@pytest.fixture
def carol(make_user):
    return make_user("carol")


@pytest.fixture
def anonymous():
    return ClientContext(uid=None, device=MemoryDeviceStore())
