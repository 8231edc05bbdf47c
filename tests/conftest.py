import sys, os
sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from fakes import FakeProvider, build_dispatcher, make_profile
from appointment_engine.store import InMemoryStore


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_profile(make_profile())
    return store


@pytest.fixture
def google():
    return FakeProvider("google")


@pytest.fixture
def ghl():
    return FakeProvider("ghl")


@pytest.fixture
def dispatcher(store, google, ghl):
    return build_dispatcher(store, google, ghl)
