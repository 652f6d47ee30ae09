import pytest

from arena.services.match_store import MatchStore
from tests.helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MatchStore.from_url(f"sqlite:///{tmp_path / 'arena_test.db'}")
