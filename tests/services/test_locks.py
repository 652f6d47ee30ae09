import pytest

from arena.services.locks import DatabaseLeaseStore, InMemoryLeaseStore, build_lease_store


class ManualTime:
    def __init__(self, value: float = 1000.0):
        self.value = value

    def __call__(self) -> float:
        return self.value


@pytest.fixture(params=["memory", "database"])
def lease_store(request, store):
    ticker = ManualTime()
    if request.param == "memory":
        leases = InMemoryLeaseStore(ttl_sec=30, clock=ticker)
    else:
        leases = DatabaseLeaseStore(store.session_factory, ttl_sec=30, clock=ticker)
    return leases, ticker


class TestLeaseStores:

    def test_second_holder_is_refused(self, lease_store):
        leases, _ = lease_store
        assert leases.try_acquire("match:game1", "worker-a")
        assert not leases.try_acquire("match:game1", "worker-b")
        assert leases.try_acquire("match:game2", "worker-b")

    def test_release_frees_the_key(self, lease_store):
        leases, _ = lease_store
        leases.try_acquire("match:game1", "worker-a")
        leases.release("match:game1", "worker-a")
        assert leases.try_acquire("match:game1", "worker-b")

    def test_release_by_other_holder_is_ignored(self, lease_store):
        leases, _ = lease_store
        leases.try_acquire("match:game1", "worker-a")
        leases.release("match:game1", "worker-b")
        assert not leases.try_acquire("match:game1", "worker-b")

    def test_stale_lease_is_taken_over(self, lease_store):
        leases, ticker = lease_store
        leases.try_acquire("match:game1", "worker-a")
        ticker.value += 29
        assert not leases.try_acquire("match:game1", "worker-b")
        ticker.value += 2
        assert leases.try_acquire("match:game1", "worker-b")
        assert not leases.try_acquire("match:game1", "worker-a")


class TestBuildLeaseStore:

    def test_backends(self, store):
        assert isinstance(build_lease_store("memory"), InMemoryLeaseStore)
        assert isinstance(build_lease_store("database", store.session_factory), DatabaseLeaseStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_lease_store("redis")
