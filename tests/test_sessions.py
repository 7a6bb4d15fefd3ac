import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from spend_engine.errors import SessionExpiredError
from spend_engine.sessions import SessionStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_create_and_get():
    store = SessionStore(ttl_seconds=60, clock=FakeClock())
    session = store.create([], ["CZK"], {"CSOB": 0}, {"CZK": 0}, files=["a.csv"])
    assert store.get(session.session_id) is session
    assert session.files == ["a.csv"]
    assert len(session.session_id) == 32
    assert len(store) == 1


def test_sessions_expire_and_are_evicted():
    clock = FakeClock()
    store = SessionStore(ttl_seconds=60, clock=clock)
    old = store.create([], [], {}, {})
    clock.now += 30
    fresh = store.create([], [], {}, {})

    clock.now += 30
    with pytest.raises(SessionExpiredError) as exc:
        store.get(old.session_id)
    assert exc.value.session_id == old.session_id
    assert store.get(fresh.session_id) is fresh
    assert len(store) == 1


def test_unknown_and_discarded_sessions():
    store = SessionStore(clock=FakeClock())
    with pytest.raises(SessionExpiredError):
        store.get("nope")
    session = store.create([], [], {}, {})
    store.discard(session.session_id)
    store.discard(session.session_id)
    with pytest.raises(SessionExpiredError):
        store.get(session.session_id)


def test_ttl_must_be_positive():
    with pytest.raises(ValueError):
        SessionStore(ttl_seconds=0)


def test_concurrent_create_and_get_keep_sessions_apart():
    store = SessionStore(ttl_seconds=60)
    workers = 8
    barrier = threading.Barrier(workers)

    def create_then_get(n):
        barrier.wait()
        session = store.create([], [f"C{n:02d}"], {}, {}, files=[f"{n}.csv"])
        return n, store.get(session.session_id)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(create_then_get, range(workers)))

    assert len(store) == workers
    assert len({s.session_id for _, s in results}) == workers
    for n, session in results:
        assert session.files == [f"{n}.csv"]
        assert session.currencies == [f"C{n:02d}"]
