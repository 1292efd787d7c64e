import json
from unittest.mock import patch

import pytest

from magiclink.service.errors import BackendUnavailableError
from magiclink.service.sessions import SESSION_KEY_PREFIX, Session, SessionManager
from magiclink.storage.fallback import FallbackCache
from magiclink.storage.memory import LocalCache

WEEK = 7 * 24 * 60 * 60


@pytest.fixture
def sessions(local_only_cache):
    return SessionManager(local_only_cache, ttl_seconds=WEEK)


async def test_establish_stores_session(sessions, local_cache):
    session = await sessions.establish("a@x.com")
    assert len(session.id) >= 43
    raw = await local_cache.get(f"{SESSION_KEY_PREFIX}{session.id}")
    data = json.loads(raw)
    assert data["email"] == "a@x.com"
    assert data["login_time"] == session.login_time.isoformat()


async def test_resolve_returns_session(sessions):
    created = await sessions.establish("a@x.com")
    resolved = await sessions.resolve(created.id)
    assert resolved == created


async def test_session_ids_are_unique(sessions):
    ids = {(await sessions.establish("a@x.com")).id for _ in range(50)}
    assert len(ids) == 50


async def test_expiry_slides_on_use(sessions, clock):
    session = await sessions.establish("a@x.com")
    clock.advance(WEEK - 60)
    assert await sessions.resolve(session.id) is not None
    clock.advance(WEEK - 60)
    assert await sessions.resolve(session.id) is not None


async def test_idle_session_expires(sessions, clock):
    session = await sessions.establish("a@x.com")
    clock.advance(WEEK + 1)
    assert await sessions.resolve(session.id) is None


@pytest.mark.parametrize("session_id", [None, "", "unknown", "x" * 500])
async def test_resolve_unknown_ids(sessions, session_id):
    assert await sessions.resolve(session_id) is None


async def test_corrupted_entry_is_ignored(sessions, local_cache):
    await local_cache.put(f"{SESSION_KEY_PREFIX}broken", "{not json", 60)
    assert await sessions.resolve("broken") is None


async def test_terminate_removes_session(sessions):
    session = await sessions.establish("a@x.com")
    await sessions.terminate(session.id)
    assert await sessions.resolve(session.id) is None


async def test_terminate_during_outage_stays_terminated(dual_cache, distributed):
    sessions = SessionManager(dual_cache, ttl_seconds=WEEK)
    session = await sessions.establish("a@x.com")
    distributed.up = False
    await sessions.terminate(session.id)
    distributed.up = True
    assert await sessions.resolve(session.id) is None


async def test_terminate_failure_is_reported(dual_cache, distributed):
    sessions = SessionManager(dual_cache, ttl_seconds=WEEK)
    session = await sessions.establish("a@x.com")
    distributed.failing = True
    with pytest.raises(BackendUnavailableError):
        await sessions.terminate(session.id)


async def test_resolve_refresh_does_not_rewrite_entry(sessions, local_cache, clock):
    session = await sessions.establish("a@x.com")
    key = f"{SESSION_KEY_PREFIX}{session.id}"
    clock.advance(WEEK - 10)
    with patch.object(local_cache, "put", wraps=local_cache.put) as put:
        assert await sessions.resolve(session.id) == session
    put.assert_not_called()
    clock.advance(20)
    assert await local_cache.get(key) is not None


async def test_establish_total_failure(clock):
    sessions = SessionManager(FallbackCache(LocalCache(max_entries=0, clock=clock)))
    with pytest.raises(BackendUnavailableError):
        await sessions.establish("a@x.com")


def test_session_json_round_trip():
    from datetime import datetime, timezone

    session = Session(id="abc", email="a@x.com", login_time=datetime(2024, 5, 1, tzinfo=timezone.utc))
    assert Session.from_json("abc", session.to_json()) == session
