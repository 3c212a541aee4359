from types import SimpleNamespace

import pytest

from fhirsync import database


class _FakeConn:
    def __init__(self) -> None:
        self.created = False

    async def run_sync(self, _fn) -> None:
        self.created = True


class _FakeBeginFactory:
    def __init__(self, fail_times: int) -> None:
        self.fail_times = fail_times
        self.calls = 0
        self.conn = _FakeConn()

    def __call__(self):
        self.calls += 1
        call_number = self.calls
        fail_times = self.fail_times
        conn = self.conn

        class _Ctx:
            async def __aenter__(self_nonlocal):
                if call_number <= fail_times:
                    raise ConnectionError("db not ready")
                return conn

            async def __aexit__(self_nonlocal, exc_type, exc, tb):
                return False

        return _Ctx()


@pytest.fixture()
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    delays: list[float] = []

    async def _record_sleep(seconds: float) -> None:
        delays.append(seconds)

    monkeypatch.setattr(database.asyncio, "sleep", _record_sleep)
    return delays


def _configure(monkeypatch: pytest.MonkeyPatch, factory: _FakeBeginFactory, *, retries: int, debug: bool) -> None:
    monkeypatch.setattr(database, "engine", SimpleNamespace(begin=factory))
    monkeypatch.setattr(database.settings, "debug", debug, raising=False)
    monkeypatch.setattr(database.settings, "database_init_retries", retries, raising=False)
    monkeypatch.setattr(database.settings, "database_init_retry_delay_seconds", 0.5, raising=False)


@pytest.mark.anyio
async def test_init_db_retries_until_success(monkeypatch: pytest.MonkeyPatch, sleeps) -> None:
    begin_factory = _FakeBeginFactory(fail_times=2)
    _configure(monkeypatch, begin_factory, retries=3, debug=False)

    await database.init_db()

    assert begin_factory.calls == 3
    assert sleeps == [0.5, 1.0]
    assert begin_factory.conn.created is False


@pytest.mark.anyio
async def test_init_db_creates_tables_in_debug(monkeypatch: pytest.MonkeyPatch, sleeps) -> None:
    begin_factory = _FakeBeginFactory(fail_times=0)
    _configure(monkeypatch, begin_factory, retries=0, debug=True)

    await database.init_db()

    assert begin_factory.conn.created is True
    assert sleeps == []


@pytest.mark.anyio
async def test_init_db_raises_after_retries_exhausted(monkeypatch: pytest.MonkeyPatch, sleeps) -> None:
    begin_factory = _FakeBeginFactory(fail_times=10)
    _configure(monkeypatch, begin_factory, retries=1, debug=False)

    with pytest.raises(ConnectionError, match="db not ready"):
        await database.init_db()

    assert begin_factory.calls == 2
    assert len(sleeps) == 1


class _FakeSession:
    def __init__(self) -> None:
        self.events: list[str] = []

    async def __aenter__(self) -> "_FakeSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    async def commit(self) -> None:
        self.events.append("commit")

    async def rollback(self) -> None:
        self.events.append("rollback")

    async def close(self) -> None:
        self.events.append("close")


@pytest.fixture()
def session(monkeypatch: pytest.MonkeyPatch) -> _FakeSession:
    fake = _FakeSession()
    monkeypatch.setattr(database, "async_session_maker", lambda: fake)
    return fake


@pytest.mark.anyio
async def test_get_db_commits_after_the_request(session: _FakeSession) -> None:
    dependency = database.get_db()

    assert await dependency.__anext__() is session
    with pytest.raises(StopAsyncIteration):
        await dependency.__anext__()

    assert session.events == ["commit", "close"]


@pytest.mark.anyio
async def test_get_db_rolls_back_when_the_request_fails(session: _FakeSession) -> None:
    dependency = database.get_db()
    await dependency.__anext__()

    with pytest.raises(RuntimeError, match="handler failed"):
        await dependency.athrow(RuntimeError("handler failed"))

    assert session.events == ["rollback", "close"]


@pytest.mark.anyio
async def test_close_db_disposes_the_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    disposed: list[bool] = []

    async def _dispose() -> None:
        disposed.append(True)

    monkeypatch.setattr(database, "engine", SimpleNamespace(dispose=_dispose))

    await database.close_db()

    assert disposed == [True]
