"""Tests for the worker pool."""

import threading

import pytest

from achilles.errors import DatabaseConnectionError, ExecutionError
from achilles.pool import CancellationToken, WorkerPool, WorkItem, partition
from achilles.session import Connector, Session, SessionManager


class FakeSession(Session):
    def __init__(self):
        super().__init__("sqlite")

    def _execute_one(self, stmt):
        pass

    def _query_one(self, stmt):
        return []

    def table_exists(self, name):
        return False

    def close(self):
        self.closed = True


class FakeConnector(Connector):
    dialect = "sqlite"

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.connects = 0
        self._lock = threading.Lock()

    def connect(self):
        with self._lock:
            self.connects += 1
            if self.failures:
                self.failures -= 1
                raise DatabaseConnectionError("refused")
        return FakeSession()


def _item(step_id, fn=None):
    return WorkItem("analysis", str(step_id), fn or (lambda session: None))


def _boom(session):
    raise ExecutionError("no such table")


def test_partition_round_robin():
    assert partition(list(range(7)), 3) == [[0, 3, 6], [1, 4], [2, 5]]
    assert partition([1, 2], 5) == [[1], [2]]
    assert partition([], 3) == []


class TestWorkerPool:
    def test_inline_runs_in_order_on_callers_session(self):
        sessions = SessionManager(FakeConnector())
        main = sessions.acquire()
        seen = []
        items = [_item(i, lambda s, i=i: seen.append((i, s.session_id))) for i in range(5)]
        outcomes = WorkerPool(sessions, 1, verbose=False).run(items, session=main)
        assert [i for i, _ in seen] == list(range(5))
        assert {sid for _, sid in seen} == {main.session_id}
        assert all(o.ok for o in outcomes)

    def test_outcomes_come_back_in_input_order(self):
        sessions = SessionManager(FakeConnector())
        items = [_item(i) for i in range(10)]
        outcomes = WorkerPool(sessions, 3, verbose=False).run(items)
        assert [o.key for o in outcomes] == [i.key for i in items]
        assert {o.worker for o in outcomes} == {0, 1, 2}

    def test_each_worker_uses_one_session_and_releases_it(self):
        sessions = SessionManager(FakeConnector())
        used = {}
        lock = threading.Lock()

        def record(session, i):
            with lock:
                used[i] = session.session_id

        items = [_item(i, lambda s, i=i: record(s, i)) for i in range(9)]
        WorkerPool(sessions, 3, verbose=False).run(items)
        assert len(set(used.values())) == 3
        assert sessions.open_sessions == []

    def test_failure_does_not_stop_siblings(self):
        sessions = SessionManager(FakeConnector())
        items = [_item(1), _item(2, _boom), _item(3), _item(4)]
        outcomes = WorkerPool(sessions, 2, verbose=False).run(items)
        assert [o.ok for o in outcomes] == [True, False, True, True]
        failure = outcomes[1].failure
        assert failure.step_id == "2"
        assert failure.error_type == "ExecutionError"

    def test_fail_fast_cancels_remaining(self):
        sessions = SessionManager(FakeConnector())
        token = CancellationToken()
        main = sessions.acquire()
        items = [_item(1, _boom), _item(2), _item(3)]
        outcomes = WorkerPool(sessions, 1, token=token, fail_fast=True, verbose=False).run(
            items, session=main
        )
        assert token.cancelled
        assert outcomes[0].failure is not None
        assert [o.cancelled for o in outcomes[1:]] == [True, True]

    def test_connection_loss_inline_is_fatal(self):
        sessions = SessionManager(FakeConnector())
        token = CancellationToken()
        main = sessions.acquire()

        def lost(session):
            raise DatabaseConnectionError("gone")

        items = [_item(1, lost), _item(2)]
        outcomes = WorkerPool(sessions, 1, token=token, verbose=False).run(items, session=main)
        assert token.cancelled
        assert outcomes[0].failure.error_type == "DatabaseConnectionError"
        assert outcomes[1].cancelled

    def test_worker_replaces_lost_session(self):
        sessions = SessionManager(FakeConnector())
        calls = []

        def lost_once(session):
            calls.append(session.session_id)
            raise DatabaseConnectionError("gone")

        items = [_item(1, lost_once), _item(2, lambda s: calls.append(s.session_id))]
        outcomes = WorkerPool(sessions, 2, verbose=False).run(items)
        assert not outcomes[0].ok
        assert outcomes[1].ok

        # one worker, two items: the second runs on a fresh session
        sessions = SessionManager(FakeConnector())
        calls.clear()
        pool = WorkerPool(sessions, 2, verbose=False)
        outcomes, _ = pool._drain(
            0, [_item(1, lost_once), _item(2, lambda s: calls.append(s.session_id))],
            sessions.acquire(), fatal_on_connection_loss=False,
        )
        assert calls[0] != calls[1]
        assert [o.ok for o in outcomes] == [False, True]

    def test_unacquirable_session_fails_the_whole_queue(self):
        sessions = SessionManager(FakeConnector(failures=10))
        pool = WorkerPool(sessions, 2, max_acquire_attempts=1, verbose=False)
        outcomes = pool.run([_item(i) for i in range(4)])
        assert all(o.failure.error_type == "DatabaseConnectionError" for o in outcomes)

    def test_empty(self):
        assert WorkerPool(SessionManager(FakeConnector()), 4).run([]) == []


class TestSessionManager:
    def test_acquire_with_retry(self, monkeypatch):
        monkeypatch.setattr("achilles.session.time.sleep", lambda s: None)
        connector = FakeConnector(failures=2)
        session = SessionManager(connector).acquire_with_retry(attempts=3)
        assert not session.closed
        assert connector.connects == 3

    def test_acquire_gives_up(self, monkeypatch):
        monkeypatch.setattr("achilles.session.time.sleep", lambda s: None)
        with pytest.raises(DatabaseConnectionError, match="2 attempt"):
            SessionManager(FakeConnector(failures=5)).acquire_with_retry(attempts=2)

    def test_listeners_see_every_statement(self):
        seen = []
        sessions = SessionManager(FakeConnector(), listeners=[lambda sid, s: seen.append(s)])
        sessions.acquire().execute("SELECT 1; SELECT 2;")
        assert seen == ["SELECT 1", "SELECT 2"]

    def test_close_closes_everything(self):
        sessions = SessionManager(FakeConnector())
        opened = [sessions.acquire(), sessions.acquire()]
        sessions.close()
        assert all(s.closed for s in opened)
        assert sessions.open_sessions == []
        with pytest.raises(DatabaseConnectionError):
            opened[0].execute("SELECT 1")
