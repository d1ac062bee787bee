import importlib


def test_pool_checkout_retries_on_stale_connection(monkeypatch):
    import heatboard.datastore_pg as pg
    pg = importlib.reload(pg)

    # Fake cursor/connection/pool to simulate first checkout failure then success
    class BadCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, sql, params=None):  # pragma: no cover - exercised via _get_conn
            from psycopg2 import OperationalError

            raise OperationalError("server closed the connection unexpectedly")

    class GoodCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, sql, params=None):
            return None

    class FakeConn:
        autocommit = False
        closed = 0
        status = 0
        cursor_cls = GoodCursor

        def cursor(self, cursor_factory=None):
            return self.cursor_cls()

        def rollback(self):
            pass

        def close(self):
            self.closed = 1

    class BadConn(FakeConn):
        cursor_cls = BadCursor

    class FakePool:
        def __init__(self, bad_count=1):
            self.bad_count = bad_count
            self.calls_get = 0
            self.calls_put = []

        def getconn(self):
            self.calls_get += 1
            if self.calls_get <= self.bad_count:
                return BadConn()
            return FakeConn()

        def putconn(self, conn, close=False):
            self.calls_put.append((conn, close))
            if close:
                conn.close()

    pool = FakePool()
    monkeypatch.setattr(pg, "_POOL", pool)

    with pg._get_conn() as conn:
        # Should have replaced the bad connection and yielded a healthy one
        assert type(conn) is FakeConn

    assert pool.calls_get == 2
    assert any(close for (_c, close) in pool.calls_put)
    # The healthy connection goes back to the pool open
    assert pool.calls_put[-1][1] is False


def test_pool_gives_up_after_second_stale_connection(monkeypatch):
    import pytest
    import psycopg2
    import heatboard.datastore_pg as pg
    pg = importlib.reload(pg)

    class BadCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, sql, params=None):
            raise psycopg2.InterfaceError("connection already closed")

    class BadConn:
        autocommit = False
        closed = 0

        def cursor(self, cursor_factory=None):
            return BadCursor()

        def close(self):
            self.closed = 1

    class FakePool:
        def __init__(self):
            self.closed_conns = 0

        def getconn(self):
            return BadConn()

        def putconn(self, conn, close=False):
            self.closed_conns += 1 if close else 0

    pool = FakePool()
    monkeypatch.setattr(pg, "_POOL", pool)
    with pytest.raises(psycopg2.OperationalError):
        with pg._get_conn():
            pass
    assert pool.closed_conns == 2


def test_pool_status_reports_configuration(monkeypatch):
    import heatboard.datastore_pg as pg
    pg = importlib.reload(pg)

    class FakePool:
        minconn = 2
        maxconn = 5
        closed = False

    monkeypatch.setattr(pg, "_POOL", None)
    assert pg.pool_status() == {"pool": False}
    monkeypatch.setattr(pg, "_POOL", FakePool())
    assert pg.pool_status() == {"pool": True, "minconn": 2, "maxconn": 5, "closed": False}
