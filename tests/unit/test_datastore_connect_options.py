import importlib


def test_init_pool_passes_keepalive_kwargs(monkeypatch):
    import heatboard.datastore_pg as pg
    pg = importlib.reload(pg)

    # Keepalive + timeout envs
    monkeypatch.setenv("DB_CONNECT_TIMEOUT", "7")
    monkeypatch.setenv("DB_KEEPALIVES", "1")
    monkeypatch.setenv("DB_KEEPALIVES_IDLE", "30")
    monkeypatch.setenv("DB_KEEPALIVES_INTERVAL", "10")
    monkeypatch.setenv("DB_KEEPALIVES_COUNT", "3")

    captured = {}

    class FakePool:
        def __init__(self, minconn, maxconn, dsn=None, **kwargs):  # type: ignore[no-redef]
            captured["minconn"] = minconn
            captured["maxconn"] = maxconn
            captured["dsn"] = dsn
            captured["kwargs"] = kwargs

    monkeypatch.setattr(pg, "_POOL", None)
    monkeypatch.setattr(pg.pg_pool, "ThreadedConnectionPool", FakePool)

    pg.init_pool(minconn=2, maxconn=5)

    assert captured["dsn"].startswith("postgresql://"), "Expected DSN passed to pool"
    assert (captured["minconn"], captured["maxconn"]) == (2, 5)
    kw = captured["kwargs"]
    assert kw.get("connect_timeout") == 7
    assert kw.get("keepalives") == 1
    assert kw.get("keepalives_idle") == 30
    assert kw.get("keepalives_interval") == 10
    assert kw.get("keepalives_count") == 3


def test_direct_connect_defaults(monkeypatch):
    import heatboard.datastore_pg as pg
    pg = importlib.reload(pg)

    for name in ("DB_CONNECT_TIMEOUT", "DB_KEEPALIVES_IDLE", "DB_KEEPALIVES_INTERVAL", "DB_KEEPALIVES_COUNT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DB_KEEPALIVES", "false")

    captured = {}

    class FakeConn:
        autocommit = False

        def close(self):
            captured["closed"] = True

    def fake_connect(dsn=None, **kwargs):
        captured["dsn"] = dsn
        captured["kwargs"] = kwargs
        return FakeConn()

    # Ensure no pool path
    monkeypatch.setattr(pg, "_POOL", None)
    monkeypatch.setattr(pg.psycopg2, "connect", fake_connect)

    with pg._get_conn() as _conn:
        pass

    assert captured["kwargs"] == {"connect_timeout": 10, "keepalives": 0}
    assert captured["closed"]


def test_event_id_from_env_skips_the_database(monkeypatch):
    import heatboard.datastore_pg as pg
    pg = importlib.reload(pg)

    monkeypatch.setenv("HEATBOARD_EVENT_ID", " evt-42 ")

    def fail_connect(*args, **kwargs):  # pragma: no cover - must not be called
        raise AssertionError("database should not be queried")

    monkeypatch.setattr(pg.psycopg2, "connect", fail_connect)
    assert pg.resolve_event_id() == "evt-42"
