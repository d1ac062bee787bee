import os
import json
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor
from psycopg2 import errors as pg_errors
from contextlib import contextmanager

from .records import Snapshot


_POOL: Optional[pg_pool.AbstractConnectionPool] = None

# Record tables, in dependency order
SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        name TEXT,
        is_current BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pilots (
        id TEXT PRIMARY KEY,
        event_id TEXT,
        name TEXT,
        source_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS channels (
        id TEXT PRIMARY KEY,
        short_band TEXT,
        number INTEGER,
        color TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rounds (
        id TEXT PRIMARY KEY,
        event_id TEXT,
        name TEXT,
        round_order INTEGER,
        event_type TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS races (
        id TEXT PRIMARY KEY,
        event_id TEXT,
        round_id TEXT,
        race_order INTEGER,
        race_number INTEGER,
        source_id TEXT,
        start TEXT,
        "end" TEXT,
        target_laps INTEGER,
        valid BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pilot_channels (
        id TEXT PRIMARY KEY,
        race_id TEXT REFERENCES races(id) ON DELETE CASCADE,
        pilot_id TEXT,
        channel_id TEXT,
        slot INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS detections (
        id TEXT PRIMARY KEY,
        race_id TEXT REFERENCES races(id) ON DELETE CASCADE,
        pilot_id TEXT,
        is_holeshot BOOLEAN NOT NULL DEFAULT FALSE,
        valid BOOLEAN NOT NULL DEFAULT TRUE,
        time TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS laps (
        id TEXT PRIMARY KEY,
        race_id TEXT REFERENCES races(id) ON DELETE CASCADE,
        detection_id TEXT,
        lap_number INTEGER,
        length_seconds DOUBLE PRECISION,
        start_time TEXT,
        end_time TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS client_kv (
        event_id TEXT NOT NULL DEFAULT '',
        namespace TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (event_id, namespace, key)
    )
    """,
)


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """connect_timeout (DB_CONNECT_TIMEOUT, default 10) plus TCP keepalives.

    Keepalives are on unless DB_KEEPALIVES is 0/false; the IDLE, INTERVAL
    and COUNT tunables are passed through when set.
    """
    kwargs: Dict[str, Any] = {}
    ct_env = _env_int("DB_CONNECT_TIMEOUT")
    kwargs["connect_timeout"] = ct_env if ct_env is not None else 10

    ka_env = os.environ.get("DB_KEEPALIVES")
    if ka_env is None:
        kwargs["keepalives"] = 1
    else:
        kwargs["keepalives"] = 0 if str(ka_env).lower() in ("0", "false") else 1

    for env_name, key in (
        ("DB_KEEPALIVES_IDLE", "keepalives_idle"),
        ("DB_KEEPALIVES_INTERVAL", "keepalives_interval"),
        ("DB_KEEPALIVES_COUNT", "keepalives_count"),
    ):
        val = _env_int(env_name)
        if val is not None:
            kwargs[key] = val
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Create the global connection pool from DATABASE_URL (once)."""
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def pool_status() -> Dict[str, Any]:
    if _POOL is None:
        return {"pool": False}
    return {"pool": True, "minconn": _POOL.minconn, "maxconn": _POOL.maxconn, "closed": bool(_POOL.closed)}


def _rollback_quietly(conn) -> None:
    try:
        conn.rollback()
    except psycopg2.Error:
        pass


@contextmanager
def _get_conn():
    """Yield a pooled connection, or a direct one when no pool exists.

    Pooled connections are pinged with ``SELECT 1``; a dead one is discarded
    and the checkout retried once before giving up.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
    if _POOL is not None:
        retried = False
        while True:
            conn = _POOL.getconn()
            healthy = True
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                if not getattr(conn, "autocommit", False):
                    _rollback_quietly(conn)
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                healthy = False

            if not healthy:
                try:
                    _POOL.putconn(conn, close=True)
                except (psycopg2.Error, KeyError):
                    pass
                if retried:
                    raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")
                retried = True
                continue

            try:
                try:
                    yield conn
                except Exception:
                    _rollback_quietly(conn)
                    raise
            finally:
                try:
                    if getattr(conn, "closed", 0) == 0 and not getattr(conn, "autocommit", False):
                        # 1 = active, 2 = intrans, 3 = inerror
                        if getattr(conn, "status", 0) in (1, 2, 3):
                            _rollback_quietly(conn)
                finally:
                    _POOL.putconn(conn)
            break
    else:
        conn = psycopg2.connect(url, **_connect_kwargs())
        try:
            try:
                yield conn
            except Exception:
                _rollback_quietly(conn)
                raise
        finally:
            try:
                conn.close()
            except psycopg2.Error:
                pass


def create_tables(conn) -> None:
    with conn.cursor() as cur:
        for stmt in SCHEMA_STATEMENTS:
            cur.execute(stmt)
    conn.commit()


def _is_missing_table(exc: Exception) -> bool:
    return isinstance(exc, getattr(pg_errors, "UndefinedTable", tuple()))


def _fetch_all(conn, cur, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
    """Rows for a query; a table that does not exist yet reads as empty."""
    try:
        cur.execute(sql, params)
        return [dict(r) for r in cur.fetchall() or []]
    except Exception as e:
        if not _is_missing_table(e):
            raise
        # Clear the aborted transaction so later queries can run
        conn.rollback()
        return []


def resolve_event_id(cur=None, conn=None) -> str:
    """HEATBOARD_EVENT_ID, else the current event, else the newest one."""
    env_id = (os.environ.get("HEATBOARD_EVENT_ID") or "").strip()
    if env_id:
        return env_id
    if cur is None:
        with _get_conn() as own_conn, own_conn.cursor(cursor_factory=RealDictCursor) as own_cur:
            return resolve_event_id(own_cur, own_conn)
    rows = _fetch_all(
        conn,
        cur,
        "SELECT id FROM events ORDER BY is_current DESC, created_at DESC, id DESC LIMIT 1",
    )
    return str(rows[0]["id"]) if rows else ""


def load_snapshot(event_id: Optional[str] = None) -> Snapshot:
    """Read one event's records into an immutable :class:`Snapshot`."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        event = event_id or resolve_event_id(cur, conn)
        scoped = "WHERE event_id = %s OR %s = ''"
        params = (event, event)
        data: Dict[str, Any] = {"event": event}
        data["pilots"] = _fetch_all(conn, cur, f"SELECT id, name, source_id FROM pilots {scoped} ORDER BY id", params)
        data["channels"] = _fetch_all(conn, cur, "SELECT id, short_band, number, color FROM channels ORDER BY id")
        data["rounds"] = _fetch_all(
            conn, cur, f"SELECT id, name, round_order, event_type FROM rounds {scoped} ORDER BY round_order, id", params
        )
        data["races"] = _fetch_all(
            conn,
            cur,
            f"""
            SELECT id, round_id, race_order, race_number, source_id, start, "end", target_laps, valid
            FROM races {scoped}
            ORDER BY race_order, id
            """,
            params,
        )
        race_ids = [r["id"] for r in data["races"]]
        if race_ids:
            data["pilot_channels"] = _fetch_all(
                conn,
                cur,
                "SELECT id, race_id, pilot_id, channel_id FROM pilot_channels WHERE race_id = ANY(%s) ORDER BY race_id, slot NULLS LAST, id",
                (race_ids,),
            )
            data["detections"] = _fetch_all(
                conn,
                cur,
                "SELECT id, race_id, pilot_id, is_holeshot, valid, time FROM detections WHERE race_id = ANY(%s) ORDER BY id",
                (race_ids,),
            )
            data["laps"] = _fetch_all(
                conn,
                cur,
                """
                SELECT id, race_id, detection_id, lap_number, length_seconds, start_time, end_time
                FROM laps WHERE race_id = ANY(%s)
                ORDER BY race_id, lap_number, id
                """,
                (race_ids,),
            )
        data["kv"] = _fetch_all(
            conn,
            cur,
            "SELECT namespace, key, value, event_id FROM client_kv WHERE event_id = %s OR event_id = '' ORDER BY namespace, key",
            (event,),
        )
    return Snapshot.from_dict(data)


def set_kv(namespace: str, key: str, value: Any, event_id: Optional[str] = None) -> Dict[str, Any]:
    """Upsert one key-value entry. Non-string values are stored as JSON."""
    text = value if isinstance(value, str) else json.dumps(value)
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        event = event_id if event_id is not None else resolve_event_id(cur, conn)
        cur.execute(
            """
            INSERT INTO client_kv (event_id, namespace, key, value)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (event_id, namespace, key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = now()
            """,
            (event or "", namespace, key, text),
        )
        conn.commit()
    return {"event_id": event or "", "namespace": namespace, "key": key, "value": text}
