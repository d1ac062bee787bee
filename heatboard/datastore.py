from typing import Any, Dict, Optional

# Record-store proxy. Routes import from here so tests can swap the
# PostgreSQL functions in datastore_pg for in-memory ones.

from . import datastore_pg as _pg
from .records import Snapshot


def load_snapshot(event_id: Optional[str] = None) -> Snapshot:
    return _pg.load_snapshot(event_id=event_id)


def set_kv(namespace: str, key: str, value: Any, event_id: Optional[str] = None) -> Dict[str, Any]:
    return _pg.set_kv(namespace, key, value, event_id=event_id)


def pool_status() -> Dict[str, Any]:
    return _pg.pool_status()
