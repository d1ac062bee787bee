from flask import Blueprint, abort, current_app, request
import json
import os
import time
from functools import cached_property

from . import kv
from .bracket import BracketView, build_bracket, list_formats
from .datastore import (
    load_snapshot as ds_load_snapshot,
    pool_status as ds_pool_status,
    set_kv as ds_set_kv,
)
from .finals import FinalsState, compute_finals_state
from .leaderboard import Leaderboard, build_leaderboard, closest_lap_rows
from .metrics import RaceMetrics
from .race_sorting import is_race_round, sorted_race_rows
from .records import Snapshot


bp = Blueprint('main', __name__)


def _env_ttl(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


# Snapshots and everything derived from them are cached briefly; a new
# snapshot version always gets fresh views.
_SNAPSHOT_CACHE: dict[str, tuple[float, Snapshot]] = {}
_VIEW_CACHE: dict[str, tuple[float, str, "DerivedViews"]] = {}  # event -> latest version only
_SNAPSHOT_TTL = _env_ttl('SNAPSHOT_TTL', 2)  # seconds


class DerivedViews:
    """Lazily built views over one snapshot, sharing one metrics cache."""

    def __init__(self, snapshot: Snapshot):
        self.snapshot = snapshot
        self.metrics = RaceMetrics(snapshot)

    @cached_property
    def bracket(self) -> BracketView:
        return build_bracket(self.snapshot, self.metrics)

    @cached_property
    def leaderboard(self) -> Leaderboard:
        return build_leaderboard(self.snapshot, self.metrics, self.bracket)

    @cached_property
    def finals(self) -> FinalsState:
        return compute_finals_state(self.snapshot, self.metrics, self.bracket)


def _cache_get_snapshot(event_id: str) -> Snapshot | None:
    entry = _SNAPSHOT_CACHE.get(event_id)
    if not entry:
        return None
    exp, snapshot = entry
    if exp < time.time():
        _SNAPSHOT_CACHE.pop(event_id, None)
        return None
    return snapshot


def _cache_set_snapshot(event_id: str, snapshot: Snapshot) -> None:
    _SNAPSHOT_CACHE[event_id] = (time.time() + _SNAPSHOT_TTL, snapshot)


def _cache_get_views(event_id: str, version: str) -> DerivedViews | None:
    entry = _VIEW_CACHE.get(event_id)
    if not entry:
        return None
    exp, cached_version, views = entry
    if exp < time.time() or cached_version != version:
        _VIEW_CACHE.pop(event_id, None)
        return None
    return views


def _cache_set_views(event_id: str, version: str, views: DerivedViews) -> None:
    _VIEW_CACHE[event_id] = (time.time() + _SNAPSHOT_TTL, version, views)


def _cache_clear_all() -> None:
    _SNAPSHOT_CACHE.clear()
    _VIEW_CACHE.clear()


def _requested_event() -> str:
    return (request.args.get('event') or '').strip()


def _snapshot() -> Snapshot:
    event_id = _requested_event()
    cached = _cache_get_snapshot(event_id)
    if cached is not None:
        return cached
    snapshot = ds_load_snapshot(event_id or None)
    current_app.logger.debug(
        "Snapshot loaded: event=%s races=%d laps=%d version=%s",
        snapshot.event_id,
        len(snapshot.races),
        len(snapshot.laps),
        snapshot.version[:12],
    )
    _cache_set_snapshot(event_id, snapshot)
    return snapshot


def _views() -> DerivedViews:
    snapshot = _snapshot()
    views = _cache_get_views(snapshot.event_id, snapshot.version)
    if views is None:
        views = DerivedViews(snapshot)
        _cache_set_views(snapshot.event_id, snapshot.version, views)
    return views


@bp.route('/health/db')
def health_db():
    """Database connectivity health check.

    Always returns HTTP 200 with a JSON body describing connection status
    and whether the connection pool is in use.
    """
    url = os.environ.get('DATABASE_URL')
    if not url:
        return {
            'connected': False,
            'status': 'no_database_url',
            'message': 'DATABASE_URL is not set.',
        }
    try:
        import psycopg2  # type: ignore
        with psycopg2.connect(url, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute('SELECT current_user, current_database(), version()')
                user, db, ver = cur.fetchone()
            return {
                'connected': True,
                'status': 'ok',
                'user': user,
                'database': db,
                'server_version': (ver or '').split('\n')[0],
                'pool': ds_pool_status(),
            }
    except Exception as e:  # pragma: no cover - best-effort health output
        return {
            'connected': False,
            'status': 'error',
            'error': str(e),
            'pool': ds_pool_status(),
        }


@bp.route('/api/snapshot/version')
def snapshot_version():
    snapshot = _snapshot()
    return {'version': snapshot.version, 'event_id': snapshot.event_id}


@bp.route('/api/races')
def races():
    snapshot = _snapshot()
    out = []
    for race in snapshot.races_ordered():
        rnd = snapshot.round(race.round_id)
        out.append({
            'id': race.id,
            'round_id': race.round_id,
            'round_name': rnd.name if rnd else '',
            'race_order': race.race_order,
            'race_number': race.race_number,
            'source_id': race.source_id,
            'target_laps': race.target_laps,
            'has_started': race.has_started,
            'is_active': race.is_active,
            'is_completed': race.is_completed,
            'pilot_ids': race.pilot_ids(),
        })
    return {'current_index': snapshot.current_race_index(), 'races': out}


@bp.route('/api/races/<race_id>/results')
def race_results(race_id):
    views = _views()
    race = views.snapshot.race(race_id)
    if race is None:
        abort(404)
    rows = sorted_race_rows(views.snapshot, race_id, views.metrics)
    return {
        'race_id': race_id,
        'scoring': 'race' if is_race_round(views.snapshot, race) else 'consecutive',
        'rows': [row.to_dict() for row in rows],
    }


@bp.route('/api/leaderboard')
def leaderboard():
    return _views().leaderboard.to_dict()


@bp.route('/api/bracket')
def bracket():
    return _views().bracket.to_dict()


@bp.route('/api/bracket/formats')
def bracket_formats():
    return {'formats': [{'id': f.id, 'label': f.label, 'nodes': len(f.nodes)} for f in list_formats()]}


@bp.route('/api/finals')
def finals():
    return _views().finals.to_dict()


@bp.route('/api/closest-lap')
def closest_lap():
    snapshot = _snapshot()
    target = kv.parse_closest_lap_target(snapshot.kv(kv.LEADERBOARD_NAMESPACE, kv.CLOSEST_LAP_TARGET_KEY))
    rows = closest_lap_rows(snapshot, target) if target is not None else []
    return {
        'target_seconds': target,
        'rows': [
            {
                'pilot_id': r.pilot_id,
                'pilot_name': r.pilot_name,
                'lap_time': r.lap_time,
                'delta': r.delta,
                'race_id': r.race_id,
                'lap_number': r.lap_number,
            }
            for r in rows
        ],
    }


@bp.route('/api/kv/next-race-overrides', methods=['POST'])
def save_next_race_overrides():
    """Validate override rows against the current schedule and store them."""
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        payload = payload.get('overrides')
    if not isinstance(payload, list):
        abort(400, description="Expected a JSON list of overrides.")
    if any(not isinstance(row, dict) for row in payload):
        abort(400, description="Each override must be an object.")

    snapshot = _snapshot()
    overrides = kv.parse_next_race_overrides(json.dumps(payload), keep_empty_labels=True)
    errors = kv.validate_next_race_overrides(overrides, snapshot.races_ordered())
    if errors:
        current_app.logger.warning("Overrides rejected: %s", "; ".join(errors))
        return {'ok': False, 'errors': errors}, 400

    stored = [o.to_dict() for o in overrides if o.start_source_id]
    no_races = next((o for o in overrides if not o.start_source_id), None)
    if no_races is not None:
        stored.append(no_races.to_dict())
    ds_set_kv(kv.LEADERBOARD_NAMESPACE, kv.NEXT_RACE_OVERRIDES_KEY, stored, event_id=snapshot.event_id)
    _cache_clear_all()
    current_app.logger.info("Overrides saved: %d rows for event %s", len(stored), snapshot.event_id)
    return {'ok': True, 'overrides': stored}
