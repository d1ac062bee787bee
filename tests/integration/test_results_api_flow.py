import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[2]))

from heatboard import create_app, kv


def _seed(event):
    event.round("main")
    event.race("r1", ["a", "b"], order=1, round_id="main", start=10000, end=100000, source_id="s1")
    event.race("r2", ["b", "c"], order=2, round_id="main", start=200000, source_id="s2")
    event.race("r3", ["a", "c"], order=3, round_id="main", source_id="s3")
    event.laps("r1", "a", [20.0, 20.0, 20.0], holeshot=1.0)
    event.laps("r1", "b", [21.0, 21.0, 21.0], holeshot=1.0)
    event.laps("r2", "c", [19.0], holeshot=1.0)


@pytest.fixture()
def client(event):
    _seed(event)
    app = create_app()
    app.config.update({"TESTING": True})
    with app.test_client() as c:
        yield c


def test_create_app_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        create_app()


def test_races_and_results(client):
    res = client.get("/api/races")
    assert res.status_code == 200
    body = res.get_json()
    assert [r["id"] for r in body["races"]] == ["r1", "r2", "r3"]
    assert body["current_index"] == 1
    assert body["races"][1]["is_active"]

    res = client.get("/api/races/r1/results")
    rows = res.get_json()["rows"]
    assert [r["pilot_id"] for r in rows] == ["a", "b"]
    assert rows[0]["position"] == 1
    assert res.get_json()["scoring"] == "race"

    assert client.get("/api/races/nope/results").status_code == 404


def test_leaderboard_bracket_and_finals_endpoints(client):
    board = client.get("/api/leaderboard").get_json()
    assert board["pilot_ids"][:2] == ["a", "b"]
    assert board["split_index"] is None

    bracket = client.get("/api/bracket").get_json()
    assert bracket["format_id"] == "double-elim-6p-v1"
    assert bracket["enabled"] is False
    assert len(bracket["nodes"]) == 29

    finals = client.get("/api/finals").get_json()
    assert finals["enabled"] is False

    formats = client.get("/api/bracket/formats").get_json()["formats"]
    assert {f["id"] for f in formats} == {"double-elim-6p-v1", "nzo-top24-de-v1"}


def test_snapshot_version_changes_with_records(client, event):
    first = client.get("/api/snapshot/version").get_json()
    assert first["event_id"] == "evt-1"
    event.laps("r2", "b", [18.0], holeshot=1.0)
    import heatboard.routes as routes
    routes._cache_clear_all()
    second = client.get("/api/snapshot/version").get_json()
    assert second["version"] != first["version"]


def test_closest_lap_uses_target(client, event):
    assert client.get("/api/closest-lap").get_json()["rows"] == []
    event.kv(kv.LEADERBOARD_NAMESPACE, kv.CLOSEST_LAP_TARGET_KEY, "19.2")
    import heatboard.routes as routes
    routes._cache_clear_all()
    body = client.get("/api/closest-lap").get_json()
    assert body["target_seconds"] == 19.2
    assert body["rows"][0]["pilot_id"] == "c"


def test_save_next_race_overrides(client, memory_store):
    payload = {
        "overrides": [
            {"label": "Warm up", "startSourceId": "s2", "endSourceId": "s2"},
            {"label": "That's all"},
            {"label": "Finals", "startSourceId": "s3"},
        ]
    }
    res = client.post("/api/kv/next-race-overrides", json=payload)
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    # The "no more races" row is stored last
    assert [o["label"] for o in body["overrides"]] == ["Warm up", "Finals", "That's all"]
    stored = [e for e in memory_store["kv"] if e["key"] == kv.NEXT_RACE_OVERRIDES_KEY]
    assert len(stored) == 1 and stored[0]["namespace"] == kv.LEADERBOARD_NAMESPACE

    board = client.get("/api/leaderboard").get_json()
    assert board["next_race_label"] == "Finals"


def test_save_next_race_overrides_rejects_bad_rows(client, memory_store):
    res = client.post(
        "/api/kv/next-race-overrides",
        json=[{"label": "", "startSourceId": "s1"}, {"label": "X", "startSourceId": "missing"}],
    )
    assert res.status_code == 400
    assert res.get_json()["errors"] == [
        "Row 1: label is required.",
        "Row 2: start race is not in the current schedule.",
    ]
    assert memory_store["kv"] == []

    assert client.post("/api/kv/next-race-overrides", json={"overrides": "nope"}).status_code == 400
    assert client.post("/api/kv/next-race-overrides", json=["nope"]).status_code == 400


def test_health_db_reports_connection_errors(client, monkeypatch):
    import psycopg2

    def refuse(*args, **kwargs):
        raise psycopg2.OperationalError("connection refused")

    monkeypatch.setattr(psycopg2, "connect", refuse)
    body = client.get("/health/db").get_json()
    assert body["connected"] is False
    assert body["status"] == "error"
    assert "connection refused" in body["error"]
    assert body["pool"] == {"pool": False}


def test_view_cache_keeps_latest_version_per_event(client, event):
    import heatboard.routes as routes

    versions = set()
    for lap in (18.0, 18.5, 19.0):
        event.laps("r2", "b", [lap], holeshot=1.0)
        routes._SNAPSHOT_CACHE.clear()
        assert client.get("/api/leaderboard").status_code == 200
        versions.add(routes._VIEW_CACHE["evt-1"][1])
    assert len(versions) == 3
    assert list(routes._VIEW_CACHE) == ["evt-1"]
