import importlib.util
import json
import pathlib

REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]


def _load_script(relpath, name):
    spec = importlib.util.spec_from_file_location(name, REPO_ROOT / relpath)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_check_bracket_format_accepts_shipped_formats(capsys):
    script = _load_script("scripts/check_bracket_format.py", "check_bracket_format")
    assert script.main([]) == 0
    out = capsys.readouterr().out
    assert out.count("OK") == 2


def test_check_bracket_format_reports_bad_file(tmp_path, capsys):
    script = _load_script("scripts/check_bracket_format.py", "check_bracket_format")
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"nodes": [], "rounds": []}))
    broken = tmp_path / "broken.json"
    broken.write_text("{")
    assert script.main([str(bad), str(broken)]) == 1
    out = capsys.readouterr().out
    assert "FAIL" in out and "needs at least one node" in out
    assert "not valid JSON" in out


def test_import_snapshot_upserts_every_collection(event, tmp_path, monkeypatch, capsys):
    event.round("main")
    event.race("r1", ["a", "b"], order=1, round_id="main", start=10000, end=90000)
    event.laps("r1", "a", [20.0], holeshot=1.0)
    event.kv("leaderboard", "splitIndex", "4")
    export = tmp_path / "export.json"
    export.write_text(json.dumps(event.store))

    executed = []

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, sql, params=None):
            executed.append(" ".join(sql.split()))

    class FakeConn:
        committed = 0
        closed = False

        def cursor(self):
            return FakeCursor()

        def commit(self):
            FakeConn.committed += 1

        def rollback(self):
            pass

        def close(self):
            FakeConn.closed = True

    script = _load_script("import_snapshot.py", "import_snapshot")
    monkeypatch.setattr(script.psycopg2, "connect", lambda url: FakeConn())

    assert script.main([str(export), "--current"]) == 0
    inserts = [s for s in executed if s.startswith("INSERT INTO")]
    tables = {s.split()[2] for s in inserts}
    assert tables == {"events", "pilots", "channels", "rounds", "races", "pilot_channels", "detections", "laps", "client_kv"}
    assert FakeConn.committed == 2
    assert FakeConn.closed
    assert "Import completed successfully!" in capsys.readouterr().out


def test_watch_event_once_prints_current_state(event, capsys):
    event.round("main")
    event.race("r1", ["a", "b"], order=1, round_id="main", start=10000)
    event.laps("r1", "a", [20.0, 20.0, 20.0], holeshot=1.0)
    event.laps("r1", "b", [21.0], holeshot=1.0)
    script = _load_script("scripts/watch_event.py", "watch_event")

    assert script.main(["--once"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 1
    assert "race=r1" in lines[0] and "leader=a" in lines[0]
