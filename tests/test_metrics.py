import orjson

from saving_monitor.metrics import EventLog


def test_events_are_appended_as_json_lines(tmp_path):
    log = EventLog(str(tmp_path / "logs" / "events.jsonl"))
    log.emit("session_found", {"event_id": 7})
    log.emit("tick", {"found_new": True})

    lines = (tmp_path / "logs" / "events.jsonl").read_bytes().splitlines()
    first = orjson.loads(lines[0])
    assert first["kind"] == "session_found"
    assert first["event_id"] == 7
    assert [orjson.loads(l)["kind"] for l in lines] == ["session_found", "tick"]


def test_disabled_log_still_counts(tmp_path):
    log = EventLog(str(tmp_path / "events.jsonl"), enabled=False)
    log.emit("cache_hit", {"cache": "octopoints"})
    log.emit("cache_hit", {"cache": "octopoints"})
    log.emit("alert", {"code": "FE-1"})
    assert not (tmp_path / "events.jsonl").exists()
    assert log.summary() == {"alert": 1, "cache_hit": 2}


def test_unwritable_primary_falls_back_to_cwd(tmp_path, monkeypatch):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    monkeypatch.chdir(tmp_path)
    log = EventLog(str(blocker / "events.jsonl"))
    log.emit("tick", {})
    assert (tmp_path / "events.jsonl").exists()
