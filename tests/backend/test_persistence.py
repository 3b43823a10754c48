from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import DelayJobStatus, utc_now
from backend.app.persistence import SqlitePersistence


def _new_client(monkeypatch, db_path: Path) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    return TestClient(create_app())


def test_instances_and_flows_persist_across_restart(env, monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "zapdesk.sqlite3"
    first_client = _new_client(monkeypatch, db_path)
    instance = first_client.post(
        "/instances", json={"name": "Loja", "instance_name": "loja-1", "status": "connected"}
    ).json()
    flow = first_client.post("/flows", json={"name": "Boas-vindas", "assigned_instances": [instance["id"]]})
    assert flow.status_code == 201

    restarted_client = _new_client(monkeypatch, db_path)
    assert [i["id"] for i in restarted_client.get("/instances").json()] == [instance["id"]]
    restored = restarted_client.get(f"/flows/{flow.json()['id']}")
    assert restored.status_code == 200
    assert restored.json()["assigned_instances"] == [instance["id"]]
    duplicate = restarted_client.post("/instances", json={"name": "Loja", "instance_name": "loja-1"})
    assert duplicate.status_code == 409


def test_processed_gateway_event_stays_deduplicated_after_restart(env, monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "zapdesk.sqlite3"
    payload = {"event": "connection.update", "instance": "ghost", "data": {"state": "open"}}

    first_client = _new_client(monkeypatch, db_path)
    first = first_client.post("/webhooks/gateway", json=payload)
    assert first.json()["status"] == "failed"

    restarted_client = _new_client(monkeypatch, db_path)
    second = restarted_client.post("/webhooks/gateway", json=payload)
    assert second.json()["status"] == "failed"
    assert second.json()["attempts"] == 1


def test_delay_job_updates_survive_restart(env, monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "zapdesk.sqlite3"
    first_client = _new_client(monkeypatch, db_path)
    store = first_client.app.state.store
    run_at = utc_now() + timedelta(minutes=5)
    store.schedule_delay_job(session_id="ses_1", user_id="dev-local", run_at=run_at)
    store.update_delay_job("ses_1", attempts=1, last_error="gateway timeout")

    restarted = _new_client(monkeypatch, db_path).app.state.store
    job = restarted.get_delay_job("ses_1")
    assert job is not None
    assert job.status == DelayJobStatus.scheduled
    assert job.attempts == 1
    assert job.last_error == "gateway timeout"
    assert job.run_at_utc == run_at


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "zapdesk.sqlite3"
    persistence = SqlitePersistence(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert persistence.ping()


def test_blaster_logs_survive_restart(env, monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "zapdesk.sqlite3"
    store = _new_client(monkeypatch, db_path).app.state.store
    store.add_blaster_log(
        campaign_id="bcmp_1", phone="5511911112222", instance_id=None, status="failed", error="offline"
    )

    restarted = _new_client(monkeypatch, db_path).app.state.store
    logs = restarted.list_blaster_logs("bcmp_1")
    assert [(log.phone, log.status, log.error) for log in logs] == [("5511911112222", "failed", "offline")]
