from __future__ import annotations

import io
import os
import zipfile
from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text

import safebackup.db.session as db_session_module
from safebackup.api.app import create_app
from safebackup.core.config import get_settings
from safebackup.db.models import BackupJobType
from safebackup.worker.pipeline import build_orchestrator, reset_workers


def setup_env(tmp_path: Path) -> TestClient:
    content_root = tmp_path / "content"
    (content_root / "uploads").mkdir(parents=True, exist_ok=True)
    (content_root / "index.php").write_text("<?php echo 'hi';")
    (content_root / "uploads" / "logo.png").write_bytes(b"\x89PNG")

    source_path = tmp_path / "source.sqlite3"
    engine = create_engine(f"sqlite:///{source_path.as_posix()}", future=True)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE options (id INTEGER PRIMARY KEY, name TEXT, value TEXT)"))
        conn.execute(text("INSERT INTO options(id, name, value) VALUES (1, 'siteurl', 'https://example.com')"))
    engine.dispose()

    os.environ["SAFEBACKUP_STATE_ROOT"] = (tmp_path / "state").as_posix()
    os.environ["SAFEBACKUP_CONTENT_ROOT"] = content_root.as_posix()
    os.environ["SAFEBACKUP_SOURCE_DATABASE_URL"] = f"sqlite:///{source_path.as_posix()}"
    os.environ["SAFEBACKUP_CONTINUATION_MODE"] = "none"
    os.environ["SAFEBACKUP_PROGRESS_THROTTLE_SECONDS"] = "0"

    get_settings.cache_clear()
    reset_workers()
    db_session_module.reset_engines()
    return TestClient(create_app())


def test_health_reports_maintenance_flag(tmp_path: Path) -> None:
    with setup_env(tmp_path) as client:
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["maintenance"] is False

        get_settings().effective_maintenance_flag_path.write_text("{}")
        assert client.get("/api/v1/health").json()["maintenance"] is True


def test_backup_lifecycle_over_http(tmp_path: Path) -> None:
    with setup_env(tmp_path) as client:
        started = client.post("/api/v1/backups", json={"job_type": "full", "session_id": "ui-1"})
        assert started.status_code == 202
        body = started.json()
        assert body["session_id"] == "ui-1"
        assert body["tables"] == 1
        assert body["batch"]["status"] == "completed"
        backup_id = body["batch"]["backup_id"]

        progress = client.get("/api/v1/backup/progress").json()
        assert progress["percent"] == 100
        assert progress["active"] is False

        listed = client.get("/api/v1/backups", params={"status": "completed"}).json()
        assert [item["id"] for item in listed["items"]] == [backup_id]

        detail = client.get(f"/api/v1/backups/{backup_id}").json()
        assert detail["job_type"] == "full"
        assert detail["stats"]["files_archived"] == 2

        contents = client.get(f"/api/v1/backups/{backup_id}/contents").json()
        assert contents["database_chunks"] == ["database-1.sql"]
        assert [(entry["path"], entry["type"]) for entry in contents["entries"]] == [
            ("index.php", "file"),
            ("uploads", "folder"),
            ("uploads/logo.png", "file"),
        ]
        folder = contents["entries"][1]
        assert folder["has_children"] is True
        assert contents["entries"][2]["depth"] == 1

        (get_settings().content_root / "index.php").write_text("tampered")
        restored = client.post(f"/api/v1/backups/{backup_id}/restore", json={"items": ["index.php"]})
        assert restored.status_code == 200
        assert restored.json()["files_restored"] == 1
        assert (get_settings().content_root / "index.php").read_text() == "<?php echo 'hi';"

        assert client.delete(f"/api/v1/backups/{backup_id}").status_code == 204
        assert client.get(f"/api/v1/backups/{backup_id}").status_code == 404


def test_batch_and_cancel_without_active_job(tmp_path: Path) -> None:
    with setup_env(tmp_path) as client:
        expired = client.post("/api/v1/backups/batch", json={"resume": True})
        assert expired.status_code == 410

        idle = client.post("/api/v1/backups/batch", json={"resume": False})
        assert idle.status_code == 200
        assert idle.json()["status"] == "no_active_job"

        cancelled = client.post("/api/v1/backup/cancel")
        assert cancelled.json() == {"status": "no_active_job"}


def test_conflicting_start_and_cancel(tmp_path: Path) -> None:
    with setup_env(tmp_path) as client:
        build_orchestrator().start_backup(BackupJobType.FULL)

        conflict = client.post("/api/v1/backups", json={"job_type": "incremental"})
        assert conflict.status_code == 409

        assert client.post("/api/v1/backup/cancel").json() == {"status": "cancelled"}
        assert client.get("/api/v1/backup/progress").json()["active"] is False


def test_restore_error_mapping(tmp_path: Path) -> None:
    with setup_env(tmp_path) as client:
        assert client.post("/api/v1/backups/999/restore", json={}).status_code == 404

        backup_id = client.post("/api/v1/backups", json={"job_type": "db_only"}).json()["batch"]["backup_id"]
        unsafe = client.post(f"/api/v1/backups/{backup_id}/restore", json={"items": ["../../etc"]})
        assert unsafe.status_code == 422


def test_runtime_settings_endpoints(tmp_path: Path) -> None:
    with setup_env(tmp_path) as client:
        current = client.get("/api/v1/settings").json()
        assert current["retention_limit"] == 5

        updated = client.post("/api/v1/settings", json={"retention_limit": 0, "cloud_retention_count": 2})
        assert updated.status_code == 200
        assert updated.json()["retention_limit"] == 0

        assert client.post("/api/v1/settings", json={"incremental_enabled": False}).status_code == 200
        blocked = client.post("/api/v1/settings", json={"incremental_enabled": True})
        assert blocked.status_code == 409

        invalid = client.post("/api/v1/settings", json={"retention_limit": -1})
        assert invalid.status_code == 422


def test_download_bundle_sql_chunk_file_and_folder(tmp_path: Path) -> None:
    with setup_env(tmp_path) as client:
        backup_id = client.post("/api/v1/backups", json={"job_type": "full"}).json()["batch"]["backup_id"]
        url = f"/api/v1/backups/{backup_id}/download"

        bundle = client.get(url)
        assert bundle.status_code == 200
        assert "attachment" in bundle.headers["content-disposition"]
        with zipfile.ZipFile(io.BytesIO(bundle.content)) as archive:
            assert archive.namelist() == ["database-1.sql", "files-1.zip"]

        sql = client.get(url, params={"path": "database-1.sql"})
        assert sql.status_code == 200
        assert "siteurl" in sql.text

        single = client.get(url, params={"path": "uploads/logo.png"})
        assert single.status_code == 200
        assert single.content == b"\x89PNG"

        folder = client.get(url, params={"path": "/uploads/"})
        assert folder.status_code == 200
        with zipfile.ZipFile(io.BytesIO(folder.content)) as archive:
            assert archive.namelist() == ["uploads/logo.png"]

        assert client.get(url, params={"path": "missing.txt"}).status_code == 404
        assert client.get(url, params={"path": "database-9.sql"}).status_code == 404
        assert client.get(url, params={"path": "../secret"}).status_code == 422
        assert client.get("/api/v1/backups/999/download").status_code == 404

        contents = client.get(f"/api/v1/backups/{backup_id}/contents").json()
        assert contents["archive_chunks"] == ["files-1.zip"]


def test_stats_summarise_backup_records(tmp_path: Path) -> None:
    with setup_env(tmp_path) as client:
        assert client.get("/api/v1/stats").json() == {"count": 0, "total_size_bytes": 0, "last_backup_at": None}

        first = client.post("/api/v1/backups", json={"job_type": "db_only"}).json()["batch"]["backup_id"]
        second = client.post("/api/v1/backups", json={"job_type": "full"}).json()["batch"]["backup_id"]

        stats = client.get("/api/v1/stats").json()
        details = [client.get(f"/api/v1/backups/{backup_id}").json() for backup_id in (first, second)]
        assert stats["count"] == 2
        assert stats["total_size_bytes"] == sum(detail["size_bytes"] for detail in details)
        assert stats["last_backup_at"] == details[1]["created_at"]
