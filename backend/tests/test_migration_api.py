"""
Tests for the Migrations API

Exercises /api/migrations through FastAPI's TestClient on in-memory services.
"""
import time

import pytest
from fastapi.testclient import TestClient

from server import build_services, create_app
from services.migration import create_sample_migration_file

ADMIN = {"X-User-Id": "u-admin", "X-User-Role": "Administrator"}
CHAMPION = {"X-User-Id": "u-champion", "X-User-Role": "Knowledge Champion"}

TERMINAL = {"Completed", "Failed", "Cancelled"}


@pytest.fixture
def client():
    with TestClient(create_app(build_services())) as test_client:
        yield test_client


@pytest.fixture
def sample_file(tmp_path):
    path = tmp_path / "legacy_export.json"
    create_sample_migration_file(str(path))
    return str(path)


def create_job(client, path, headers=ADMIN, **config):
    return client.post(
        "/api/migrations",
        json={
            "name": "Legacy knowledge export",
            "source": {"system": "json_file", "connection": {"path": path}},
            "config": config,
        },
        headers=headers,
    )


def poll_until_done(client, job_id, attempts=100):
    for _ in range(attempts):
        job = client.get(f"/api/migrations/{job_id}").json()
        if job["status"] in TERMINAL:
            return job
        time.sleep(0.05)
    raise AssertionError(f"Job {job_id} did not finish")


class TestMigrationLifecycle:
    """Tests for create / start / poll."""

    def test_full_run(self, client, sample_file):
        response = create_job(client, sample_file, batch_size=2)
        assert response.status_code == 201
        job_id = response.json()["id"]
        assert response.json()["status"] == "Pending"

        response = client.post(f"/api/migrations/{job_id}/start", headers=ADMIN)
        assert response.status_code == 202

        job = poll_until_done(client, job_id)

        assert job["status"] == "Completed"
        assert job["progress"]["total"] == 5
        assert job["progress"]["processed"] == 5
        assert job["progress"]["succeeded"] == 3
        assert job["progress"]["failed"] == 2
        assert job["progress"]["percentage"] == 100.0

        records = client.get("/api/knowledge").json()["records"]
        assert {r["source_id"] for r in records} == {"KB-1001", "KB-1002", "KB-1005"}
        assert all(r["origin"] == "Migrated" for r in records)

    def test_dry_run(self, client, sample_file):
        job_id = create_job(client, sample_file, dry_run=True).json()["id"]
        client.post(f"/api/migrations/{job_id}/start", headers=ADMIN)

        job = poll_until_done(client, job_id)

        assert job["status"] == "Completed"
        assert client.get("/api/knowledge").json()["total"] == 0

    def test_camel_case_migration_config(self, client, sample_file):
        response = client.post(
            "/api/migrations",
            json={
                "name": "Legacy knowledge export",
                "source": {"system": "json_file", "connection": {"path": sample_file}},
                "migrationConfig": {
                    "batchSize": 2,
                    "validateBeforeImport": False,
                    "skipDuplicates": False,
                    "dryRun": True,
                },
            },
            headers=ADMIN,
        )

        assert response.status_code == 201
        assert response.json()["config"] == {
            "batch_size": 2,
            "validate_before_import": False,
            "skip_duplicates": False,
            "dry_run": True,
        }

    def test_missing_file_fails_job(self, client, tmp_path):
        job_id = create_job(client, str(tmp_path / "nope.json")).json()["id"]
        client.post(f"/api/migrations/{job_id}/start", headers=ADMIN)

        job = poll_until_done(client, job_id)

        assert job["status"] == "Failed"
        assert "not found" in job["error"]

    def test_start_twice_conflicts(self, client, sample_file):
        job_id = create_job(client, sample_file).json()["id"]
        assert client.post(f"/api/migrations/{job_id}/start", headers=ADMIN).status_code == 202
        assert client.post(f"/api/migrations/{job_id}/start", headers=ADMIN).status_code == 409
        poll_until_done(client, job_id)

    def test_list_jobs(self, client, sample_file):
        job_id = create_job(client, sample_file).json()["id"]

        listed = client.get("/api/migrations", params={"status": "Pending"}).json()
        assert [j["id"] for j in listed["jobs"]] == [job_id]
        assert client.get("/api/migrations", params={"status": "Paused"}).status_code == 400


class TestMigrationValidation:
    """Tests for request validation and authorization."""

    def test_unknown_source_system(self, client):
        response = client.post(
            "/api/migrations",
            json={"name": "Import", "source": {"system": "sharepoint"}},
            headers=ADMIN,
        )
        assert response.status_code == 400
        assert "source" in response.json()["detail"]["errors"]

    def test_batch_size_out_of_range(self, client, sample_file):
        response = create_job(client, sample_file, batch_size=100000)
        assert response.status_code == 400

    def test_requires_migrate_capability(self, client, sample_file):
        assert create_job(client, sample_file, headers=CHAMPION).status_code == 403

    def test_unknown_job(self, client):
        assert client.get("/api/migrations/missing").status_code == 404
        assert client.post("/api/migrations/missing/start", headers=ADMIN).status_code == 404


class TestMigrationCancel:
    """Tests for POST /api/migrations/{id}/cancel."""

    def test_cancel_pending(self, client, sample_file):
        job_id = create_job(client, sample_file).json()["id"]

        response = client.post(f"/api/migrations/{job_id}/cancel", headers=ADMIN)

        assert response.status_code == 202
        assert response.json()["status"] == "Cancelled"
        assert response.json()["progress"]["processed"] == 0

    def test_cancel_terminal_conflicts(self, client, sample_file):
        job_id = create_job(client, sample_file).json()["id"]
        client.post(f"/api/migrations/{job_id}/cancel", headers=ADMIN)

        response = client.post(f"/api/migrations/{job_id}/cancel", headers=ADMIN)
        assert response.status_code == 409
