"""
API tests for the pairing job routes.

Run: pytest tests/unit/test_pairing_jobs_routes.py -v
"""


TOKEN = "sl.route-test-token"


def _submit(client, keys, token=TOKEN):
    return client.post("/api/pairing-jobs", json={
        "owner": "user-1",
        "folder": "/Photos/batch1",
        "image_keys": keys,
        "access_token": token,
    })


class TestCreatePairingJob:
    """POST /api/pairing-jobs"""

    def test_creates_job(self, test_client_with_memory_store):
        client, _ = test_client_with_memory_store

        response = _submit(client, ["/Photos/batch1/a.jpg", "/Photos/batch1/b.jpg"])

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["total_images"] == 2
        assert body["processed_count"] == 0
        assert body["upload_method"] == "dropbox"

    def test_token_never_returned(self, test_client_with_memory_store):
        client, _ = test_client_with_memory_store

        response = _submit(client, ["/Photos/batch1/a.jpg"])

        assert "access_token" not in response.json()
        assert TOKEN not in response.text

    def test_duplicate_keys_collapsed(self, test_client_with_memory_store):
        client, _ = test_client_with_memory_store

        response = _submit(client, ["a.jpg", "a.jpg", " b.jpg "])

        assert response.json()["total_images"] == 2

    def test_empty_keys_rejected(self, test_client_with_memory_store):
        client, _ = test_client_with_memory_store

        response = _submit(client, [])

        assert response.status_code == 422


class TestGetPairingJob:
    """GET /api/pairing-jobs/{job_id}"""

    def test_returns_job(self, test_client_with_memory_store):
        client, _ = test_client_with_memory_store
        job_id = _submit(client, ["a.jpg"]).json()["id"]

        response = client.get(f"/api/pairing-jobs/{job_id}")

        assert response.status_code == 200
        assert response.json()["id"] == job_id

    def test_unknown_job_404(self, test_client_with_memory_store):
        client, _ = test_client_with_memory_store

        response = client.get("/api/pairing-jobs/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PAIRING_JOB_NOT_FOUND"


class TestProcessPairingJob:
    """POST /api/pairing-jobs/{job_id}/process"""

    def test_runs_to_completion(self, test_client_with_memory_store):
        client, _ = test_client_with_memory_store
        job_id = _submit(client, ["a.jpg", "b.jpg", "c.jpg"]).json()["id"]

        invocations = []
        while True:
            response = client.post(f"/api/pairing-jobs/{job_id}/process")
            assert response.status_code == 200
            invocations.append(response.json())
            if not response.json()["needs_next_invocation"]:
                break

        assert invocations[-1]["status"] == "completed"
        assert invocations[-1]["processed_count"] == 3

        job = client.get(f"/api/pairing-jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["result"]["engine_version"]
        assert len(job["result"]["singletons"]) == 3

    def test_retryable_chunk_failure_is_503(self, test_client_with_memory_store, fake_source):
        client, _ = test_client_with_memory_store
        job_id = _submit(client, ["a.jpg", "b.jpg"]).json()["id"]
        fake_source.failing.add("a.jpg")

        response = client.post(f"/api/pairing-jobs/{job_id}/process")

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "CHUNK_PROCESSING_FAILED"
        assert error["details"]["retryable"] is True

    def test_unknown_job_404(self, test_client_with_memory_store):
        client, _ = test_client_with_memory_store

        response = client.post("/api/pairing-jobs/does-not-exist/process")

        assert response.status_code == 404


class TestHealth:
    """GET /health"""

    def test_health(self, test_client_with_memory_store):
        client, _ = test_client_with_memory_store

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["engine_version"].startswith("pairing-")
