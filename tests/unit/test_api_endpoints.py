"""
Unit tests for settings, scheduler, Docker, filesystem, activity, push
channel and health endpoints.
"""

import json


class TestHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_counts(self, client, services, cert_factory):
        from core.cert_store import Material

        cert_pem, key_pem = cert_factory("soon.example.test", validity_days=5)
        services.store.put_new(Material(cert_pem=cert_pem, key_pem=key_pem))

        body = client.get("/health").json()

        assert body["certificates"]["total"] == 1
        assert body["certificates"]["due_for_renewal"] == 1
        assert body["certificates"]["expired"] == 0
        assert body["renewal_engine"]["running"] is True
        assert body["docker"]["available"] is False
        assert body["suggestions"][0]["endpoint"] == "POST /api/scheduler/check"


class TestSettingsEndpoints:
    def test_get_settings(self, client):
        body = client.get("/api/settings").json()
        assert body["success"] is True
        assert body["settings"]["renewDaysBeforeExpiry"] == 30
        assert body["settings"]["renewalSchedule"] == "0 0 * * *"

    def test_update_settings(self, client, services):
        response = client.post(
            "/api/settings", json={"renewDaysBeforeExpiry": 21, "enableAutoRenewalJob": False}, headers={"X-Principal": "ops"}
        )

        assert response.status_code == 200
        assert response.json()["settings"]["renewDaysBeforeExpiry"] == 21
        assert services.engine.global_settings.renew_days_before_expiry == 21
        assert client.get("/api/scheduler/status").json()["enabled"] is False

        stored = json.loads(services.settings.settings_file.read_text())
        assert stored["renewDaysBeforeExpiry"] == 21

        activity = client.get("/api/activity", params={"category": "config"}).json()
        assert activity["events"][0]["action"] == "settings-updated"
        assert activity["events"][0]["principal"] == "ops"

    def test_invalid_settings(self, client):
        response = client.post("/api/settings", json={"renewalSchedule": "whenever"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "InvalidRequest"
        assert body["errors"][0]["field"] == "renewalSchedule"

    def test_empty_settings(self, client):
        assert client.post("/api/settings", json={}).status_code == 400

    def test_schedule_change_recorded_in_activity(self, client):
        """Scheduler listeners run with the request and their events reach the activity log."""
        response = client.post("/api/settings", json={"renewalSchedule": "0 3 * * *"})
        assert response.status_code == 200

        activity = client.get("/api/activity").json()
        actions = [e["action"] for e in activity["events"]]
        assert "scheduler-status-changed" in actions
        assert "settings-updated" in actions


class TestSchedulerEndpoints:
    def test_status(self, client):
        body = client.get("/api/scheduler/status").json()
        assert body["success"] is True
        assert body["enabled"] is True
        assert body["next_execution"]

    def test_check_now(self, client, services, cert_factory):
        from core.cert_store import Material

        cert_pem, key_pem = cert_factory("soon.example.test", validity_days=5)
        services.store.put_new(Material(cert_pem=cert_pem, key_pem=key_pem))

        body = client.post("/api/scheduler/check").json()

        assert body["checked"] == 1
        assert len(body["queued"]) == 1
        assert client.get("/api/scheduler/status").json()["last_run"] is not None


class TestDockerEndpoints:
    def test_containers_unavailable(self, client):
        response = client.get("/api/docker/containers")
        assert response.status_code == 503
        assert response.json()["error"] == "DockerUnavailable"


class TestFilesystemEndpoints:
    def test_browse(self, client, tmp_path):
        (tmp_path / "certs-out").mkdir()
        (tmp_path / "site.pem").write_text("x")
        (tmp_path / ".hidden").write_text("x")

        body = client.get("/api/filesystem", params={"path": str(tmp_path)}).json()

        names = [e["name"] for e in body["entries"]]
        assert ".hidden" not in names
        assert names.index("certs-out") < names.index("site.pem")
        site = next(e for e in body["entries"] if e["name"] == "site.pem")
        assert site["is_certificate_file"] is True

    def test_relative_path_rejected(self, client):
        assert client.get("/api/filesystem", params={"path": "relative/dir"}).status_code == 400

    def test_missing_path(self, client, tmp_path):
        assert client.get("/api/filesystem", params={"path": str(tmp_path / "nope")}).status_code == 404


class TestActivityEndpoints:
    def test_activity_records_certificate_events(self, client):
        created = client.post("/api/certificate", json={"domains": ["example.test"], "keyType": "ecdsa", "keySize": 256})
        fp = created.json()["fingerprint"]

        body = client.get("/api/activity", params={"resource_id": fp}).json()

        assert body["total"] >= 1
        assert body["events"][0]["category"] == "certificate"

    def test_clear_activity(self, client):
        client.post("/api/certificate", json={"domains": ["example.test"], "keyType": "ecdsa", "keySize": 256})
        assert client.delete("/api/activity").json()["deleted"] >= 1
        assert client.get("/api/activity").json()["total"] == 0


class TestPushChannel:
    def test_server_status_on_connect(self, client):
        with client.websocket_connect("/ws") as ws:
            message = ws.receive_json()
            assert message["topic"] == "server-status"
            assert message["payload"]["status"] == "running"

    def test_topic_filter_and_renewal_event(self, client):
        created = client.post("/api/certificate", json={"domains": ["example.test"], "keyType": "ecdsa", "keySize": 256})
        fp = created.json()["fingerprint"]

        with client.websocket_connect("/ws?topics=certificate-renewed") as ws:
            renewed = client.post(f"/api/certificate/{fp}/renew").json()
            message = ws.receive_json()

        assert message["topic"] == "certificate-renewed"
        assert message["payload"]["old_fingerprint"] == fp
        assert message["payload"]["new_fingerprint"] == renewed["newFingerprint"]
