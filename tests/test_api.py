"""Tests end-to-end de la API (TestClient + SQLite en memoria + fakeredis)."""

from datetime import datetime, timedelta, timezone

from .conftest import (
    ADMIN_KEY,
    API_KEYS,
    OPERATOR_KEY,
    VIEWER_KEY,
    auth_headers,
    device_payload,
    reading_payload,
)

ADMIN = auth_headers(ADMIN_KEY)
OPERATOR = auth_headers(OPERATOR_KEY)
VIEWER = auth_headers(VIEWER_KEY)


def future(days: int = 7) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def create_device(client, headers=None, **kwargs):
    response = client.post("/api/v2/devices", json=device_payload(**kwargs), headers=headers or {})
    assert response.status_code == 201, response.text
    return response.json()["data"]


# =============================================================================
# HEALTH
# =============================================================================

class TestHealth:

    def test_liveness(self, make_client):
        with make_client() as client:
            assert client.get("/health").json() == {"status": "ok"}
            assert client.get("/api/v2/health").status_code == 200

    def test_readiness(self, make_client):
        with make_client() as client:
            body = client.get("/ready").json()
        assert body["status"] == "ready"
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["redis"]["status"] == "ok"

    def test_metrics(self, make_client):
        with make_client() as client:
            client.get("/api/v2/devices")
            response = client.get("/metrics")
        assert response.status_code == 200
        assert "dashboard_http_requests_total" in response.text

    def test_health_is_not_rate_limited(self, make_client):
        with make_client(rate_limit_reads_per_ip=1) as client:
            assert all(client.get("/health").status_code == 200 for _ in range(3))


# =============================================================================
# DISPOSITIVOS
# =============================================================================

class TestDevices:

    def test_create_and_get(self, make_client):
        with make_client() as client:
            created = create_device(client)
            response = client.get("/api/v2/devices/device_001")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["id"] == created["id"]
        assert body["data"]["audit"]["created_by"] == "sys-unauthenticated"
        assert response.headers["X-Request-ID"]

    def test_create_records_authenticated_identity(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            created = create_device(client, OPERATOR)
        assert created["audit"]["created_by"] == "ops-bot"
        assert created["audit"]["created_at"] == created["audit"]["updated_at"]

    def test_duplicate_id_and_serial(self, make_client):
        with make_client() as client:
            create_device(client)
            dup_id = client.post("/api/v2/devices", json=device_payload(serial="SN-999"))
            dup_serial = client.post("/api/v2/devices", json=device_payload(device_id="other"))

        assert dup_id.status_code == 409
        assert dup_id.json()["error"]["field"] == "id"
        assert dup_serial.status_code == 409
        assert dup_serial.json()["error"]["field"] == "serial_number"

    def test_validation_errors_are_aggregated(self, make_client):
        payload = device_payload(serial="bad serial!", battery_level=150)
        payload["location"]["floor"] = 500
        with make_client() as client:
            response = client.post("/api/v2/devices", json=payload)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert len(error["errors"]) == 3

    def test_list_cache_reflects_new_device(self, make_client):
        with make_client() as client:
            create_device(client, device_id="d1", serial="SN-1")
            first = client.get("/api/v2/devices").json()
            cached = client.get("/api/v2/devices").json()
            create_device(client, device_id="d2", serial="SN-2")
            after = client.get("/api/v2/devices").json()

        assert first["pagination"]["total"] == cached["pagination"]["total"] == 1
        assert after["pagination"]["total"] == 2
        assert {d["id"] for d in after["data"]} == {"d1", "d2"}

    def test_list_filters_and_pagination(self, make_client):
        with make_client() as client:
            for i in range(3):
                create_device(client, device_id=f"d{i}", serial=f"SN-{i}")
            create_device(client, device_id="off", serial="SN-OFF", status="offline")
            page = client.get("/api/v2/devices", params={"status": "active", "limit": 2, "page": 2}).json()

        assert page["pagination"] == {
            "total": 3,
            "page": 2,
            "limit": 2,
            "total_pages": 2,
            "has_next": False,
            "has_previous": True,
        }
        assert len(page["data"]) == 1

    def test_unknown_query_param(self, make_client):
        with make_client() as client:
            response = client.get("/api/v2/devices", params={"colour": "red"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_QUERY_PARAM"

    def test_update_invalidates_cached_device(self, make_client):
        with make_client() as client:
            create_device(client)
            client.get("/api/v2/devices/device_001")
            patched = client.patch("/api/v2/devices/device_001", json={"location": {"floor": 7}, "battery_level": 15})
            fetched = client.get("/api/v2/devices/device_001").json()["data"]

        assert patched.status_code == 200
        assert fetched["location"]["floor"] == 7
        assert fetched["location"]["room_name"] == "Lab 3"
        assert fetched["health"]["battery_level"] == 15

    def test_empty_update_rejected(self, make_client):
        with make_client() as client:
            create_device(client)
            response = client.patch("/api/v2/devices/device_001", json={})
        assert response.status_code == 400

    def test_update_serial_conflict(self, make_client):
        with make_client() as client:
            create_device(client, device_id="d1", serial="SN-1")
            create_device(client, device_id="d2", serial="SN-2")
            response = client.patch("/api/v2/devices/d2", json={"serial_number": "SN-1"})
        assert response.status_code == 409

    def test_null_on_required_column_rejected(self, make_client):
        with make_client() as client:
            create_device(client)
            serial = client.patch("/api/v2/devices/device_001", json={"serial_number": None})
            status = client.patch("/api/v2/devices/device_001", json={"status": None})
            fetched = client.get("/api/v2/devices/device_001").json()["data"]

        assert serial.status_code == 400
        assert serial.json()["error"]["code"] == "VALIDATION_ERROR"
        assert status.status_code == 400
        assert fetched["serial_number"] == device_payload()["serial_number"]

    def test_delete_then_gone(self, make_client):
        with make_client() as client:
            create_device(client)
            client.get("/api/v2/devices/device_001")
            deleted = client.delete("/api/v2/devices/device_001")
            after = client.get("/api/v2/devices/device_001")
            again = client.delete("/api/v2/devices/device_001")
            listed = client.get("/api/v2/devices").json()

        assert deleted.status_code == 200
        assert deleted.json()["data"]["deleted"] is True
        assert after.status_code == 410
        assert after.json()["error"]["code"] == "GONE"
        assert again.status_code == 410
        assert listed["pagination"]["total"] == 0

    def test_unknown_device_is_404(self, make_client):
        with make_client() as client:
            response = client.get("/api/v2/devices/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_missing_content_type(self, make_client):
        with make_client() as client:
            missing = client.post("/api/v2/devices", content=b"{}")
            wrong = client.post("/api/v2/devices", content=b"{}", headers={"Content-Type": "text/plain"})
        assert missing.status_code == 400
        assert wrong.status_code == 415

    def test_invalid_json(self, make_client):
        with make_client() as client:
            response = client.post(
                "/api/v2/devices", content=b"{oops", headers={"Content-Type": "application/json"}
            )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_BODY"

    def test_health_and_metadata_summaries(self, make_client):
        with make_client() as client:
            create_device(client, device_id="d1", serial="SN-1", battery_level=5)
            create_device(client, device_id="d2", serial="SN-2", type="co2")
            health = client.get("/api/v2/devices/health").json()["data"]
            metadata = client.get("/api/v2/metadata").json()["data"]

        assert health["total"] == 2
        assert health["never_seen"] == 2
        assert health["low_battery"] == ["d1"]
        assert metadata["by_type"] == {"co2": 1, "temperature": 1}


# =============================================================================
# AUTENTICACIÓN
# =============================================================================

class TestAuth:

    def test_missing_credentials(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            response = client.get("/api/v2/devices")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_invalid_key(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            response = client.get("/api/v2/devices", headers={"X-API-Key": "not-a-key"})
        assert response.status_code == 401

    def test_viewer_cannot_delete(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            create_device(client, ADMIN)
            response = client.delete("/api/v2/devices/device_001", headers=VIEWER)
            still_there = client.get("/api/v2/devices/device_001", headers=VIEWER)

        assert response.status_code == 403
        assert response.json()["error"]["required_permission"] == "devices:delete"
        assert still_there.status_code == 200
        assert still_there.json()["data"]["audit"]["deleted_at"] is None

    def test_viewer_cannot_create(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            response = client.post("/api/v2/devices", json=device_payload(), headers=VIEWER)
        assert response.status_code == 403

    def test_operator_cannot_delete_but_admin_can(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            create_device(client, OPERATOR)
            denied = client.delete("/api/v2/devices/device_001", headers=OPERATOR)
            allowed = client.delete("/api/v2/devices/device_001", headers=ADMIN)
        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["data"]["deleted_by"] == "ops-admin"


# =============================================================================
# LECTURAS
# =============================================================================

class TestReadings:

    def test_ingest_rejects_unknown_devices(self, make_client):
        readings = [reading_payload("device_001", 20.0), reading_payload("ghost", 1.0), reading_payload("device_001", 21.0)]
        with make_client() as client:
            create_device(client)
            response = client.post("/api/v2/readings/ingest", json={"readings": readings})

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["inserted"] == 2
        assert data["rejected"] == 1
        assert data["errors"][0]["index"] == 1
        assert data["errors"][0]["device_id"] == "ghost"

    def test_ingest_rejects_deleted_device(self, make_client):
        with make_client() as client:
            create_device(client)
            client.delete("/api/v2/devices/device_001")
            response = client.post("/api/v2/readings/ingest", json={"readings": [reading_payload()]})
        assert response.json()["data"]["inserted"] == 0

    def test_ingest_updates_last_seen_and_latest(self, make_client):
        with make_client() as client:
            create_device(client)
            client.get("/api/v2/readings/latest")
            client.get("/api/v2/devices/health")
            client.post(
                "/api/v2/readings/ingest",
                json={"readings": [reading_payload(value=19.5), reading_payload(value=22.5, type="humidity")]},
            )
            latest = client.get("/api/v2/readings/latest", params={"device_id": "device_001"}).json()["data"]
            health = client.get("/api/v2/devices/health").json()["data"]

        assert {(r["type"], r["value"], r["unit"]) for r in latest} == {
            ("temperature", 19.5, "celsius"),
            ("humidity", 22.5, "percent"),
        }
        assert health["online"] == 1

    def test_query_readings(self, make_client):
        with make_client() as client:
            create_device(client)
            client.post(
                "/api/v2/readings/ingest",
                json={"readings": [reading_payload(value=v) for v in (1.0, 5.0, 9.0)]},
            )
            body = client.get("/api/v2/readings", params={"min_value": 2, "device_id": "device_001"}).json()
            invalid = client.get("/api/v2/readings", params={"min_value": 10, "max_value": 2})

        assert body["pagination"]["total"] == 2
        assert invalid.status_code == 400
        assert invalid.json()["error"]["field"] == "min_value"

    def test_non_finite_value_rejected(self, make_client):
        raw = b'{"readings": [{"device_id": "device_001", "type": "temperature", "value": NaN, "timestamp": "2024-01-01T00:00:00Z"}]}'
        with make_client() as client:
            create_device(client)
            response = client.post(
                "/api/v2/readings/ingest", content=raw, headers={"Content-Type": "application/json"}
            )
        # El sanitizador convierte NaN en 0: la lectura se acepta con valor 0
        assert response.status_code == 201
        assert response.json()["data"]["inserted"] == 1

    def test_ingest_burst_is_rate_limited_per_device(self, make_client):
        with make_client(rate_limit_ingest_per_device=5) as client:
            create_device(client)
            statuses = [
                client.post("/api/v2/readings/ingest", json={"readings": [reading_payload()]}).status_code
                for _ in range(5)
            ]
            denied = client.post("/api/v2/readings/ingest", json={"readings": [reading_payload()]})

        assert statuses == [201] * 5
        assert denied.status_code == 429
        assert int(denied.headers["Retry-After"]) > 0
        assert denied.headers["X-RateLimit-Remaining"] == "0"
        assert denied.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"

    def test_rate_limit_headers_on_reads(self, make_client):
        with make_client(rate_limit_reads_per_ip=50) as client:
            response = client.get("/api/v2/devices")
        assert response.headers["X-RateLimit-Limit"] == "50"
        assert response.headers["X-RateLimit-Remaining"] == "49"


# =============================================================================
# SCHEDULES
# =============================================================================

class TestSchedules:

    def _schedule(self, client, device_ids=("device_001",), headers=None):
        response = client.post(
            "/api/v2/schedules",
            json={"device_ids": list(device_ids), "service_type": "calibration", "scheduled_date": future()},
            headers=headers or {},
        )
        assert response.status_code == 201, response.text
        return response.json()["data"]["schedules"][0]

    def test_create_requires_existing_devices(self, make_client):
        with make_client() as client:
            create_device(client)
            response = client.post(
                "/api/v2/schedules",
                json={"device_ids": ["device_001", "ghost"], "service_type": "calibration", "scheduled_date": future()},
            )
        assert response.status_code == 404
        assert response.json()["error"]["missing"] == ["ghost"]

    def test_past_date_rejected(self, make_client):
        with make_client() as client:
            create_device(client)
            response = client.post(
                "/api/v2/schedules",
                json={"device_ids": ["device_001"], "service_type": "calibration", "scheduled_date": future(-1)},
            )
        assert response.status_code == 400

    def test_complete_then_no_more_transitions(self, make_client):
        with make_client() as client:
            create_device(client)
            schedule = self._schedule(client)
            url = f"/api/v2/schedules/{schedule['id']}"
            completed = client.patch(url, json={"status": "completed"})
            again = client.patch(url, json={"status": "completed"})
            cancel = client.patch(url, json={"status": "cancelled"})
            edit = client.patch(url, json={"notes": "late note"})

        assert completed.status_code == 200
        assert completed.json()["message"] == "Schedule completed"
        assert completed.json()["data"]["audit"]["completed_by"] == "sys-unauthenticated"
        assert again.status_code == 422
        assert again.json()["error"]["message"] == "Schedule is already completed"
        assert cancel.status_code == 422
        assert cancel.json()["error"]["message"] == "Cannot cancel a completed schedule"
        assert edit.status_code == 422

    def test_delete_cancels(self, make_client):
        with make_client() as client:
            create_device(client)
            schedule = self._schedule(client)
            url = f"/api/v2/schedules/{schedule['id']}"
            cancelled = client.delete(url)
            complete = client.patch(url, json={"status": "completed"})
            pending = client.get("/api/v2/schedules").json()
            everything = client.get("/api/v2/schedules", params={"include_all": "true"}).json()

        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["cancelled"] is True
        assert complete.status_code == 422
        assert complete.json()["error"]["message"] == "Cannot complete a cancelled schedule"
        assert pending["pagination"]["total"] == 0
        assert everything["data"][0]["status"] == "cancelled"

    def test_reschedule(self, make_client):
        new_date = future(30)
        with make_client() as client:
            create_device(client)
            schedule = self._schedule(client)
            response = client.patch(f"/api/v2/schedules/{schedule['id']}", json={"scheduled_date": new_date, "notes": "moved"})

        assert response.status_code == 200
        assert response.json()["message"] == "Schedule updated successfully"
        assert response.json()["data"]["notes"] == "moved"

    def test_null_date_rejected(self, make_client):
        with make_client() as client:
            create_device(client)
            schedule = self._schedule(client)
            response = client.patch(f"/api/v2/schedules/{schedule['id']}", json={"scheduled_date": None})
        assert response.status_code == 400
        assert response.json()["error"]["field"] == "scheduled_date"

    def test_operator_cannot_cancel_with_delete(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            create_device(client, ADMIN)
            schedule = self._schedule(client, headers=OPERATOR)
            response = client.delete(f"/api/v2/schedules/{schedule['id']}", headers=OPERATOR)
        assert response.status_code == 403

    def test_unknown_schedule(self, make_client):
        with make_client() as client:
            assert client.get("/api/v2/schedules/nope").status_code == 404


# =============================================================================
# AUDITORÍA
# =============================================================================

class TestAudit:

    def test_trail_records_who_did_what(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            create_device(client, OPERATOR)
            client.patch("/api/v2/devices/device_001", json={"battery_level": 40}, headers=ADMIN)
            response = client.get("/api/v2/audit", headers=OPERATOR)

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"]["total"] == 2
        assert [(e["action"], e["user"]) for e in body["data"]] == [("update", "ops-admin"), ("create", "ops-bot")]
        assert body["data"][0]["resource_type"] == "device"
        assert body["data"][0]["device_id"] == "device_001"
        assert body["summary"]["by_action"] == {"create": 1, "update": 1}

    def test_filters_by_action_and_user(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            create_device(client, OPERATOR)
            create_device(client, ADMIN, device_id="device_002", serial="SN-002")
            response = client.get("/api/v2/audit", params={"action": "create", "user": "ops-bot"}, headers=ADMIN)

        assert response.json()["pagination"]["total"] == 1
        assert response.json()["data"][0]["resource_id"] == "device_001"

    def test_viewer_forbidden(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            response = client.get("/api/v2/audit", headers=VIEWER)
        assert response.status_code == 403

    def test_unknown_action_rejected(self, make_client):
        with make_client() as client:
            response = client.get("/api/v2/audit", params={"action": "purge"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_QUERY_PARAM"

    def test_device_history_survives_delete(self, make_client):
        with make_client() as client:
            create_device(client)
            client.patch("/api/v2/devices/device_001", json={"status": "maintenance"})
            before = client.get("/api/v2/devices/device_001/history").json()
            client.delete("/api/v2/devices/device_001")
            after = client.get("/api/v2/devices/device_001/history")
            unknown = client.get("/api/v2/devices/ghost/history")

        assert [e["action"] for e in before["data"]] == ["update", "create"]
        assert after.status_code == 200
        assert [e["action"] for e in after.json()["data"]] == ["delete", "create"]
        assert after.json()["data"][0]["user"] == "sys-unauthenticated"
        assert unknown.status_code == 404

    def test_device_history_with_schedules(self, make_client):
        with make_client() as client:
            create_device(client)
            client.post(
                "/api/v2/schedules",
                json={"device_ids": ["device_001"], "service_type": "calibration", "scheduled_date": future()},
            )
            own = client.get("/api/v2/devices/device_001/history").json()
            full = client.get("/api/v2/devices/device_001/history", params={"include_schedules": "true"}).json()

        assert own["pagination"]["total"] == 1
        assert full["pagination"]["total"] == 2
        assert full["data"][0]["resource_type"] == "schedule"


# =============================================================================
# ADMIN
# =============================================================================

class TestAdmin:

    def test_rate_limit_status_and_reset(self, make_client):
        with make_client(api_keys=API_KEYS, rate_limit_reads_per_ip=3) as client:
            for _ in range(3):
                client.get("/api/v2/devices", headers=VIEWER)
            blocked = client.get("/api/v2/devices", headers=VIEWER)
            status = client.get("/api/v2/admin/rate-limits/read:ip/testclient", headers=ADMIN)
            reset = client.delete("/api/v2/admin/rate-limits/read:ip/testclient", headers=ADMIN)
            unblocked = client.get("/api/v2/devices", headers=VIEWER)

        assert blocked.status_code == 429
        # La propia consulta de admin también cuenta en read:ip
        assert status.status_code == 429
        assert reset.status_code == 200
        assert reset.json()["data"]["reset"] is True
        assert unblocked.status_code == 200

    def test_status_reports_usage(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            client.get("/api/v2/devices", headers=VIEWER)
            status = client.get("/api/v2/admin/rate-limits/mutation:ip/10.0.0.1", headers=ADMIN).json()["data"]
        assert status["current"] == 0
        assert status["limit"] == 100
        assert status["allowed"] is True

    def test_unknown_rule(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            response = client.get("/api/v2/admin/rate-limits/nope/1.2.3.4", headers=ADMIN)
        assert response.status_code == 404

    def test_non_admin_forbidden(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            response = client.delete("/api/v2/admin/cache", headers=OPERATOR)
        assert response.status_code == 403

    def test_clear_cache(self, make_client):
        with make_client(api_keys=API_KEYS) as client:
            response = client.delete("/api/v2/admin/cache", headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["data"] == {"cleared": True}
