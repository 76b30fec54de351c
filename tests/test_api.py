import pytest

from fleet_compliance.api import endpoints
from fleet_compliance.errors import StorageUnavailableError

ORG = {"X-Organization-Id": "org-a"}
OTHER_ORG = {"X-Organization-Id": "org-b"}


@pytest.fixture
def driver_id(client):
    response = client.post("/api/drivers", json={"external_id": "drv-001", "name": "Alex Driver"}, headers=ORG)
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def infringement_id(client, driver_id):
    kind = client.post("/api/infringement-types", json={
        "code": "SPD-01",
        "name": "Speeding",
        "severity": "major",
        "statutory_limit_days": 28,
        "default_points": 3,
        "default_fine_amount": 150.0
    }, headers=ORG).json()
    response = client.post("/api/infringements", json={
        "driver_id": driver_id,
        "infringement_type_id": kind["id"],
        "incident_date": "2025-05-28",
        "issue_date": "2025-05-30",
        "confirm": True
    }, headers=ORG)
    assert response.status_code == 201
    return response.json()["id"]


class TestService:
    """Service level endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_config(self, client):
        data = client.get("/api/config").json()
        assert data["rest"]["weekly_rest_regular_hours"] == 45
        assert data["ledger"]["disqualification_points"] == 12


class TestDrivers:
    """Driver endpoints and the organization header."""

    def test_missing_organization_header(self, client):
        response = client.get("/api/drivers")
        assert response.status_code == 422

    def test_create_and_list(self, client, driver_id):
        drivers = client.get("/api/drivers", headers=ORG).json()
        assert [d["id"] for d in drivers] == [driver_id]
        assert client.get("/api/drivers", headers=OTHER_ORG).json() == []

    def test_duplicate_driver_is_conflict(self, client, driver_id):
        response = client.post("/api/drivers", json={"external_id": "drv-001"}, headers=ORG)

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "DuplicateRecordError"
        assert body["retryable"] is False

    def test_driver_of_other_organization_is_not_found(self, client, driver_id):
        response = client.get(f"/api/drivers/{driver_id}", headers=OTHER_ORG)

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    def test_storage_failure_is_retryable(self, client, monkeypatch):
        def unavailable(*args, **kwargs):
            raise StorageUnavailableError("Storage is unavailable, retry with backoff")

        monkeypatch.setattr(endpoints, "list_drivers", unavailable)
        response = client.get("/api/drivers", headers=ORG)

        assert response.status_code == 503
        assert response.json()["retryable"] is True


class TestLedgerEndpoints:
    """Points ledger over HTTP."""

    def test_post_and_read_ledger(self, client, driver_id):
        response = client.post(f"/api/drivers/{driver_id}/ledger", json={
            "points_delta": 3, "reason": "Manual adjustment", "effective_date": "2025-06-02"
        }, headers=ORG)
        assert response.status_code == 201

        ledger = client.get(f"/api/drivers/{driver_id}/ledger", headers=ORG).json()
        assert ledger["effective_balance"] == 3
        assert ledger["chain_problems"] == []
        assert ledger["entries"][0]["balance_after"] == 3

    def test_below_floor_is_conflict(self, client, driver_id):
        response = client.post(f"/api/drivers/{driver_id}/ledger", json={
            "points_delta": -1, "reason": "Credit"
        }, headers=ORG)

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidDeltaError"

    def test_zero_delta_is_unprocessable(self, client, driver_id):
        response = client.post(f"/api/drivers/{driver_id}/ledger", json={
            "points_delta": 0, "reason": "Nothing"
        }, headers=ORG)

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"


class TestRestEndpoints:
    """Rest recording and weekly evaluation over HTTP."""

    def test_record_and_evaluate(self, client, driver_id):
        for day in range(26, 32):
            response = client.post(f"/api/drivers/{driver_id}/daily-rest", json={
                "rest_date": f"2025-05-{day}",
                "start_time": f"2025-05-{day}T20:00:00",
                "end_time": f"2025-05-{day + 1}T03:00:00" if day < 31 else "2025-06-01T03:00:00",
            }, headers=ORG)
            assert response.status_code == 201

        result = client.post(
            f"/api/drivers/{driver_id}/weeks/2025-05-26/evaluate",
            params={"as_of_date": "2025-06-02", "record_violations": True},
            headers=ORG
        ).json()

        assert result["total_rest_hours"] == 42
        assert result["rest_type"] == "reduced"
        assert result["compensation_required"] is True
        assert result["compensation_deadline"] == "2025-06-22"
        assert [v["violation_code"] for v in result["recorded_violations"]] == ["DAILY_REST_INSUFFICIENT"]

    def test_duplicate_daily_rest_is_conflict(self, client, driver_id):
        body = {"rest_date": "2025-05-26", "start_time": "2025-05-26T20:00:00", "end_time": "2025-05-27T07:00:00"}
        client.post(f"/api/drivers/{driver_id}/daily-rest", json=body, headers=ORG)

        response = client.post(f"/api/drivers/{driver_id}/daily-rest", json=body, headers=ORG)

        assert response.status_code == 409
        assert response.json()["error"] == "DuplicateRestRecordError"

    def test_mixed_offset_awareness_is_unprocessable(self, client, driver_id):
        response = client.post(f"/api/drivers/{driver_id}/weekly-rest", json={
            "week_start_date": "2025-05-26",
            "rest_start_time": "2025-05-31T06:00:00Z",
            "rest_end_time": "2025-06-02T03:00:00"
        }, headers=ORG)

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_unknown_violation_status_is_unprocessable(self, client, driver_id):
        response = client.get("/api/violations", params={"status": "bogus"}, headers=ORG)

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"


class TestInfringementEndpoints:
    """Infringement lifecycle over HTTP."""

    def test_resolve_twice(self, client, driver_id, infringement_id):
        first = client.post(f"/api/infringements/{infringement_id}/resolve",
                            json={"payment_date": "2025-06-02"}, headers=ORG)
        second = client.post(f"/api/infringements/{infringement_id}/resolve",
                             json={"payment_date": "2025-06-02"}, headers=ORG)

        assert first.status_code == 200
        assert first.json()["status"] == "resolved"
        assert second.status_code == 409
        assert second.json()["error"] == "AlreadyResolvedError"
        ledger = client.get(f"/api/drivers/{driver_id}/ledger", headers=ORG).json()
        assert len(ledger["entries"]) == 1

    def test_appeal_flow(self, client, driver_id, infringement_id):
        appeal = client.post(f"/api/infringements/{infringement_id}/appeals",
                             json={"grounds": "Signage obscured", "submitted_date": "2025-06-01"}, headers=ORG)
        duplicate = client.post(f"/api/infringements/{infringement_id}/appeals",
                                json={"grounds": "Again"}, headers=ORG)

        assert appeal.status_code == 201
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "DuplicateAppealError"

        decision = client.post(f"/api/appeals/{appeal.json()['id']}/decision", json={
            "approved": True, "outcome": "Partially upheld", "points_reduction": 1
        }, headers=ORG)
        assert decision.status_code == 200
        assert decision.json()["status"] == "approved"

        infringement = client.get(f"/api/infringements/{infringement_id}", headers=ORG).json()
        assert infringement["status"] == "resolved"
        score = client.get(f"/api/drivers/{driver_id}/score", headers=ORG).json()
        assert score["points_balance"] == 2

    def test_stats(self, client, infringement_id):
        stats = client.get("/api/infringements/stats", headers=ORG).json()

        assert stats["total"] == 1
        assert stats["by_status"] == {"active": 1}

    def test_expiry_job(self, client, infringement_id):
        response = client.post("/api/jobs/infringement-expiry", params={"current_date": "2025-06-28"})

        assert response.status_code == 200
        assert response.json()["org-a"]["expired"] == [infringement_id]

    def test_status_filter(self, client, infringement_id):
        active = client.get("/api/infringements", params={"status": "active"}, headers=ORG).json()
        unknown = client.get("/api/infringements", params={"status": "bogus"}, headers=ORG)

        assert [i["id"] for i in active] == [infringement_id]
        assert unknown.status_code == 422
        assert unknown.json()["error"] == "ValidationError"
