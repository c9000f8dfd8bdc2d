"""End-to-end tests of the HTTP contract with the FastAPI test client."""
# pylint: disable=redefined-outer-name
import json
import pytest
from fastapi.testclient import TestClient

from surveillance.domain.model import SubmissionOutcome
from surveillance.entrypoints.surveillance_api import app, get_uow

CALLER = {"X-Caller-Subject": "epi@tarrantcounty.gov", "X-Caller-Role": "epidemiologist"}
PULL = {"sourceId": "labware", "region": "TARRANT", "startDate": "2024-06-01", "endDate": "2024-06-08"}


@pytest.fixture
def client(uow):
    app.dependency_overrides[get_uow] = lambda: uow
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestSyncEndpoints:
    def test_pull_then_push(self, client, fake_labware, fake_nedss, june_window):
        fake_labware.generate_samples(25, 3, *june_window)
        fake_nedss.outcomes["LW-00003"] = (SubmissionOutcome.REJECTED, "missing patient address")

        pulled = client.post("/api/v1/sync/pull", json=PULL, headers=CALLER)
        pushed = client.post(
            "/api/v1/sync/push", json={"destinationSystem": "nedss", "region": "TARRANT"}, headers=CALLER
        )

        assert pulled.status_code == 200
        body = pulled.json()
        assert (body["samplesProcessed"], body["newSamples"], body["updatedSamples"]) == (25, 25, 0)
        assert body["syncTime"]
        assert pushed.status_code == 200
        body = pushed.json()
        assert (body["submitted"], body["accepted"], body["rejected"], body["failed"]) == (3, 2, 1, 0)

        failed = client.get("/api/v1/cases", params={"region": "TARRANT", "status": "failed"}).json()
        assert failed["total"] == 1
        assert failed["cases"][0]["lastReason"] == "missing patient address"

    def test_concurrent_pull_is_a_conflict(self, client, sync_locks):
        sync_locks.acquire("labware", "TARRANT")

        response = client.post("/api/v1/sync/pull", json=PULL)

        assert response.status_code == 409

    def test_unavailable_source_is_service_unavailable(self, client, fake_labware):
        fake_labware.unavailable = True

        response = client.post("/api/v1/sync/pull", json=PULL)

        assert response.status_code == 503
        assert response.json()["status"] == "failed"

    def test_unknown_region_and_bad_window(self, client):
        unknown = client.post("/api/v1/sync/pull", json=dict(PULL, region="ATLANTIS"))
        backwards = client.post("/api/v1/sync/pull", json=dict(PULL, startDate="2024-06-09"))
        missing = client.post("/api/v1/sync/pull", json={"region": "TARRANT"})

        assert unknown.status_code == 422
        assert unknown.json()["detail"]["field"] == "county"
        assert backwards.status_code == 400
        assert missing.status_code == 422

    def test_unknown_destination(self, client):
        response = client.post("/api/v1/sync/push", json={"destinationSystem": "fax", "region": "TARRANT"})
        assert response.status_code == 400

    def test_status_cancel_and_connection_check(self, client, fake_labware, june_window):
        fake_labware.generate_samples(2, 1, *june_window)
        client.post("/api/v1/sync/pull", json=PULL)

        status = client.get("/api/v1/sync/status", params={"region": "TARRANT"}).json()
        cancel = client.post("/api/v1/sync/cancel", json={"region": "TARRANT"}).json()
        check = client.post("/api/v1/sync/check-connection", json={}).json()

        assert status["jobs"][0]["state"] == "completed"
        assert status["caseCounts"]["pending"] == 1
        assert cancel["cancelRequested"] is False
        assert check == {"success": True, "message": "LabWare connection successful", "tables": ["Samples"]}


class TestCaseEndpoints:
    def test_retry(self, client, fake_labware, fake_nedss, june_window):
        fake_labware.generate_samples(1, 1, *june_window)
        client.post("/api/v1/sync/pull", json=PULL)
        [case] = client.get("/api/v1/cases").json()["cases"]

        not_failed = client.post(f"/api/v1/cases/{case['caseId']}/retry")
        fake_nedss.default_outcome = (SubmissionOutcome.REJECTED, "invalid county")
        client.post("/api/v1/sync/push", json={"destinationSystem": "nedss", "region": "TARRANT"})
        retried = client.post(f"/api/v1/cases/{case['caseId']}/retry", headers=CALLER)
        missing = client.post("/api/v1/cases/no-such-case/retry")

        assert not_failed.status_code == 409
        assert retried.status_code == 200
        assert retried.json()["submissionStatus"] == "pending"
        assert missing.status_code == 404

        audit = client.get("/api/v1/audit", params={"entity": "case"}).json()["entries"]
        assert audit[0]["actor"] == "epi@tarrantcounty.gov"

    def test_unknown_status_filter(self, client):
        assert client.get("/api/v1/cases", params={"status": "lost"}).status_code == 400


class TestAnalyticsAndReports:
    def ingest(self, client):
        return client.post(
            "/api/v1/vector/ingest",
            json={
                "countyCode": "TARRANT",
                "weekEnding": "2024-06-08",
                "speciesData": [
                    {"species": "Culex quinquefasciatus", "count": 42, "trapType": "Gravid",
                     "collectionDate": "2024-06-05", "location": "Trinity Park"},
                ],
            },
            headers=CALLER,
        )

    def test_vector_ingest(self, client):
        first = self.ingest(client).json()
        second = self.ingest(client).json()

        assert first["recordsStored"] == 1
        assert second["duplicates"] == 1

    def test_vector_retry(self, client, fake_arbonet):
        self.ingest(client)
        fake_arbonet.default_outcome = (SubmissionOutcome.REJECTED, "unknown trap type")
        client.post("/api/v1/sync/push", json={"destinationSystem": "arbonet", "region": "TARRANT"})
        [record_id] = fake_arbonet.pushed

        retried = client.post(f"/api/v1/vector/{record_id}/retry", headers=CALLER)
        twice = client.post(f"/api/v1/vector/{record_id}/retry", headers=CALLER)
        missing = client.post("/api/v1/vector/no-such-record/retry")

        assert retried.status_code == 200
        assert retried.json()["destinationSystem"] == "arbonet"
        assert twice.status_code == 409
        assert missing.status_code == 404

    def test_summary_and_export(self, client):
        self.ingest(client)
        params = {"countyCode": "TARRANT", "startDate": "2024-06-01", "endDate": "2024-06-08"}

        summary = client.get("/api/v1/analytics/summary", params=params)
        exported_json = client.get("/api/v1/analytics/export", params=dict(params, format="json"))
        exported_csv = client.get("/api/v1/analytics/export", params=dict(params, format="csv"))

        assert summary.status_code == 200
        assert summary.json()["speciesBreakdown"][0]["percentage"] == 100.0
        assert summary.json()["positivityRate"] == 0
        assert exported_json.headers["content-type"].startswith("application/json")
        assert json.loads(exported_json.content)["data"]["countyCode"] == "TARRANT"
        assert exported_csv.headers["content-type"].startswith("text/csv")
        assert "attachment" in exported_csv.headers["content-disposition"]
        assert exported_csv.text.splitlines()[0] == "section,label,count,positive_count,percentage,latitude,longitude"

    def test_bad_analytics_parameters(self, client):
        assert client.get("/api/v1/analytics/summary", params={"timeRange": "fortnight"}).status_code == 400
        assert client.get("/api/v1/analytics/export", params={"format": "xlsx"}).status_code == 400
        assert client.get("/api/v1/analytics/summary", params={"countyCode": "ATLANTIS"}).status_code == 422

    def test_report_generation_and_history(self, client):
        body = {"countyCode": "TARRANT", "weekEnding": "2024-06-08", "reportType": "weekly"}

        first = client.post("/api/v1/reports/generate", json=body, headers=CALLER).json()
        second = client.post("/api/v1/reports/generate", json=body).json()
        history = client.get("/api/v1/reports/history", params={"countyCode": "TARRANT", "limit": 1})
        fetched = client.get(f"/api/v1/reports/{first['id']}")

        assert first["id"] != second["id"]
        assert first["generatedBy"] == "epi@tarrantcounty.gov"
        assert second["generatedBy"] == "system"
        assert history.json()["total"] == 2
        assert len(history.json()["items"]) == 1
        assert fetched.json()["id"] == first["id"]
        assert client.get("/api/v1/reports/nope").status_code == 404

    def test_bad_report_type(self, client):
        response = client.post(
            "/api/v1/reports/generate",
            json={"countyCode": "TARRANT", "weekEnding": "2024-06-08", "reportType": "daily"},
        )
        assert response.status_code == 400
