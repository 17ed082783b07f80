"""Tests for the HTTP surface."""

import logging

import pytest

from openledger.errors import KBValidationError, SchemaViolation
from openledger.main import app
from openledger.middleware.request_context import access_log_level, resolve_request_id


@pytest.mark.asyncio
class TestHealthAndMetrics:
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["kb"]["frameworks"] == ["GDPR", "CCPA", "GLBA"]
        assert resp.headers["X-Request-ID"]

    async def test_request_id_is_propagated(self, client):
        resp = await client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"

    async def test_unsafe_request_id_is_replaced(self, client):
        resp = await client.get("/api/health", headers={"X-Request-ID": "bad id; injected"})
        assert resp.headers["X-Request-ID"] != "bad id; injected"
        assert len(resp.headers["X-Request-ID"]) == 32

    async def test_metrics(self, client):
        await client.get("/api/health")
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "http_requests_total" in resp.text


class TestRequestContext:
    def test_access_log_levels(self):
        assert access_log_level("/api/health", 200) == logging.DEBUG
        assert access_log_level("/api/pipeline/run", 200) == logging.INFO
        assert access_log_level("/api/receipts", 422) == logging.WARNING
        assert access_log_level("/metrics", 500) == logging.ERROR

    def test_resolve_request_id(self):
        assert resolve_request_id("run-42.a_b") == "run-42.a_b"
        assert resolve_request_id("x" * 65) != "x" * 65
        assert len(resolve_request_id(None)) == 32


@pytest.mark.asyncio
class TestPipelineEndpoints:
    async def test_run_then_periods(self, client, sample_repo):
        resp = await client.post("/api/pipeline/run", json={"root": str(sample_repo), "commit_hash": "abc123"})
        assert resp.status_code == 200
        run = resp.json()
        assert run["files_scanned"] == 3
        assert set(run["framework_scores"]) == {"GDPR", "CCPA", "GLBA"}

        periods = (await client.get("/api/drift/periods")).json()
        assert periods["current"]["id"] == run["period_id"]
        assert periods["current_hash"] == periods["current"]["manifest_hash"]

        status = (await client.get("/api/drift/status")).json()
        assert status["has_changes"] is False

    async def test_missing_root_scans_nothing(self, client, tmp_path):
        resp = await client.post("/api/pipeline/run", json={"root": str(tmp_path / "missing"), "frameworks": ["GDPR"]})
        assert resp.status_code == 200
        assert resp.json()["evidence_count"] == 0

    async def test_malformed_window_rejects_run(self, client, sample_repo):
        resp = await client.post("/api/pipeline/run", json={"root": str(sample_repo), "start": "someday"})
        assert resp.status_code == 422
        assert (await client.get("/api/drift/periods")).json()["periods"] == []

    async def test_unknown_template_is_400(self, client, sample_repo):
        app.state.services.registry.audit.auditor.template_id = "POLICY.TEMPLATE.MISSING"
        resp = await client.post("/api/pipeline/run", json={"root": str(sample_repo)})
        assert resp.status_code == 400
        assert resp.json()["stage"] == "audit"

    async def test_scan(self, client, sample_repo):
        resp = await client.post("/api/evidence/scan", json={"root": str(sample_repo), "include_evidence": True})
        assert resp.status_code == 200
        doc = resp.json()
        assert doc["endpoints"] == ["GET /api/transactions", "POST /api/users"]
        assert len(doc["evidence"]) == 5

    async def test_audit_with_evidence(self, client):
        evidence = [{
            "id": "EVIDENCE.SQL.3",
            "rule_id": "RULE.TXN.CATEGORY",
            "detector_id": "DETECTOR.SQL_WRITE",
            "file": "server/app.py",
            "line_start": 3,
            "snippet": "INSERT INTO users (ssn) VALUES (?)",
            "pii_tags": ["PII.SSN"],
            "data_sinks": ["users"],
        }]
        resp = await client.post("/api/audit", json={"evidence": evidence, "frameworks": ["GDPR"]})
        assert resp.status_code == 200
        findings = {f["id"]: f for f in resp.json()["findings"]}
        assert findings["FINDING.GDPR.A7.NON_COMPLIANT"]["severity"] == "critical"

    async def test_audit_requires_input(self, client):
        resp = await client.post("/api/audit", json={})
        assert resp.status_code == 422

    async def test_answer(self, client):
        resp = await client.post("/api/answer", json={"question": "What rights do I have?"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["question_type"] == "rights"
        assert data["provider"] == "local"

    async def test_answer_search_and_stats(self, client):
        resp = await client.post("/api/answer/search", json={"query": "consent", "type": "compliance"})
        assert resp.status_code == 200
        assert all(r["type"] == "compliance" for r in resp.json()["results"])
        stats = (await client.get("/api/answer/stats")).json()
        assert stats["total_documents"] > 0


@pytest.mark.asyncio
class TestConsentEndpoints:
    async def test_gates_round_trip(self, client):
        resp = await client.put("/api/gates", json={"gates": {"acct_profile": True}, "user_id": "user-1"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["gates"] == {"acct_profile": True}
        assert body["receipts"][0]["gate"] == "acct_profile"

        assert (await client.get("/api/gates")).json() == {"gates": {"acct_profile": True}}

    async def test_receipt_issue_and_verify(self, client):
        receipt = (await client.post("/api/receipts", json={
            "gate": "analytics_tracking", "choice": False, "commit": "abc123",
        })).json()
        payload = {k: receipt[k] for k in ("gate", "choice", "commit", "timestamp", "evidence_hash", "user_id", "signature")}

        assert (await client.post("/api/receipts/verify", json=payload)).json() == {"valid": True}
        tampered = {**payload, "choice": True}
        assert (await client.post("/api/receipts/verify", json=tampered)).json() == {"valid": False}

        listed = (await client.get("/api/receipts")).json()
        assert listed["count"] == 1

    async def test_receipts_window_accepts_dates(self, client):
        await client.post("/api/receipts", json={"gate": "acct_profile", "choice": True, "commit": "abc123"})
        resp = await client.get("/api/receipts", params={"start": "2000-01-01"})
        assert resp.status_code == 200
        assert resp.json()["count"] == 1

    async def test_malformed_receipts_window_is_422(self, client):
        resp = await client.get("/api/receipts", params={"start": "last-tuesday"})
        assert resp.status_code == 422
        resp = await client.get("/api/receipts", params={"start": "2026-03-01", "end": "2026-02-01"})
        assert resp.status_code == 422


@pytest.mark.asyncio
class TestErrorMapping:
    async def test_kb_validation_error_is_422(self, client):
        @app.get("/api/_test/kb-error")
        async def _raise():
            raise KBValidationError([SchemaViolation("rules.yaml", "version", "required", "'version' is a required property")])

        try:
            resp = await client.get("/api/_test/kb-error")
        finally:
            app.router.routes.pop()
        assert resp.status_code == 422
        assert resp.json()["violations"][0]["constraint"] == "required"
