"""Tests for control matching, scoring and audit documents."""

import pytest

from openledger.services.compliance_auditor import ComplianceAuditor, escalate
from openledger.services.scoring_engine import ScoringEngine
from tests.conftest import make_evidence

COMPLIANT_SNIPPET = (
    "if (consent && auth.ok) localStorage.setItem('ssn', encrypt(email)) "
    "// privacy: delete or export on request"
)


@pytest.fixture
def auditor(kb):
    return ComplianceAuditor(kb)


class TestEscalation:
    def test_markers_escalate_to_critical(self):
        assert escalate("medium", "No documented lawful basis for processing personal data") == "critical"
        assert escalate("low", "x; No evidence of proper consent mechanisms") == "critical"

    def test_other_rationales_keep_severity(self):
        assert escalate("high", "No evidence found for required control: X") == "high"


class TestControls:
    def test_no_evidence_only_for_high_and_critical(self, auditor):
        result = auditor.audit([], ["GDPR"])
        assert sorted(f.id for f in result.findings) == [
            "FINDING.GDPR.A32.NO_EVIDENCE",
            "FINDING.GDPR.A6.NO_EVIDENCE",
            "FINDING.GDPR.A7.NO_EVIDENCE",
        ]
        assert all(f.severity == "high" for f in result.findings)

    def test_no_evidence_score(self, auditor):
        result = auditor.audit([], ["GDPR"])
        score = result.score_for("GDPR")
        assert score.total == 83.5
        assert score.status == "pass"

    def test_ssn_without_consent_is_critical(self, auditor):
        evidence = [make_evidence(
            "EVIDENCE.SQL.3", snippet="db.insert({ssn: form.ssn})", pii_tags=("PII.SSN",), data_sinks=("users",),
        )]
        result = auditor.audit(evidence, ["GDPR"])

        [finding] = result.findings_for("GDPR.A7")
        assert finding.id == "FINDING.GDPR.A7.NON_COMPLIANT"
        assert finding.severity == "critical"
        assert finding.evidence_ids == ["EVIDENCE.SQL.3"]
        assert "Missing requirement: Explicit consent records for sensitive data" in finding.rationale
        assert "No evidence of proper consent mechanisms for sensitive data" in finding.rationale

        [lawful] = result.findings_for("GDPR.A6")
        assert lawful.severity == "critical"

    def test_fully_evidenced_framework_passes(self, auditor):
        evidence = [make_evidence(
            "EVIDENCE.OK.1",
            snippet=COMPLIANT_SNIPPET,
            pii_tags=("PII.EMAIL", "PII.SSN"),
            data_sinks=("localStorage",),
        )]
        result = auditor.audit(evidence, ["GDPR"])
        assert result.findings == []
        assert result.score_for("GDPR").total == 100.0
        assert result.recommended_fixes == []

    def test_requirements_without_keywords_are_skipped(self, auditor):
        control = auditor.kb.get_control("GDPR.A6")
        evidence = [make_evidence(snippet="nothing relevant", pii_tags=("PII.EMAIL",))]
        assert auditor.check_requirement(control.evidence_requirements[0], evidence) is None

    def test_unknown_framework_is_skipped(self, auditor):
        result = auditor.audit([], ["GDPR", "HIPAA"])
        assert [s.framework_id for s in result.scores] == ["GDPR"]


class TestScoring:
    def test_adding_findings_never_raises_score(self, kb):
        framework = kb.get_framework("CCPA")
        engine = ScoringEngine()
        clean = engine.score_framework(framework, {})
        one = engine.score_framework(framework, {"CCPA.1798.120": ["high"]})
        two = engine.score_framework(framework, {"CCPA.1798.120": ["high", "critical"]})
        assert clean.total == 100.0
        assert clean.total >= one.total >= two.total
        assert two.breakdown[2].score == 20.0

    def test_control_score_floors_at_zero(self):
        assert ScoringEngine.score_control(["critical", "critical", "critical"]) == 0

    def test_classify_thresholds(self):
        assert ScoringEngine.classify(80.0) == "pass"
        assert ScoringEngine.classify(79.99) == "warn"
        assert ScoringEngine.classify(59.0) == "fail"

    def test_overall_is_mean_of_frameworks(self, auditor):
        result = auditor.audit([])
        totals = [s.total for s in result.scores]
        assert result.compliance_score == round(sum(totals) / len(totals), 2)


class TestAuditDocument:
    def test_document_sections(self, auditor):
        evidence = [make_evidence(
            "EVIDENCE.SQL.3", snippet="db.insert({ssn: form.ssn})", pii_tags=("PII.SSN",), data_sinks=("users",),
        )]
        doc = auditor.audit(evidence).to_document()

        assert set(doc) >= {"compliance_score", "framework_breakdown", "recommended_fixes", "policy_markdown", "user_toggles"}
        gdpr = next(b for b in doc["framework_breakdown"] if b["framework"] == "GDPR")
        failed = {f["id"] for f in gdpr["failed"]}
        assert "GDPR.A7" in failed and "GDPR.A7" not in gdpr["passed"]
        assert any(fix["control_id"] == "GDPR.A7" and fix["impact"] == "high" for fix in doc["recommended_fixes"])
        assert doc["user_toggles"][0]["id"] == "acct_profile"
        assert doc["user_toggles"][0]["evidence_refs"] == ["EVIDENCE.SQL.3"]
        assert doc["policy_markdown"].startswith("# Privacy Policy\n\n## Introduction\n\n")
