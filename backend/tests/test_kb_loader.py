"""Tests for KB loading, validation and indices."""

import pytest

from openledger.errors import KBNotFoundError, KBValidationError
from openledger.kb.loader import KBLoader
from openledger.kb.schemas import Control, Rule
from tests.conftest import edit_yaml


class TestLoad:
    def test_packaged_kb_loads(self, kb):
        assert [f.id for f in kb.frameworks] == ["GDPR", "CCPA", "GLBA"]
        assert len(kb.pii) == 10
        assert kb.get_template("POLICY.TEMPLATE.STANDARD") is not None
        assert isinstance(kb.get_rule("RULE.ACCOUNT.PROFILE"), Rule)
        assert isinstance(kb.get_control("GDPR.A7"), Control)

    def test_typed_lookup_rejects_wrong_kind(self, kb):
        assert kb.get_rule("GDPR.A7") is None
        assert kb.get_control("RULE.ACCOUNT.PROFILE") is None

    def test_index_by_type(self, kb):
        assert "DETECTOR.LOCALSTORAGE" in kb.index.get_by_type("DETECTOR")
        assert "POLICY.SECTION.DATA_SHARING" in kb.index.get_by_type("SECTION")
        assert "RULE.TXN.CATEGORY" in kb.index.get_by_type("RULE")

    def test_index_by_tag(self, kb):
        assert "PII.SSN" in kb.index.get_by_tag("critical")
        assert kb.index.find_rules_for_purpose("budgeting") == ["RULE.API.TRANSACTIONS", "RULE.TXN.CATEGORY"]
        controls = kb.index.find_controls_for_framework("GDPR")
        assert "GDPR.A6" in controls and "CCPA.1798.100" not in controls
        assert "DETECTOR.FORM_FIELD" in kb.index.find_detectors_for_pii("PII.EMAIL")

    def test_indices_rebuilt_on_every_load(self, kb_dir):
        first = KBLoader(kb_dir).load()
        second = KBLoader(kb_dir).load()
        assert first.index is not second.index
        assert first.index.by_id.keys() == second.index.by_id.keys()


class TestValidation:
    def test_missing_required_field(self, kb_dir):
        edit_yaml(kb_dir / "rules.yaml", lambda d: d.pop("version"))
        with pytest.raises(KBValidationError) as exc_info:
            KBLoader(kb_dir).load()
        violations = exc_info.value.violations
        assert any(v.document == "rules.yaml" and v.constraint == "required" for v in violations)

    def test_violations_aggregate_across_documents(self, kb_dir):
        edit_yaml(kb_dir / "rules.yaml", lambda d: d.pop("version"))

        def _bad_severity(data):
            data["frameworks"][0]["controls"][0]["severity"] = "severe"

        edit_yaml(kb_dir / "compliance_frameworks.yaml", _bad_severity)
        with pytest.raises(KBValidationError) as exc_info:
            KBLoader(kb_dir).load()
        documents = {v.document for v in exc_info.value.violations}
        assert documents == {"rules.yaml", "compliance_frameworks.yaml"}
        assert "frameworks/0/controls/0/severity" in str(exc_info.value)

    def test_dangling_detector_reference(self, kb_dir):
        def _dangling(data):
            data["mapping"][0]["detectors"].append("DETECTOR.MISSING")

        edit_yaml(kb_dir / "rules.yaml", _dangling)
        with pytest.raises(KBValidationError) as exc_info:
            KBLoader(kb_dir).load()
        assert [v.constraint for v in exc_info.value.violations] == ["reference"]

    def test_duplicate_ids(self, kb_dir):
        def _duplicate(data):
            data["mapping"].append(dict(data["mapping"][0]))

        edit_yaml(kb_dir / "rules.yaml", _duplicate)
        with pytest.raises(KBValidationError) as exc_info:
            KBLoader(kb_dir).load()
        assert any(v.constraint == "unique" for v in exc_info.value.violations)

    def test_missing_document(self, kb_dir):
        (kb_dir / "privacy_policies.yaml").unlink()
        with pytest.raises(KBNotFoundError):
            KBLoader(kb_dir).load()

    def test_unparseable_yaml(self, kb_dir):
        (kb_dir / "rules.yaml").write_text("taxonomies: [unclosed\n", encoding="utf-8")
        with pytest.raises(KBNotFoundError):
            KBLoader(kb_dir).load()
