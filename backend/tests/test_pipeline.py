"""Tests for the end-to-end pipeline run."""

import json
from pathlib import Path

import pytest

from openledger.agents.base import AuditAgent
from openledger.agents.factory import create_agent_registry
from openledger.agents.local import LocalAnswerAgent
from openledger.errors import PipelineError
from openledger.services.artifacts import (
    AUDIT_ARTIFACT,
    DRIFT_REPORT,
    EVIDENCE_ARTIFACT,
    EVIDENCE_SNAPSHOT,
    POLICY_ARTIFACT,
    RECEIPT_ARTIFACT,
)
from openledger.services.manifest_tracker import SOURCE_PREFIX
from openledger.services.pipeline import CompliancePipeline
from tests.conftest import write_tree


class _FailingAuditAgent(AuditAgent):
    async def audit(self, evidence, framework_ids=None):
        raise RuntimeError("auditor exploded")


class _FailingRefreshAgent(LocalAnswerAgent):
    def refresh(self, policy_markdown="", context=None):
        raise RuntimeError("index rebuild failed")


@pytest.fixture
def pipeline(test_settings, kb, consent_store):
    registry = create_agent_registry(test_settings, kb, consent_store=consent_store)
    return CompliancePipeline(kb, registry, test_settings.output_dir)


def _read(output_dir: str, name: str) -> dict:
    return json.loads((Path(output_dir) / name).read_text(encoding="utf-8"))


@pytest.mark.asyncio
class TestRun:
    async def test_writes_all_artifacts(self, pipeline, sample_repo, test_settings):
        run = await pipeline.run(sample_repo, repo_url="https://example.com/repo", commit_hash="abc123")

        for name in (EVIDENCE_ARTIFACT, EVIDENCE_SNAPSHOT, AUDIT_ARTIFACT, POLICY_ARTIFACT, RECEIPT_ARTIFACT, DRIFT_REPORT):
            assert (Path(test_settings.output_dir) / name).exists()
        assert not list(Path(test_settings.output_dir).glob(".tmp_*"))

        evidence = _read(test_settings.output_dir, EVIDENCE_ARTIFACT)
        assert evidence["evidence_hash"] == run.extraction.evidence_hash
        audit = _read(test_settings.output_dir, AUDIT_ARTIFACT)
        assert audit["compliance_score"] == run.audit.compliance_score
        policy = (Path(test_settings.output_dir) / POLICY_ARTIFACT).read_text(encoding="utf-8")
        assert "Email address" in policy

        summary = run.summary()
        assert summary["evidence_count"] == len(run.extraction.evidence)
        assert set(summary["stage_seconds"]) == {"parsing", "audit", "receipt", "answer", "commit"}

    async def test_first_run_opens_a_period(self, pipeline, sample_repo, test_settings):
        run = await pipeline.run(sample_repo, commit_hash="abc123")
        assert run.drift.updated is True
        assert run.drift.period_id is not None
        receipt = _read(test_settings.output_dir, RECEIPT_ARTIFACT)
        assert receipt["period_id"] == run.drift.period_id

    async def test_rerun_without_changes_is_quiet(self, pipeline, sample_repo):
        first = await pipeline.run(sample_repo, commit_hash="abc123")
        second = await pipeline.run(sample_repo, commit_hash="abc123")
        assert second.drift.updated is False
        assert second.drift.drift_events == []
        assert second.drift.period_id == first.drift.period_id

    async def test_new_endpoint_is_reported(self, pipeline, sample_repo):
        await pipeline.run(sample_repo, commit_hash="abc123")
        write_tree(sample_repo, {"src/export.ts": "const r = \"POST '/api/export'\";\n"})

        run = await pipeline.run(sample_repo, commit_hash="def456")
        kinds = {(e.type, e.severity) for e in run.drift.drift_events}
        assert ("file_added", "medium") in kinds
        assert ("new_endpoint", "medium") in kinds
        assert "POST /api/export" in {e.endpoint for e in run.drift.drift_events}

    async def test_answers_use_latest_scan(self, pipeline, sample_repo):
        await pipeline.run(sample_repo, commit_hash="abc123")
        answer = await pipeline.registry.answer.answer("What data do you collect?")
        assert "• Email address" in answer.answer

    async def test_failed_stage_writes_nothing(self, pipeline, sample_repo, test_settings):
        pipeline.registry.audit = _FailingAuditAgent()
        with pytest.raises(PipelineError) as exc_info:
            await pipeline.run(sample_repo, commit_hash="abc123")
        assert exc_info.value.stage == "audit"
        assert not (Path(test_settings.output_dir) / EVIDENCE_ARTIFACT).exists()

    async def test_failed_late_stage_keeps_drift_for_next_run(self, pipeline, sample_repo, test_settings, kb):
        first = await pipeline.run(sample_repo, commit_hash="abc123")
        tracker = pipeline.registry.tracker
        manifest_before = tracker.manifest_path.read_text(encoding="utf-8")
        receipt_before = _read(test_settings.output_dir, RECEIPT_ARTIFACT)
        write_tree(sample_repo, {"src/export.ts": "const r = \"POST '/api/export'\";\n"})

        working_agent = pipeline.registry.answer
        pipeline.registry.answer = _FailingRefreshAgent(kb)
        with pytest.raises(PipelineError) as exc_info:
            await pipeline.run(sample_repo, commit_hash="def456")
        assert exc_info.value.stage == "answer"
        assert tracker.manifest_path.read_text(encoding="utf-8") == manifest_before
        assert tracker.current_period().id == first.drift.period_id
        assert _read(test_settings.output_dir, RECEIPT_ARTIFACT) == receipt_before

        pipeline.registry.answer = working_agent
        retry = await pipeline.run(sample_repo, commit_hash="def456")
        assert retry.drift.updated is True
        kinds = {(e.type, e.severity) for e in retry.drift.drift_events}
        assert ("file_added", "medium") in kinds
        assert ("new_endpoint", "medium") in kinds
        assert tracker.current_period().id == retry.drift.period_id != first.drift.period_id

    async def test_second_repo_replaces_tracked_sources(self, pipeline, sample_repo, tmp_path):
        await pipeline.run(sample_repo, commit_hash="abc123")
        other = write_tree(tmp_path / "other", {"web/cart.ts": "sessionStorage.setItem('cart', items);\n"})

        run = await pipeline.run(other, commit_hash="fff000")

        manifest = pipeline.registry.tracker.read_manifest()
        repo_paths = [f.path for f in manifest.files if f.path.startswith(SOURCE_PREFIX)]
        assert repo_paths == ["repo/web/cart.ts"]
        assert "repo/src/profile.ts" in run.drift.diff.removed
