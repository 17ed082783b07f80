"""
Compliance Pipeline — end-to-end batch run.

    parsing → audit → receipt (drift) → answer index refresh → commit

Each stage runs to completion before the next starts. Stage outputs are held
in memory and written to output_dir only after every stage succeeded; a
failing stage raises PipelineError and leaves the previous artifacts and the
manifest in place. The receipt stage only reserves the next evidence period;
the commit stage opens it once the artifacts are written. Runs share one
manifest, so they are serialized.
The previous run's evidence snapshot is read from output_dir to compute
code-level drift.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from openledger.agents.factory import AgentRegistry
from openledger.errors import OpenLedgerError, PipelineError
from openledger.kb.loader import LoadedKB
from openledger.middleware.metrics import pipeline_runs_total, pipeline_stage_duration_seconds
from openledger.services.answer_service import AnswerContext
from openledger.services.artifacts import (
    AUDIT_ARTIFACT,
    DRIFT_REPORT,
    EVIDENCE_ARTIFACT,
    EVIDENCE_SNAPSHOT,
    POLICY_ARTIFACT,
    RECEIPT_ARTIFACT,
    commit_artifacts,
    read_json,
)
from openledger.services.compliance_auditor import AuditResult
from openledger.services.drift_detector import DriftResult, render_drift_report
from openledger.services.evidence_extractor import ExtractionResult
from openledger.services.policy_generator import PolicyGenerator

logger = logging.getLogger(__name__)


@dataclass
class PipelineRun:
    run_id: str
    extraction: ExtractionResult
    audit: AuditResult
    drift: DriftResult
    artifacts: dict[str, str] = field(default_factory=dict)
    stage_seconds: dict[str, float] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def summary(self) -> dict:
        return {
            "run_id": self.run_id,
            "files_scanned": self.extraction.metadata.files_scanned,
            "evidence_count": len(self.extraction.evidence),
            "evidence_hash": self.extraction.evidence_hash,
            "findings": len(self.audit.findings),
            "compliance_score": self.audit.compliance_score,
            "framework_scores": {s.framework_id: s.total for s in self.audit.scores},
            "drift_updated": self.drift.updated,
            "drift_events": len(self.drift.drift_events),
            "severity_summary": self.drift.severity_summary,
            "period_id": self.drift.period_id,
            "ledger_hash": self.drift.ledger_hash,
            "artifacts": dict(self.artifacts),
            "stage_seconds": dict(self.stage_seconds),
            "duration_seconds": self.duration_seconds,
        }


class CompliancePipeline:
    def __init__(self, kb: LoadedKB, registry: AgentRegistry, output_dir: str | Path):
        self.kb = kb
        self.registry = registry
        self.output_dir = Path(output_dir)
        self.policy_generator = PolicyGenerator(kb)
        self._run_lock = asyncio.Lock()

    @contextmanager
    def _stage(self, name: str, timings: dict[str, float]):
        start = time.perf_counter()
        try:
            yield
        except PipelineError:
            raise
        except Exception as exc:
            logger.error("Pipeline stage %s failed: %s", name, exc, extra={"stage": name})
            raise PipelineError(name, exc) from exc
        finally:
            elapsed = time.perf_counter() - start
            timings[name] = round(elapsed, 4)
            pipeline_stage_duration_seconds.labels(stage=name).observe(elapsed)

    def previous_snapshot(self) -> ExtractionResult | None:
        data = read_json(self.output_dir / EVIDENCE_SNAPSHOT)
        return ExtractionResult.from_snapshot(data) if data else None

    def answer_context(self, extraction: ExtractionResult) -> AnswerContext:
        discovered = self.policy_generator.discovered_values(extraction.evidence)
        retention: list[str] = []
        for ev in extraction.evidence:
            rule = self.kb.get_rule(ev.rule_id)
            if rule is None or not rule.retention:
                continue
            line = f"{rule.data_category.replace('_', ' ')}: {rule.retention}"
            if line not in retention:
                retention.append(line)
        return AnswerContext(
            data_types=discovered["data_types"],
            purposes=discovered["purposes"],
            retention=retention,
        )

    async def run(
        self,
        root: str | Path,
        repo_url: str = "",
        commit_hash: str | None = None,
        framework_ids: list[str] | None = None,
        time_range: tuple[str | None, str | None] | None = None,
        track_sources: bool = True,
    ) -> PipelineRun:
        async with self._run_lock:
            return await self._run(root, repo_url, commit_hash, framework_ids, time_range, track_sources)

    async def _run(
        self,
        root: str | Path,
        repo_url: str,
        commit_hash: str | None,
        framework_ids: list[str] | None,
        time_range: tuple[str | None, str | None] | None,
        track_sources: bool,
    ) -> PipelineRun:
        run_id = uuid4().hex
        started = time.perf_counter()
        timings: dict[str, float] = {}
        logger.info("Pipeline run %s started for %s", run_id, root)

        try:
            with self._stage("parsing", timings):
                extraction = await self.registry.evidence.extract(root, repo_url=repo_url, commit_hash=commit_hash)
                evidence_doc = self.registry.evidence.to_document(extraction)
                self.registry.tracker.track_sources(root, extraction.scanned_files if track_sources else [])

            with self._stage("audit", timings):
                audit = await self.registry.audit.audit(extraction.evidence, framework_ids)

            with self._stage("receipt", timings):
                drift = await self.registry.receipt.detect(self.previous_snapshot(), extraction, time_range)

            with self._stage("answer", timings):
                self.registry.answer.refresh(audit.policy_markdown, self.answer_context(extraction))

            with self._stage("commit", timings):
                written = commit_artifacts(self.output_dir, {
                    EVIDENCE_ARTIFACT: evidence_doc,
                    EVIDENCE_SNAPSHOT: extraction.to_snapshot(),
                    AUDIT_ARTIFACT: audit.to_document(),
                    POLICY_ARTIFACT: audit.policy_markdown,
                    RECEIPT_ARTIFACT: drift.to_document(),
                    DRIFT_REPORT: render_drift_report(drift),
                })
                await self.registry.receipt.commit(drift)
        except OpenLedgerError:
            pipeline_runs_total.labels(status="failed").inc()
            raise

        pipeline_runs_total.labels(status="completed").inc()
        result = PipelineRun(
            run_id=run_id,
            extraction=extraction,
            audit=audit,
            drift=drift,
            artifacts=written,
            stage_seconds=timings,
            duration_seconds=round(time.perf_counter() - started, 3),
        )
        logger.info(
            "Pipeline run %s completed in %.2fs: %d evidence, %d findings, %d drift events",
            run_id, result.duration_seconds, len(extraction.evidence),
            len(audit.findings), len(drift.drift_events),
        )
        return result
