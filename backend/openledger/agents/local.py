"""Deterministic, rule-based stage implementations."""

import asyncio
from pathlib import Path

from openledger.agents.base import AnswerAgent, AuditAgent, EvidenceAgent, ReceiptAgent
from openledger.kb.loader import LoadedKB
from openledger.services.answer_service import Answer, AnswerContext, AnswerService
from openledger.services.compliance_auditor import AuditResult, ComplianceAuditor
from openledger.services.drift_detector import DriftDetector, DriftResult
from openledger.services.evidence_extractor import Evidence, EvidenceExtractor, ExtractionResult
from openledger.services.manifest_tracker import EvidencePeriod
from openledger.services.retrieval import BM25Index


class LocalEvidenceAgent(EvidenceAgent):
    def __init__(self, extractor: EvidenceExtractor):
        self.extractor = extractor

    async def extract(self, root: str | Path, repo_url: str = "", commit_hash: str | None = None) -> ExtractionResult:
        return await self.extractor.extract(root, repo_url=repo_url, commit_hash=commit_hash)

    def to_document(self, result: ExtractionResult) -> dict:
        return self.extractor.to_document(result)


class LocalAuditAgent(AuditAgent):
    def __init__(self, auditor: ComplianceAuditor):
        self.auditor = auditor

    async def audit(self, evidence: list[Evidence], framework_ids: list[str] | None = None) -> AuditResult:
        return await asyncio.to_thread(self.auditor.audit, evidence, framework_ids)


class LocalReceiptAgent(ReceiptAgent):
    def __init__(self, detector: DriftDetector):
        self.detector = detector

    async def detect(
        self,
        previous: ExtractionResult | None = None,
        current: ExtractionResult | None = None,
        time_range: tuple[str | None, str | None] | None = None,
    ) -> DriftResult:
        return await self.detector.detect(previous, current, time_range)

    async def commit(self, result: DriftResult) -> EvidencePeriod | None:
        return await self.detector.commit(result)


class LocalAnswerAgent(AnswerAgent):
    def __init__(self, kb: LoadedKB, prompts_dir: str | Path | None = None):
        self.kb = kb
        self.prompts_dir = prompts_dir
        self.service = AnswerService(kb, BM25Index.from_kb(kb, prompts_dir))

    def refresh(self, policy_markdown: str = "", context: AnswerContext | None = None) -> None:
        index = BM25Index.from_kb(self.kb, self.prompts_dir)
        if policy_markdown:
            index.add_policy_markdown(policy_markdown)
        self.service = AnswerService(self.kb, index, context)

    async def answer(self, question: str, top_k: int = 5) -> Answer:
        return self.service.answer(question, top_k)

    @property
    def index(self) -> BM25Index:
        return self.service.index
