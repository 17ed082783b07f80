"""
Stage capability interfaces.

Each pipeline stage is reached through one of these; which implementation
backs it is decided once at startup by agents.factory.
"""

from abc import ABC, abstractmethod
from pathlib import Path

from openledger.services.answer_service import Answer, AnswerContext
from openledger.services.compliance_auditor import AuditResult
from openledger.services.drift_detector import DriftResult
from openledger.services.evidence_extractor import Evidence, ExtractionResult
from openledger.services.manifest_tracker import EvidencePeriod
from openledger.services.retrieval import BM25Index


class EvidenceAgent(ABC):
    provider: str = "local"

    @abstractmethod
    async def extract(self, root: str | Path, repo_url: str = "", commit_hash: str | None = None) -> ExtractionResult:
        """Scan a source tree and return typed evidence."""

    @abstractmethod
    def to_document(self, result: ExtractionResult) -> dict:
        """Evidence artifact for a scan result."""


class AuditAgent(ABC):
    provider: str = "local"

    @abstractmethod
    async def audit(self, evidence: list[Evidence], framework_ids: list[str] | None = None) -> AuditResult:
        """Findings, scores and rendered policy for an evidence set."""


class ReceiptAgent(ABC):
    provider: str = "local"

    @abstractmethod
    async def detect(
        self,
        previous: ExtractionResult | None = None,
        current: ExtractionResult | None = None,
        time_range: tuple[str | None, str | None] | None = None,
    ) -> DriftResult:
        """Drift events and ledger hash for the current state."""

    @abstractmethod
    async def commit(self, result: DriftResult) -> EvidencePeriod | None:
        """Persist the evidence period a detect() result describes."""


class AnswerAgent(ABC):
    provider: str = "local"

    @abstractmethod
    async def answer(self, question: str, top_k: int = 5) -> Answer:
        """Answer a free-text question from the indexed corpus."""

    @abstractmethod
    def refresh(self, policy_markdown: str = "", context: AnswerContext | None = None) -> None:
        """Rebuild the corpus with the latest generated policy and scan context."""

    @property
    @abstractmethod
    def index(self) -> BM25Index:
        """The retrieval index answers are drawn from."""
