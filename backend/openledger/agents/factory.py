"""
Startup-time selection of stage implementations.

The extractor, auditor and receipt stage are always the deterministic local
ones. The answer stage is local or Ollama-augmented depending on
settings.llm_provider.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from openledger.agents.base import AnswerAgent, AuditAgent, EvidenceAgent, ReceiptAgent
from openledger.agents.local import LocalAnswerAgent, LocalAuditAgent, LocalEvidenceAgent, LocalReceiptAgent
from openledger.agents.ollama import OllamaAnswerAgent
from openledger.config import Settings
from openledger.kb.loader import LoadedKB
from openledger.services.compliance_auditor import ComplianceAuditor
from openledger.services.consent_store import ConsentStore
from openledger.services.drift_detector import DriftDetector
from openledger.services.evidence_extractor import EvidenceExtractor
from openledger.services.manifest_tracker import ManifestTracker

logger = logging.getLogger(__name__)


@dataclass
class AgentRegistry:
    evidence: EvidenceAgent
    audit: AuditAgent
    receipt: ReceiptAgent
    answer: AnswerAgent
    tracker: ManifestTracker
    provider: str


def _read_prompt(prompts_dir: Path, name: str) -> str:
    try:
        return (prompts_dir / f"{name}.system.md").read_text(encoding="utf-8")
    except OSError:
        return ""


def create_agent_registry(
    settings: Settings,
    kb: LoadedKB,
    consent_store: ConsentStore | None = None,
    tracker: ManifestTracker | None = None,
) -> AgentRegistry:
    prompts_dir = Path(settings.kb_path) / "prompts"
    tracker = tracker or ManifestTracker(settings.kb_path, settings.manifest_path)

    extractor = EvidenceExtractor(
        kb,
        include_patterns=settings.include_list,
        exclude_patterns=settings.exclude_list,
        workers=settings.scan_workers,
    )
    auditor = ComplianceAuditor(kb, template_id=settings.policy_template_id)

    local_answer = LocalAnswerAgent(kb, prompts_dir)
    answer: AnswerAgent = local_answer
    if settings.llm_provider == "ollama":
        answer = OllamaAnswerAgent(
            fallback=local_answer,
            ollama_url=settings.ollama_url,
            model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
            system_prompt=_read_prompt(prompts_dir, "answer"),
        )

    logger.info("Agent registry ready (answer provider: %s)", settings.llm_provider)
    return AgentRegistry(
        evidence=LocalEvidenceAgent(extractor),
        audit=LocalAuditAgent(auditor),
        receipt=LocalReceiptAgent(DriftDetector(tracker, consent_store)),
        answer=answer,
        tracker=tracker,
        provider=settings.llm_provider,
    )
