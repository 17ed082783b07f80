"""
Compliance Auditor

Matches evidence against every control of the selected frameworks and emits
findings, then scores each framework and renders the privacy policy.

Per control:
  1. Relevant evidence = evidence whose PII tags or data sinks intersect the
     control's KB-declared relevance list.
  2. No relevant evidence: a NO_EVIDENCE finding, but only for high/critical
     controls.
  3. Relevant evidence: every machine-checkable evidence requirement and every
     KB keyword check must be met by at least one snippet. All failures are
     joined into one NON_COMPLIANT finding.
  4. Rationales naming a missing lawful basis, missing security measures or
     missing consent escalate the finding to critical.
"""

import logging
from dataclasses import asdict, dataclass, field

from openledger.kb.loader import LoadedKB
from openledger.kb.schemas import Control, Framework
from openledger.services.evidence_extractor import Evidence
from openledger.services.policy_generator import PolicyGenerator
from openledger.services.scoring_engine import FrameworkScore, ScoringEngine

logger = logging.getLogger(__name__)

ESCALATION_MARKERS = (
    "No documented lawful basis",
    "No evidence of appropriate security",
    "No evidence of proper consent",
)

FIX_IMPACT = {"critical": "high", "high": "high", "medium": "med", "low": "low"}


@dataclass
class Finding:
    id: str
    control_id: str
    framework_id: str
    evidence_ids: list[str]
    severity: str
    rationale: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AuditResult:
    findings: list[Finding] = field(default_factory=list)
    scores: list[FrameworkScore] = field(default_factory=list)
    compliance_score: float = 0.0
    policy_markdown: str = ""
    recommended_fixes: list[dict] = field(default_factory=list)
    user_toggles: list[dict] = field(default_factory=list)
    framework_breakdown: list[dict] = field(default_factory=list)

    def findings_for(self, control_id: str) -> list[Finding]:
        return [f for f in self.findings if f.control_id == control_id]

    def score_for(self, framework_id: str) -> FrameworkScore | None:
        return next((s for s in self.scores if s.framework_id == framework_id), None)

    def to_document(self) -> dict:
        return {
            "compliance_score": self.compliance_score,
            "framework_breakdown": self.framework_breakdown,
            "recommended_fixes": self.recommended_fixes,
            "policy_markdown": self.policy_markdown,
            "user_toggles": self.user_toggles,
            "findings": [f.to_dict() for f in self.findings],
            "scores": [s.to_dict() for s in self.scores],
        }


def escalate(severity: str, rationale: str) -> str:
    if any(marker in rationale for marker in ESCALATION_MARKERS):
        return "critical"
    return severity


class ComplianceAuditor:
    """Evaluates evidence against KB frameworks and scores the result."""

    def __init__(
        self,
        kb: LoadedKB,
        template_id: str = "POLICY.TEMPLATE.STANDARD",
        scoring: ScoringEngine | None = None,
        policy_generator: PolicyGenerator | None = None,
    ):
        self.kb = kb
        self.template_id = template_id
        self.scoring = scoring or ScoringEngine()
        self.policy_generator = policy_generator or PolicyGenerator(kb)
        self.requirement_keywords = {
            phrase.lower(): [k.lower() for k in keywords]
            for phrase, keywords in kb.compliance.requirement_keywords.items()
        }

    # ------------------------------------------------------------------
    # Control evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def relevant_evidence(evidence: list[Evidence], control: Control) -> list[Evidence]:
        relevance = set(control.relevance)
        if not relevance:
            return []
        return [
            ev for ev in evidence
            if relevance.intersection(ev.pii_tags) or relevance.intersection(ev.data_sinks)
        ]

    @staticmethod
    def _any_snippet_contains(evidence: list[Evidence], keywords: list[str]) -> bool:
        lowered = [k.lower() for k in keywords]
        return any(k in ev.snippet.lower() for ev in evidence for k in lowered)

    def check_requirement(self, requirement: str, evidence: list[Evidence]) -> bool | None:
        """True/False when the requirement names a known phrase; None when it is not machine-checkable."""
        text = requirement.lower()
        phrases = [p for p in self.requirement_keywords if p in text]
        if not phrases:
            return None
        return all(self._any_snippet_contains(evidence, self.requirement_keywords[p]) for p in phrases)

    def check_control(self, control: Control, evidence: list[Evidence]) -> list[str]:
        """Rationales for every unmet requirement or check; empty when the control passes."""
        failures: list[str] = []
        for requirement in control.evidence_requirements:
            if self.check_requirement(requirement, evidence) is False:
                failures.append(f"Missing requirement: {requirement}")
        for check in control.checks:
            if not self._any_snippet_contains(evidence, check.keywords):
                failures.append(check.rationale)
        return failures

    def evaluate_control(self, framework: Framework, control: Control, evidence: list[Evidence]) -> list[Finding]:
        relevant = self.relevant_evidence(evidence, control)

        if not relevant:
            if control.severity in ("high", "critical"):
                return [Finding(
                    id=f"FINDING.{control.id}.NO_EVIDENCE",
                    control_id=control.id,
                    framework_id=framework.id,
                    evidence_ids=[],
                    severity=control.severity,
                    rationale=f"No evidence found for required control: {control.name}",
                )]
            return []

        failures = self.check_control(control, relevant)
        if not failures:
            return []

        rationale = "; ".join(failures)
        return [Finding(
            id=f"FINDING.{control.id}.NON_COMPLIANT",
            control_id=control.id,
            framework_id=framework.id,
            evidence_ids=[ev.id for ev in relevant],
            severity=escalate(control.severity, rationale),
            rationale=rationale,
        )]

    def audit_framework(self, framework: Framework, evidence: list[Evidence]) -> tuple[list[Finding], FrameworkScore]:
        findings: list[Finding] = []
        for control in framework.controls:
            findings.extend(self.evaluate_control(framework, control, evidence))

        severities: dict[str, list[str]] = {}
        for finding in findings:
            severities.setdefault(finding.control_id, []).append(finding.severity)
        return findings, self.scoring.score_framework(framework, severities)

    # ------------------------------------------------------------------
    # Full audit
    # ------------------------------------------------------------------

    def select_frameworks(self, framework_ids: list[str] | None) -> list[Framework]:
        if not framework_ids:
            return list(self.kb.frameworks)
        selected = []
        for framework_id in framework_ids:
            framework = self.kb.get_framework(framework_id)
            if framework is None:
                logger.warning("Unknown framework %s, skipping", framework_id)
                continue
            selected.append(framework)
        return selected

    def audit(self, evidence: list[Evidence], framework_ids: list[str] | None = None) -> AuditResult:
        result = AuditResult()

        for framework in self.select_frameworks(framework_ids):
            findings, score = self.audit_framework(framework, evidence)
            result.findings.extend(findings)
            result.scores.append(score)
            result.framework_breakdown.append(self._breakdown(framework, findings, score))

        result.compliance_score = self.scoring.overall(result.scores)
        result.recommended_fixes = self._recommended_fixes(result.findings)
        result.user_toggles = self._user_toggles(evidence)
        result.policy_markdown = self.policy_generator.render(evidence, self.template_id)

        logger.info(
            "Audited %d evidence against %d frameworks: %d findings, score %.2f",
            len(evidence), len(result.scores), len(result.findings), result.compliance_score,
        )
        return result

    @staticmethod
    def _breakdown(framework: Framework, findings: list[Finding], score: FrameworkScore) -> dict:
        failed_ids = {f.control_id for f in findings}
        controls = {c.id: c for c in framework.controls}
        return {
            "framework": framework.id,
            "name": framework.name,
            "score": score.total,
            "status": score.status,
            "passed": [c.id for c in framework.controls if c.id not in failed_ids],
            "failed": [
                {
                    "id": f.control_id,
                    "title": controls[f.control_id].name,
                    "why": f.rationale,
                    "severity": f.severity,
                    "evidence_refs": list(f.evidence_ids),
                }
                for f in findings
            ],
            "breakdown": [asdict(b) for b in score.breakdown],
        }

    def _recommended_fixes(self, findings: list[Finding]) -> list[dict]:
        fixes: list[dict] = []
        seen: set[str] = set()
        for finding in findings:
            control = self.kb.get_control(finding.control_id)
            if control is None or not control.remediation or control.id in seen:
                continue
            seen.add(control.id)
            fixes.append({
                "title": control.name,
                "change": control.remediation,
                "impact": FIX_IMPACT.get(finding.severity, "low"),
                "control_id": control.id,
            })
        return fixes

    def _user_toggles(self, evidence: list[Evidence]) -> list[dict]:
        toggles: dict[str, dict] = {}
        for ev in evidence:
            rule = self.kb.get_rule(ev.rule_id)
            if rule is None:
                continue
            toggle = toggles.get(rule.gate)
            if toggle is None:
                toggle = toggles[rule.gate] = {
                    "id": rule.gate,
                    "name": rule.gate.replace("_", " ").title(),
                    "category": rule.data_category,
                    "description": f"Allow processing for {rule.purpose.replace('_', ' ')}",
                    "retention": rule.retention,
                    "affected_endpoints": [],
                    "evidence_refs": [],
                }
            if rule.match.endpoint and rule.match.endpoint not in toggle["affected_endpoints"]:
                toggle["affected_endpoints"].append(rule.match.endpoint)
            toggle["evidence_refs"].append(ev.id)
        return list(toggles.values())
