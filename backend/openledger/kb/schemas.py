"""
Typed models for the three knowledge-base documents.

The loader validates raw YAML against schema.json first and then parses it
into these models, so nothing downstream ever handles an untyped KB map.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["low", "medium", "high", "critical"]

SEVERITY_ORDER: dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class _KBModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


# ── rules.yaml ──

class PiiTaxon(_KBModel):
    id: str
    name: str
    sensitivity: str
    patterns: list[str] = Field(default_factory=list)
    description: str = ""


class ConfidenceBoost(_KBModel):
    """Extra confidence when a detector captured a specific slot (optionally with a given value)."""
    capture: str
    equals: str | None = None
    boost: float = 0.2


class Detector(_KBModel):
    id: str
    type: Literal["regex"] = "regex"
    pattern: str
    captures: list[str] = Field(default_factory=list)
    pii_tags: list[str] = Field(default_factory=list)
    description: str = ""
    boost: ConfidenceBoost | None = None


class RuleMatch(_KBModel):
    endpoint: str = ""
    fields: list[str] = Field(default_factory=list)


class Rule(_KBModel):
    id: str
    match: RuleMatch = Field(default_factory=RuleMatch)
    purpose: str
    gate: str
    retention: str
    data_category: str
    detectors: list[str] = Field(default_factory=list)


class RuleExample(_KBModel):
    id: str
    rule_id: str
    snippet: str = ""


class Taxonomies(_KBModel):
    pii: list[PiiTaxon] = Field(default_factory=list)


class RulesDocument(_KBModel):
    version: str
    created_at: str
    taxonomies: Taxonomies = Field(default_factory=Taxonomies)
    detectors: list[Detector] = Field(default_factory=list)
    mapping: list[Rule] = Field(default_factory=list)
    examples: list[RuleExample] = Field(default_factory=list)


# ── compliance_frameworks.yaml ──

class ControlCheck(_KBModel):
    """Passes when at least one relevant snippet contains one of the keywords."""
    keywords: list[str]
    rationale: str


class Control(_KBModel):
    id: str
    name: str
    description: str
    severity: Severity
    weight: float
    evidence_requirements: list[str] = Field(default_factory=list)
    relevance: list[str] = Field(default_factory=list)
    checks: list[ControlCheck] = Field(default_factory=list)
    remediation: str = ""


class FrameworkScoring(_KBModel):
    method: str = "weighted_average"
    thresholds: dict[str, float] = Field(default_factory=dict)


class Framework(_KBModel):
    id: str
    name: str
    jurisdiction: str
    version: str = ""
    controls: list[Control]
    scoring: FrameworkScoring = Field(default_factory=FrameworkScoring)


class ComplianceDocument(_KBModel):
    version: str
    created_at: str
    frameworks: list[Framework]
    requirement_keywords: dict[str, list[str]] = Field(default_factory=dict)


# ── privacy_policies.yaml ──

class PolicySection(_KBModel):
    id: str
    name: str
    content: str
    placeholders: list[str] = Field(default_factory=list)


class PolicyTemplate(_KBModel):
    id: str
    name: str
    jurisdictions: list[str] = Field(default_factory=list)
    sections: list[PolicySection]


class PoliciesDocument(_KBModel):
    version: str
    created_at: str
    templates: list[PolicyTemplate]
    placeholders: dict[str, str | list[str]] = Field(default_factory=dict)
