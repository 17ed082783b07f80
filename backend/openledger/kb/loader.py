"""
Knowledge Base Loader

Loads the three KB documents (taxonomy/detectors/rules, compliance
frameworks, policy templates), validates each one against schema.json,
parses them into typed models and builds the lookup indices.

Validation is all-or-nothing: every violation across all three documents
is collected and raised together as a KBValidationError, and no index is
built for a KB that failed.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from jsonschema import Draft7Validator
from pydantic import ValidationError

from openledger.errors import KBNotFoundError, KBValidationError, SchemaViolation
from openledger.kb.schemas import (
    ComplianceDocument,
    Control,
    Framework,
    PiiTaxon,
    PoliciesDocument,
    PolicyTemplate,
    Rule,
    RulesDocument,
)

logger = logging.getLogger(__name__)

RULES_FILE = "rules.yaml"
COMPLIANCE_FILE = "compliance_frameworks.yaml"
POLICIES_FILE = "privacy_policies.yaml"
SCHEMA_FILE = "schema.json"

# document kind → schema.json definition name
_DEFINITIONS = {
    "rules": "rules_document",
    "compliance": "compliance_document",
    "policies": "policies_document",
}


@dataclass
class KBIndex:
    """Lookup indices rebuilt on every load."""
    by_id: dict[str, object] = field(default_factory=dict)
    by_tag: dict[str, set[str]] = field(default_factory=dict)
    by_type: dict[str, set[str]] = field(default_factory=dict)

    def add(self, entry_type: str, entry_id: str, entry: object, tags: list[str] | None = None) -> None:
        self.by_id[entry_id] = entry
        self.by_type.setdefault(entry_type, set()).add(entry_id)
        for tag in tags or []:
            if tag:
                self.by_tag.setdefault(tag, set()).add(entry_id)

    def get_by_id(self, entry_id: str) -> object | None:
        return self.by_id.get(entry_id)

    def get_by_type(self, entry_type: str) -> list[str]:
        return sorted(self.by_type.get(entry_type, set()))

    def get_by_tag(self, tag: str) -> list[str]:
        return sorted(self.by_tag.get(tag, set()))

    def find_detectors_for_pii(self, pii_id: str) -> list[str]:
        detectors = self.by_type.get("DETECTOR", set())
        return [i for i in self.get_by_tag(pii_id) if i in detectors]

    def find_rules_for_purpose(self, purpose: str) -> list[str]:
        rules = self.by_type.get("RULE", set())
        return [i for i in self.get_by_tag(purpose) if i in rules]

    def find_controls_for_framework(self, framework_id: str) -> list[str]:
        controls = self.by_type.get("CONTROL", set())
        return [i for i in self.get_by_tag(framework_id) if i in controls]


@dataclass
class LoadedKB:
    rules: RulesDocument
    compliance: ComplianceDocument
    policies: PoliciesDocument
    schema: dict
    index: KBIndex
    paths: dict[str, Path] = field(default_factory=dict)

    @property
    def pii(self) -> list[PiiTaxon]:
        return self.rules.taxonomies.pii

    @property
    def detectors(self):
        return self.rules.detectors

    @property
    def mapping(self) -> list[Rule]:
        return self.rules.mapping

    @property
    def frameworks(self) -> list[Framework]:
        return self.compliance.frameworks

    def get_pii(self, pii_id: str) -> PiiTaxon | None:
        entry = self.index.get_by_id(pii_id)
        return entry if isinstance(entry, PiiTaxon) else None

    def get_rule(self, rule_id: str) -> Rule | None:
        entry = self.index.get_by_id(rule_id)
        return entry if isinstance(entry, Rule) else None

    def get_framework(self, framework_id: str) -> Framework | None:
        entry = self.index.get_by_id(framework_id)
        return entry if isinstance(entry, Framework) else None

    def get_control(self, control_id: str) -> Control | None:
        entry = self.index.get_by_id(control_id)
        return entry if isinstance(entry, Control) else None

    def get_template(self, template_id: str) -> PolicyTemplate | None:
        entry = self.index.get_by_id(template_id)
        return entry if isinstance(entry, PolicyTemplate) else None


class KBLoader:
    """Loads and validates the knowledge base from a directory (or explicit paths)."""

    def __init__(
        self,
        kb_path: str | Path,
        rules_path: str | Path | None = None,
        compliance_path: str | Path | None = None,
        policies_path: str | Path | None = None,
        schema_path: str | Path | None = None,
    ):
        self.kb_path = Path(kb_path)
        self.paths = {
            "rules": Path(rules_path) if rules_path else self.kb_path / RULES_FILE,
            "compliance": Path(compliance_path) if compliance_path else self.kb_path / COMPLIANCE_FILE,
            "policies": Path(policies_path) if policies_path else self.kb_path / POLICIES_FILE,
            "schema": Path(schema_path) if schema_path else self.kb_path / SCHEMA_FILE,
        }

    def load(self) -> LoadedKB:
        """Parse, validate and index all KB documents. Raises KBValidationError on any violation."""
        schema = self._read_json(self.paths["schema"])
        raw = {
            kind: self._read_yaml(self.paths[kind])
            for kind in ("rules", "compliance", "policies")
        }

        violations: list[SchemaViolation] = []
        for kind, data in raw.items():
            violations.extend(self._validate(kind, data, schema))
        if violations:
            raise KBValidationError(violations)

        typed: dict[str, object] = {}
        models = {"rules": RulesDocument, "compliance": ComplianceDocument, "policies": PoliciesDocument}
        for kind, model in models.items():
            try:
                typed[kind] = model.model_validate(raw[kind])
            except ValidationError as exc:
                violations.extend(self._from_pydantic(kind, exc))
        if violations:
            raise KBValidationError(violations)

        rules, compliance, policies = typed["rules"], typed["compliance"], typed["policies"]
        violations.extend(self._check_references(rules, compliance, policies))
        if violations:
            raise KBValidationError(violations)

        index = self.build_index(rules, compliance, policies)
        logger.info(
            "KB loaded from %s: %d PII taxa, %d detectors, %d rules, %d frameworks, %d templates",
            self.kb_path,
            len(rules.taxonomies.pii),
            len(rules.detectors),
            len(rules.mapping),
            len(compliance.frameworks),
            len(policies.templates),
        )
        return LoadedKB(
            rules=rules,
            compliance=compliance,
            policies=policies,
            schema=schema,
            index=index,
            paths=dict(self.paths),
        )

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @staticmethod
    def _read_yaml(path: Path) -> dict:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as exc:
            raise KBNotFoundError(f"KB document not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise KBNotFoundError(f"KB document is not valid YAML: {path}: {exc}") from exc
        return data if data is not None else {}

    @staticmethod
    def _read_json(path: Path) -> dict:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError as exc:
            raise KBNotFoundError(f"KB schema not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise KBNotFoundError(f"KB schema is not valid JSON: {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, kind: str, data: object, schema: dict) -> list[SchemaViolation]:
        document = self.paths[kind].name
        definition = _DEFINITIONS[kind]
        if definition not in schema.get("definitions", {}):
            return [SchemaViolation(document, "", "schema", f"schema.json has no definition '{definition}'")]

        doc_schema = {
            "$schema": schema.get("$schema", "http://json-schema.org/draft-07/schema#"),
            "definitions": schema["definitions"],
            "$ref": f"#/definitions/{definition}",
        }
        validator = Draft7Validator(doc_schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
        return [
            SchemaViolation(
                document=document,
                path="/".join(str(p) for p in error.absolute_path),
                constraint=str(error.validator),
                message=error.message,
            )
            for error in errors
        ]

    def _from_pydantic(self, kind: str, exc: ValidationError) -> list[SchemaViolation]:
        document = self.paths[kind].name
        return [
            SchemaViolation(
                document=document,
                path="/".join(str(p) for p in err["loc"]),
                constraint=err["type"],
                message=err["msg"],
            )
            for err in exc.errors()
        ]

    def _check_references(
        self,
        rules: RulesDocument,
        compliance: ComplianceDocument,
        policies: PoliciesDocument,
    ) -> list[SchemaViolation]:
        """Cross-document checks the JSON schema cannot express: unique ids and dangling references."""
        violations: list[SchemaViolation] = []
        seen: dict[str, str] = {}

        def claim(entry_id: str, document: str, path: str) -> None:
            if entry_id in seen:
                violations.append(SchemaViolation(
                    document, path, "unique", f"Duplicate id '{entry_id}' (first defined in {seen[entry_id]})",
                ))
            else:
                seen[entry_id] = document

        rules_doc = self.paths["rules"].name
        compliance_doc = self.paths["compliance"].name
        policies_doc = self.paths["policies"].name

        for i, pii in enumerate(rules.taxonomies.pii):
            claim(pii.id, rules_doc, f"taxonomies/pii/{i}/id")
        for i, det in enumerate(rules.detectors):
            claim(det.id, rules_doc, f"detectors/{i}/id")
        for i, rule in enumerate(rules.mapping):
            claim(rule.id, rules_doc, f"mapping/{i}/id")
        for i, fw in enumerate(compliance.frameworks):
            claim(fw.id, compliance_doc, f"frameworks/{i}/id")
            for j, control in enumerate(fw.controls):
                claim(control.id, compliance_doc, f"frameworks/{i}/controls/{j}/id")
        for i, template in enumerate(policies.templates):
            claim(template.id, policies_doc, f"templates/{i}/id")
            for j, section in enumerate(template.sections):
                claim(section.id, policies_doc, f"templates/{i}/sections/{j}/id")

        pii_ids = {p.id for p in rules.taxonomies.pii}
        detector_ids = {d.id for d in rules.detectors}
        rule_ids = {r.id for r in rules.mapping}

        for i, det in enumerate(rules.detectors):
            for tag in det.pii_tags:
                if tag not in pii_ids:
                    violations.append(SchemaViolation(
                        rules_doc, f"detectors/{i}/pii_tags", "reference", f"Unknown PII taxon '{tag}'",
                    ))
        for i, rule in enumerate(rules.mapping):
            for det_id in rule.detectors:
                if det_id not in detector_ids:
                    violations.append(SchemaViolation(
                        rules_doc, f"mapping/{i}/detectors", "reference", f"Unknown detector '{det_id}'",
                    ))
        for i, example in enumerate(rules.examples):
            if example.rule_id not in rule_ids:
                violations.append(SchemaViolation(
                    rules_doc, f"examples/{i}/rule_id", "reference", f"Unknown rule '{example.rule_id}'",
                ))
        return violations

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    @staticmethod
    def build_index(
        rules: RulesDocument,
        compliance: ComplianceDocument,
        policies: PoliciesDocument,
    ) -> KBIndex:
        index = KBIndex()

        for pii in rules.taxonomies.pii:
            index.add("PII", pii.id, pii, [pii.sensitivity])

        for detector in rules.detectors:
            index.add("DETECTOR", detector.id, detector, [detector.type, *detector.pii_tags])

        for rule in rules.mapping:
            index.add("RULE", rule.id, rule, [rule.purpose, rule.data_category])

        for example in rules.examples:
            index.add("EXAMPLE", example.id, example, [example.rule_id])

        for framework in compliance.frameworks:
            index.add("FRAMEWORK", framework.id, framework, [framework.jurisdiction])
            for control in framework.controls:
                index.add("CONTROL", control.id, control, [framework.id, control.severity])

        for template in policies.templates:
            index.add("TEMPLATE", template.id, template, list(template.jurisdictions))
            for section in template.sections:
                index.add("SECTION", section.id, section, [template.id])

        return index


def load_kb(kb_path: str | Path) -> LoadedKB:
    """Convenience wrapper: load the KB rooted at kb_path."""
    return KBLoader(kb_path).load()
