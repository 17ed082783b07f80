"""
Privacy policy rendering.

Walks a KB policy template's sections in order and fills {placeholder}
tokens. data_types and purposes come from the scan (PII taxon names and rule
purposes, deduplicated in order of first discovery); every other placeholder
falls back to the KB defaults. Tokens with no value are left untouched.
"""

import logging
import re

from openledger.errors import UnknownTemplateError
from openledger.kb.loader import LoadedKB
from openledger.services.evidence_extractor import Evidence

logger = logging.getLogger(__name__)

POLICY_TITLE = "# Privacy Policy"

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


class PolicyGenerator:
    def __init__(self, kb: LoadedKB):
        self.kb = kb

    def discovered_values(self, evidence: list[Evidence]) -> dict[str, list[str]]:
        data_types: list[str] = []
        purposes: list[str] = []
        for ev in evidence:
            for tag in ev.pii_tags:
                taxon = self.kb.get_pii(tag)
                if taxon is not None and taxon.name not in data_types:
                    data_types.append(taxon.name)
            rule = self.kb.get_rule(ev.rule_id)
            if rule is not None and rule.purpose not in purposes:
                purposes.append(rule.purpose)
        return {"data_types": data_types, "purposes": purposes}

    def placeholder_values(self, evidence: list[Evidence]) -> dict[str, str]:
        values: dict[str, str] = {}
        for name, default in self.kb.policies.placeholders.items():
            values[name] = ", ".join(default) if isinstance(default, list) else str(default)
        for name, found in self.discovered_values(evidence).items():
            if found:
                values[name] = ", ".join(found)
        return values

    def render(self, evidence: list[Evidence], template_id: str) -> str:
        template = self.kb.get_template(template_id)
        if template is None:
            raise UnknownTemplateError(f"Unknown policy template: {template_id}")

        values = self.placeholder_values(evidence)

        def _fill(match: re.Match) -> str:
            return values.get(match.group(1), match.group(0))

        parts = [f"{POLICY_TITLE}\n\n"]
        for section in template.sections:
            parts.append(f"## {section.name}\n\n")
            parts.append(f"{_PLACEHOLDER_RE.sub(_fill, section.content.strip())}\n\n")
        policy = "".join(parts)
        logger.debug("Rendered %s with %d sections", template_id, len(template.sections))
        return policy
