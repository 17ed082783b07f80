"""
Exception hierarchy for the compliance pipeline.

Stages raise these; the API layer maps them onto HTTP status codes.
"""

from dataclasses import dataclass


class OpenLedgerError(Exception):
    """Base class for all pipeline errors."""


@dataclass(frozen=True)
class SchemaViolation:
    """A single KB schema violation: which document, where, and which constraint."""
    document: str
    path: str
    constraint: str
    message: str

    def to_dict(self) -> dict:
        return {
            "document": self.document,
            "path": self.path,
            "constraint": self.constraint,
            "message": self.message,
        }


class KBValidationError(OpenLedgerError):
    """One or more KB documents failed validation. Fatal for the run."""

    def __init__(self, violations: list[SchemaViolation]):
        self.violations = list(violations)
        lines = [
            f"{v.document}:{v.path or '/'} [{v.constraint}] {v.message}"
            for v in self.violations
        ]
        super().__init__(
            f"{len(self.violations)} KB schema violation(s):\n" + "\n".join(lines)
        )


class KBNotFoundError(OpenLedgerError):
    """A KB document is missing or could not be parsed."""


class UnknownTemplateError(OpenLedgerError):
    """The requested policy template does not exist in the KB."""


class PipelineError(OpenLedgerError):
    """A pipeline stage failed; no artifacts were written."""

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage '{stage}' failed: {type(cause).__name__}: {cause}")
