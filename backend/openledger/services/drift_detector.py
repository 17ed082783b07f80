"""
Drift Detector (Receipt stage) — decides when previously issued disclosures
need re-review and binds receipts, drift and evidence period together.

Detection flow:
    1. Ask the manifest tracker whether any tracked artifact changed.
       Nothing changed → no new period and no drift events.
    2. Changed → diff against the manifest, reserve the next evidence period
       id and emit one drift event per changed / added / removed tracked file.
       Severity is a static function of the file:
           rules.yaml                  → high      (field "rules")
           compliance_frameworks.yaml  → critical  (field "compliance")
           privacy_policies.yaml       → medium    (field "policy")
           any other changed file      → low       (field "file")
           added file                  → medium    (field "new_file")
           removed file                → high      (field "removed_file")
       When a previous evidence snapshot is supplied, code-level drift is
       added: new/removed endpoints, newly exposed PII, changed data flows.
    3. Ledger hash = SHA-256 over sorted-key JSON of
       {receipts[id, gate, choice, timestamp], drift_events[id, severity, status],
        evidence_updates[id, type, timestamp], period}.
    4. commit() opens the reserved period and records the hashed files. The
       pipeline calls it only after the run's artifacts are on disk, so a
       failed run leaves the manifest where it was and the drift is reported
       again on the next run.
"""

import asyncio
import hashlib
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from openledger.middleware.metrics import drift_events_total
from openledger.services.consent_store import ConsentStore
from openledger.services.evidence_extractor import DataFlow, ExtractionResult
from openledger.services.manifest_tracker import (
    SOURCE_PREFIX,
    EvidencePeriod,
    FileInfo,
    ManifestDiff,
    ManifestTracker,
)
from openledger.services.receipts import Receipt, hash_payload

logger = logging.getLogger(__name__)

# file name → (severity, field, description)
FILE_DRIFT_RULES = {
    "rules.yaml": ("high", "rules", "Rules configuration has changed - compliance review required"),
    "compliance_frameworks.yaml": (
        "critical", "compliance", "Compliance framework has been updated - policy review required",
    ),
    "privacy_policies.yaml": ("medium", "policy", "Privacy policy template has been updated"),
}

CODE_DRIFT_SEVERITY = {
    "new_endpoint": "medium",
    "removed_endpoint": "low",
    "new_pii": "high",
    "changed_data_flow": "medium",
}

SEVERITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}


@dataclass
class DriftEvent:
    id: str
    severity: str
    type: str
    endpoint: str
    field: str
    file: str
    line: int
    status: str
    description: str
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DriftResult:
    updated: bool
    period_id: str | None
    previous_period_id: str | None
    diff: ManifestDiff = field(default_factory=ManifestDiff)
    drift_events: list[DriftEvent] = field(default_factory=list)
    evidence_updates: list[dict] = field(default_factory=list)
    receipts: list[Receipt] = field(default_factory=list)
    ledger_hash: str = ""
    timestamp: str = ""
    # hashes recorded in the manifest when the period is committed
    manifest_files: list[FileInfo] = field(default_factory=list)

    @property
    def severity_summary(self) -> dict[str, int]:
        counts = Counter(e.severity for e in self.drift_events)
        return {sev: counts.get(sev, 0) for sev in SEVERITY_RANK}

    @property
    def diff_summary(self) -> str:
        if not self.updated:
            return "No tracked artifacts changed"
        summary = self.severity_summary
        parts = ", ".join(f"{n} {sev}" for sev, n in summary.items() if n)
        return (
            f"{len(self.diff.changed)} changed, {len(self.diff.added)} added, "
            f"{len(self.diff.removed)} removed; {len(self.drift_events)} drift event(s)"
            + (f" ({parts})" if parts else "")
        )

    def to_document(self) -> dict:
        return {
            "updated": self.updated,
            "diff_summary": self.diff_summary,
            "drift_events": [e.to_dict() for e in self.drift_events],
            "new_artifacts": list(self.diff.added),
            "removed_artifacts": list(self.diff.removed),
            "modified_artifacts": list(self.diff.changed),
            "severity_summary": self.severity_summary,
            "evidence_updates": list(self.evidence_updates),
            "receipts": [r.to_dict() for r in self.receipts],
            "ledger_hash": self.ledger_hash,
            "period_id": self.period_id,
            "previous_period_id": self.previous_period_id,
            "timestamp": self.timestamp,
        }


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def compute_ledger_hash(
    receipts: list[Receipt],
    drift_events: list[DriftEvent],
    evidence_updates: list[dict],
    period_id: str | None,
) -> str:
    ledger = {
        "receipts": [
            {"id": r.id, "gate": r.gate, "choice": r.choice, "timestamp": r.timestamp}
            for r in receipts
        ],
        "drift_events": [
            {"id": e.id, "severity": e.severity, "status": e.status} for e in drift_events
        ],
        "evidence_updates": [
            {"id": u.get("id"), "type": u.get("type"), "timestamp": u.get("timestamp")}
            for u in evidence_updates
        ],
        "period": period_id,
    }
    return hash_payload(ledger)


def file_drift_events(diff: ManifestDiff, timestamp: str) -> list[DriftEvent]:
    events: list[DriftEvent] = []

    for path in diff.changed:
        name = path.rsplit("/", 1)[-1]
        rule = FILE_DRIFT_RULES.get(name) if not path.startswith(SOURCE_PREFIX) else None
        severity, field_name, description = rule or ("low", "file", f"Tracked file changed: {path}")
        events.append(DriftEvent(
            id=f"DRIFT.{field_name.upper()}.{_short_hash(path)}",
            severity=severity,
            type="file_changed",
            endpoint="N/A",
            field=field_name,
            file=path,
            line=0,
            status="open",
            description=description,
            timestamp=timestamp,
        ))

    for path in diff.added:
        events.append(DriftEvent(
            id=f"DRIFT.ADDED.{_short_hash(path)}",
            severity="medium",
            type="file_added",
            endpoint="N/A",
            field="new_file",
            file=path,
            line=0,
            status="open",
            description=f"New file added: {path}",
            timestamp=timestamp,
        ))

    for path in diff.removed:
        events.append(DriftEvent(
            id=f"DRIFT.REMOVED.{_short_hash(path)}",
            severity="high",
            type="file_removed",
            endpoint="N/A",
            field="removed_file",
            file=path,
            line=0,
            status="open",
            description=f"File removed: {path}",
            timestamp=timestamp,
        ))

    return events


def _endpoint_locations(result: ExtractionResult) -> dict[str, tuple[str, int]]:
    locations: dict[str, tuple[str, int]] = {}
    for ev in result.evidence:
        method, path = ev.captures.get("method"), ev.captures.get("path")
        if method and path:
            locations.setdefault(f"{method.upper()} {path}", (ev.file, ev.line_start))
    return locations


def _flow_key(flow: DataFlow) -> tuple[str, str, str, str]:
    return (flow.source, flow.destination, flow.data_type, flow.purpose)


def code_drift_events(previous: ExtractionResult, current: ExtractionResult, timestamp: str) -> list[DriftEvent]:
    """Endpoint, PII and data-flow differences between two evidence snapshots."""
    events: list[DriftEvent] = []

    def _event(kind: str, locus: str, endpoint: str, field_name: str, file: str, line: int, description: str):
        events.append(DriftEvent(
            id=f"DRIFT.{kind.upper()}.{_short_hash(locus)}",
            severity=CODE_DRIFT_SEVERITY[kind],
            type=kind,
            endpoint=endpoint,
            field=field_name,
            file=file,
            line=line,
            status="open",
            description=description,
            timestamp=timestamp,
        ))

    current_locations = _endpoint_locations(current)
    previous_locations = _endpoint_locations(previous)
    previous_endpoints, current_endpoints = set(previous.endpoints), set(current.endpoints)

    for endpoint in sorted(current_endpoints - previous_endpoints):
        file, line = current_locations.get(endpoint, ("", 0))
        _event("new_endpoint", endpoint, endpoint, "endpoint", file, line, f"New endpoint exposed: {endpoint}")

    for endpoint in sorted(previous_endpoints - current_endpoints):
        file, line = previous_locations.get(endpoint, ("", 0))
        _event("removed_endpoint", endpoint, endpoint, "endpoint", file, line, f"Endpoint removed: {endpoint}")

    previous_pii = set(previous.pii_fields)
    for pii in current.pii_fields:
        if pii in previous_pii:
            continue
        first = next((ev for ev in current.evidence if pii in ev.pii_tags), None)
        _event(
            "new_pii", pii, "N/A", pii,
            first.file if first else "", first.line_start if first else 0,
            f"New personal data exposed: {pii}",
        )

    previous_flows = {_flow_key(f) for f in previous.data_flows}
    current_flows = {_flow_key(f) for f in current.data_flows}
    for key in sorted(current_flows - previous_flows):
        _, destination, data_type, purpose = key
        _event(
            "changed_data_flow", "+" + "|".join(key), "N/A", destination, "", 0,
            f"New data flow: {data_type} to {destination} for {purpose}",
        )
    for key in sorted(previous_flows - current_flows):
        _, destination, data_type, purpose = key
        _event(
            "changed_data_flow", "-" + "|".join(key), "N/A", destination, "", 0,
            f"Data flow removed: {data_type} to {destination} for {purpose}",
        )

    return events


class DriftDetector:
    """Runs the receipt stage against a manifest tracker and a consent store."""

    def __init__(self, tracker: ManifestTracker, consent_store: ConsentStore | None = None):
        self.tracker = tracker
        self.consent_store = consent_store

    async def detect(
        self,
        previous: ExtractionResult | None = None,
        current: ExtractionResult | None = None,
        time_range: tuple[str | None, str | None] | None = None,
    ) -> DriftResult:
        """Compute drift for the current state. Reads the manifest but never writes it."""
        now = _utc_iso()
        previous_period = await asyncio.to_thread(self.tracker.current_period)
        previous_period_id = previous_period.id if previous_period else None

        manifest_files = await asyncio.to_thread(self.tracker.compute_current_hashes)
        changed = await asyncio.to_thread(self.tracker.has_changes, manifest_files)
        diff = ManifestDiff()
        drift_events: list[DriftEvent] = []
        evidence_updates: list[dict] = []
        period_id = previous_period_id

        if changed:
            diff = await asyncio.to_thread(self.tracker.compare_with_previous, manifest_files)
            period_id = await asyncio.to_thread(self.tracker.next_period_id)

            drift_events = file_drift_events(diff, now)
            if previous is not None and current is not None:
                drift_events.extend(code_drift_events(previous, current, now))
            drift_events.sort(key=lambda e: (SEVERITY_RANK.get(e.severity, 9), e.id))

            evidence_updates.append({
                "id": f"EVIDENCE.UPDATE.{period_id}",
                "type": "ledger_update",
                "timestamp": now,
                "evidence_hash": current.evidence_hash if current is not None else None,
                "description": "Evidence ledger updated with latest scan results",
            })

            if drift_events:
                logger.warning(
                    "Drift detected in period %s: %d events %s",
                    period_id, len(drift_events),
                    dict(Counter(e.severity for e in drift_events)),
                )
        else:
            logger.info("No tracked artifacts changed; period %s stays active", previous_period_id)

        receipts: list[Receipt] = []
        if self.consent_store is not None:
            start, end = time_range if time_range else (None, None)
            receipts = await self.consent_store.list_receipts(start, end)

        return DriftResult(
            updated=changed,
            period_id=period_id,
            previous_period_id=previous_period_id,
            diff=diff,
            drift_events=drift_events,
            evidence_updates=evidence_updates,
            receipts=receipts,
            ledger_hash=compute_ledger_hash(receipts, drift_events, evidence_updates, period_id),
            timestamp=now,
            manifest_files=manifest_files if changed else [],
        )

    async def commit(self, result: DriftResult) -> EvidencePeriod | None:
        """Open the period a detect() run reserved. No-op when nothing changed."""
        if not result.updated:
            return None
        period = await asyncio.to_thread(
            self.tracker.create_new_evidence_period, result.period_id, result.manifest_files,
        )
        for event in result.drift_events:
            drift_events_total.labels(severity=event.severity).inc()
        return period


def render_drift_report(result: DriftResult) -> str:
    """Markdown summary of a drift run."""
    lines = [
        "# Drift Report",
        "",
        f"- Period: {result.period_id or 'none'} (previous: {result.previous_period_id or 'none'})",
        f"- Ledger hash: `{result.ledger_hash}`",
        f"- Summary: {result.diff_summary}",
        "",
    ]
    if not result.drift_events:
        lines.append("No drift events.")
        return "\n".join(lines) + "\n"

    lines += ["| Severity | Type | Locus | Description |", "|---|---|---|---|"]
    for event in result.drift_events:
        locus = event.endpoint if event.endpoint != "N/A" else event.file or event.field
        if event.line:
            locus = f"{locus}:{event.line}"
        lines.append(f"| {event.severity} | {event.type} | {locus} | {event.description} |")
    return "\n".join(lines) + "\n"
