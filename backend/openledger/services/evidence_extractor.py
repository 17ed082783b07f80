"""
Evidence Extractor (Parsing stage)

Walks a source tree, runs every KB detector over each line of each included
file, and emits one Evidence record per detector match.

Per match:
  - PII tags come from the line text checked against every PII taxon's
    patterns, independent of which detector fired.
  - Data sinks are sniffed from the line: browser storage, the quoted URL of
    a network call, the table after FROM / INTO / UPDATE.
  - The rule id is the KB rule that lists the detector (an exact endpoint
    match wins, then a rule with no endpoint, then the first listing rule);
    RULE.UNKNOWN when no rule lists it.
  - Confidence = 0.5, +0.3 when PII was tagged, + the detector's declared
    boost when its capture condition holds; capped at 1.0.

Alongside the evidence the extractor returns every PII taxon seen anywhere,
every "METHOD path" endpoint, the inferred database operations and the data
flows implied by evidence with sinks.

Files are scanned concurrently; ids derive from (detector, file, line) only,
and results are sorted, so output does not depend on scan order.
"""

import asyncio
import hashlib
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from openledger.kb.loader import LoadedKB
from openledger.kb.schemas import Detector, Rule
from openledger.middleware.metrics import evidence_records_total
from openledger.services.receipts import hash_payload

logger = logging.getLogger(__name__)

UNKNOWN_RULE_ID = "RULE.UNKNOWN"
BASE_CONFIDENCE = 0.5
PII_CONFIDENCE_BOOST = 0.3
MAX_SNIPPET_CHARS = 500
DEFAULT_MAX_FILE_BYTES = 2_000_000

CONFIG_SUFFIXES = {".json", ".yaml", ".yml", ".toml", ".env", ".ini"}
BROWSER_STORAGE = ("localStorage", "sessionStorage")
HIGH_SENSITIVITY = {"high", "critical"}

_NETWORK_CALL_MARKERS = ("fetch(", "axios.", "requests.", "httpx.")
_QUOTED_RE = re.compile(r"['\"`]([^'\"`]+)['\"`]")
_SQL_KEYWORD_RE = re.compile(r"\b(SELECT|INSERT|UPDATE|DELETE)\b")
_SQL_TABLE_RE = re.compile(r"\bFROM\s+(\w+)|\bINTO\s+(\w+)|\bUPDATE\s+(\w+)", re.IGNORECASE)
_ORM_TABLE_RE = re.compile(r"\.from\(\s*['\"`](\w+)['\"`]\s*\)")

_ENDPOINT_RE = re.compile(r"\b(GET|POST|PUT|DELETE|PATCH)\s+['\"`]([^'\"`]+)['\"`]")
_ROUTE_CALL_RE = re.compile(
    r"\b(?:app|router|bp|api)\.(get|post|put|patch|delete)\(\s*['\"`](/[^'\"`]*)['\"`]"
)
_DB_OP_RE = re.compile(
    r"\b(SELECT|DELETE)\b.*?\bFROM\s+(\w+)|\b(INSERT)\s+INTO\s+(\w+)|\b(UPDATE)\s+(\w+)\s+SET\b"
)


# ── Result types ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Evidence:
    id: str
    rule_id: str
    detector_id: str
    file: str
    line_start: int
    line_end: int
    snippet: str
    pii_tags: tuple[str, ...] = ()
    data_sinks: tuple[str, ...] = ()
    confidence: float = BASE_CONFIDENCE
    captures: dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["pii_tags"] = list(self.pii_tags)
        data["data_sinks"] = list(self.data_sinks)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Evidence":
        return cls(
            id=data["id"],
            rule_id=data.get("rule_id") or UNKNOWN_RULE_ID,
            detector_id=data.get("detector_id", ""),
            file=data.get("file", ""),
            line_start=int(data.get("line_start", 0)),
            line_end=int(data.get("line_end", data.get("line_start", 0))),
            snippet=data.get("snippet", ""),
            pii_tags=tuple(data.get("pii_tags") or ()),
            data_sinks=tuple(data.get("data_sinks") or ()),
            confidence=float(data.get("confidence", BASE_CONFIDENCE)),
            captures=dict(data.get("captures") or {}),
        )


@dataclass(frozen=True)
class DbOperation:
    operation: str
    table: str
    file: str = ""
    line: int = 0


@dataclass(frozen=True)
class DataFlow:
    source: str
    destination: str
    data_type: str
    purpose: str
    fields: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "destination": self.destination,
            "data_type": self.data_type,
            "purpose": self.purpose,
            "fields": list(self.fields),
        }


@dataclass
class ScanMetadata:
    repo_url: str = ""
    commit_hash: str = ""
    scan_timestamp: str = ""
    files_scanned: int = 0


@dataclass
class ExtractionResult:
    evidence: list[Evidence] = field(default_factory=list)
    pii_fields: list[str] = field(default_factory=list)
    endpoints: list[str] = field(default_factory=list)
    db_operations: list[DbOperation] = field(default_factory=list)
    data_flows: list[DataFlow] = field(default_factory=list)
    metadata: ScanMetadata = field(default_factory=ScanMetadata)
    scanned_files: list[str] = field(default_factory=list)

    @property
    def evidence_ids(self) -> list[str]:
        return [e.id for e in self.evidence]

    @property
    def evidence_hash(self) -> str:
        """SHA-256 over the evidence set, ordered by file and line."""
        ordered = sorted(self.evidence, key=lambda e: (e.file, e.line_start, e.id))
        return hash_payload([e.to_dict() for e in ordered])

    def to_snapshot(self) -> dict:
        return {
            "metadata": asdict(self.metadata),
            "evidence_hash": self.evidence_hash,
            "evidence": [e.to_dict() for e in self.evidence],
            "pii_fields": list(self.pii_fields),
            "endpoints": list(self.endpoints),
            "db_operations": [asdict(op) for op in self.db_operations],
            "data_flows": [f.to_dict() for f in self.data_flows],
            "scanned_files": list(self.scanned_files),
        }

    @classmethod
    def from_snapshot(cls, data: dict | None) -> "ExtractionResult":
        if not data:
            return cls()
        return cls(
            evidence=[Evidence.from_dict(e) for e in data.get("evidence") or []],
            pii_fields=list(data.get("pii_fields") or []),
            endpoints=list(data.get("endpoints") or []),
            db_operations=[DbOperation(**op) for op in data.get("db_operations") or []],
            data_flows=[
                DataFlow(
                    source=f.get("source", ""),
                    destination=f.get("destination", ""),
                    data_type=f.get("data_type", ""),
                    purpose=f.get("purpose", ""),
                    fields=tuple(f.get("fields") or ()),
                )
                for f in data.get("data_flows") or []
            ],
            metadata=ScanMetadata(**(data.get("metadata") or {})),
            scanned_files=list(data.get("scanned_files") or []),
        )


@dataclass
class _FileScan:
    path: str
    evidence: list[Evidence]
    pii_fields: set[str]
    endpoints: set[str]
    db_operations: list[DbOperation]


# ── Helpers ──────────────────────────────────────────────────────────────────

def glob_to_regex(pattern: str) -> re.Pattern:
    """Translate a glob (with ** for any depth) into a regex over posix relative paths."""
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def read_commit_hash(root: Path) -> str:
    """Best-effort HEAD commit of a git checkout, without invoking git."""
    head = root / ".git" / "HEAD"
    try:
        ref = head.read_text(encoding="utf-8").strip()
        if ref.startswith("ref:"):
            return (root / ".git" / ref[4:].strip()).read_text(encoding="utf-8").strip()
        return ref
    except OSError:
        return ""


def _path_digest(path: str) -> str:
    return hashlib.sha256(path.encode("utf-8")).hexdigest()[:8]


# ── Extractor ────────────────────────────────────────────────────────────────

class EvidenceExtractor:
    """Applies KB detectors to a source tree and returns typed evidence."""

    def __init__(
        self,
        kb: LoadedKB,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        workers: int = 8,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    ):
        self.kb = kb
        self.include = [glob_to_regex(p) for p in (include_patterns or ["**/*"])]
        self.exclude = [glob_to_regex(p) for p in (exclude_patterns or [])]
        self.workers = max(1, workers)
        self.max_file_bytes = max_file_bytes

        self._detectors: list[tuple[Detector, re.Pattern]] = []
        for detector in kb.detectors:
            try:
                self._detectors.append((detector, re.compile(detector.pattern)))
            except re.error as exc:
                logger.warning("Detector %s has an invalid pattern, skipping: %s", detector.id, exc)

        self._rules_by_detector: dict[str, list[Rule]] = {}
        for rule in kb.mapping:
            for det_id in rule.detectors:
                self._rules_by_detector.setdefault(det_id, []).append(rule)

        self._pii_patterns = [
            (taxon.id, [p.lower() for p in taxon.patterns]) for taxon in kb.pii
        ]

    # ------------------------------------------------------------------
    # File selection
    # ------------------------------------------------------------------

    def is_included(self, rel_path: str) -> bool:
        if any(rx.match(rel_path) for rx in self.exclude):
            return False
        return any(rx.match(rel_path) for rx in self.include)

    def _dir_excluded(self, rel_dir: str) -> bool:
        candidate = f"{rel_dir}/_" if rel_dir else "_"
        return any(rx.match(candidate) for rx in self.exclude)

    def collect_files(self, root: str | Path) -> list[str]:
        """Relative posix paths of every included file under root, sorted."""
        base = Path(root)
        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(base):
            rel_dir = PurePosixPath(Path(dirpath).relative_to(base)).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            dirnames[:] = sorted(
                d for d in dirnames
                if not self._dir_excluded(f"{rel_dir}/{d}" if rel_dir else d)
            )
            for name in filenames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if self.is_included(rel):
                    found.append(rel)
        return sorted(found)

    # ------------------------------------------------------------------
    # Per-line analysis
    # ------------------------------------------------------------------

    def tag_pii(self, text: str) -> list[str]:
        """PII taxon ids whose patterns occur in text (case-insensitive), in taxonomy order."""
        lowered = text.lower()
        return [
            taxon_id for taxon_id, patterns in self._pii_patterns
            if any(p in lowered for p in patterns)
        ]

    @staticmethod
    def identify_sinks(line: str) -> list[str]:
        sinks: list[str] = []
        for storage in BROWSER_STORAGE:
            if storage in line:
                sinks.append(storage)
        if any(marker in line for marker in _NETWORK_CALL_MARKERS):
            url = _QUOTED_RE.search(line)
            if url:
                sinks.append(url.group(1))
        if _SQL_KEYWORD_RE.search(line):
            table = _SQL_TABLE_RE.search(line)
            if table:
                sinks.append(next(g for g in table.groups() if g))
        orm = _ORM_TABLE_RE.search(line)
        if orm:
            sinks.append(orm.group(1))
        return list(dict.fromkeys(sinks))

    def resolve_rule(self, detector: Detector, captures: dict[str, str]) -> str:
        candidates = self._rules_by_detector.get(detector.id, [])
        if not candidates:
            return UNKNOWN_RULE_ID
        method, path = captures.get("method"), captures.get("path")
        if method and path:
            endpoint = f"{method.upper()} {path}"
            for rule in candidates:
                if rule.match.endpoint == endpoint:
                    return rule.id
            for rule in candidates:
                if not rule.match.endpoint:
                    return rule.id
        return candidates[0].id

    @staticmethod
    def confidence(detector: Detector, captures: dict[str, str], pii_tags: list[str]) -> float:
        score = BASE_CONFIDENCE
        if pii_tags:
            score += PII_CONFIDENCE_BOOST
        boost = detector.boost
        if boost is not None:
            value = captures.get(boost.capture)
            if value and (boost.equals is None or value == boost.equals):
                score += boost.boost
        return round(min(score, 1.0), 4)

    def scan_text(self, rel_path: str, text: str) -> _FileScan:
        """Run every detector over every line of one file's text."""
        digest = _path_digest(rel_path)
        evidence: list[Evidence] = []
        db_operations: list[DbOperation] = []

        for line_no, line in enumerate(text.splitlines(), start=1):
            pii_tags: list[str] | None = None
            sinks: list[str] | None = None

            for detector, regex in self._detectors:
                for n, match in enumerate(regex.finditer(line), start=1):
                    if pii_tags is None:
                        pii_tags = self.tag_pii(line)
                        sinks = self.identify_sinks(line)
                    captures = {
                        name: match.group(i + 1)
                        for i, name in enumerate(detector.captures)
                        if i < (regex.groups or 0) and match.group(i + 1) is not None
                    }
                    evidence_id = f"EVIDENCE.{detector.id}.{line_no}.{digest}"
                    if n > 1:
                        evidence_id = f"{evidence_id}.{n}"
                    evidence.append(Evidence(
                        id=evidence_id,
                        rule_id=self.resolve_rule(detector, captures),
                        detector_id=detector.id,
                        file=rel_path,
                        line_start=line_no,
                        line_end=line_no,
                        snippet=line.strip()[:MAX_SNIPPET_CHARS],
                        pii_tags=tuple(pii_tags),
                        data_sinks=tuple(sinks or ()),
                        confidence=self.confidence(detector, captures, pii_tags),
                        captures=captures,
                    ))

            for match in _DB_OP_RE.finditer(line):
                groups = match.groups()
                operation = groups[0] or groups[2] or groups[4]
                table = groups[1] or groups[3] or groups[5]
                db_operations.append(DbOperation(operation.upper(), table, rel_path, line_no))

        endpoints = {f"{m.group(1)} {m.group(2)}" for m in _ENDPOINT_RE.finditer(text)}
        endpoints.update(f"{m.group(1).upper()} {m.group(2)}" for m in _ROUTE_CALL_RE.finditer(text))

        return _FileScan(
            path=rel_path,
            evidence=evidence,
            pii_fields=set(self.tag_pii(text)),
            endpoints=endpoints,
            db_operations=db_operations,
        )

    def _scan_file(self, root: Path, rel_path: str) -> _FileScan | None:
        full_path = root / rel_path
        try:
            if full_path.stat().st_size > self.max_file_bytes:
                logger.info("Skipping %s: larger than %d bytes", rel_path, self.max_file_bytes)
                return None
            raw = full_path.read_bytes()
        except OSError as exc:
            logger.warning("Skipping unreadable file %s: %s", rel_path, exc)
            return None
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Skipping non-UTF-8 file %s", rel_path)
            return None
        return self.scan_text(rel_path, text)

    # ------------------------------------------------------------------
    # Tree scan
    # ------------------------------------------------------------------

    async def extract(
        self,
        root: str | Path,
        repo_url: str = "",
        commit_hash: str | None = None,
    ) -> ExtractionResult:
        """Scan every included file under root concurrently."""
        base = Path(root)
        files = await asyncio.to_thread(self.collect_files, base)
        semaphore = asyncio.Semaphore(self.workers)

        async def _bounded(rel: str) -> _FileScan | None:
            async with semaphore:
                return await asyncio.to_thread(self._scan_file, base, rel)

        scans = await asyncio.gather(*(_bounded(rel) for rel in files))
        result = self.merge([s for s in scans if s is not None])
        result.metadata = ScanMetadata(
            repo_url=repo_url,
            commit_hash=commit_hash if commit_hash is not None else read_commit_hash(base),
            scan_timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            files_scanned=len(result.scanned_files),
        )
        evidence_records_total.inc(len(result.evidence))
        logger.info(
            "Scanned %d files under %s: %d evidence, %d endpoints, %d PII types",
            len(result.scanned_files), base, len(result.evidence),
            len(result.endpoints), len(result.pii_fields),
        )
        return result

    def merge(self, scans: list[_FileScan]) -> ExtractionResult:
        scans = sorted(scans, key=lambda s: s.path)
        evidence = sorted(
            (e for s in scans for e in s.evidence),
            key=lambda e: (e.file, e.line_start, e.detector_id, e.id),
        )
        seen_pii = set().union(*(s.pii_fields for s in scans)) if scans else set()
        pii_order = [taxon.id for taxon in self.kb.pii]
        return ExtractionResult(
            evidence=evidence,
            pii_fields=[p for p in pii_order if p in seen_pii],
            endpoints=sorted(set().union(*(s.endpoints for s in scans)) if scans else set()),
            db_operations=[op for s in scans for op in s.db_operations],
            data_flows=self.build_data_flows(evidence),
            scanned_files=[s.path for s in scans],
        )

    def build_data_flows(self, evidence: list[Evidence]) -> list[DataFlow]:
        flows: list[DataFlow] = []
        seen: set[DataFlow] = set()
        for ev in evidence:
            if not ev.data_sinks:
                continue
            rule = self.kb.get_rule(ev.rule_id)
            if ev.pii_tags:
                data_type = "personal_information"
            else:
                data_type = rule.data_category if rule else "unclassified"
            flow = DataFlow(
                source="user_input",
                destination=ev.data_sinks[0],
                data_type=data_type,
                purpose=rule.purpose if rule else "unknown",
                fields=ev.pii_tags,
            )
            if flow not in seen:
                seen.add(flow)
                flows.append(flow)
        return flows

    # ------------------------------------------------------------------
    # Output document
    # ------------------------------------------------------------------

    def to_document(self, result: ExtractionResult) -> dict:
        """Evidence artifact: one entry per file that produced evidence."""
        by_file: dict[str, list[Evidence]] = {}
        for ev in result.evidence:
            by_file.setdefault(ev.file, []).append(ev)

        artifacts = []
        for path in sorted(by_file):
            items = by_file[path]
            tags = list(dict.fromkeys(t for ev in items for t in ev.pii_tags))
            detectors = list(dict.fromkeys(ev.detector_id for ev in items))
            flows = self.build_data_flows(items)
            artifacts.append({
                "type": self._artifact_type(path, items),
                "path": path,
                "summary": (
                    f"{len(items)} evidence record(s) from "
                    + ", ".join(d.removeprefix("DETECTOR.") for d in detectors)
                ),
                "pii": [t.removeprefix("PII.").lower() for t in tags],
                "data_flows": [
                    {"from": f.source, "to": f.destination, "purpose": f.purpose} for f in flows
                ],
                "risk_flags": self._risk_flags(items),
                "evidence_ids": [ev.id for ev in items],
            })

        return {
            "repo_url": result.metadata.repo_url,
            "scan_metadata": asdict(result.metadata),
            "evidence_hash": result.evidence_hash,
            "artifacts": artifacts,
            "pii_fields": list(result.pii_fields),
            "endpoints": list(result.endpoints),
            "db_operations": [asdict(op) for op in result.db_operations],
        }

    @staticmethod
    def _artifact_type(path: str, items: list[Evidence]) -> str:
        captured = {name for ev in items for name in ev.captures}
        if {"method", "path"} <= captured:
            return "api"
        if "table" in captured:
            return "db"
        if PurePosixPath(path).suffix.lower() in CONFIG_SUFFIXES:
            return "config"
        return "code"

    def _risk_flags(self, items: list[Evidence]) -> list[str]:
        flags: list[str] = []
        for ev in items:
            if ev.pii_tags and any(s in BROWSER_STORAGE for s in ev.data_sinks):
                flags.append("pii_in_browser_storage")
            if any(s.startswith(("http://", "https://")) for s in ev.data_sinks):
                flags.append("third_party_transfer")
            for tag in ev.pii_tags:
                taxon = self.kb.get_pii(tag)
                if taxon is not None and taxon.sensitivity in HIGH_SENSITIVITY:
                    flags.append(f"sensitive_pii:{tag}")
            if ev.rule_id == UNKNOWN_RULE_ID:
                flags.append("unmapped_detector")
        return list(dict.fromkeys(flags))
