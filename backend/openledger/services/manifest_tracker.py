"""
Manifest Tracker

Hashes the tracked KB files (and, optionally, scanned source files), keeps
them in a YAML manifest together with an append-only list of evidence
periods, and answers "has anything changed since the last period".

Manifest layout:
    kb_version, created_at, last_updated,
    files: [{path, sha256, size, last_modified}],
    evidence_periods: [{id, start, end, manifest_hash, status}]   # oldest first

Exactly one period is active once the manifest exists. Rolling to a new
period closes the active one, appends the new one and rewrites the file in a
single locked read-modify-write. The new period's manifest_hash is computed
in two passes: serialize with a placeholder, hash that text, patch the hash
in, serialize again.
"""

import hashlib
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import yaml

from openledger.services.artifacts import write_atomic

logger = logging.getLogger(__name__)

KB_VERSION = "1.0.0"
HASH_PLACEHOLDER = "TBD"
NO_MANIFEST_HASH = "no-manifest"
SOURCE_PREFIX = "repo/"

DEFAULT_TRACKED_FILES = [
    "rules.yaml",
    "compliance_frameworks.yaml",
    "privacy_policies.yaml",
    "schema.json",
    "prompts/parsing.system.md",
    "prompts/audit.system.md",
    "prompts/answer.system.md",
    "prompts/receipt.system.md",
]


@dataclass
class FileInfo:
    path: str
    sha256: str
    size: int
    last_modified: str


@dataclass
class EvidencePeriod:
    id: str
    start: str
    end: str | None
    manifest_hash: str
    status: str  # active | closed


@dataclass
class Manifest:
    kb_version: str
    created_at: str
    last_updated: str
    files: list[FileInfo] = field(default_factory=list)
    evidence_periods: list[EvidencePeriod] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Manifest":
        return cls(
            kb_version=str(data.get("kb_version", KB_VERSION)),
            created_at=str(data.get("created_at", "")),
            last_updated=str(data.get("last_updated", "")),
            files=[FileInfo(**f) for f in data.get("files") or []],
            evidence_periods=[EvidencePeriod(**p) for p in data.get("evidence_periods") or []],
        )

    @property
    def active_period(self) -> EvidencePeriod | None:
        for period in reversed(self.evidence_periods):
            if period.status == "active":
                return period
        return None


@dataclass
class ManifestDiff:
    changed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.changed or self.added or self.removed)

    def to_dict(self) -> dict:
        return asdict(self)


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _iso(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ManifestTracker:
    """Tracks KB (and optionally source) file hashes across evidence periods."""

    def __init__(
        self,
        kb_path: str | Path,
        manifest_path: str | Path,
        tracked_files: list[str] | None = None,
        kb_version: str = KB_VERSION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.kb_path = Path(kb_path)
        self.manifest_path = Path(manifest_path)
        self.tracked_files = list(tracked_files if tracked_files is not None else DEFAULT_TRACKED_FILES)
        self.kb_version = kb_version
        self._clock = clock
        self._sources: dict[str, Path] = {}
        self._lock = threading.Lock()

    def track_sources(self, root: str | Path, relative_paths: list[str]) -> None:
        """Replace the tracked source files with one scan's files, keyed as repo/<relative path>."""
        base = Path(root)
        self._sources = {f"{SOURCE_PREFIX}{rel}": base / rel for rel in relative_paths}

    def _tracked(self) -> list[tuple[str, Path]]:
        entries = [(rel, self.kb_path / rel) for rel in self.tracked_files]
        entries.extend(sorted(self._sources.items()))
        return entries

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def compute_current_hashes(self) -> list[FileInfo]:
        """SHA-256 over raw bytes of every tracked file. Missing files are skipped."""
        files: list[FileInfo] = []
        for key, full_path in self._tracked():
            try:
                stat = full_path.stat()
                digest = sha256_file(full_path)
            except OSError as exc:
                logger.warning("Could not read tracked file %s: %s", key, exc)
                continue
            files.append(FileInfo(
                path=key,
                sha256=digest,
                size=stat.st_size,
                last_modified=_iso(datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)),
            ))
        return files

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def read_manifest(self) -> Manifest | None:
        try:
            with open(self.manifest_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Could not read manifest %s: %s", self.manifest_path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Manifest %s is not a mapping; treating as absent", self.manifest_path)
            return None
        try:
            return Manifest.from_dict(data)
        except TypeError as exc:
            logger.warning("Manifest %s has an unexpected shape: %s", self.manifest_path, exc)
            return None

    @staticmethod
    def _dump(manifest: Manifest) -> str:
        return yaml.safe_dump(
            manifest.to_dict(), sort_keys=False, default_flow_style=False, allow_unicode=True, width=10_000,
        )

    def _write_manifest(self, manifest: Manifest) -> str:
        """Two-pass write: hash the text with the placeholder, patch it in, write once."""
        active = manifest.active_period
        if active is not None:
            active.manifest_hash = HASH_PLACEHOLDER
        first_pass = self._dump(manifest)
        manifest_hash = hashlib.sha256(first_pass.encode("utf-8")).hexdigest()
        if active is not None:
            active.manifest_hash = manifest_hash
        write_atomic(self.manifest_path, self._dump(manifest))
        return manifest_hash

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_changes(self, current: list[FileInfo] | None = None) -> bool:
        """True when the tracked files differ from the manifest, or no manifest exists."""
        manifest = self.read_manifest()
        if manifest is None:
            return True
        if current is None:
            current = self.compute_current_hashes()
        if len(current) != len(manifest.files):
            return True
        previous = {f.path: f.sha256 for f in manifest.files}
        return any(previous.get(f.path) != f.sha256 for f in current)

    def compare_with_previous(self, current: list[FileInfo] | None = None) -> ManifestDiff:
        """Changed/added/removed tracked paths vs. the manifest. Empty when there is no manifest."""
        manifest = self.read_manifest()
        if manifest is None:
            return ManifestDiff()
        if current is None:
            current = self.compute_current_hashes()
        previous = {f.path: f.sha256 for f in manifest.files}
        current_paths = {f.path for f in current}

        diff = ManifestDiff()
        for info in current:
            if info.path not in previous:
                diff.added.append(info.path)
            elif previous[info.path] != info.sha256:
                diff.changed.append(info.path)
        diff.removed = [f.path for f in manifest.files if f.path not in current_paths]
        return diff

    def current_period(self) -> EvidencePeriod | None:
        manifest = self.read_manifest()
        return manifest.active_period if manifest else None

    def current_hash(self) -> str:
        period = self.current_period()
        return period.manifest_hash if period else NO_MANIFEST_HASH

    def period_history(self) -> list[EvidencePeriod]:
        """All periods, oldest first."""
        manifest = self.read_manifest()
        return list(manifest.evidence_periods) if manifest else []

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _period_id(self, now: datetime, existing: list[EvidencePeriod]) -> str:
        base = f"PERIOD.{now.strftime('%Y.%m.%d')}"
        taken = {p.id for p in existing}
        if base not in taken:
            return base
        n = 2
        while f"{base}.{n}" in taken:
            n += 1
        return f"{base}.{n}"

    def next_period_id(self) -> str:
        """Id the next create_new_evidence_period() call would assign, without writing."""
        manifest = self.read_manifest()
        return self._period_id(self._clock(), manifest.evidence_periods if manifest else [])

    def initialize(self) -> EvidencePeriod:
        """Bootstrap the manifest with a first active period if none exists."""
        with self._lock:
            manifest = self.read_manifest()
            if manifest is not None and manifest.active_period is not None:
                return manifest.active_period
        return self.create_new_evidence_period()

    def create_new_evidence_period(
        self,
        period_id: str | None = None,
        files: list[FileInfo] | None = None,
    ) -> EvidencePeriod:
        """
        Close the active period and open a new one.

        The file list is replaced by `files` (default: the current hashes) in
        the same write, so has_changes() is False right afterwards. A
        `period_id` reserved earlier with next_period_id() is used unless
        another period has taken it meanwhile.
        """
        with self._lock:
            now = self._clock()
            stamp = _iso(now)
            manifest = self.read_manifest()
            if manifest is None:
                manifest = Manifest(kb_version=self.kb_version, created_at=stamp, last_updated=stamp)
                logger.info("No manifest at %s; bootstrapping", self.manifest_path)

            taken = {p.id for p in manifest.evidence_periods}
            if period_id is None or period_id in taken:
                if period_id is not None:
                    logger.warning("Period id %s is already used; assigning a new one", period_id)
                period_id = self._period_id(now, manifest.evidence_periods)

            for period in manifest.evidence_periods:
                if period.status == "active":
                    period.end = stamp
                    period.status = "closed"

            period = EvidencePeriod(
                id=period_id,
                start=stamp,
                end=None,
                manifest_hash=HASH_PLACEHOLDER,
                status="active",
            )
            manifest.evidence_periods.append(period)
            manifest.files = list(files) if files is not None else self.compute_current_hashes()
            manifest.last_updated = stamp
            manifest.kb_version = self.kb_version

            self._write_manifest(manifest)
            logger.info("Opened evidence period %s (hash %s)", period.id, period.manifest_hash[:12])
            return period
