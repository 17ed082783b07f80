"""
Stage output documents and the atomic file writer.

Every on-disk output (manifest, stage JSON artifacts, Markdown reports) goes
through write_atomic: the content lands in a temp file in the target
directory and is moved into place with os.replace, so readers only ever see
the previous complete file or the new complete file.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

EVIDENCE_ARTIFACT = "evidence.json"
EVIDENCE_SNAPSHOT = "evidence_snapshot.json"
AUDIT_ARTIFACT = "audit.json"
RECEIPT_ARTIFACT = "receipt.json"
POLICY_ARTIFACT = "privacy_policy.md"
DRIFT_REPORT = "drift_report.md"


def write_atomic(path: str | Path, content: str) -> Path:
    """Write text to path via temp file + rename."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp_", suffix=target.suffix, dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, target)
    finally:
        try:
            if os.path.exists(tmp):
                os.remove(tmp)
        except OSError:
            pass
    return target


def write_json_atomic(path: str | Path, data: dict | list) -> Path:
    return write_atomic(path, json.dumps(data, indent=2, ensure_ascii=False, default=str) + "\n")


def read_json(path: str | Path) -> dict | None:
    """Read a JSON artifact; None when it does not exist or is unreadable."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return None


def commit_artifacts(output_dir: str | Path, documents: dict[str, dict | list | str]) -> dict[str, str]:
    """
    Write a batch of stage outputs.

    Called only after every stage has succeeded. Each file is replaced
    atomically; returns name → written path.
    """
    out = Path(output_dir)
    written: dict[str, str] = {}
    for name, doc in documents.items():
        if isinstance(doc, str):
            path = write_atomic(out / name, doc)
        else:
            path = write_json_atomic(out / name, doc)
        written[name] = str(path)
    logger.info("Wrote %d artifacts to %s", len(written), out)
    return written
