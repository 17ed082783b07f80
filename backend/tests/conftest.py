"""Shared test fixtures for backend tests."""

import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
import yaml
from httpx import ASGITransport, AsyncClient

from openledger.api.deps import build_services
from openledger.config import DEFAULT_KB_PATH, Settings
from openledger.kb.loader import KBLoader, LoadedKB
from openledger.main import app
from openledger.services.consent_store import InMemoryConsentStore
from openledger.services.evidence_extractor import Evidence

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

SAMPLE_SOURCES = {
    "src/profile.ts": (
        "export function saveProfile(user) {\n"
        "  localStorage.setItem('user_email', user.email);\n"
        "}\n"
    ),
    "src/api.ts": (
        "const routes = [\"GET '/api/transactions'\"];\n"
        "fetch('https://analytics.example.com/track', { body: deviceId });\n"
    ),
    "server/app.py": (
        "@app.post(\"/api/users\")\n"
        "def create_user(payload):\n"
        "    db.execute(\"INSERT INTO users (email, ssn) VALUES (?, ?)\", payload.email, payload.ssn)\n"
    ),
    "node_modules/lib/index.js": "localStorage.setItem('ignored', 1);\n",
    "README.md": "localStorage is mentioned here but markdown is not scanned.\n",
}


def write_tree(root: Path, files: dict[str, str]) -> Path:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


def edit_yaml(path: Path, mutate) -> None:
    """Load a KB YAML document, apply mutate(data) and write it back."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    mutate(data)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)


def make_evidence(
    evidence_id: str = "EVIDENCE.TEST.1",
    snippet: str = "",
    pii_tags: tuple[str, ...] = (),
    data_sinks: tuple[str, ...] = (),
    rule_id: str = "RULE.ACCOUNT.PROFILE",
    file: str = "src/app.ts",
    line: int = 1,
) -> Evidence:
    return Evidence(
        id=evidence_id,
        rule_id=rule_id,
        detector_id="DETECTOR.TEST",
        file=file,
        line_start=line,
        line_end=line,
        snippet=snippet,
        pii_tags=pii_tags,
        data_sinks=data_sinks,
    )


@pytest.fixture
def kb_dir(tmp_path: Path) -> Path:
    """A writable copy of the packaged knowledge base."""
    target = tmp_path / "kb"
    shutil.copytree(DEFAULT_KB_PATH, target)
    return target


@pytest.fixture
def kb(kb_dir: Path) -> LoadedKB:
    return KBLoader(kb_dir).load()


@pytest.fixture
def sample_repo(tmp_path: Path) -> Path:
    return write_tree(tmp_path / "repo", SAMPLE_SOURCES)


@pytest.fixture
def consent_store() -> InMemoryConsentStore:
    return InMemoryConsentStore()


@pytest.fixture
def test_settings(tmp_path: Path, kb_dir: Path) -> Settings:
    return Settings(
        _env_file=None,
        kb_path=str(kb_dir),
        manifest_path=str(tmp_path / "state" / "_manifest.yaml"),
        output_dir=str(tmp_path / "artifacts"),
        consent_store="memory",
        llm_provider="local",
        scan_workers=4,
    )


@pytest_asyncio.fixture
async def client(test_settings: Settings, consent_store: InMemoryConsentStore) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with services wired to temporary paths."""
    app.state.services = build_services(test_settings, consent_store=consent_store)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    del app.state.services
