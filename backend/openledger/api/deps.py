"""
API Dependencies — shared pipeline services.

Everything the routers need is built once at startup (build_services) and
kept on app.state; routers reach it through get_services.
"""

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request

from openledger.agents.factory import AgentRegistry, create_agent_registry
from openledger.config import Settings
from openledger.kb.loader import KBLoader, LoadedKB
from openledger.services.consent_store import ConsentStore, InMemoryConsentStore, SqlConsentStore, time_bounds
from openledger.services.pipeline import CompliancePipeline

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    settings: Settings
    kb: LoadedKB
    consent_store: ConsentStore
    registry: AgentRegistry
    pipeline: CompliancePipeline


def build_consent_store(settings: Settings) -> ConsentStore:
    if settings.consent_store == "memory":
        return InMemoryConsentStore()
    from openledger.database import get_session_factory

    return SqlConsentStore(get_session_factory())


def build_services(settings: Settings, consent_store: ConsentStore | None = None) -> AppServices:
    """Load the KB and wire the stage implementations. Raises KBValidationError on a bad KB."""
    kb = KBLoader(settings.kb_path).load()
    store = consent_store if consent_store is not None else build_consent_store(settings)
    registry = create_agent_registry(settings, kb, consent_store=store)
    return AppServices(
        settings=settings,
        kb=kb,
        consent_store=store,
        registry=registry,
        pipeline=CompliancePipeline(kb, registry, settings.output_dir),
    )


def get_services(request: Request) -> AppServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Pipeline services are not initialised")
    return services


def validate_time_range(start: str | None, end: str | None) -> tuple[str | None, str | None]:
    """Reject a malformed receipts window before it reaches the store."""
    try:
        lower, upper = time_bounds(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid receipts window: {exc}")
    if lower is not None and upper is not None and lower > upper:
        raise HTTPException(status_code=422, detail="Receipts window start is after its end")
    return start, end
