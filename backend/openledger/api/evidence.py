"""
Evidence API — parsing stage only.

POST /api/evidence/scan returns the evidence document for a source tree
without writing any artifacts.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from openledger.api.deps import AppServices, get_services

router = APIRouter(prefix="/api/evidence", tags=["evidence"])


class ScanRequest(BaseModel):
    root: str
    repo_url: str = ""
    commit_hash: str | None = None
    include_evidence: bool = False


@router.post("/scan")
async def scan(body: ScanRequest, services: AppServices = Depends(get_services)):
    agent = services.registry.evidence
    result = await agent.extract(body.root, repo_url=body.repo_url, commit_hash=body.commit_hash)
    doc = agent.to_document(result)
    if body.include_evidence:
        doc["evidence"] = [e.to_dict() for e in result.evidence]
    return doc
