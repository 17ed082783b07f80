"""
Audit API — findings, framework scores and the rendered policy.

POST /api/audit
  Either scans `root` first or audits the supplied evidence records.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from openledger.api.deps import AppServices, get_services
from openledger.services.evidence_extractor import Evidence

router = APIRouter(prefix="/api/audit", tags=["audit"])


class AuditRequest(BaseModel):
    root: str | None = None
    evidence: list[dict] | None = None
    frameworks: list[str] | None = None


@router.post("")
async def run_audit(body: AuditRequest, services: AppServices = Depends(get_services)):
    if body.evidence is not None:
        try:
            evidence = [Evidence.from_dict(e) for e in body.evidence]
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=422, detail=f"Invalid evidence record: {exc}")
    elif body.root:
        result = await services.registry.evidence.extract(body.root)
        evidence = result.evidence
    else:
        raise HTTPException(status_code=422, detail="Provide either 'root' or 'evidence'")

    audit = await services.registry.audit.audit(evidence, body.frameworks)
    return audit.to_document()
