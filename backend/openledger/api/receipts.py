"""
Consent receipts API.

POST /api/receipts         issue a signed receipt for one gate decision
GET  /api/receipts         list receipts, optionally within [start, end]
POST /api/receipts/verify  recompute and check a receipt signature
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from openledger.api.deps import AppServices, get_services, validate_time_range
from openledger.api.gates import latest_evidence_state
from openledger.services.receipts import verify_receipt

router = APIRouter(prefix="/api/receipts", tags=["receipts"])


class ReceiptRequest(BaseModel):
    gate: str
    choice: bool
    commit: str | None = None
    evidence_hash: str | None = None
    user_id: str | None = None


class VerifyRequest(BaseModel):
    gate: str
    choice: bool
    commit: str
    timestamp: str
    evidence_hash: str
    user_id: str | None = None
    signature: str


@router.post("")
async def create_receipt(body: ReceiptRequest, services: AppServices = Depends(get_services)):
    commit, evidence_hash = latest_evidence_state(services)
    receipt = await services.consent_store.issue_receipt(
        body.gate,
        body.choice,
        body.commit or commit,
        body.evidence_hash or evidence_hash,
        user_id=body.user_id,
    )
    return receipt.to_dict()


@router.get("")
async def list_receipts(
    start: str | None = Query(None),
    end: str | None = Query(None),
    services: AppServices = Depends(get_services),
):
    start, end = validate_time_range(start, end)
    receipts = await services.consent_store.list_receipts(start, end)
    return {"receipts": [r.to_dict() for r in receipts], "count": len(receipts)}


@router.post("/verify")
async def verify(body: VerifyRequest):
    data = body.model_dump(exclude={"signature"})
    return {"valid": verify_receipt(data, body.signature)}
