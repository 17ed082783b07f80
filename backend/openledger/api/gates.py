"""
Consent gates API.

GET /api/gates  current gate states
PUT /api/gates  set one or more gates; every change is recorded as a signed
                receipt bound to the latest evidence hash
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from openledger.api.deps import AppServices, get_services
from openledger.services.artifacts import EVIDENCE_SNAPSHOT, read_json
from openledger.services.receipts import hash_payload

router = APIRouter(prefix="/api/gates", tags=["gates"])


class GateUpdateRequest(BaseModel):
    gates: dict[str, bool] = Field(..., min_length=1)
    commit: str | None = Field(None, description="Defaults to the last scanned commit")
    user_id: str | None = None


def latest_evidence_state(services: AppServices) -> tuple[str, str]:
    """(commit, evidence_hash) of the last committed scan."""
    snapshot = read_json(f"{services.settings.output_dir}/{EVIDENCE_SNAPSHOT}") or {}
    commit = (snapshot.get("metadata") or {}).get("commit_hash") or "unknown"
    evidence_hash = snapshot.get("evidence_hash") or hash_payload([])
    return commit, evidence_hash


@router.get("")
async def get_gates(services: AppServices = Depends(get_services)):
    return {"gates": await services.consent_store.get_gates()}


@router.put("")
async def update_gates(body: GateUpdateRequest, services: AppServices = Depends(get_services)):
    commit, evidence_hash = latest_evidence_state(services)
    receipts = []
    for gate, choice in body.gates.items():
        receipt = await services.consent_store.issue_receipt(
            gate, choice, body.commit or commit, evidence_hash, user_id=body.user_id,
        )
        receipts.append(receipt.to_dict())
    return {"gates": await services.consent_store.get_gates(), "receipts": receipts}
