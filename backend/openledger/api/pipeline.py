"""
Pipeline API — full compliance run over a source tree.

POST /api/pipeline/run
  Runs parsing → audit → receipt → answer refresh and writes all artifacts.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from openledger.api.deps import AppServices, get_services, validate_time_range

router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])


class PipelineRunRequest(BaseModel):
    root: str = Field(..., description="Path of the source tree to scan")
    repo_url: str = ""
    commit_hash: str | None = Field(None, description="Overrides the commit read from .git")
    frameworks: list[str] | None = Field(None, description="Framework ids; all when omitted")
    start: str | None = Field(None, description="Receipts window start (ISO-8601)")
    end: str | None = Field(None, description="Receipts window end (ISO-8601)")
    track_sources: bool = True


class PipelineRunResponse(BaseModel):
    run_id: str
    files_scanned: int
    evidence_count: int
    evidence_hash: str
    findings: int
    compliance_score: float
    framework_scores: dict[str, float]
    drift_updated: bool
    drift_events: int
    severity_summary: dict[str, int]
    period_id: str | None
    ledger_hash: str
    artifacts: dict[str, str]
    stage_seconds: dict[str, float]
    duration_seconds: float


@router.post("/run", response_model=PipelineRunResponse)
async def run_pipeline(body: PipelineRunRequest, services: AppServices = Depends(get_services)):
    time_range = validate_time_range(body.start, body.end)
    run = await services.pipeline.run(
        body.root,
        repo_url=body.repo_url,
        commit_hash=body.commit_hash,
        framework_ids=body.frameworks,
        time_range=time_range,
        track_sources=body.track_sources,
    )
    return run.summary()
