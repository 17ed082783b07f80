"""
Answer API — questions over the generated policy and the KB.

POST /api/answer          free-text question
POST /api/answer/search   typed search (policy | compliance | prompt)
GET  /api/answer/stats    retrieval corpus statistics
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from openledger.api.deps import AppServices, get_services
from openledger.middleware.metrics import answer_requests_total

router = APIRouter(prefix="/api/answer", tags=["answer"])


class QuestionRequest(BaseModel):
    question: str = Field(..., min_length=1)
    top_k: int = Field(5, ge=1, le=50)


class AnswerResponse(BaseModel):
    answer: str
    sources: list[str]
    citations: list[dict]
    confidence: float
    question_type: str
    provider: str


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    type: str | None = Field(None, pattern="^(policy|compliance|prompt)$")
    top_k: int = Field(5, ge=1, le=50)


@router.post("", response_model=AnswerResponse)
async def answer_question(body: QuestionRequest, services: AppServices = Depends(get_services)):
    answer = await services.registry.answer.answer(body.question, body.top_k)
    answer_requests_total.labels(provider=answer.provider.split(":")[0]).inc()
    return answer.to_dict()


@router.post("/search")
async def search(body: SearchRequest, services: AppServices = Depends(get_services)):
    index = services.registry.answer.index
    results = index.search(body.query, body.top_k, doc_type=body.type)
    return {"query": body.query, "results": [r.to_dict() for r in results]}


@router.get("/stats")
async def stats(services: AppServices = Depends(get_services)):
    return services.registry.answer.index.get_stats()
