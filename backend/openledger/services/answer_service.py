"""
Answer Service — deterministic question answering over the BM25 index.

Routes the question by type (collection, usage, sharing, rights, security,
retention) and answers from the scan results and KB placeholders, citing
the retrieved passages. Anything else gets the best passage verbatim.

Confidence = min(min(avg_score / 10, 1) × 0.7 + min(n, 5) / 5 × 0.3, 1).
No passages → fallback answer with confidence 0.1.
"""

import logging
from dataclasses import asdict, dataclass, field

from openledger.kb.loader import LoadedKB
from openledger.services.retrieval import BM25Index, SearchResult

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = (
    "I don't have enough information to answer that question. "
    "Please contact our privacy team for assistance."
)
FALLBACK_CONFIDENCE = 0.1

# question type → trigger phrases, checked in order
QUESTION_TYPES = [
    ("collection", ("what data", "collect")),
    ("usage", ("how do you use", "purpose")),
    ("sharing", ("share", "third party", "sell")),
    ("rights", ("rights", "access", "delete")),
    ("security", ("security", "protect")),
    ("retention", ("retention", "keep")),
]

SHARING_SECTION_ID = "POLICY.SECTION.DATA_SHARING"


@dataclass
class AnswerContext:
    """What the latest scan found; empty lists fall back to KB placeholders."""
    data_types: list[str] = field(default_factory=list)
    purposes: list[str] = field(default_factory=list)
    retention: list[str] = field(default_factory=list)


@dataclass
class Answer:
    answer: str
    sources: list[str]
    citations: list[dict]
    confidence: float
    question_type: str
    provider: str = "local"

    def to_dict(self) -> dict:
        return asdict(self)


def classify_question(question: str) -> str:
    lowered = question.lower()
    for question_type, phrases in QUESTION_TYPES:
        if any(p in lowered for p in phrases):
            return question_type
    return "generic"


def calculate_confidence(results: list[SearchResult]) -> float:
    if not results:
        return FALLBACK_CONFIDENCE
    avg_score = sum(r.score for r in results) / len(results)
    normalized = min(avg_score / 10, 1.0)
    count_factor = min(len(results), 5) / 5
    return round(min(normalized * 0.7 + count_factor * 0.3, 1.0), 4)


def citation_source(doc_type: str) -> str:
    return "policy" if doc_type == "policy" else "kb"


class AnswerService:
    def __init__(self, kb: LoadedKB, index: BM25Index, context: AnswerContext | None = None):
        self.kb = kb
        self.index = index
        self.context = context or AnswerContext()

    def _placeholder(self, name: str) -> list[str]:
        value = self.kb.policies.placeholders.get(name)
        if value is None:
            return []
        return list(value) if isinstance(value, list) else [str(value)]

    @staticmethod
    def _bullets(heading: str, items: list[str]) -> str:
        return heading + "\n\n" + "".join(f"• {item}\n" for item in items)

    def answer(self, question: str, top_k: int = 5) -> Answer:
        results = self.index.search(question, top_k)
        question_type = classify_question(question)

        if not results:
            return Answer(FALLBACK_ANSWER, [], [], FALLBACK_CONFIDENCE, question_type)

        text = self.compose(question_type, question, results)
        return Answer(
            answer=text,
            sources=[r.document.id for r in results],
            citations=[{"source": citation_source(r.document.type), "ref": r.document.id} for r in results],
            confidence=calculate_confidence(results),
            question_type=question_type,
        )

    def compose(self, question_type: str, question: str, results: list[SearchResult]) -> str:
        if question_type == "collection":
            items = self.context.data_types or self._placeholder("data_types")
            text = self._bullets("We collect the following types of information:", items)
            methods = self._placeholder("collection_methods")
            if methods:
                text += f"\nThis information is collected through: {', '.join(methods)}."
            return text

        if question_type == "usage":
            items = self.context.purposes or self._placeholder("purposes")
            return self._bullets("We use your information for the following purposes:", items)

        if question_type == "sharing":
            section = self.kb.index.get_by_id(SHARING_SECTION_ID)
            if section is not None:
                return section.content.strip()
            return "We do not sell your personal information."

        if question_type == "rights":
            text = self._bullets(
                "You have the following rights regarding your personal information:",
                self._placeholder("rights_list"),
            )
            contact = ", ".join(self._placeholder("contact_info"))
            response_time = ", ".join(self._placeholder("response_time"))
            if contact:
                text += f"\nTo exercise these rights, contact {contact}."
                if response_time:
                    text += f" We respond within {response_time}."
            return text

        if question_type == "security":
            return self._bullets(
                "We implement the following security measures to protect your data:",
                self._placeholder("security_measures"),
            )

        if question_type == "retention":
            items = self.context.retention or self._placeholder("retention_periods")
            return self._bullets("We retain personal data as follows:", items)

        best = results[0].document
        if best.type == "policy":
            return f"Based on our privacy policy: {best.content}"
        if best.type == "compliance":
            return f"According to our compliance framework: {best.title}: {best.content}"
        return f"Based on our records: {best.content}"

    def search_policies(self, query: str, top_k: int = 3) -> Answer:
        return self._search_answer(self.index.search_policies(query, top_k), "No relevant policy information found.")

    def search_compliance(self, query: str, top_k: int = 3) -> Answer:
        return self._search_answer(
            self.index.search_compliance(query, top_k), "No relevant compliance information found.",
        )

    def search_prompts(self, query: str, top_k: int = 3) -> Answer:
        return self._search_answer(self.index.search_prompts(query, top_k), "No relevant prompt found.")

    @staticmethod
    def _search_answer(results: list[SearchResult], empty: str) -> Answer:
        if not results:
            return Answer(empty, [], [], FALLBACK_CONFIDENCE, "search")
        return Answer(
            answer="\n\n".join(r.document.content for r in results),
            sources=[r.document.id for r in results],
            citations=[{"source": citation_source(r.document.type), "ref": r.document.id} for r in results],
            confidence=calculate_confidence(results),
            question_type="search",
        )
