"""
BM25 Retrieval Engine

Indexes policy sections, compliance controls and system prompts and ranks
them for free-text questions.

Tokenization: lower-case, non-word characters → spaces, split on
whitespace, drop tokens of length ≤ 2.

Scoring (k1 = 1.2, b = 0.75):
    score(d, q) = Σ_t idf(t) · tf(t,d)·(k1+1) / (tf(t,d) + k1·(1 − b + b·|d|/avgdl))
    idf(t)      = max(ln((N − df + 0.5) / (df + 0.5)), IDF_FLOOR)

The idf floor is a deliberate departure from textbook BM25: with it, a term
found in every document of a small corpus still favours the document that
repeats it.

Each document is indexed as title + content; a document's title must not be
repeated inside its content.

Terms absent from the corpus contribute nothing. Documents scoring 0 are not
returned; ties keep insertion order.
"""

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

from openledger.kb.loader import LoadedKB

logger = logging.getLogger(__name__)

K1 = 1.2
B = 0.75
# Departs from plain BM25 on purpose: a term in more than half the corpus
# would otherwise get idf <= 0 and stop ranking by frequency.
IDF_FLOOR = 0.01

_NON_WORD_RE = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    return [t for t in _NON_WORD_RE.sub(" ", text.lower()).split() if len(t) > 2]


@dataclass
class Document:
    id: str
    type: str
    title: str
    content: str
    metadata: dict = field(default_factory=dict)


@dataclass
class SearchResult:
    document: Document
    score: float

    def to_dict(self) -> dict:
        return {
            "id": self.document.id,
            "type": self.document.type,
            "title": self.document.title,
            "content": self.document.content,
            "score": round(self.score, 6),
            "metadata": dict(self.document.metadata),
        }


class BM25Index:
    """In-memory BM25 index; documents are appended, never updated."""

    def __init__(self, k1: float = K1, b: float = B):
        self.k1 = k1
        self.b = b
        self.documents: list[Document] = []
        self._term_counts: list[Counter] = []
        self._doc_lengths: list[int] = []
        self._doc_freq: Counter = Counter()
        self.avg_doc_length = 0.0

    def __len__(self) -> int:
        return len(self.documents)

    def add_document(self, document: Document) -> None:
        tokens = tokenize(f"{document.title} {document.content}")
        counts = Counter(tokens)
        self.documents.append(document)
        self._term_counts.append(counts)
        self._doc_lengths.append(len(tokens))
        self._doc_freq.update(counts.keys())
        self.avg_doc_length = sum(self._doc_lengths) / len(self._doc_lengths)

    def add_documents(self, documents: list[Document]) -> None:
        for document in documents:
            self.add_document(document)

    def idf(self, term: str) -> float:
        df = self._doc_freq.get(term, 0)
        if df == 0:
            return 0.0
        n = len(self.documents)
        return max(math.log((n - df + 0.5) / (df + 0.5)), IDF_FLOOR)

    def score(self, index: int, query_terms: list[str]) -> float:
        counts = self._term_counts[index]
        doc_len = self._doc_lengths[index]
        norm = 1 - self.b + self.b * (doc_len / self.avg_doc_length if self.avg_doc_length else 0.0)
        total = 0.0
        for term in query_terms:
            tf = counts.get(term, 0)
            if tf == 0:
                continue
            total += self.idf(term) * (tf * (self.k1 + 1)) / (tf + self.k1 * norm)
        return total

    def search(self, query: str, top_k: int = 5, doc_type: str | None = None) -> list[SearchResult]:
        terms = tokenize(query)
        if not terms or not self.documents:
            return []
        scored = []
        for i, document in enumerate(self.documents):
            if doc_type is not None and document.type != doc_type:
                continue
            value = self.score(i, terms)
            if value > 0:
                scored.append((value, i))
        # sorted() is stable: equal scores keep insertion order
        scored = sorted(scored, key=lambda pair: -pair[0])
        return [SearchResult(self.documents[i], value) for value, i in scored[:top_k]]

    def search_policies(self, query: str, top_k: int = 5) -> list[SearchResult]:
        return self.search(query, top_k, doc_type="policy")

    def search_compliance(self, query: str, top_k: int = 5) -> list[SearchResult]:
        return self.search(query, top_k, doc_type="compliance")

    def search_prompts(self, query: str, top_k: int = 5) -> list[SearchResult]:
        return self.search(query, top_k, doc_type="prompt")

    def get_stats(self) -> dict:
        return {
            "total_documents": len(self.documents),
            "documents_by_type": dict(Counter(d.type for d in self.documents)),
            "vocabulary_size": len(self._doc_freq),
            "avg_doc_length": round(self.avg_doc_length, 2),
        }

    # ------------------------------------------------------------------
    # Corpus construction
    # ------------------------------------------------------------------

    def add_policy_markdown(self, markdown: str, prefix: str = "POLICY.GENERATED") -> int:
        """Index each '## ' section of a rendered policy as its own document."""
        added = 0
        for block in re.split(r"^## ", markdown, flags=re.MULTILINE)[1:]:
            title, _, body = block.partition("\n")
            if not body.strip():
                continue
            added += 1
            self.add_document(Document(
                id=f"{prefix}.{added}",
                type="policy",
                title=title.strip(),
                content=body.strip(),
                metadata={"generated": True},
            ))
        return added

    @classmethod
    def from_kb(cls, kb: LoadedKB, prompts_dir: str | Path | None = None) -> "BM25Index":
        """Index policy template sections, controls and (optionally) system prompts."""
        index = cls()

        for template in kb.policies.templates:
            for section in template.sections:
                index.add_document(Document(
                    id=section.id,
                    type="policy",
                    title=section.name,
                    content=section.content.strip(),
                    metadata={"template": template.id},
                ))

        for framework in kb.frameworks:
            for control in framework.controls:
                index.add_document(Document(
                    id=control.id,
                    type="compliance",
                    title=control.name,
                    content=control.description.strip(),
                    metadata={"framework": framework.id, "severity": control.severity},
                ))

        if prompts_dir is not None:
            for path in sorted(Path(prompts_dir).glob("*.system.md")):
                try:
                    text = path.read_text(encoding="utf-8")
                except OSError as exc:
                    logger.warning("Could not read prompt %s: %s", path, exc)
                    continue
                name = path.name.removesuffix(".system.md")
                index.add_document(Document(
                    id=f"PROMPT.{name.upper()}",
                    type="prompt",
                    title=name,
                    content=text,
                ))

        logger.info("Indexed %d documents for retrieval", len(index))
        return index
