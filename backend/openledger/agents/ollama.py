"""
Ollama-backed answer agent.

Retrieval stays local: the BM25 passages for the question are handed to a
local model served by Ollama, which phrases the answer. When Ollama is
unreachable, times out, or returns nothing usable, the deterministic answer
is returned unchanged.
"""

import logging
import re

import httpx

from openledger.agents.base import AnswerAgent
from openledger.agents.local import LocalAnswerAgent
from openledger.services.answer_service import Answer, AnswerContext
from openledger.services.retrieval import BM25Index

logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>\s*", re.DOTALL)


class OllamaAnswerAgent(AnswerAgent):
    provider = "ollama"

    def __init__(
        self,
        fallback: LocalAnswerAgent,
        ollama_url: str,
        model: str,
        timeout_seconds: float = 30.0,
        system_prompt: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.fallback = fallback
        self.ollama_url = ollama_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.system_prompt = system_prompt
        self._transport = transport

    def refresh(self, policy_markdown: str = "", context: AnswerContext | None = None) -> None:
        self.fallback.refresh(policy_markdown, context)

    @property
    def index(self) -> BM25Index:
        return self.fallback.index

    @staticmethod
    def _strip_think_tags(text: str) -> str:
        return _THINK_RE.sub("", text).strip()

    def _build_prompt(self, question: str, local: Answer) -> str:
        results = self.index.search(question, 5)
        passages = "\n\n".join(
            f"[{r.document.id}] {r.document.title}\n{r.document.content}" for r in results
        )
        return (
            f"Passages:\n{passages}\n\n"
            f"Draft answer:\n{local.answer}\n\n"
            f"Question: {question}\n"
            "Answer using only the passages. Cite passage ids in brackets."
        )

    async def _call_ollama(self, prompt: str) -> str | None:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})

        timeout = httpx.Timeout(self.timeout_seconds, connect=5.0)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.ollama_url}/api/chat",
                    json={"model": self.model, "messages": messages, "stream": False,
                          "options": {"temperature": 0.2}},
                )
        except httpx.HTTPError as exc:
            logger.warning("Ollama call failed, using local answer: %s", exc)
            return None
        if resp.status_code != 200:
            logger.warning("Ollama returned %s, using local answer", resp.status_code)
            return None
        try:
            data = resp.json()
        except ValueError:
            logger.warning("Ollama returned a non-JSON body, using local answer")
            return None
        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            logger.warning("Ollama response has no message content, using local answer")
            return None
        return self._strip_think_tags(content) or None

    async def answer(self, question: str, top_k: int = 5) -> Answer:
        local = await self.fallback.answer(question, top_k)
        if not local.sources:
            return local
        generated = await self._call_ollama(self._build_prompt(question, local))
        if generated is None:
            return local
        return Answer(
            answer=generated,
            sources=local.sources,
            citations=local.citations,
            confidence=local.confidence,
            question_type=local.question_type,
            provider=f"ollama:{self.model}",
        )
