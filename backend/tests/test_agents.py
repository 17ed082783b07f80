"""Tests for stage implementations and their startup selection."""

import httpx
import pytest

from openledger.agents.factory import create_agent_registry
from openledger.agents.local import LocalAnswerAgent
from openledger.agents.ollama import OllamaAnswerAgent
from openledger.config import Settings
from openledger.services.answer_service import AnswerContext

QUESTION = "What data do you collect?"


def _ollama(kb, kb_dir, handler) -> OllamaAnswerAgent:
    return OllamaAnswerAgent(
        fallback=LocalAnswerAgent(kb, kb_dir / "prompts"),
        ollama_url="http://ollama.test:11434/",
        model="qwen3:8b",
        system_prompt="Answer from the passages.",
        transport=httpx.MockTransport(handler),
    )


class TestFactory:
    def test_local_by_default(self, test_settings, kb):
        registry = create_agent_registry(test_settings, kb)
        assert isinstance(registry.answer, LocalAnswerAgent)
        assert registry.provider == "local"

    def test_ollama_when_configured(self, test_settings, kb):
        settings = test_settings.model_copy(update={"llm_provider": "ollama"})
        registry = create_agent_registry(settings, kb)
        assert isinstance(registry.answer, OllamaAnswerAgent)
        assert registry.answer.system_prompt

    def test_rejects_unknown_provider(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, llm_provider="openai")


@pytest.mark.asyncio
class TestLocalAnswerAgent:
    async def test_refresh_indexes_generated_policy(self, kb, kb_dir):
        agent = LocalAnswerAgent(kb, kb_dir / "prompts")
        before = len(agent.index)
        agent.refresh("# Privacy Policy\n\n## Extra\n\nquokka handling rules\n", AnswerContext(data_types=["Email address"]))
        assert len(agent.index) == before + 1
        answer = await agent.answer("quokka")
        assert answer.sources == ["POLICY.GENERATED.1"]


@pytest.mark.asyncio
class TestOllamaAnswerAgent:
    async def test_generated_answer(self, kb, kb_dir):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.read()
            return httpx.Response(200, json={"message": {"content": "<think>plan</think>We collect your email."}})

        answer = await _ollama(kb, kb_dir, handler).answer(QUESTION)
        assert answer.answer == "We collect your email."
        assert answer.provider == "ollama:qwen3:8b"
        assert answer.sources
        assert seen["url"] == "http://ollama.test:11434/api/chat"
        assert b'"stream":false' in seen["body"].replace(b" ", b"")

    async def test_falls_back_when_unreachable(self, kb, kb_dir):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        answer = await _ollama(kb, kb_dir, handler).answer(QUESTION)
        assert answer.provider == "local"
        assert answer.answer.startswith("We collect the following types of information:")

    async def test_falls_back_on_error_status(self, kb, kb_dir):
        answer = await _ollama(kb, kb_dir, lambda request: httpx.Response(503)).answer(QUESTION)
        assert answer.provider == "local"

    async def test_no_passages_skips_model(self, kb, kb_dir):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("model should not be called")

        answer = await _ollama(kb, kb_dir, handler).answer("zzzz qqqq")
        assert answer.provider == "local"
        assert answer.confidence == 0.1

    @pytest.mark.parametrize("body", [
        ["not", "an", "object"],
        {"message": "plain string"},
        {"message": {"content": None}},
        {"done": True},
    ])
    async def test_falls_back_on_unexpected_body(self, kb, kb_dir, body):
        answer = await _ollama(kb, kb_dir, lambda request: httpx.Response(200, json=body)).answer(QUESTION)
        assert answer.provider == "local"
        assert answer.answer.startswith("We collect the following types of information:")
