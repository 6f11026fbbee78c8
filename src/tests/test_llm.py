from __future__ import annotations

import json

import httpx
import pytest

from src.rag.answerer import ExtractiveCompletionClient
from src.rag.guardrails import DEFAULT_REFUSAL
from src.rag.llm import (
    LLMError,
    OpenAICompletionClient,
    base_system_prompt,
    build_completion_provider,
    build_user_prompt,
)
from src.rag.types import Citation, PackedContext, Source

pytestmark = pytest.mark.anyio

PACKED = PackedContext(
    context=(
        "[R1] pricing.txt:\nEnterprise pricing starts at 40 dollars.\n\n"
        "[R2] support.md (p. 3):\nPremium support answers within one hour.\n"
    ),
    citations=[Citation(id=1, source="pricing.txt"), Citation(id=2, source="support.md", page=3)],
    token_count=30,
    chunks_used=2,
    chunks_truncated=0,
)


def make_client(handler) -> OpenAICompletionClient:
    return OpenAICompletionClient(
        api_key="test-key",
        base_url="https://llm.test/v1/",
        model="gpt-test",
        temperature=0.1,
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def test_user_prompt_embeds_context() -> None:
    prompt = build_user_prompt("What does enterprise cost?", PACKED)

    assert prompt.startswith("Question: What does enterprise cost?")
    assert "[R2] support.md (p. 3):" in prompt
    assert prompt.endswith("Instructions: Use only the context above to answer.")
    assert "(no context retrieved)" in build_user_prompt("q", PackedContext("", [], 0, 0, 0))
    assert "[R#]" in base_system_prompt()


WEB = [
    Source(
        type="web",
        snippet="Most SaaS vendors now offer usage pricing.",
        title="Pricing survey",
        url="https://example.com/survey",
    )
]


def test_user_prompt_lists_web_sources_after_context() -> None:
    prompt = build_user_prompt("How do vendors price?", PACKED, WEB)

    assert "Web sources:\n[W1] Pricing survey (https://example.com/survey):\n" in prompt
    assert prompt.index("[R2] support.md") < prompt.index("[W1]") < prompt.index("Instructions:")
    assert "[W#]" in base_system_prompt()


async def test_openai_client_sends_chat_request() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "  ## Answer\nForty dollars [R1].  "}}],
                "usage": {"prompt_tokens": 120, "completion_tokens": 9},
            },
        )

    completion = await make_client(handler).complete("system", "user", 256)

    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["model"] == "gpt-test"
    assert seen["body"]["max_tokens"] == 256
    assert [message["role"] for message in seen["body"]["messages"]] == ["system", "user"]
    assert completion.text == "## Answer\nForty dollars [R1]."
    assert (completion.tokens_in, completion.tokens_out) == (120, 9)


async def test_openai_client_estimates_missing_usage() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": "abcdefgh"}}]})

    completion = await make_client(handler).complete("sys", "user", 64)

    assert completion.tokens_in == 2
    assert completion.tokens_out == 2


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, json={"choices": [{"message": {"content": None}}]}),
    ],
)
async def test_openai_client_errors(response: httpx.Response) -> None:
    client = make_client(lambda request: response)

    with pytest.raises(LLMError):
        await client.complete("system", "user", 64)


async def test_extractive_client_cites_first_block() -> None:
    prompt = build_user_prompt("enterprise cost", PACKED)

    completion = await ExtractiveCompletionClient().complete(base_system_prompt(), prompt, 512)

    assert completion.text == (
        "## Answer\n"
        "Based on the provided context: Enterprise pricing starts at 40 dollars. [R1]\n\n"
        "## Sources\n"
        "[R1] pricing.txt"
    )
    assert completion.tokens_in > 0


async def test_extractive_client_refuses_without_context() -> None:
    prompt = build_user_prompt("enterprise cost", PackedContext("", [], 0, 0, 0))

    completion = await ExtractiveCompletionClient().complete("system", prompt, 512)

    assert completion.text == DEFAULT_REFUSAL


def test_build_completion_provider() -> None:
    assert isinstance(
        build_completion_provider("extractive", None, "https://x", "m", 0.1, 5),
        ExtractiveCompletionClient,
    )
    with pytest.raises(LLMError):
        build_completion_provider("openai", None, "https://x", "m", 0.1, 5)
    with pytest.raises(LLMError):
        build_completion_provider("anthropic-local", "key", "https://x", "m", 0.1, 5)


async def test_extractive_client_cites_web_source_without_context() -> None:
    prompt = build_user_prompt("How do vendors price?", PackedContext("", [], 0, 0, 0), WEB)

    completion = await ExtractiveCompletionClient().complete("system", prompt, 512)

    assert completion.text == (
        "## Answer\n"
        "Based on the provided context: Most SaaS vendors now offer usage pricing. [W1]\n\n"
        "## Sources\n"
        "[W1] Pricing survey (https://example.com/survey)"
    )
