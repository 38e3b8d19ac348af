"""
OpenRouter Completion Client Tests
==================================

Usage extraction and error mapping with a mocked AsyncOpenAI client.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from feedrelay.ai.completion_client import OpenRouterCompletionClient, extract_usage
from feedrelay.ai.prompt_manager import DEFAULT_SYSTEM_PROMPT, PromptManager, PromptSpec
from feedrelay.database.models import CandidateItem
from feedrelay.utils.exceptions import AIError, ErrorCode


@pytest.fixture
def prompt():
    return PromptSpec(purpose="summary", system_prompt="sys", user_message="user")


def _openai_client(create):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=create)
    client.close = AsyncMock()
    return client


def _status_error(cls, status):
    request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return cls("failure", response=response, body=None)


class TestExtractUsage:

    def test_top_level_components(self):
        fields = extract_usage({
            "prompt_tokens": 10,
            "completion_tokens": 5,
            "cost": 0.0004,
            "usage_cache": -0.0000257478,
        })

        assert fields["tokens_prompt"] == 10
        assert fields["tokens_completion"] == 5
        assert fields["usage"] == 0.0004
        assert fields["usage_cache"] == -0.0000257478
        assert fields["usage_data"] is None

    def test_cost_details_components(self):
        fields = extract_usage({"cost": "0.002", "cost_details": {"usage_web": 0.001}})

        assert fields["usage"] == 0.002
        assert fields["usage_web"] == 0.001

    def test_empty_usage(self):
        fields = extract_usage(None)
        assert fields["usage"] is None
        assert fields["tokens_prompt"] == 0


class TestOpenRouterCompletionClient:

    def test_requires_api_key(self):
        with pytest.raises(AIError) as exc_info:
            OpenRouterCompletionClient(api_key="")
        assert exc_info.value.error_code == ErrorCode.AI_INVALID_CREDENTIALS

    @pytest.mark.asyncio
    async def test_successful_completion(self, prompt):
        usage = MagicMock()
        usage.model_dump.return_value = {"prompt_tokens": 30, "completion_tokens": 7, "cost": 0.0001}
        response = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content='{"headline": "x"}'))],
            usage=usage,
        )

        async def create(**kwargs):
            return response

        inner = _openai_client(create)
        client = OpenRouterCompletionClient(api_key="k", client=inner)

        result = await client.complete("some/model", prompt)

        assert result.text == '{"headline": "x"}'
        assert result.tokens_prompt == 30
        assert result.usage == 0.0001
        kwargs = inner.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "some/model"
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert kwargs["extra_body"] == {"usage": {"include": True}}

    @pytest.mark.asyncio
    async def test_rate_limit_maps_to_rate_limited(self, prompt):
        async def create(**kwargs):
            raise _status_error(openai.RateLimitError, 429)

        client = OpenRouterCompletionClient(api_key="k", client=_openai_client(create))

        with pytest.raises(AIError) as exc_info:
            await client.complete("m", prompt)
        assert exc_info.value.rate_limited
        assert exc_info.value.error_code == ErrorCode.AI_RATE_LIMIT

    @pytest.mark.asyncio
    async def test_unknown_model_maps_to_unavailable(self, prompt):
        async def create(**kwargs):
            raise _status_error(openai.NotFoundError, 404)

        client = OpenRouterCompletionClient(api_key="k", client=_openai_client(create))

        with pytest.raises(AIError) as exc_info:
            await client.complete("m", prompt)
        assert exc_info.value.error_code == ErrorCode.AI_PROVIDER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_no_choices_is_invalid_response(self, prompt):
        async def create(**kwargs):
            return SimpleNamespace(choices=[], usage=None)

        client = OpenRouterCompletionClient(api_key="k", client=_openai_client(create))

        with pytest.raises(AIError) as exc_info:
            await client.complete("m", prompt)
        assert exc_info.value.error_code == ErrorCode.AI_INVALID_RESPONSE


class TestPromptManager:

    def test_default_prompt_without_files(self, tmp_path):
        manager = PromptManager(str(tmp_path))
        assert manager.get_system_prompt("default") == DEFAULT_SYSTEM_PROMPT

    def test_prompt_file_loaded_and_cached(self, tmp_path):
        (tmp_path / "digest.txt").write_text("  Digest prompt \n", encoding="utf-8")
        manager = PromptManager(str(tmp_path))

        assert manager.get_system_prompt("digest") == "Digest prompt"
        (tmp_path / "digest.txt").write_text("changed", encoding="utf-8")
        assert manager.get_system_prompt("digest") == "Digest prompt"
        assert manager.list_prompts() == ["digest"]

    def test_prompt_id_is_sanitized(self, tmp_path):
        manager = PromptManager(str(tmp_path))
        assert manager.sanitize_id("../../etc/passwd") == "etcpasswd"

    def test_build_embeds_item_fields(self, tmp_path):
        manager = PromptManager(str(tmp_path), purpose="digest")
        item = CandidateItem(title="Новости дня", description="Короткий текст")

        prompt = manager.build("default", item)
        payload = json.loads(prompt.user_message)

        assert prompt.purpose == "digest"
        assert prompt.language == "ru"
        assert payload["article_title"] == "Новости дня"
        assert payload["article_text"] == "Короткий текст"
        assert "Новости" in prompt.user_message
