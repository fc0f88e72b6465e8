"""Tests for the Gemini completion adapter."""

import time
from unittest.mock import MagicMock, patch

import pytest

from agentchat.models.errors import UpstreamError, UpstreamTimeout
from agentchat.services.llm_service import (
    GeminiLLMService, MockLLMService, create_llm_service, llm_service
)


@pytest.fixture
def genai():
    with patch("agentchat.services.llm_service.genai") as mock_genai:
        yield mock_genai


def model_returning(genai, response=None, side_effect=None):
    model = MagicMock()
    model.generate_content = MagicMock(return_value=response,
                                       side_effect=side_effect)
    genai.GenerativeModel.return_value = model
    return model


class TestGenerate:
    """Tests for GeminiLLMService.generate."""

    @pytest.mark.asyncio
    async def test_returns_text_and_usage(self, genai):
        response = MagicMock(text="Hi there")
        response.usage_metadata.prompt_token_count = 12
        response.usage_metadata.candidates_token_count = 3
        response.usage_metadata.total_token_count = 15
        model = model_returning(genai, response)
        service = GeminiLLMService(timeout=5)

        result = await service.generate(
            "Be brief.",
            [{"role": "user", "content": "hello"},
             {"role": "assistant", "content": "hey"}],
            "how are you?")

        assert result.text == "Hi there"
        assert result.usage["total_tokens"] == 15
        genai.GenerativeModel.assert_called_once_with(
            service.model_name, system_instruction="Be brief.")
        contents = model.generate_content.call_args.args[0]
        assert [item["role"] for item in contents] == ["user", "model",
                                                       "user"]
        assert contents[-1]["parts"] == ["how are you?"]

    @pytest.mark.asyncio
    async def test_slow_model_raises_upstream_timeout(self, genai):
        model_returning(genai, side_effect=lambda *args, **kwargs:
                        time.sleep(0.5))
        service = GeminiLLMService(timeout=0.05)

        with pytest.raises(UpstreamTimeout):
            await service.generate("", [], "hello")

    @pytest.mark.asyncio
    async def test_provider_error_raises_upstream_error(self, genai):
        model_returning(genai, side_effect=RuntimeError("quota exceeded"))
        service = GeminiLLMService(timeout=5)

        with pytest.raises(UpstreamError) as exc_info:
            await service.generate("", [], "hello")

        assert not isinstance(exc_info.value, UpstreamTimeout)
        assert "quota exceeded" in exc_info.value.message


class TestMockService:
    """Tests for the offline completion service."""

    def test_factory_follows_mock_flag(self):
        assert isinstance(create_llm_service(mock=True), MockLLMService)
        assert create_llm_service(mock=False) is llm_service

    @pytest.mark.asyncio
    async def test_mock_reply_echoes_message(self, genai):
        result = await MockLLMService().generate("Be brief.", [], "Hello")

        assert result.text == '(simulated reply) You said: "Hello"'
        genai.GenerativeModel.assert_not_called()
