import google.generativeai as genai
from typing import Dict, Any, List, Optional
import asyncio
import logging

from agentchat.models.errors import UpstreamError, UpstreamTimeout
from agentchat.models.schemas import CompletionResult
from config.settings import settings

logger = logging.getLogger(__name__)

MOCK_PREVIEW_LENGTH = 200


class GeminiLLMService:
    def __init__(self, timeout: Optional[float] = None):
        genai.configure(api_key=settings.GEMINI_API_KEY)
        self.model_name = settings.GEMINI_MODEL
        self.timeout = timeout or settings.LLM_TIMEOUT_SECONDS

    def _build_contents(self, history: List[Dict[str, str]],
                        user_message: str) -> List[Dict[str, Any]]:
        """Map chat history onto Gemini's user/model turns"""
        contents = []
        for item in history:
            role = "user" if item.get("role") == "user" else "model"
            contents.append({"role": role, "parts": [item.get("content", "")]})
        contents.append({"role": "user", "parts": [user_message]})
        return contents

    async def generate(self, system_prompt: str,
                       history: List[Dict[str, str]],
                       user_message: str, **kwargs) -> CompletionResult:
        """
        Generate a completion for ``user_message``.

        Raises UpstreamTimeout when the model does not answer within the
        configured deadline and UpstreamError for any other failure.
        """
        model = genai.GenerativeModel(
            self.model_name,
            system_instruction=system_prompt or None
        )
        config = genai.types.GenerationConfig(
            temperature=kwargs.get('temperature', settings.TEMPERATURE),
            max_output_tokens=kwargs.get('max_tokens', settings.MAX_TOKENS),
        )

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    model.generate_content,
                    self._build_contents(history, user_message),
                    generation_config=config
                ),
                timeout=self.timeout
            )
            text = response.text
        except asyncio.TimeoutError:
            logger.warning("LLM call timed out after %ss", self.timeout)
            raise UpstreamTimeout(
                f"LLM did not respond within {self.timeout} seconds")
        except Exception as e:
            logger.error("Error generating response: %s", e)
            raise UpstreamError(f"Error generating response: {str(e)}")

        usage = {}
        metadata = getattr(response, "usage_metadata", None)
        if metadata is not None:
            usage = {
                "prompt_tokens": getattr(metadata, "prompt_token_count", 0),
                "completion_tokens": getattr(metadata,
                                             "candidates_token_count", 0),
                "total_tokens": getattr(metadata, "total_token_count", 0),
            }
        return CompletionResult(text=text, usage=usage)


class MockLLMService:
    """Canned completions, used when MOCK_SERVICES is on"""

    async def generate(self, system_prompt: str,
                       history: List[Dict[str, str]],
                       user_message: str, **kwargs) -> CompletionResult:
        preview = user_message.strip()
        if len(preview) > MOCK_PREVIEW_LENGTH:
            preview = preview[:MOCK_PREVIEW_LENGTH] + "..."
        return CompletionResult(
            text=f'(simulated reply) You said: "{preview}"',
            usage={"prompt_tokens": 0, "completion_tokens": 0,
                   "total_tokens": 0})


# Global LLM service instance
llm_service = GeminiLLMService()


def create_llm_service(mock: Optional[bool] = None):
    use_mock = settings.MOCK_SERVICES if mock is None else mock
    if use_mock:
        return MockLLMService()
    return llm_service
