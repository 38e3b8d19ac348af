"""
OpenRouter Completion Client
============================

Chat completion capability backed by the OpenAI SDK pointed at the
OpenRouter API. Returns normalized CompletionResponse records and raises
AIError with a code that tells the caller how the attempt failed.
"""

from typing import Any, Dict, Optional

import openai

from .prompt_manager import PromptSpec
from ..database.models import CompletionResponse
from ..utils.exceptions import AIError, ErrorCode
from ..utils.logging import get_logger_for_component


COST_COMPONENTS = ("usage_cache", "usage_data", "usage_web", "usage_file")


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_usage(usage: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Token counts and cost components from an OpenRouter usage block.

    The gross cost is reported as 'cost' (or 'usage'); compensation
    components may appear at the top level or under 'cost_details'.
    """
    usage = usage or {}
    details = usage.get("cost_details") or {}

    result = {
        "tokens_prompt": int(usage.get("prompt_tokens") or 0),
        "tokens_completion": int(usage.get("completion_tokens") or 0),
        "usage": _as_float(usage.get("cost", usage.get("usage"))),
    }
    for name in COST_COMPONENTS:
        value = usage.get(name, details.get(name))
        result[name] = _as_float(value)
    return result


class OpenRouterCompletionClient:
    """Async chat completions through OpenRouter."""

    BASE_URL = "https://openrouter.ai/api/v1"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 1500,
        client: Optional[Any] = None,
    ):
        """Initialize completion client.

        Args:
            api_key: OpenRouter API key
            base_url: OpenAI-compatible endpoint (default: OpenRouter)
            temperature: Sampling temperature
            max_tokens: Completion token limit
            client: Preconfigured AsyncOpenAI-compatible client

        Raises:
            AIError: If no API key is configured
        """
        if not api_key and client is None:
            raise AIError(
                "OpenRouter API key is required",
                error_code=ErrorCode.AI_INVALID_CREDENTIALS,
                recoverable=False,
            )

        self.client = client or openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or self.BASE_URL,
        )
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.logger = get_logger_for_component("completion_client")

    async def complete(self, model: str, prompt: PromptSpec) -> CompletionResponse:
        """Run one chat completion with the given model.

        Raises:
            AIError: rate_limited=True for 429s, AI_PROVIDER_UNAVAILABLE for
                unknown models and upstream outages, AI_API_ERROR otherwise
        """
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": prompt.system_prompt},
                    {"role": "user", "content": prompt.user_message},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                extra_body={"usage": {"include": True}},
            )
        except openai.RateLimitError as e:
            raise AIError(f"OpenRouter rate limit: {e}", model=model, rate_limited=True)
        except openai.APITimeoutError as e:
            raise AIError(
                f"OpenRouter request timed out: {e}", model=model, error_code=ErrorCode.AI_TIMEOUT
            )
        except openai.APIStatusError as e:
            code = (
                ErrorCode.AI_PROVIDER_UNAVAILABLE
                if e.status_code in (404, 502, 503)
                else ErrorCode.AI_API_ERROR
            )
            raise AIError(f"OpenRouter API error ({e.status_code}): {e}", model=model, error_code=code)
        except openai.APIConnectionError as e:
            raise AIError(
                f"OpenRouter connection failed: {e}",
                model=model,
                error_code=ErrorCode.AI_PROVIDER_UNAVAILABLE,
            )
        except openai.APIError as e:
            raise AIError(f"OpenRouter API error: {e}", model=model)

        if not getattr(response, "choices", None):
            raise AIError(
                "OpenRouter returned no choices",
                model=model,
                error_code=ErrorCode.AI_INVALID_RESPONSE,
            )

        text = response.choices[0].message.content or ""
        usage = response.usage.model_dump() if getattr(response, "usage", None) else {}
        fields = extract_usage(usage)

        self.logger.debug(
            f"Completion from {model}: {fields['tokens_prompt']}+{fields['tokens_completion']} tokens"
        )
        return CompletionResponse(text=text, **fields)

    async def close(self) -> None:
        await self.client.close()
