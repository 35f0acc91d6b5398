"""
Claude API Client

Async Anthropic client shared by the message router, the booking
orchestrator and the parameter extractor. Rate limits and connection
errors are retried with exponential backoff; other API errors surface
as ClaudeClientError, after one try on the fallback model when the
caller allows it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from anthropic import AsyncAnthropic, APIError, RateLimitError, APIConnectionError

from app.config import settings

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (RateLimitError, APIConnectionError)


class ClaudeClientError(Exception):
    """Raised when a Claude call fails on every model tried."""
    pass


@dataclass
class ClaudeResponse:
    """Text-only response from Claude."""
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    stop_reason: str
    latency_ms: float


class ClaudeClient:
    """Async Claude API client wrapper (process-wide singleton)."""

    _instance: Optional["ClaudeClient"] = None

    def __init__(self, api_key: Optional[str] = None, max_retries: int = 3):
        self.api_key = api_key or settings.anthropic_api_key
        if not self.api_key:
            raise ValueError("Anthropic API key is required")

        self._client = AsyncAnthropic(api_key=self.api_key)
        self._default_model = settings.claude_default_model
        self._fallback_model = settings.claude_fallback_model
        self._max_retries = max_retries

        logger.info(f"ClaudeClient initialized with model={self._default_model}")

    @classmethod
    def get_instance(cls) -> "ClaudeClient":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    async def create_message(
        self,
        messages: list[dict],
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.0,
        tools: Optional[list[dict]] = None,
        tool_choice: Optional[dict] = None,
        use_fallback_on_error: bool = False,
    ) -> Any:
        """
        Send a message list and return the raw Anthropic response.

        Tool-use callers need the content blocks (text and tool_use) and
        the stop_reason, so nothing is unwrapped here.

        Args:
            messages: Conversation in Anthropic message format
            system: System prompt
            model: Model to use (defaults to claude_default_model)
            tools: Tool definitions offered to the model
            tool_choice: Forces a specific tool when set
            use_fallback_on_error: Retry once on claude_fallback_model

        Raises:
            ClaudeClientError: If every model tried failed
        """
        model = model or self._default_model
        kwargs: dict[str, Any] = {
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools
        if tool_choice:
            kwargs["tool_choice"] = tool_choice

        try:
            return await self._call_with_retry(model, kwargs)
        except APIError as e:
            if use_fallback_on_error and model != self._fallback_model:
                logger.warning(f"{model} failed, trying fallback {self._fallback_model}: {e}")
                try:
                    return await self._call_with_retry(self._fallback_model, kwargs)
                except APIError as fallback_error:
                    raise ClaudeClientError(
                        f"Claude API call failed: {fallback_error}"
                    ) from fallback_error
            raise ClaudeClientError(f"Claude API call failed: {e}") from e

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.0,
        use_fallback_on_error: bool = True,
    ) -> ClaudeResponse:
        """
        Single-prompt text generation.

        Returns:
            ClaudeResponse with the concatenated text blocks

        Raises:
            ClaudeClientError: If every model tried failed
        """
        start_time = time.time()
        response = await self.create_message(
            messages=[{"role": "user", "content": prompt}],
            system=system_prompt,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            use_fallback_on_error=use_fallback_on_error,
        )

        text = "".join(
            block.text for block in response.content
            if getattr(block, "type", None) == "text"
        )
        return ClaudeResponse(
            content=text,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=response.stop_reason,
            latency_ms=(time.time() - start_time) * 1000,
        )

    async def _call_with_retry(self, model: str, kwargs: dict[str, Any]) -> Any:
        """Call the API, backing off on rate limits and connection errors."""
        for attempt in range(self._max_retries):
            try:
                response = await self._client.messages.create(model=model, **kwargs)
                logger.debug(
                    f"Claude {model}: {response.usage.input_tokens} in, "
                    f"{response.usage.output_tokens} out, stop={response.stop_reason}"
                )
                return response

            except RETRYABLE_ERRORS as e:
                if attempt == self._max_retries - 1:
                    raise
                wait_time = 2 ** attempt
                logger.warning(
                    f"{type(e).__name__} from Claude, retrying in {wait_time}s "
                    f"(attempt {attempt + 1})"
                )
                await asyncio.sleep(wait_time)

            except APIError as e:
                logger.error(f"API error: {e}")
                raise

    async def close(self) -> None:
        await self._client.close()


async def get_claude_client() -> ClaudeClient:
    return ClaudeClient.get_instance()
