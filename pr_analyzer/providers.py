"""Direct-API backends (Anthropic, OpenAI, Gemini) and the default registry."""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

import anthropic
import google.generativeai as genai
import openai

from pr_analyzer.config import (
    BACKEND_TIMEOUT_SECONDS,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODELS,
    DEFAULT_TEMPERATURE,
)
from pr_analyzer.errors import BackendError, ConfigurationError
from pr_analyzer.llm import (
    SYSTEM_PROMPT,
    BackendRegistry,
    BackendResponse,
    BedrockBackend,
    TokenUsage,
    log_usage,
)

logger = logging.getLogger(__name__)


def _require_key(api_key: Optional[str], env_var: str, provider: str) -> str:
    key = api_key or os.environ.get(env_var)
    if not key:
        raise ConfigurationError(
            f"{env_var} environment variable is not set (required for {provider})",
            env_var,
        )
    return key


class AnthropicBackend:
    """Claude through the Anthropic Messages API."""

    provider = "anthropic"

    def __init__(
        self,
        model: str = DEFAULT_MODELS["anthropic"],
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        api_key: Optional[str] = None,
        client=None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client or anthropic.Anthropic(
            api_key=_require_key(api_key, "ANTHROPIC_API_KEY", self.provider),
            timeout=BACKEND_TIMEOUT_SECONDS,
        )

    def invoke(self, prompt: str, tool: str = "unknown") -> BackendResponse:
        start = time.monotonic()
        try:
            message = self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            logger.error("Anthropic call failed [%s]: %s", tool, e)
            raise BackendError(f"Anthropic inference failed: {e}", self.provider) from e

        text = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )
        usage = TokenUsage(message.usage.input_tokens, message.usage.output_tokens)
        log_usage(self.model, tool, usage, int((time.monotonic() - start) * 1000))
        return BackendResponse(text=text, usage=usage, stop_reason=message.stop_reason or "unknown")


class OpenAIBackend:
    """GPT models through the OpenAI Chat Completions API."""

    provider = "openai"

    def __init__(
        self,
        model: str = DEFAULT_MODELS["openai"],
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        api_key: Optional[str] = None,
        client=None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client or openai.OpenAI(
            api_key=_require_key(api_key, "OPENAI_API_KEY", self.provider),
            timeout=BACKEND_TIMEOUT_SECONDS,
        )

    def invoke(self, prompt: str, tool: str = "unknown") -> BackendResponse:
        start = time.monotonic()
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
        except openai.OpenAIError as e:
            logger.error("OpenAI call failed [%s]: %s", tool, e)
            raise BackendError(f"OpenAI inference failed: {e}", self.provider) from e

        choice = completion.choices[0] if completion.choices else None
        text = (choice.message.content or "") if choice else ""
        usage = None
        if completion.usage is not None:
            usage = TokenUsage(
                completion.usage.prompt_tokens, completion.usage.completion_tokens
            )
            log_usage(self.model, tool, usage, int((time.monotonic() - start) * 1000))
        return BackendResponse(
            text=text,
            usage=usage,
            stop_reason=(choice.finish_reason if choice else None) or "unknown",
        )


class GeminiBackend:
    """Gemini models through the google-generativeai SDK."""

    provider = "gemini"

    def __init__(
        self,
        model: str = DEFAULT_MODELS["gemini"],
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        api_key: Optional[str] = None,
        client=None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        if client is None:
            genai.configure(api_key=_require_key(api_key, "GOOGLE_API_KEY", self.provider))
            client = genai.GenerativeModel(model, system_instruction=SYSTEM_PROMPT)
        self._client = client

    def invoke(self, prompt: str, tool: str = "unknown") -> BackendResponse:
        start = time.monotonic()
        try:
            response = self._client.generate_content(
                prompt,
                generation_config={
                    "max_output_tokens": self.max_tokens,
                    "temperature": self.temperature,
                },
                request_options={"timeout": BACKEND_TIMEOUT_SECONDS},
            )
            text = response.text
        except Exception as e:
            # The SDK raises google.api_core exceptions and ValueError for blocked output
            logger.error("Gemini call failed [%s]: %s", tool, e)
            raise BackendError(f"Gemini inference failed: {e}", self.provider) from e

        usage = None
        metadata = getattr(response, "usage_metadata", None)
        if metadata is not None:
            usage = TokenUsage(
                getattr(metadata, "prompt_token_count", 0) or 0,
                getattr(metadata, "candidates_token_count", 0) or 0,
            )
            log_usage(self.model, tool, usage, int((time.monotonic() - start) * 1000))
        return BackendResponse(text=text or "", usage=usage)


def default_registry() -> BackendRegistry:
    """A fresh registry with every built-in backend registered."""
    registry = BackendRegistry()
    registry.register("bedrock", BedrockBackend)
    registry.register("anthropic", AnthropicBackend)
    registry.register("openai", OpenAIBackend)
    registry.register("gemini", GeminiBackend)
    return registry
