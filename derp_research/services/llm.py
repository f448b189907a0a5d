# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable AI Backend
# =============================================================================
#
# Common interface for LLM completions and token streaming, with concrete
# implementations for Anthropic (Claude) and OpenAI-compatible APIs
# (OpenAI, DeepSeek, Qwen, local servers).
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   ├── OpenAICompatibleProvider — Any OpenAI-compatible API
#   ├── structured_output()      — JSON → Pydantic model, None on bad output
#   └── get_llm_provider()       — Singleton factory, reads from config,
#                                   wraps the provider with retries/timeouts
#
# ERROR CONTRACT:
# Transport and API errors raise (callers decide whether to fall back).
# Unparseable structured output is not an error: structured_output() returns
# None and logs a warning.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from derp_research.config import settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Standardised response from any LLM provider."""

    content: str           # The generated text
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    `messages` are dicts with "role" ("user" | "assistant") and "content".
    The system prompt is passed separately because Anthropic takes it as a
    top-level kwarg while OpenAI takes it as the first message.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        ...

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas as the model produces them."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """Anthropic Claude provider using the native async SDK."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key, max_retries=0)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    def _kwargs(self, messages, system, temperature, max_tokens) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        response = await self._client.messages.create(
            **self._kwargs(messages, system, temperature, max_tokens)
        )

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream text deltas from Claude. Leaving the loop closes the HTTP stream."""
        async with self._client.messages.stream(
            **self._kwargs(messages, system, temperature, max_tokens)
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield text


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat completions spec.

        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key, "max_retries": 0}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    def _kwargs(self, messages, system, temperature, max_tokens) -> dict:
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)
        return {
            "model": self._model,
            "messages": all_messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        response = await self._client.chat.completions.create(
            **self._kwargs(messages, system, temperature, max_tokens)
        )

        content = response.choices[0].message.content or ""
        usage = response.usage

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        response = await self._client.chat.completions.create(
            stream=True, **self._kwargs(messages, system, temperature, max_tokens)
        )
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        finally:
            await response.close()


# ---------------------------------------------------------------------------
# Structured Output
# ---------------------------------------------------------------------------


async def structured_output(
    llm: LLMProvider,
    prompt: str,
    model_cls: type[ModelT],
    system: str | None = None,
    temperature: float | None = None,
) -> ModelT | None:
    """
    Ask the LLM for JSON matching `model_cls` and parse it.

    Returns None when the reply holds no parseable JSON object or fails
    validation. API errors propagate.
    """
    schema = json.dumps(model_cls.model_json_schema(by_alias=True))
    instructions = (
        "Respond with a single JSON object and nothing else. "
        f"It must match this JSON schema:\n{schema}"
    )
    response = await llm.complete(
        messages=[{"role": "user", "content": f"{prompt}\n\n{instructions}"}],
        system=system,
        temperature=temperature,
    )

    payload = extract_json(response.content)
    if payload is None:
        logger.warning(
            "No JSON object in %s response (%d chars)",
            model_cls.__name__, len(response.content),
        )
        return None

    try:
        return model_cls.model_validate(payload)
    except ValidationError as exc:
        logger.warning(
            "LLM output did not validate as %s: %d errors",
            model_cls.__name__, exc.error_count(),
        )
        return None


def extract_json(text: str) -> dict | None:
    """Pull the first JSON object out of `text`, tolerating code fences and prose."""
    candidates: list[str] = []
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    candidates.append(text)

    for candidate in candidates:
        try:
            value = json.loads(candidate.strip())
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_provider: LLMProvider | None = None


def get_llm_provider() -> LLMProvider:
    """
    Return the configured LLM provider (lazy singleton).

    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider

    Either is wrapped in ResilientLLMProvider, which owns retries and
    timeouts (the SDK clients are built with max_retries=0).
    """
    global _provider
    if _provider is None:
        from derp_research.services.resilience import (
            ResilientLLMProvider,
            breaker_for,
            llm_policy,
        )

        if settings.llm_provider == "openai_compatible":
            inner: LLMProvider = OpenAICompatibleProvider()
        else:
            inner = AnthropicProvider()
        _provider = ResilientLLMProvider(inner, llm_policy(settings), breaker_for("llm", settings))
    return _provider
